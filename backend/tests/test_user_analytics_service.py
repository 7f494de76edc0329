import asyncio
import unittest
from datetime import datetime, timezone
from unittest.mock import patch

import aiosqlite

from backend.db.repositories.users import SqliteUserAnalyticsRepository
from backend.db.sqlite_migrations import run_migrations
from backend.errors import ConsistencyError, UpstreamQueryError, ValidationError
from backend.services import user_analytics


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


T1 = _utc(2026, 1, 1, 10)
T2 = _utc(2026, 1, 2, 10)
S1 = _utc(2026, 1, 2, 11)


class _RecordingRepo:
    """Fake repository returning canned rows and recording which queries ran."""

    def __init__(self, user_ids=None, trace_rows=None, observation_rows=None, score_rows=None) -> None:
        self.calls: list[str] = []
        self.user_ids = user_ids or []
        self.trace_rows = trace_rows or []
        self.observation_rows = observation_rows or []
        self.score_rows = score_rows or []

    async def list_user_ids(self, project_id):
        self.calls.append("list_user_ids")
        return list(self.user_ids)

    async def get_trace_stats(self, project_id, user_ids):
        self.calls.append("get_trace_stats")
        return self.trace_rows

    async def get_observation_stats(self, project_id, user_ids):
        self.calls.append("get_observation_stats")
        return self.observation_rows

    async def get_latest_scores(self, project_id, user_ids):
        self.calls.append("get_latest_scores")
        return self.score_rows

    async def get_user_trace_stats(self, project_id, user_id):
        self.calls.append("get_user_trace_stats")
        return None

    async def get_user_observation_stats(self, project_id, user_id):
        self.calls.append("get_user_observation_stats")
        return None

    async def get_user_latest_score(self, project_id, user_id):
        self.calls.append("get_user_latest_score")
        return None


class UserAnalyticsScenarioTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.repo = SqliteUserAnalyticsRepository(self.db)

        await self.repo.upsert_trace({"id": "t-1", "projectId": "p1", "userId": "u1", "timestamp": T1})
        await self.repo.upsert_trace({"id": "t-2", "projectId": "p1", "userId": "u1", "timestamp": T2})
        await self.repo.upsert_trace({"id": "t-3", "projectId": "p1", "userId": "u2", "timestamp": T2})
        tokens = [(10, 20, 5), (15, 5, 3), (0, 0, 0)]
        for idx, (prompt, completion, total) in enumerate(tokens, start=1):
            await self.repo.upsert_observation(
                {
                    "id": f"o-{idx}",
                    "traceId": "t-1" if idx == 1 else "t-2",
                    "projectId": "p1",
                    "startTime": _utc(2026, 1, idx, 10, 0, 1),
                    "endTime": _utc(2026, 1, idx, 10, 0, 2),
                    "promptTokens": prompt,
                    "completionTokens": completion,
                    "totalTokens": total,
                }
            )
        await self.repo.upsert_score(
            {"id": "s-1", "traceId": "t-2", "name": "quality", "value": 0.8, "timestamp": S1}
        )

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_get_user_analytics_for_known_user(self) -> None:
        summary = await user_analytics.get_user_analytics(self.repo, "p1", "u1")

        self.assertEqual(summary.userId, "u1")
        self.assertEqual(summary.firstTrace, T1)
        self.assertEqual(summary.lastTrace, T2)
        self.assertEqual(summary.totalTraces, 2)
        self.assertEqual(summary.totalObservations, 3)
        self.assertEqual(summary.totalPromptTokens, 25)
        self.assertEqual(summary.totalCompletionTokens, 25)
        self.assertEqual(summary.totalTokens, 8)
        self.assertEqual(summary.firstObservation, _utc(2026, 1, 1, 10, 0, 1))
        self.assertEqual(summary.lastObservation, _utc(2026, 1, 3, 10, 0, 1))
        self.assertIsNotNone(summary.lastScore)
        self.assertEqual(summary.lastScore.timestamp, S1)
        self.assertEqual(summary.lastScore.traceId, "t-2")
        self.assertAlmostEqual(summary.lastScore.value, 0.8)

    async def test_get_user_analytics_for_unknown_user_returns_defaults(self) -> None:
        summary = await user_analytics.get_user_analytics(self.repo, "p1", "unknown-user")

        self.assertEqual(summary.userId, "unknown-user")
        self.assertEqual(summary.totalTraces, 0)
        self.assertEqual(summary.totalObservations, 0)
        self.assertEqual(summary.totalPromptTokens, 0)
        self.assertEqual(summary.totalCompletionTokens, 0)
        self.assertEqual(summary.totalTokens, 0)
        self.assertIsNone(summary.firstTrace)
        self.assertIsNone(summary.lastTrace)
        self.assertIsNone(summary.firstObservation)
        self.assertIsNone(summary.lastObservation)
        self.assertIsNone(summary.lastScore)

    async def test_list_users_matches_single_user_results(self) -> None:
        summaries = await user_analytics.list_users_with_analytics(self.repo, "p1")

        self.assertEqual([s.userId for s in summaries], ["u1", "u2"])
        single = await user_analytics.get_user_analytics(self.repo, "p1", "u1")
        self.assertEqual(summaries[0], single)

    async def test_list_users_handles_user_without_observations_or_scores(self) -> None:
        summaries = await user_analytics.list_users_with_analytics(self.repo, "p1")
        u2 = summaries[1]

        self.assertEqual(u2.totalTraces, 1)
        self.assertEqual(u2.totalObservations, 0)
        self.assertEqual(u2.totalPromptTokens, 0)
        self.assertEqual(u2.totalCompletionTokens, 0)
        self.assertEqual(u2.totalTokens, 0)
        self.assertIsNone(u2.firstObservation)
        self.assertIsNone(u2.lastObservation)
        self.assertIsNone(u2.lastScore)

    async def test_aggregation_is_repeatable(self) -> None:
        first = await user_analytics.list_users_with_analytics(self.repo, "p1")
        second = await user_analytics.list_users_with_analytics(self.repo, "p1")
        self.assertEqual(first, second)

    async def test_list_users_for_other_project_is_empty(self) -> None:
        self.assertEqual(await user_analytics.list_users_with_analytics(self.repo, "p2"), [])

    async def test_listed_users_are_accepted_by_single_user_lookup(self) -> None:
        await self.repo.upsert_trace({"id": "t-blank", "projectId": "p1", "userId": "   ", "timestamp": T1})

        summaries = await user_analytics.list_users_with_analytics(self.repo, "p1")

        self.assertEqual([s.userId for s in summaries], ["u1", "u2"])
        for summary in summaries:
            single = await user_analytics.get_user_analytics(self.repo, "p1", summary.userId)
            self.assertEqual(single.totalTraces, summary.totalTraces)


class UserAnalyticsServiceTests(unittest.IsolatedAsyncioTestCase):
    async def test_empty_project_id_fails_before_any_query(self) -> None:
        repo = _RecordingRepo()
        for bad in ("", "   ", None):
            with self.assertRaises(ValidationError):
                await user_analytics.list_users_with_analytics(repo, bad)
        self.assertEqual(repo.calls, [])

    async def test_empty_user_id_fails_before_any_query(self) -> None:
        repo = _RecordingRepo()
        with self.assertRaises(ValidationError) as ctx:
            await user_analytics.get_user_analytics(repo, "p1", "")
        self.assertEqual(ctx.exception.field, "userId")
        self.assertEqual(repo.calls, [])

    async def test_no_users_short_circuits(self) -> None:
        repo = _RecordingRepo(user_ids=[])
        result = await user_analytics.list_users_with_analytics(repo, "p1")

        self.assertEqual(result, [])
        self.assertEqual(repo.calls, ["list_user_ids"])

    async def test_one_record_per_user_in_resolver_order(self) -> None:
        repo = _RecordingRepo(
            user_ids=["b", "a", "c"],
            trace_rows=[
                {"user_id": uid, "total_traces": n, "first_trace": None, "last_trace": None}
                for uid, n in (("a", 1), ("b", 2), ("c", 3))
            ],
            observation_rows=[
                {"user_id": uid, "total_observations": 0, "total_tokens": None}
                for uid in ("c", "b", "a")
            ],
            score_rows=[
                {"user_id": "a", "id": "s", "trace_id": "t", "value": 1, "timestamp": "2026-01-01T00:00:00Z"}
            ],
        )
        result = await user_analytics.list_users_with_analytics(repo, "p1")

        self.assertEqual([s.userId for s in result], ["b", "a", "c"])
        self.assertEqual([s.totalTraces for s in result], [2, 1, 3])
        self.assertEqual(result[1].lastScore.id, "s")
        self.assertIsNone(result[0].lastScore)
        self.assertEqual(result[0].totalTokens, 0)

    async def test_missing_trace_stats_is_consistency_error(self) -> None:
        repo = _RecordingRepo(
            user_ids=["u1", "u2"],
            trace_rows=[{"user_id": "u1", "total_traces": 1}],
            observation_rows=[{"user_id": "u1"}, {"user_id": "u2"}],
        )
        with self.assertLogs("tracelytics.analytics", level="ERROR"):
            with self.assertRaises(ConsistencyError) as ctx:
                await user_analytics.list_users_with_analytics(repo, "p1")
        self.assertEqual(ctx.exception.user_id, "u2")
        self.assertEqual(ctx.exception.source, "trace")

    async def test_missing_observation_stats_is_consistency_error(self) -> None:
        repo = _RecordingRepo(
            user_ids=["u1"],
            trace_rows=[{"user_id": "u1", "total_traces": 1}],
            observation_rows=[],
        )
        with self.assertRaises(ConsistencyError) as ctx:
            await user_analytics.list_users_with_analytics(repo, "p1")
        self.assertEqual(ctx.exception.source, "observation")

    async def test_failed_sub_query_cancels_siblings(self) -> None:
        cancelled = asyncio.Event()

        class _FailingRepo(_RecordingRepo):
            async def get_trace_stats(self, project_id, user_ids):
                try:
                    await asyncio.sleep(10)
                except asyncio.CancelledError:
                    cancelled.set()
                    raise

            async def get_observation_stats(self, project_id, user_ids):
                raise RuntimeError("connection reset")

        repo = _FailingRepo(user_ids=["u1"])
        with self.assertRaises(UpstreamQueryError) as ctx:
            await user_analytics.list_users_with_analytics(repo, "p1")

        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)
        self.assertTrue(cancelled.is_set())

    async def test_cancelled_request_cancels_in_flight_sub_queries(self) -> None:
        started: list[str] = []
        cancelled: list[str] = []
        all_started = asyncio.Event()

        class _SleepingRepo(_RecordingRepo):
            async def _sleep(self, name):
                started.append(name)
                if len(started) == 3:
                    all_started.set()
                try:
                    await asyncio.sleep(10)
                except asyncio.CancelledError:
                    cancelled.append(name)
                    raise

            async def get_user_trace_stats(self, project_id, user_id):
                return await self._sleep("traces")

            async def get_user_observation_stats(self, project_id, user_id):
                return await self._sleep("observations")

            async def get_user_latest_score(self, project_id, user_id):
                return await self._sleep("score")

        request = asyncio.create_task(user_analytics.get_user_analytics(_SleepingRepo(), "p1", "u1"))
        await asyncio.wait_for(all_started.wait(), 1)
        request.cancel()

        with self.assertRaises(asyncio.CancelledError):
            await request
        self.assertEqual(sorted(cancelled), ["observations", "score", "traces"])

    async def test_slow_store_times_out(self) -> None:
        class _SlowRepo(_RecordingRepo):
            async def get_user_latest_score(self, project_id, user_id):
                await asyncio.sleep(10)

        with patch.object(user_analytics.config, "QUERY_TIMEOUT_SECONDS", 0.05):
            with self.assertRaises(UpstreamQueryError):
                await user_analytics.get_user_analytics(_SlowRepo(), "p1", "u1")

    async def test_resolver_failure_is_upstream_error(self) -> None:
        class _BrokenRepo(_RecordingRepo):
            async def list_user_ids(self, project_id):
                raise OSError("store unavailable")

        with self.assertRaises(UpstreamQueryError):
            await user_analytics.list_users_with_analytics(_BrokenRepo(), "p1")

    async def test_sub_queries_run_concurrently(self) -> None:
        started: list[str] = []
        gate = asyncio.Event()

        class _BarrierRepo(_RecordingRepo):
            async def _wait(self, name):
                started.append(name)
                if len(started) == 3:
                    gate.set()
                await asyncio.wait_for(gate.wait(), 1)
                return None

            async def get_user_trace_stats(self, project_id, user_id):
                return await self._wait("traces")

            async def get_user_observation_stats(self, project_id, user_id):
                return await self._wait("observations")

            async def get_user_latest_score(self, project_id, user_id):
                return await self._wait("score")

        summary = await user_analytics.get_user_analytics(_BarrierRepo(), "p1", "u1")

        self.assertEqual(sorted(started), ["observations", "score", "traces"])
        self.assertEqual(summary.totalTraces, 0)


class RecordMergerTests(unittest.TestCase):
    def test_null_sums_become_zero(self) -> None:
        summary = user_analytics.merge_user_record(
            "u1",
            {"total_traces": 4, "first_trace": "2026-01-01T00:00:00Z", "last_trace": "2026-01-02T00:00:00Z"},
            {"total_observations": 2, "prompt_tokens": None, "completion_tokens": 7, "total_tokens": None},
            None,
        )
        self.assertEqual(summary.totalTraces, 4)
        self.assertEqual(summary.totalPromptTokens, 0)
        self.assertEqual(summary.totalCompletionTokens, 7)
        self.assertEqual(summary.totalTokens, 0)
        self.assertEqual(summary.firstTrace, _utc(2026, 1, 1))
        self.assertIsNone(summary.lastScore)

    def test_unconvertible_counts_are_not_defaulted(self) -> None:
        with self.assertRaises(ValueError):
            user_analytics.merge_user_record(
                "u1",
                {"total_traces": "not-a-number"},
                {"total_observations": 0},
                None,
            )

    def test_missing_rows_produce_default_schema(self) -> None:
        summary = user_analytics.merge_user_record("u1", None, None, None)
        payload = summary.model_dump()

        self.assertEqual(
            set(payload),
            {
                "userId", "firstTrace", "lastTrace", "totalTraces",
                "totalPromptTokens", "totalCompletionTokens", "totalTokens",
                "firstObservation", "lastObservation", "totalObservations", "lastScore",
            },
        )
        self.assertEqual(payload["totalTraces"], 0)
        self.assertIsNone(payload["lastScore"])


if __name__ == "__main__":
    unittest.main()
