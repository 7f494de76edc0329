"""Per-user analytics aggregation over traces, observations and scores.

Both entry points fan out three independent store queries, wait on all of
them, and only then merge. A failure in any sub-query cancels its siblings
and fails the whole aggregation, so callers never see a partial record.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Coroutine

from backend import config
from backend.db.repositories.base import UserAnalyticsRepository
from backend.errors import ConsistencyError, UpstreamQueryError, UserAnalyticsError, ValidationError
from backend.models import Score, UserAnalyticsSummary
from backend.observability import record_aggregation, start_span

logger = logging.getLogger("tracelytics.analytics")


def require_identifier(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field)
    return value


def _coalesce_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    return int(value)


def _score_from_row(row: dict[str, Any] | None) -> Score | None:
    if not row:
        return None
    return Score(
        id=str(row["id"]),
        traceId=str(row["trace_id"]),
        observationId=row.get("observation_id"),
        name=str(row.get("name") or ""),
        value=float(row.get("value") or 0.0),
        comment=row.get("comment"),
        timestamp=row["timestamp"],
    )


def merge_user_record(
    user_id: str,
    trace_stats: dict[str, Any] | None,
    observation_stats: dict[str, Any] | None,
    latest_score: dict[str, Any] | None,
) -> UserAnalyticsSummary:
    """Coalesce the three sub-query rows into one summary.

    Any of the rows may be missing: counts and token sums fall back to 0,
    timestamps stay ``None`` and the score is ``None``.
    """
    traces = trace_stats or {}
    observations = observation_stats or {}
    return UserAnalyticsSummary(
        userId=user_id,
        firstTrace=traces.get("first_trace"),
        lastTrace=traces.get("last_trace"),
        totalTraces=_coalesce_int(traces.get("total_traces")),
        totalPromptTokens=_coalesce_int(observations.get("prompt_tokens")),
        totalCompletionTokens=_coalesce_int(observations.get("completion_tokens")),
        totalTokens=_coalesce_int(observations.get("total_tokens")),
        firstObservation=observations.get("first_observation"),
        lastObservation=observations.get("last_observation"),
        totalObservations=_coalesce_int(observations.get("total_observations")),
        lastScore=_score_from_row(latest_score),
    )


async def _fan_out(*aws: Coroutine[Any, Any, Any]) -> list[Any]:
    tasks = [asyncio.create_task(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        # Covers sibling failure and cancellation of the caller alike.
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


async def _run_queries(label: str, *aws: Coroutine[Any, Any, Any]) -> list[Any]:
    """Await all sub-queries behind one barrier, mapping store failures to UpstreamQueryError."""
    timeout = config.QUERY_TIMEOUT_SECONDS
    try:
        if timeout and timeout > 0:
            return await asyncio.wait_for(_fan_out(*aws), timeout)
        return await _fan_out(*aws)
    except asyncio.TimeoutError as exc:
        raise UpstreamQueryError(f"{label} queries timed out after {timeout}s") from exc
    except UserAnalyticsError:
        raise
    except Exception as exc:
        raise UpstreamQueryError(f"{label} queries failed: {exc}") from exc


async def resolve_user_ids(repo: UserAnalyticsRepository, project_id: str) -> list[str]:
    """Distinct user ids that have at least one trace in the project."""
    (user_ids,) = await _run_queries("user set", repo.list_user_ids(project_id))
    return list(user_ids)


async def aggregate_users(
    repo: UserAnalyticsRepository,
    project_id: str,
    user_ids: list[str],
) -> list[UserAnalyticsSummary]:
    """One summary per user id, in input order. ``user_ids`` must be non-empty."""
    trace_rows, observation_rows, score_rows = await _run_queries(
        "user analytics",
        repo.get_trace_stats(project_id, user_ids),
        repo.get_observation_stats(project_id, user_ids),
        repo.get_latest_scores(project_id, user_ids),
    )

    traces_by_user = {row["user_id"]: row for row in trace_rows}
    observations_by_user = {row["user_id"]: row for row in observation_rows}
    scores_by_user = {row["user_id"]: row for row in score_rows}

    summaries: list[UserAnalyticsSummary] = []
    for user_id in user_ids:
        trace_stats = traces_by_user.get(user_id)
        if trace_stats is None:
            raise ConsistencyError(user_id, "trace")
        observation_stats = observations_by_user.get(user_id)
        if observation_stats is None:
            raise ConsistencyError(user_id, "observation")
        summaries.append(
            merge_user_record(user_id, trace_stats, observation_stats, scores_by_user.get(user_id))
        )
    return summaries


async def aggregate_user(
    repo: UserAnalyticsRepository,
    project_id: str,
    user_id: str,
) -> UserAnalyticsSummary:
    trace_stats, observation_stats, latest_score = await _run_queries(
        "single user analytics",
        repo.get_user_trace_stats(project_id, user_id),
        repo.get_user_observation_stats(project_id, user_id),
        repo.get_user_latest_score(project_id, user_id),
    )
    return merge_user_record(user_id, trace_stats, observation_stats, latest_score)


async def list_users_with_analytics(
    repo: UserAnalyticsRepository,
    project_id: str,
) -> list[UserAnalyticsSummary]:
    project_id = require_identifier(project_id, "projectId")
    started = time.perf_counter()
    result = "error"
    user_count = 0
    with start_span("user_analytics.list", {"project_id": project_id}):
        try:
            user_ids = await resolve_user_ids(repo, project_id)
            user_count = len(user_ids)
            if not user_ids:
                result = "empty"
                return []
            summaries = await aggregate_users(repo, project_id, user_ids)
            result = "ok"
            return summaries
        except ConsistencyError as exc:
            logger.error("Inconsistent analytics for project %s: %s", project_id, exc)
            raise
        except UpstreamQueryError as exc:
            logger.warning("User analytics query failed for project %s: %s", project_id, exc)
            raise
        finally:
            record_aggregation(
                "list",
                result,
                (time.perf_counter() - started) * 1000.0,
                project_id=project_id,
                user_count=user_count,
            )


async def get_user_analytics(
    repo: UserAnalyticsRepository,
    project_id: str,
    user_id: str,
) -> UserAnalyticsSummary:
    """Summary for one user; unknown users yield an all-default record, not an error."""
    project_id = require_identifier(project_id, "projectId")
    user_id = require_identifier(user_id, "userId")
    started = time.perf_counter()
    result = "error"
    with start_span("user_analytics.get", {"project_id": project_id, "user_id": user_id}):
        try:
            summary = await aggregate_user(repo, project_id, user_id)
            result = "ok" if summary.totalTraces else "empty"
            return summary
        except UpstreamQueryError as exc:
            logger.warning("User analytics query failed for %s/%s: %s", project_id, user_id, exc)
            raise
        finally:
            record_aggregation(
                "single",
                result,
                (time.perf_counter() - started) * 1000.0,
                project_id=project_id,
                user_count=1,
            )
