"""SQLite implementation of UserAnalyticsRepository."""
from __future__ import annotations

import json
import logging
from typing import Any

import aiosqlite

from backend.date_utils import to_storage_timestamp

logger = logging.getLogger("tracelytics.db.users")

_SCORE_COLUMNS = "s.id, s.trace_id, s.observation_id, s.name, s.value, s.comment, s.timestamp"


def _placeholders(values: list[Any]) -> str:
    return ",".join(["?"] * len(values))


class SqliteUserAnalyticsRepository:
    """SQLite-backed per-user analytics queries."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def _fetch_all(self, query: str, params: list[Any]) -> list[dict[str, Any]]:
        async with self.db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            columns = [col[0] for col in cursor.description]
            return [dict(zip(columns, row)) for row in rows]

    async def _fetch_one(self, query: str, params: list[Any]) -> dict[str, Any] | None:
        rows = await self._fetch_all(query, params)
        return rows[0] if rows else None

    # ── Resolver ────────────────────────────────────────────────────

    async def list_user_ids(self, project_id: str) -> list[str]:
        """Distinct user ids with at least one trace, ordered by first activity."""
        query = """
            SELECT user_id
            FROM traces
            WHERE project_id = ?
              AND user_id IS NOT NULL
              AND TRIM(user_id, ' ' || char(9, 10, 11, 12, 13)) != ''
            GROUP BY user_id
            ORDER BY MIN(timestamp) ASC, user_id ASC
        """
        async with self.db.execute(query, (project_id,)) as cursor:
            rows = await cursor.fetchall()
            return [row[0] for row in rows]

    # ── Grouped (multi-user) ────────────────────────────────────────

    async def get_trace_stats(self, project_id: str, user_ids: list[str]) -> list[dict[str, Any]]:
        if not user_ids:
            return []
        query = f"""
            SELECT
                user_id,
                COUNT(*) AS total_traces,
                MIN(timestamp) AS first_trace,
                MAX(timestamp) AS last_trace
            FROM traces
            WHERE project_id = ?
              AND user_id IN ({_placeholders(user_ids)})
            GROUP BY user_id
        """
        return await self._fetch_all(query, [project_id, *user_ids])

    async def get_observation_stats(self, project_id: str, user_ids: list[str]) -> list[dict[str, Any]]:
        if not user_ids:
            return []
        # Driven from traces so users without observations still get a row.
        query = f"""
            SELECT
                t.user_id AS user_id,
                MIN(o.start_time) AS first_observation,
                MAX(o.start_time) AS last_observation,
                SUM(o.total_tokens) AS total_tokens,
                SUM(o.prompt_tokens) AS prompt_tokens,
                SUM(o.completion_tokens) AS completion_tokens,
                COUNT(o.id) AS total_observations
            FROM traces t
            LEFT JOIN observations o ON o.trace_id = t.id
            WHERE t.project_id = ?
              AND t.user_id IN ({_placeholders(user_ids)})
            GROUP BY t.user_id
        """
        return await self._fetch_all(query, [project_id, *user_ids])

    async def get_latest_scores(self, project_id: str, user_ids: list[str]) -> list[dict[str, Any]]:
        if not user_ids:
            return []
        query = f"""
            SELECT user_id, id, trace_id, observation_id, name, value, comment, timestamp
            FROM (
                SELECT
                    t.user_id AS user_id,
                    {_SCORE_COLUMNS},
                    ROW_NUMBER() OVER (
                        PARTITION BY t.user_id
                        ORDER BY s.timestamp DESC, s.id DESC
                    ) AS rn
                FROM scores s
                JOIN traces t ON s.trace_id = t.id
                WHERE t.project_id = ?
                  AND t.user_id IN ({_placeholders(user_ids)})
            )
            WHERE rn = 1
        """
        return await self._fetch_all(query, [project_id, *user_ids])

    # ── Single user ─────────────────────────────────────────────────

    async def get_user_trace_stats(self, project_id: str, user_id: str) -> dict[str, Any] | None:
        query = """
            SELECT
                COUNT(*) AS total_traces,
                MIN(timestamp) AS first_trace,
                MAX(timestamp) AS last_trace
            FROM traces
            WHERE project_id = ? AND user_id = ?
        """
        return await self._fetch_one(query, [project_id, user_id])

    async def get_user_observation_stats(self, project_id: str, user_id: str) -> dict[str, Any] | None:
        query = """
            SELECT
                MIN(o.start_time) AS first_observation,
                MAX(o.start_time) AS last_observation,
                SUM(o.total_tokens) AS total_tokens,
                SUM(o.prompt_tokens) AS prompt_tokens,
                SUM(o.completion_tokens) AS completion_tokens,
                COUNT(*) AS total_observations
            FROM observations o
            JOIN traces t ON o.trace_id = t.id
            WHERE t.project_id = ? AND t.user_id = ?
        """
        return await self._fetch_one(query, [project_id, user_id])

    async def get_user_latest_score(self, project_id: str, user_id: str) -> dict[str, Any] | None:
        query = f"""
            SELECT {_SCORE_COLUMNS}
            FROM scores s
            JOIN traces t ON s.trace_id = t.id
            WHERE t.project_id = ? AND t.user_id = ?
            ORDER BY s.timestamp DESC, s.id DESC
            LIMIT 1
        """
        return await self._fetch_one(query, [project_id, user_id])

    # ── Writes ──────────────────────────────────────────────────────

    async def upsert_trace(self, trace: dict[str, Any]) -> None:
        metadata = trace.get("metadata") or {}
        await self.db.execute(
            """INSERT INTO traces (id, project_id, user_id, name, timestamp, metadata_json)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                project_id=excluded.project_id, user_id=excluded.user_id,
                name=excluded.name, timestamp=excluded.timestamp,
                metadata_json=excluded.metadata_json
            """,
            (
                trace["id"],
                trace["projectId"],
                trace.get("userId"),
                trace.get("name", ""),
                to_storage_timestamp(trace["timestamp"]),
                metadata if isinstance(metadata, str) else json.dumps(metadata),
            ),
        )
        await self.db.commit()

    async def upsert_observation(self, observation: dict[str, Any]) -> None:
        await self.db.execute(
            """INSERT INTO observations (
                id, trace_id, project_id, type, name, model,
                start_time, end_time,
                prompt_tokens, completion_tokens, total_tokens
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                trace_id=excluded.trace_id, project_id=excluded.project_id,
                type=excluded.type, name=excluded.name, model=excluded.model,
                start_time=excluded.start_time, end_time=excluded.end_time,
                prompt_tokens=excluded.prompt_tokens,
                completion_tokens=excluded.completion_tokens,
                total_tokens=excluded.total_tokens
            """,
            (
                observation["id"],
                observation["traceId"],
                observation["projectId"],
                observation.get("type", "generation"),
                observation.get("name", ""),
                observation.get("model", ""),
                to_storage_timestamp(observation["startTime"]),
                to_storage_timestamp(observation.get("endTime")),
                observation.get("promptTokens"),
                observation.get("completionTokens"),
                observation.get("totalTokens"),
            ),
        )
        await self.db.commit()

    async def upsert_score(self, score: dict[str, Any]) -> None:
        await self.db.execute(
            """INSERT INTO scores (id, trace_id, observation_id, name, value, comment, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                trace_id=excluded.trace_id, observation_id=excluded.observation_id,
                name=excluded.name, value=excluded.value,
                comment=excluded.comment, timestamp=excluded.timestamp
            """,
            (
                score["id"],
                score["traceId"],
                score.get("observationId"),
                score.get("name", ""),
                score["value"],
                score.get("comment"),
                to_storage_timestamp(score["timestamp"]),
            ),
        )
        await self.db.commit()
