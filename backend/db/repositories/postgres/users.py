"""PostgreSQL implementation of UserAnalyticsRepository."""
from __future__ import annotations

import json
from typing import Any

import asyncpg

from backend.date_utils import to_utc_datetime

_SCORE_COLUMNS = "s.id, s.trace_id, s.observation_id, s.name, s.value, s.comment, s.timestamp"


class PostgresUserAnalyticsRepository:
    """PostgreSQL-backed per-user analytics queries.

    ``db`` is normally an ``asyncpg.Pool`` so the concurrent sub-queries of one
    aggregation each run on their own pooled connection.
    """

    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def list_user_ids(self, project_id: str) -> list[str]:
        query = """
            SELECT user_id
            FROM traces
            WHERE project_id = $1
              AND user_id IS NOT NULL
              AND BTRIM(user_id, ' ' || chr(9) || chr(10) || chr(11) || chr(12) || chr(13)) <> ''
            GROUP BY user_id
            ORDER BY MIN(timestamp) ASC, user_id ASC
        """
        rows = await self.db.fetch(query, project_id)
        return [row["user_id"] for row in rows]

    async def get_trace_stats(self, project_id: str, user_ids: list[str]) -> list[dict[str, Any]]:
        if not user_ids:
            return []
        query = """
            SELECT
                user_id,
                COUNT(*) AS total_traces,
                MIN(timestamp) AS first_trace,
                MAX(timestamp) AS last_trace
            FROM traces
            WHERE project_id = $1
              AND user_id = ANY($2::text[])
            GROUP BY user_id
        """
        rows = await self.db.fetch(query, project_id, user_ids)
        return [dict(r) for r in rows]

    async def get_observation_stats(self, project_id: str, user_ids: list[str]) -> list[dict[str, Any]]:
        if not user_ids:
            return []
        query = """
            SELECT
                t.user_id AS user_id,
                MIN(o.start_time) AS first_observation,
                MAX(o.start_time) AS last_observation,
                SUM(o.total_tokens)::bigint AS total_tokens,
                SUM(o.prompt_tokens)::bigint AS prompt_tokens,
                SUM(o.completion_tokens)::bigint AS completion_tokens,
                COUNT(o.id) AS total_observations
            FROM traces t
            LEFT JOIN observations o ON o.trace_id = t.id
            WHERE t.project_id = $1
              AND t.user_id = ANY($2::text[])
            GROUP BY t.user_id
        """
        rows = await self.db.fetch(query, project_id, user_ids)
        return [dict(r) for r in rows]

    async def get_latest_scores(self, project_id: str, user_ids: list[str]) -> list[dict[str, Any]]:
        if not user_ids:
            return []
        query = f"""
            SELECT DISTINCT ON (t.user_id) t.user_id AS user_id, {_SCORE_COLUMNS}
            FROM scores s
            JOIN traces t ON s.trace_id = t.id
            WHERE t.project_id = $1
              AND t.user_id = ANY($2::text[])
            ORDER BY t.user_id, s.timestamp DESC, s.id DESC
        """
        rows = await self.db.fetch(query, project_id, user_ids)
        return [dict(r) for r in rows]

    async def get_user_trace_stats(self, project_id: str, user_id: str) -> dict[str, Any] | None:
        query = """
            SELECT
                COUNT(*) AS total_traces,
                MIN(timestamp) AS first_trace,
                MAX(timestamp) AS last_trace
            FROM traces
            WHERE project_id = $1 AND user_id = $2
        """
        row = await self.db.fetchrow(query, project_id, user_id)
        return dict(row) if row else None

    async def get_user_observation_stats(self, project_id: str, user_id: str) -> dict[str, Any] | None:
        query = """
            SELECT
                MIN(o.start_time) AS first_observation,
                MAX(o.start_time) AS last_observation,
                SUM(o.total_tokens)::bigint AS total_tokens,
                SUM(o.prompt_tokens)::bigint AS prompt_tokens,
                SUM(o.completion_tokens)::bigint AS completion_tokens,
                COUNT(*) AS total_observations
            FROM observations o
            JOIN traces t ON o.trace_id = t.id
            WHERE t.project_id = $1 AND t.user_id = $2
        """
        row = await self.db.fetchrow(query, project_id, user_id)
        return dict(row) if row else None

    async def get_user_latest_score(self, project_id: str, user_id: str) -> dict[str, Any] | None:
        query = f"""
            SELECT {_SCORE_COLUMNS}
            FROM scores s
            JOIN traces t ON s.trace_id = t.id
            WHERE t.project_id = $1 AND t.user_id = $2
            ORDER BY s.timestamp DESC, s.id DESC
            LIMIT 1
        """
        row = await self.db.fetchrow(query, project_id, user_id)
        return dict(row) if row else None

    async def upsert_trace(self, trace: dict[str, Any]) -> None:
        metadata = trace.get("metadata") or {}
        query = """
            INSERT INTO traces (id, project_id, user_id, name, timestamp, metadata_json)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb)
            ON CONFLICT(id) DO UPDATE SET
                project_id=EXCLUDED.project_id, user_id=EXCLUDED.user_id,
                name=EXCLUDED.name, timestamp=EXCLUDED.timestamp,
                metadata_json=EXCLUDED.metadata_json
        """
        await self.db.execute(
            query,
            trace["id"],
            trace["projectId"],
            trace.get("userId"),
            trace.get("name", ""),
            to_utc_datetime(trace["timestamp"]),
            metadata if isinstance(metadata, str) else json.dumps(metadata),
        )

    async def upsert_observation(self, observation: dict[str, Any]) -> None:
        query = """
            INSERT INTO observations (
                id, trace_id, project_id, type, name, model,
                start_time, end_time,
                prompt_tokens, completion_tokens, total_tokens
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT(id) DO UPDATE SET
                trace_id=EXCLUDED.trace_id, project_id=EXCLUDED.project_id,
                type=EXCLUDED.type, name=EXCLUDED.name, model=EXCLUDED.model,
                start_time=EXCLUDED.start_time, end_time=EXCLUDED.end_time,
                prompt_tokens=EXCLUDED.prompt_tokens,
                completion_tokens=EXCLUDED.completion_tokens,
                total_tokens=EXCLUDED.total_tokens
        """
        await self.db.execute(
            query,
            observation["id"],
            observation["traceId"],
            observation["projectId"],
            observation.get("type", "generation"),
            observation.get("name", ""),
            observation.get("model", ""),
            to_utc_datetime(observation["startTime"]),
            to_utc_datetime(observation.get("endTime")),
            observation.get("promptTokens"),
            observation.get("completionTokens"),
            observation.get("totalTokens"),
        )

    async def upsert_score(self, score: dict[str, Any]) -> None:
        query = """
            INSERT INTO scores (id, trace_id, observation_id, name, value, comment, timestamp)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT(id) DO UPDATE SET
                trace_id=EXCLUDED.trace_id, observation_id=EXCLUDED.observation_id,
                name=EXCLUDED.name, value=EXCLUDED.value,
                comment=EXCLUDED.comment, timestamp=EXCLUDED.timestamp
        """
        await self.db.execute(
            query,
            score["id"],
            score["traceId"],
            score.get("observationId"),
            score.get("name", ""),
            float(score["value"]),
            score.get("comment"),
            to_utc_datetime(score["timestamp"]),
        )
