"""Repository protocols shared by the SQLite and Postgres backends."""
from __future__ import annotations

from typing import Any, Protocol


class UserAnalyticsRepository(Protocol):
    """Read side for per-user analytics plus the writes used for seeding.

    Grouped methods return one dict per user with a ``user_id`` key; the
    single-user methods return a bare aggregate row. Timestamps come back in
    the backend's native representation (ISO text for SQLite, ``datetime`` for
    Postgres) and are normalized by the pydantic models.
    """

    async def list_user_ids(self, project_id: str) -> list[str]: ...

    async def get_trace_stats(self, project_id: str, user_ids: list[str]) -> list[dict[str, Any]]: ...

    async def get_observation_stats(self, project_id: str, user_ids: list[str]) -> list[dict[str, Any]]: ...

    async def get_latest_scores(self, project_id: str, user_ids: list[str]) -> list[dict[str, Any]]: ...

    async def get_user_trace_stats(self, project_id: str, user_id: str) -> dict[str, Any] | None: ...

    async def get_user_observation_stats(self, project_id: str, user_id: str) -> dict[str, Any] | None: ...

    async def get_user_latest_score(self, project_id: str, user_id: str) -> dict[str, Any] | None: ...

    async def upsert_trace(self, trace: dict[str, Any]) -> None: ...

    async def upsert_observation(self, observation: dict[str, Any]) -> None: ...

    async def upsert_score(self, score: dict[str, Any]) -> None: ...
