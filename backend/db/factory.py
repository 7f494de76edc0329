"""Repository factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

from typing import Any
import aiosqlite

from backend.db.repositories.base import UserAnalyticsRepository
from backend.db.repositories.users import SqliteUserAnalyticsRepository


def get_user_analytics_repository(db: Any) -> UserAnalyticsRepository:
    if isinstance(db, aiosqlite.Connection):
        return SqliteUserAnalyticsRepository(db)
    from backend.db.repositories.postgres.users import PostgresUserAnalyticsRepository
    return PostgresUserAnalyticsRepository(db)
