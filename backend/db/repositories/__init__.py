"""Repository package for database access."""

from .base import UserAnalyticsRepository
from .users import SqliteUserAnalyticsRepository

__all__ = [
    "UserAnalyticsRepository",
    "SqliteUserAnalyticsRepository",
]
