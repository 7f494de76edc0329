"""Error types raised by the user analytics layer."""
from __future__ import annotations


class UserAnalyticsError(Exception):
    """Base class for user analytics failures."""


class ValidationError(UserAnalyticsError):
    """A required identifier is missing or blank."""

    def __init__(self, field: str, message: str | None = None):
        self.field = field
        super().__init__(message or f"{field} must be a non-empty string")


class ConsistencyError(UserAnalyticsError):
    """A resolved user is missing from one of the grouped result sets."""

    def __init__(self, user_id: str, source: str):
        self.user_id = user_id
        self.source = source
        super().__init__(f"User {user_id!r} not found in {source} analytics")


class UpstreamQueryError(UserAnalyticsError):
    """The data store failed or timed out while answering a sub-query."""
