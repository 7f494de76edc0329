"""Observability helpers."""

from backend.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_aggregation,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_aggregation",
]
