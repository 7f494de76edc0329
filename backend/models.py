"""Pydantic models matching the frontend TypeScript types."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


# ── Score ───────────────────────────────────────────────────────────

class Score(BaseModel):
    id: str
    traceId: str
    observationId: Optional[str] = None
    name: str = ""
    value: float = 0.0
    comment: Optional[str] = None
    timestamp: datetime


# ── User analytics ─────────────────────────────────────────────────

class UserAnalyticsSummary(BaseModel):
    """Per-user rollup over traces, observations and scores of one project."""
    userId: str
    firstTrace: Optional[datetime] = None
    lastTrace: Optional[datetime] = None
    totalTraces: int = 0
    totalPromptTokens: int = 0
    totalCompletionTokens: int = 0
    totalTokens: int = 0
    firstObservation: Optional[datetime] = None
    lastObservation: Optional[datetime] = None
    totalObservations: int = 0
    lastScore: Optional[Score] = None
