"""Database schema creation and versioning.

All CREATE TABLE statements for the trace store.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("tracelytics.db")

SCHEMA_VERSION = 1

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Traces ──────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS traces (
    id            TEXT PRIMARY KEY,
    project_id    TEXT NOT NULL,
    user_id       TEXT,
    name          TEXT DEFAULT '',
    timestamp     TEXT NOT NULL,
    metadata_json TEXT DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_traces_project_user ON traces(project_id, user_id, timestamp);

-- ── 2. Observations ────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS observations (
    id                TEXT PRIMARY KEY,
    trace_id          TEXT NOT NULL REFERENCES traces(id) ON DELETE CASCADE,
    project_id        TEXT NOT NULL,
    type              TEXT DEFAULT 'generation',
    name              TEXT DEFAULT '',
    model             TEXT DEFAULT '',
    start_time        TEXT NOT NULL,
    end_time          TEXT,
    prompt_tokens     INTEGER,
    completion_tokens INTEGER,
    total_tokens      INTEGER
);

CREATE INDEX IF NOT EXISTS idx_observations_trace ON observations(trace_id);

-- ── 3. Scores ──────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS scores (
    id             TEXT PRIMARY KEY,
    trace_id       TEXT NOT NULL REFERENCES traces(id) ON DELETE CASCADE,
    observation_id TEXT,
    name           TEXT DEFAULT '',
    value          REAL NOT NULL,
    comment        TEXT,
    timestamp      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_scores_trace_time ON scores(trace_id, timestamp DESC);
"""


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables and indexes. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current_version})")
        return

    logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")

    await db.executescript(_TABLES)

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
