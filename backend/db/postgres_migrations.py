"""PostgreSQL schema creation and versioning."""
from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger("tracelytics.db")

SCHEMA_VERSION = 1

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS traces (
    id            TEXT PRIMARY KEY,
    project_id    TEXT NOT NULL,
    user_id       TEXT,
    name          TEXT DEFAULT '',
    timestamp     TIMESTAMPTZ NOT NULL,
    metadata_json JSONB DEFAULT '{}'::jsonb
);

CREATE INDEX IF NOT EXISTS idx_traces_project_user ON traces(project_id, user_id, timestamp);

CREATE TABLE IF NOT EXISTS observations (
    id                TEXT PRIMARY KEY,
    trace_id          TEXT NOT NULL REFERENCES traces(id) ON DELETE CASCADE,
    project_id        TEXT NOT NULL,
    type              TEXT DEFAULT 'generation',
    name              TEXT DEFAULT '',
    model             TEXT DEFAULT '',
    start_time        TIMESTAMPTZ NOT NULL,
    end_time          TIMESTAMPTZ,
    prompt_tokens     INTEGER,
    completion_tokens INTEGER,
    total_tokens      INTEGER
);

CREATE INDEX IF NOT EXISTS idx_observations_trace ON observations(trace_id);

CREATE TABLE IF NOT EXISTS scores (
    id             TEXT PRIMARY KEY,
    trace_id       TEXT NOT NULL REFERENCES traces(id) ON DELETE CASCADE,
    observation_id TEXT,
    name           TEXT DEFAULT '',
    value          DOUBLE PRECISION NOT NULL,
    comment        TEXT,
    timestamp      TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_scores_trace_time ON scores(trace_id, timestamp DESC);
"""


async def run_migrations(pool: asyncpg.Pool) -> None:
    """Create all tables and indexes. Idempotent."""
    async with pool.acquire() as conn:
        try:
            current_version = await conn.fetchval("SELECT MAX(version) FROM schema_version") or 0
        except asyncpg.UndefinedTableError:
            current_version = 0

        if current_version >= SCHEMA_VERSION:
            logger.info(f"Schema is up to date (version {current_version})")
            return

        logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")
        async with conn.transaction():
            await conn.execute(_TABLES)
            await conn.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
        logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
