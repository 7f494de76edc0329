#!/usr/bin/env python3
"""Seed a demo project with traces, observations and scores.

Usage:
  python backend/scripts/seed_demo.py
  python backend/scripts/seed_demo.py --project demo --users 5 --traces 4
  python backend/scripts/seed_demo.py --summary-only
"""
from __future__ import annotations

import argparse
import asyncio
import random
from datetime import datetime, timedelta, timezone

from backend.db import connection, migrations
from backend.db.factory import get_user_analytics_repository
from backend.services import user_analytics


async def _seed(repo, project_id: str, users: int, traces_per_user: int, seed: int) -> int:
    rng = random.Random(seed)
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    written = 0
    for u in range(users):
        user_id = f"user-{u + 1}"
        for t in range(traces_per_user):
            trace_id = f"{project_id}-{user_id}-trace-{t + 1}"
            trace_ts = base + timedelta(days=u, hours=t)
            await repo.upsert_trace(
                {
                    "id": trace_id,
                    "projectId": project_id,
                    "userId": user_id,
                    "name": "chat",
                    "timestamp": trace_ts,
                }
            )
            for o in range(rng.randint(0, 3)):
                prompt = rng.randint(5, 500)
                completion = rng.randint(5, 500)
                start = trace_ts + timedelta(seconds=o * 2)
                await repo.upsert_observation(
                    {
                        "id": f"{trace_id}-obs-{o + 1}",
                        "traceId": trace_id,
                        "projectId": project_id,
                        "name": "llm-call",
                        "model": "gpt-4o-mini",
                        "startTime": start,
                        "endTime": start + timedelta(seconds=1),
                        "promptTokens": prompt,
                        "completionTokens": completion,
                        "totalTokens": prompt + completion,
                    }
                )
            if rng.random() < 0.5:
                await repo.upsert_score(
                    {
                        "id": f"{trace_id}-score",
                        "traceId": trace_id,
                        "name": "quality",
                        "value": round(rng.random(), 2),
                        "timestamp": trace_ts + timedelta(minutes=5),
                    }
                )
            written += 1
    # Traces without a user never show up in user analytics.
    await repo.upsert_trace(
        {
            "id": f"{project_id}-anonymous-trace",
            "projectId": project_id,
            "userId": None,
            "name": "anonymous",
            "timestamp": base,
        }
    )
    return written


async def _run(project_id: str, users: int, traces_per_user: int, seed: int, summary_only: bool) -> int:
    db = await connection.get_connection()
    try:
        await migrations.run_migrations(db)
        repo = get_user_analytics_repository(db)
        if not summary_only:
            written = await _seed(repo, project_id, users, traces_per_user, seed)
            print(f"{project_id}: traces_written={written}")

        summaries = await user_analytics.list_users_with_analytics(repo, project_id)
        for summary in summaries:
            score = summary.lastScore.value if summary.lastScore else "-"
            print(
                f"{summary.userId}: traces={summary.totalTraces} "
                f"observations={summary.totalObservations} tokens={summary.totalTokens} "
                f"last_score={score}"
            )
    finally:
        await connection.close_connection()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--project", default="demo-project", help="Project ID to seed")
    parser.add_argument("--users", type=int, default=3, help="Number of users to create")
    parser.add_argument("--traces", type=int, default=3, help="Traces per user")
    parser.add_argument("--seed", type=int, default=7, help="Random seed for token counts")
    parser.add_argument("--summary-only", action="store_true", help="Skip seeding and print the user analytics")
    args = parser.parse_args()
    return asyncio.run(_run(args.project, args.users, args.traces, args.seed, args.summary_only))


if __name__ == "__main__":
    raise SystemExit(main())
