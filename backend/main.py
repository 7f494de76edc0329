"""Tracelytics FastAPI Backend: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend import config
from backend.routers.users import users_router

from backend.db import connection, migrations
from backend.observability import initialize as initialize_observability, shutdown as shutdown_observability

logging.basicConfig(level=getattr(logging, config.LOG_LEVEL, logging.INFO))
logger = logging.getLogger("tracelytics")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("Tracelytics backend starting up")
    initialize_observability(app)

    db = await connection.get_connection()
    await migrations.run_migrations(db)

    yield

    logger.info("Tracelytics backend shutting down")
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="Tracelytics API",
    description="Per-user analytics over traces, observations and scores",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(users_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "db": "connected" if connection._connection else "disconnected",
        "backend": config.DB_BACKEND,
    }


def run() -> None:
    import uvicorn

    uvicorn.run("backend.main:app", host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
