"""API router for per-user analytics within a project."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException

from backend.db import connection
from backend.db.factory import get_user_analytics_repository
from backend.errors import ConsistencyError, UpstreamQueryError, ValidationError
from backend.models import UserAnalyticsSummary
from backend.services import user_analytics

users_router = APIRouter(prefix="/api/projects/{project_id}/users", tags=["users"])


@users_router.get("", response_model=list[UserAnalyticsSummary])
async def list_users(project_id: str):
    """List every user with traces in the project, with their analytics."""
    try:
        user_analytics.require_identifier(project_id, "projectId")
        db = await connection.get_connection()
        repo = get_user_analytics_repository(db)
        return await user_analytics.list_users_with_analytics(repo, project_id)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ConsistencyError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except UpstreamQueryError as e:
        raise HTTPException(status_code=502, detail=str(e))


@users_router.get("/{user_id}", response_model=UserAnalyticsSummary)
async def get_user(project_id: str, user_id: str):
    """Return analytics for one user. Unknown users get an all-zero summary."""
    try:
        user_analytics.require_identifier(project_id, "projectId")
        user_analytics.require_identifier(user_id, "userId")
        db = await connection.get_connection()
        repo = get_user_analytics_repository(db)
        return await user_analytics.get_user_analytics(repo, project_id, user_id)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except UpstreamQueryError as e:
        raise HTTPException(status_code=502, detail=str(e))
