"""Health check endpoints."""

import logging
from typing import Optional

import redis
from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.orm import Session

from waxhands_api import __version__
from waxhands_api.db.session import get_db

router = APIRouter()
logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    services: dict[str, str]


def check_database(db: Session) -> str:
    """Check database connectivity.

    Returns:
        str: "up" if healthy, error message otherwise
    """
    try:
        db.execute(text("SELECT 1"))
        return "up"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return f"down: {str(e)[:50]}"


def check_redis(client: Optional[redis.Redis]) -> str:
    """Check Redis connectivity.

    Returns:
        str: "up" if healthy, "not_configured" without a client, error message otherwise
    """
    if client is None:
        return "not_configured"
    try:
        client.ping()
        return "up"
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return f"down: {str(e)[:50]}"


def _services(request: Request, db: Session) -> dict[str, str]:
    return {
        "api": "up",
        "database": check_database(db),
        "redis": check_redis(getattr(request.app.state, "redis_client", None)),
    }


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request, db: Session = Depends(get_db)) -> HealthResponse:
    """
    Health check endpoint.

    Always returns 200 OK (use /readyz for dependency checks).
    """
    return HealthResponse(
        status="healthy",
        version=__version__,
        services=_services(request, db),
    )


@router.get("/readyz", response_model=HealthResponse)
async def readiness_check(
    request: Request, response: Response, db: Session = Depends(get_db)
) -> HealthResponse:
    """
    Readiness check endpoint.

    Returns 503 if the database is down. Redis only carries best-effort
    real-time events, so it is reported but does not gate readiness.
    """
    services = _services(request, db)

    if services["database"].startswith("down"):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", version=__version__, services=services)

    return HealthResponse(status="ready", version=__version__, services=services)
