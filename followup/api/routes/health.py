"""
Health Check Endpoints

Provides health, readiness, and liveness probes for monitoring and
load balancers.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from followup import __version__
from followup.config import settings
from followup.infra.database import check_db_health
from followup.infra.redis import check_redis_health

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

# Track application start time for uptime calculation
_start_time: Optional[datetime] = None


def set_start_time() -> None:
    """Set application start time. Called once on startup."""
    global _start_time
    _start_time = datetime.now(timezone.utc)


def get_uptime_seconds() -> Optional[float]:
    """Get application uptime in seconds."""
    if _start_time is None:
        return None
    return (datetime.now(timezone.utc) - _start_time).total_seconds()


class HealthResponse(BaseModel):
    """Basic health check response."""
    status: str
    timestamp: datetime
    version: str
    environment: str


class ReadyResponse(BaseModel):
    """Readiness check response with dependency status."""
    status: str
    timestamp: datetime
    checks: dict[str, str]


class LiveResponse(BaseModel):
    """Liveness check response."""
    status: str
    timestamp: datetime
    uptime_seconds: Optional[float] = None


@router.get(
    "",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
    description="Returns 200 if the application is running. Does not check dependencies.",
)
async def health() -> HealthResponse:
    """Always returns 200 if the application is running."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version=__version__,
        environment=settings.app_env,
    )


@router.get(
    "/ready",
    response_model=ReadyResponse,
    summary="Readiness probe",
    description="Checks Redis and database connectivity. Returns 503 if either is unavailable.",
    responses={
        200: {"description": "All dependencies are ready"},
        503: {"description": "One or more dependencies are unavailable"},
    },
)
async def ready() -> ReadyResponse:
    """
    Readiness probe.

    Checks:
    - Redis (session store; nothing can be negotiated without it)
    - PostgreSQL (escalation and appointment records)

    Returns 503 if any check fails.
    """
    checks = {}

    redis_ok = await check_redis_health()
    checks["redis"] = "ok" if redis_ok else "failed"
    if not redis_ok:
        logger.warning("Readiness check: Redis unhealthy")

    db_ok = await check_db_health()
    checks["database"] = "ok" if db_ok else "failed"
    if not db_ok:
        logger.warning("Readiness check: Database unhealthy")

    all_ok = redis_ok and db_ok
    response = ReadyResponse(
        status="ready" if all_ok else "not_ready",
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )

    if not all_ok:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )

    return response


@router.get(
    "/live",
    response_model=LiveResponse,
    status_code=status.HTTP_200_OK,
    summary="Liveness probe",
    description="Returns 200 if the process is alive.",
)
async def live() -> LiveResponse:
    """Always returns 200 if the process is running."""
    return LiveResponse(
        status="alive",
        timestamp=datetime.now(timezone.utc),
        uptime_seconds=get_uptime_seconds(),
    )
