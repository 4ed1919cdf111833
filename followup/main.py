"""
Follow-up Coordinator API

FastAPI application entry point that ties all components together.
"""

import asyncio
import contextlib
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from followup import __version__
from followup.config import settings
from followup.api.routes import events, health
from followup.core.errors import (
    CapabilityFailure,
    SchedulingError,
    SessionStoreUnavailable,
    ValidationError,
)
from followup.core.scheduling.reaper import SessionReaper
from followup.infra.calendar import get_calendar_client
from followup.infra.database import init_db, close_db
from followup.infra.messaging import get_messaging_client
from followup.infra.redis import RedisClient


def setup_logging() -> None:
    """Configure logging based on environment."""
    log_level = logging.DEBUG if settings.debug else logging.INFO
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.debug else logging.WARNING
    )


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # === STARTUP ===
    setup_logging()
    logger.info(f"Starting {settings.app_name} in {settings.app_env} mode")

    health.set_start_time()

    # Initialize database (only in development - use migrations in production)
    if settings.is_development:
        try:
            await init_db()
            logger.info("Database tables initialized")
        except (OSError, SQLAlchemyError) as e:
            logger.warning(f"Database init skipped: {e}")

    redis = await RedisClient.get_client()
    if redis:
        logger.info("Redis connection established")
    else:
        logger.error("Redis unavailable - events will be rejected with 503 until it returns")

    reaper_task = asyncio.create_task(SessionReaper().run(), name="session-reaper")

    logger.info(f"Application ready at http://{settings.host}:{settings.port}")

    yield

    # === SHUTDOWN ===
    logger.info("Shutting down application...")

    reaper_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await reaper_task
    logger.info("Session reaper stopped")

    await get_calendar_client().close()
    await get_messaging_client().close()

    await RedisClient.close()
    logger.info("Redis connection closed")

    await close_db()
    logger.info("Database connections closed")

    logger.info("Shutdown complete")


app = FastAPI(
    title="Follow-up Coordinator API",
    description="""
    Automated follow-up appointment scheduling.

    ## Flow
    - The note classifier posts a follow-up request to `/events/follow-up`
    - The patient receives numbered candidate times
    - Replies posted to `/events/reply` select a time, which is booked
    - Anything that cannot finish automatically is escalated to staff
    """,
    version=__version__,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle Pydantic validation errors."""
    logger.warning(f"Validation error: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation error",
            "detail": str(exc.errors()),
        },
    )


@app.exception_handler(ValidationError)
async def scheduling_validation_handler(
    request: Request,
    exc: ValidationError,
) -> JSONResponse:
    """Handle events rejected at the boundary."""
    logger.warning(f"Rejected event on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": "Invalid event", "detail": str(exc)},
    )


@app.exception_handler(SessionStoreUnavailable)
@app.exception_handler(CapabilityFailure)
async def unavailable_handler(
    request: Request,
    exc: SchedulingError,
) -> JSONResponse:
    """Dependency outage: ask the sender to redeliver."""
    logger.error(f"Dependency unavailable on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "Service unavailable", "detail": str(exc)},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {exc}")

    # Don't expose internal errors in production
    detail = str(exc) if settings.is_development else "Internal server error"

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": detail,
        },
    )


@app.middleware("http")
async def request_timing_middleware(request: Request, call_next):
    """Log request duration in debug mode."""
    start_time = time.time()
    try:
        return await call_next(request)
    finally:
        if settings.debug:
            duration = time.time() - start_time
            logger.debug(
                f"{request.method} {request.url.path} "
                f"completed in {duration:.3f}s"
            )


app.include_router(health.router)
app.include_router(events.router)


@app.get("/", tags=["Root"])
async def root() -> dict:
    """
    Root endpoint.

    Returns basic API information.
    """
    return {
        "name": settings.app_name,
        "version": __version__,
        "status": "running",
        "environment": settings.app_env,
        "docs": "/docs" if settings.is_development else None,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "followup.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level="debug" if settings.debug else "info",
    )
