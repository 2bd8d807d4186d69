"""FastAPI application entry point."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from hzpp_delays.config import get_settings
from hzpp_delays.database import check_database_connection, close_database
from hzpp_delays.logging import (
    bind_request_context,
    clear_request_context,
    get_logger,
    setup_logging,
)
from hzpp_delays.services.delays.channel import get_route_channel, reset_route_channel
from hzpp_delays.services.delays.supervisor import get_supervisor, reset_supervisor
from hzpp_delays.services.timetable.ingestion import get_ingestion_job, reset_ingestion_job

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    setup_logging()
    logger.info("Starting HZPP delay monitor")

    settings = get_settings()
    if settings.monitor_auto_start:
        await get_supervisor().start()
    if settings.ingestion_auto_start:
        await get_ingestion_job().start()

    yield

    # Stop producing before closing the channel the supervisor reads from
    job = get_ingestion_job()
    if job.is_running:
        await job.stop()
    await get_route_channel().close()

    supervisor = get_supervisor()
    if supervisor.is_running:
        await supervisor.stop()

    reset_ingestion_job()
    reset_supervisor()
    reset_route_channel()

    logger.info("Shutting down HZPP delay monitor")
    await close_database()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Records real departure and arrival times of HZPP routes",
        lifespan=lifespan,
        docs_url="/docs" if settings.environment != "production" else None,
        redoc_url="/redoc" if settings.environment != "production" else None,
    )

    # Request ID middleware
    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next: Any) -> Any:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        bind_request_context(request_id=request_id, path=request.url.path)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        clear_request_context()
        return response

    @app.get("/health", tags=["meta"])
    async def health_check() -> dict[str, Any]:
        """Health check endpoint returning application status."""
        settings = get_settings()
        missing_env = settings.missing_required_env()
        db_healthy = await check_database_connection()

        supervisor_status = await get_supervisor().get_status()
        ingestion_status = await get_ingestion_job().get_status()
        monitors_healthy = supervisor_status["running"] or not settings.monitor_auto_start
        ingestion_healthy = ingestion_status["running"] or not settings.ingestion_auto_start

        status = (
            "unhealthy"
            if missing_env
            else "healthy"
            if (db_healthy and monitors_healthy and ingestion_healthy)
            else "degraded"
        )

        issues: list[str] = []
        if missing_env:
            issues.append("Missing required environment variables: " + ", ".join(missing_env))
        if not db_healthy:
            issues.append("Database is not reachable")
        if not monitors_healthy:
            issues.append("Monitor supervisor is not running")
        if not ingestion_healthy:
            issues.append("Ingestion job is not running")

        return {
            "service": settings.app_name,
            "status": status,
            "version": settings.app_version,
            "environment": settings.environment,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": {
                "database": db_healthy,
                "monitors": {
                    "supervisorRunning": supervisor_status["running"],
                    "recovered": supervisor_status["recovered"],
                    "activeMonitors": supervisor_status["active_monitors"],
                    "outcomes": supervisor_status["outcomes"],
                    "queuedBatches": supervisor_status["queued_batches"],
                },
                "ingestion": {
                    "jobRunning": ingestion_status["running"],
                    "runCount": ingestion_status["run_count"],
                    "lastRunAt": ingestion_status["last_run_at"],
                },
            },
            "issues": issues,
        }

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled exception", exc_info=exc, path=request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    return app


app = create_app()
