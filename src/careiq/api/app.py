"""Calendar sync API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that opens the database pool, builds the
  ``CalendarSyncService`` and, when enabled, runs the sync scheduler
- Health endpoint at GET /api/health
- The calendar sync and OAuth routers
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from careiq.api.deps import (
    init_sync_service,
    shutdown_sync_service,
    wire_dependencies,
)
from careiq.api.middleware import register_error_handlers
from careiq.api.routers.calendar_oauth import router as calendar_oauth_router
from careiq.api.routers.calendar_sync import router as calendar_sync_router
from careiq.calendar.service import CalendarSyncService
from careiq.config import ServiceConfig, load_config
from careiq.core.metrics import init_metrics
from careiq.core.telemetry import init_telemetry
from careiq.db import Database

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle for the DB pool, sync service and scheduler."""
    config: ServiceConfig = app.state.service_config or load_config()
    app.state.dashboard_url = config.dashboard_url
    init_telemetry(config.name)
    init_metrics(config.name)

    db: Database | None = None
    service: CalendarSyncService | None = app.state.sync_service
    if service is None:
        db = Database.from_env(config.database.name, schema=config.database.schema)
        pool = await db.connect()
        service = CalendarSyncService.from_pool(pool, config.calendar)
    init_sync_service(service)
    wire_dependencies(app)

    scheduler_task: asyncio.Task | None = None
    if config.calendar.scheduler.enabled:
        scheduler_task = asyncio.create_task(
            service.scheduler.run_forever(), name="calendar-sync-scheduler"
        )
    else:
        logger.info("Calendar sync scheduler disabled")

    yield

    if scheduler_task is not None:
        scheduler_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await scheduler_task
    await shutdown_sync_service()
    if db is not None:
        await db.close()


def create_app(
    config: ServiceConfig | None = None,
    *,
    sync_service: CalendarSyncService | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Service configuration. Loaded from ``careiq.toml`` at startup when
        omitted.
    sync_service:
        A ready service; when given, the lifespan does not open a database
        pool of its own.
    cors_origins:
        Allowed CORS origins. Defaults to ``config.dashboard_url`` when set.
    """
    if cors_origins is None:
        cors_origins = [config.dashboard_url] if config and config.dashboard_url else []

    app = FastAPI(
        title="CareIQ Calendar Sync API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.service_config = config
    app.state.sync_service = sync_service
    app.state.dashboard_url = config.dashboard_url if config else None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(calendar_sync_router)
    app.include_router(calendar_oauth_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
