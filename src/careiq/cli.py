"""CLI for CareIQ calendar sync: serve the API, migrate, and run syncs by hand."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any
from uuid import UUID

import click
import uvicorn
from pydantic import BaseModel

from careiq.calendar.errors import CalendarSyncError
from careiq.calendar.models import RunType, SyncDirection
from careiq.calendar.service import CalendarSyncService
from careiq.config import CONFIG_PATH_ENV, ConfigError, ServiceConfig, load_config
from careiq.core.logging import configure_logging, set_service_context
from careiq.core.metrics import init_metrics
from careiq.core.telemetry import init_telemetry
from careiq.db import Database
from careiq.migrations import run_migrations

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    envvar=CONFIG_PATH_ENV,
    default=None,
    help="Path to careiq.toml (defaults to ./careiq.toml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """CareIQ external calendar synchronization (Google, Outlook, CalDAV)."""
    ctx.obj = {"config_path": config_path}


def _load(ctx: click.Context) -> ServiceConfig:
    """Load configuration and set up logging; exits with status 1 on bad config."""
    try:
        config = load_config(ctx.obj["config_path"])
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=log_root,
        service_name=config.name,
    )
    set_service_context(config.name)
    return config


def _echo_json(payload: Any) -> None:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    elif isinstance(payload, list):
        payload = [
            item.model_dump(mode="json") if isinstance(item, BaseModel) else item
            for item in payload
        ]
    click.echo(json.dumps(payload, indent=2, sort_keys=True))


@asynccontextmanager
async def open_service(config: ServiceConfig) -> AsyncIterator[CalendarSyncService]:
    """Open a database pool and a ``CalendarSyncService`` for one CLI command."""
    db = Database.from_env(config.database.name, schema=config.database.schema)
    pool = await db.connect()
    service = CalendarSyncService.from_pool(pool, config.calendar)
    try:
        yield service
    finally:
        await service.close()
        await db.close()


def _run_with_service(
    config: ServiceConfig,
    operation: Callable[[CalendarSyncService], Awaitable[Any]],
) -> Any:
    async def _main() -> Any:
        init_telemetry(config.name)
        init_metrics(config.name)
        async with open_service(config) as service:
            return await operation(service)

    try:
        return asyncio.run(_main())
    except CalendarSyncError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to [service].host)")
@click.option("--port", type=int, default=None, help="Port (defaults to [service].port)")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the calendar sync API (and the scheduler, when enabled)."""
    from careiq.api.app import create_app

    config = _load(ctx)
    app = create_app(config)
    server_config = uvicorn.Config(
        app,
        host=host or config.host,
        port=port or config.port,
        log_config=None,
        timeout_graceful_shutdown=5,
    )
    click.echo(f"Serving {config.name} on {server_config.host}:{server_config.port}")
    asyncio.run(uvicorn.Server(server_config).serve())


@cli.command()
@click.pass_context
def migrate(ctx: click.Context) -> None:
    """Create the database if needed and upgrade the calendar schema."""
    config = _load(ctx)

    async def _migrate() -> None:
        db = Database.from_env(config.database.name, schema=config.database.schema)
        await db.provision()
        await run_migrations(db.url(), schema=config.database.schema)

    asyncio.run(_migrate())
    click.echo(f"Database {config.database.name} is at the latest revision")


@cli.command()
@click.argument("integration_id", type=click.UUID)
@click.option(
    "--direction",
    type=click.Choice([d.value for d in SyncDirection]),
    default=SyncDirection.BIDIRECTIONAL.value,
    show_default=True,
)
@click.option("--calendar", "calendar_id", default=None, help="Target calendar for this run")
@click.option(
    "--calendar-type",
    "calendar_type_id",
    default=None,
    help="Calendar type assigned to pulled events",
)
@click.pass_context
def sync(
    ctx: click.Context,
    integration_id: UUID,
    direction: str,
    calendar_id: str | None,
    calendar_type_id: str | None,
) -> None:
    """Run one sync for INTEGRATION_ID and print the result."""
    config = _load(ctx)
    result = _run_with_service(
        config,
        lambda service: service.sync(
            integration_id,
            SyncDirection(direction),
            target_calendar_id=calendar_id,
            calendar_type_id=calendar_type_id,
            run_type=RunType.MANUAL,
        ),
    )
    _echo_json(result)
    if not result.success:
        sys.exit(1)


@cli.command()
@click.argument("integration_id", type=click.UUID)
@click.pass_context
def status(ctx: click.Context, integration_id: UUID) -> None:
    """Print the sync status report for INTEGRATION_ID."""
    config = _load(ctx)
    _echo_json(_run_with_service(config, lambda service: service.status(integration_id)))


@cli.command()
@click.pass_context
def tick(ctx: click.Context) -> None:
    """Run one scheduler tick: sync every integration that is due."""
    config = _load(ctx)
    results = _run_with_service(config, lambda service: service.tick())
    _echo_json(results)


@cli.command()
@click.pass_context
def sweep(ctx: click.Context) -> None:
    """Close sync runs abandoned in progress and flag their integrations."""
    config = _load(ctx)
    swept = _run_with_service(config, lambda service: service.sweep_stale())
    _echo_json(list(swept))
