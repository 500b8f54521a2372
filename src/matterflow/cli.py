"""CLI for the MatterFlow sync engine: serve the API, run or schedule syncs."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
import uuid
from pathlib import Path

import click

from matterflow.config import ConfigError, Settings, load_settings
from matterflow.core.logging import configure_logging

logger = logging.getLogger(__name__)


def _load(config_path: Path | None) -> Settings:
    try:
        settings = load_settings(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    log = settings.logging
    configure_logging(
        level=log.level,
        fmt=log.format,
        log_root=Path(log.log_root) if log.log_root else None,
    )
    return settings


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to a matterflow.toml file (defaults to $MATTERFLOW_CONFIG)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """MatterFlow: calendar and document-folder sync for practice portals."""
    ctx.obj = config_path


@cli.command()
@click.option("--host", default=None, help="Bind address (overrides config)")
@click.option("--port", type=int, default=None, help="Bind port (overrides config)")
@click.pass_obj
def serve(config_path: Path | None, host: str | None, port: int | None) -> None:
    """Serve the HTTP API (cron trigger, folders, documents)."""
    import uvicorn

    from matterflow.api.app import create_app

    settings = _load(config_path)
    uvicorn.run(
        create_app(settings),
        host=host or settings.host,
        port=port or settings.port,
        log_config=None,
    )


@cli.command()
@click.option("--matter-id", default=None, help="Sync a single matter only")
@click.pass_obj
def sync(config_path: Path | None, matter_id: str | None) -> None:
    """Run one sync batch and print its JSON summary."""
    target = None
    if matter_id:
        try:
            target = uuid.UUID(matter_id)
        except ValueError:
            raise click.BadParameter("must be a UUID", param_hint="--matter-id") from None
    settings = _load(config_path)
    payload = asyncio.run(_run_batch(settings, target))
    click.echo(json.dumps(payload, indent=2))


@cli.command()
@click.pass_obj
def schedule(config_path: Path | None) -> None:
    """Run sync batches on the configured cron schedule until interrupted."""
    settings = _load(config_path)
    click.echo(f"Scheduling sync with cron {settings.sync.cron!r}")
    asyncio.run(_run_scheduled(settings))


@cli.command()
@click.option("--no-provision", is_flag=True, help="Skip creating the database if missing")
@click.pass_obj
def migrate(config_path: Path | None, no_provision: bool) -> None:
    """Create the database if needed and apply migrations."""
    from matterflow.db import Database, sqlalchemy_url
    from matterflow.migrations import run_migrations

    settings = _load(config_path)
    if not no_provision:
        asyncio.run(Database.from_env(settings.db_name).provision())
    run_migrations(sqlalchemy_url(settings.db_name))
    click.echo("Migrations applied")


async def _run_batch(settings: Settings, matter_id: uuid.UUID | None) -> dict:
    from matterflow.api.deps import close_services, create_services
    from matterflow.sync.batch import BatchOrchestrator

    services = await create_services(settings)
    try:
        orchestrator = BatchOrchestrator(
            settings,
            services.directory,
            services.cursor_store,
            services.event_store,
            rate_limiter=services.provider_limiter,
        )
        summary = await orchestrator.run(matter_id)
    finally:
        await close_services(services)
    return summary.to_payload()


async def _run_scheduled(settings: Settings) -> None:
    from matterflow.api.deps import close_services, create_services
    from matterflow.core.scheduler import run_on_schedule
    from matterflow.sync.batch import BatchOrchestrator

    loop = asyncio.get_event_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    services = await create_services(settings)
    orchestrator = BatchOrchestrator(
        settings,
        services.directory,
        services.cursor_store,
        services.event_store,
        rate_limiter=services.provider_limiter,
    )
    runner = asyncio.create_task(run_on_schedule(settings.sync.cron, orchestrator.run))
    try:
        await shutdown_event.wait()
    finally:
        runner.cancel()
        await asyncio.gather(runner, return_exceptions=True)
        await close_services(services)
