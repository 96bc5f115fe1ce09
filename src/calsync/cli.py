"""CLI for calsync: migrate the schema, run syncs and the sync poller."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from calsync.config import DEFAULT_CONFIG_PATH, CalsyncConfig, ConfigError, load_config
from calsync.core.logging import configure_logging
from calsync.core.metrics import init_metrics
from calsync.core.telemetry import init_telemetry
from calsync.db import Database
from calsync.errors import CalendarError, ConnectionNotFoundError, sanitize_error_message
from calsync.factory import CalendarServiceFactory
from calsync.migrations import run_migrations
from calsync.models import SyncType
from calsync.store import PostgresCalendarStore
from calsync.sync import SyncOrchestrator

logger = logging.getLogger(__name__)

SERVICE_NAME = "calsync"


def _config_option(func: Callable[..., Any]) -> Callable[..., Any]:
    return click.option(
        "--config",
        "config_path",
        type=click.Path(dir_okay=False, path_type=Path),
        default=DEFAULT_CONFIG_PATH,
        show_default=True,
        help="Path to calsync.toml",
    )(func)


def _load_config_or_exit(config_path: Path) -> CalsyncConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
        service_name=SERVICE_NAME,
    )
    return config


def _database(config: CalsyncConfig) -> Database:
    return Database(
        db_name=config.database.name,
        host=config.database.host,
        port=config.database.port,
        user=config.database.user,
        password=config.database.password,
        ssl=config.database.sslmode,
        min_pool_size=config.database.min_pool_size,
        max_pool_size=config.database.max_pool_size,
    )


@dataclass
class _Runtime:
    db: Database
    store: PostgresCalendarStore
    factory: CalendarServiceFactory
    orchestrator: SyncOrchestrator


@asynccontextmanager
async def _runtime(config: CalsyncConfig) -> AsyncIterator[_Runtime]:
    """Open the pool and wire store, factory and orchestrator together."""
    init_metrics(SERVICE_NAME)
    init_telemetry(SERVICE_NAME)

    db = _database(config)
    await db.connect()
    store = PostgresCalendarStore(db)
    factory = CalendarServiceFactory.from_config(
        store=store,
        providers=config.providers,
        sync=config.sync,
        cache={},
    )
    try:
        yield _Runtime(
            db=db,
            store=store,
            factory=factory,
            orchestrator=SyncOrchestrator(store=store, factory=factory, config=config.sync),
        )
    finally:
        await factory.aclose()
        await db.close()


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """calsync: keep a local mirror of Google and Outlook calendars in sync."""


@cli.command()
@_config_option
def migrate(config_path: Path) -> None:
    """Create or upgrade the calsync schema."""
    config = _load_config_or_exit(config_path)
    db = _database(config)

    async def _migrate() -> None:
        await db.provision()
        await run_migrations(db.dsn)

    asyncio.run(_migrate())
    click.echo(f"Database {config.database.name} is at head")


@cli.command()
@click.argument("connection_id", required=False)
@click.option("--full", is_flag=True, help="Force a full sync instead of an incremental one")
@_config_option
def sync(connection_id: str | None, full: bool, config_path: Path) -> None:
    """Sync one connection, or every active connection when no id is given."""
    if full and connection_id is None:
        raise click.UsageError("--full requires CONNECTION_ID")
    config = _load_config_or_exit(config_path)

    async def _sync() -> int:
        async with _runtime(config) as runtime:
            if connection_id is None:
                report = await runtime.orchestrator.sync_all_active_connections()
                click.echo(
                    f"Synced {len(report.succeeded)} connection(s), "
                    f"{len(report.failed)} failed, {len(report.skipped)} skipped"
                )
                for failed_id, code in sorted(report.failed.items()):
                    click.echo(f"  failed: {failed_id}: {code}")
                return 1 if report.failed else 0

            mode = SyncType.FULL if full else SyncType.INCREMENTAL
            try:
                outcome = await runtime.orchestrator.sync_connection(connection_id, mode)
            except CalendarError as exc:
                click.echo(f"Sync failed ({exc.code}): {sanitize_error_message(exc)}", err=True)
                return 1
            click.echo(
                f"{outcome.sync_type} sync of {connection_id}: "
                f"{outcome.events_updated} updated, {outcome.events_deleted} deleted"
            )
            return 0

    sys.exit(asyncio.run(_sync()))


@cli.command()
@click.option("--interval", type=float, default=None, help="Seconds between sweeps")
@_config_option
def run(interval: float | None, config_path: Path) -> None:
    """Run the sync poller until interrupted."""
    config = _load_config_or_exit(config_path)

    async def _run() -> None:
        loop = asyncio.get_running_loop()
        shutdown_event = asyncio.Event()

        def _signal_handler() -> None:
            click.echo("\nShutting down...")
            shutdown_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _signal_handler)

        async with _runtime(config) as runtime:
            poller = asyncio.create_task(
                runtime.orchestrator.run_forever(interval), name="calsync-sync-poller"
            )
            await shutdown_event.wait()
            poller.cancel()
            try:
                await poller
            except asyncio.CancelledError:
                pass

    asyncio.run(_run())


@cli.command()
@click.argument("connection_id")
@click.option(
    "--older-than-days",
    type=click.IntRange(min=0),
    default=None,
    help="Delete mirrored events that ended more than N days ago",
)
@_config_option
def cleanup(connection_id: str, older_than_days: int | None, config_path: Path) -> None:
    """Prune mirrored events far in the past for one connection."""
    config = _load_config_or_exit(config_path)
    days = older_than_days if older_than_days is not None else config.sync.cleanup_older_than_days

    async def _cleanup() -> int:
        async with _runtime(config) as runtime:
            return await runtime.orchestrator.cleanup_old_events(connection_id, days)

    removed = asyncio.run(_cleanup())
    click.echo(f"Removed {removed} event(s) older than {days} day(s)")


@cli.command()
@click.argument("connection_id")
@_config_option
def validate(connection_id: str, config_path: Path) -> None:
    """Check that a connection can still make authenticated calls."""
    config = _load_config_or_exit(config_path)

    async def _validate() -> bool:
        async with _runtime(config) as runtime:
            connection = await runtime.store.get_connection(connection_id)
            if connection is None:
                raise ConnectionNotFoundError(connection_id)
            service = runtime.factory.for_connection(connection)
            return await service.validate_connection(connection_id)

    try:
        valid = asyncio.run(_validate())
    except ConnectionNotFoundError as exc:
        click.echo(str(exc), err=True)
        sys.exit(1)
    click.echo(f"Connection {connection_id} is {'valid' if valid else 'NOT valid'}")
    sys.exit(0 if valid else 1)
