"""CLI for rehearsal calendar sync: inspect and administer sync state."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any

import click

from rehearsal_sync.backend import HttpAvailabilityBackend
from rehearsal_sync.calendars import PermissionGateway
from rehearsal_sync.config import DEFAULT_CONFIG_FILENAME, ConfigError, SyncAppConfig, load_config
from rehearsal_sync.device import HeadlessDeviceCalendar
from rehearsal_sync.importer import ImportPipeline
from rehearsal_sync.logging import configure_logging
from rehearsal_sync.migrations import upgrade_to_head
from rehearsal_sync.models import CalendarSyncSettings, ImportInterval, ImportResult
from rehearsal_sync.storage import (
    KeyValueStore,
    MappingStore,
    MemoryStateStore,
    PostgresStateStore,
)

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=Path(DEFAULT_CONFIG_FILENAME),
    envvar="REHEARSAL_SYNC_CONFIG",
    show_default=True,
    help="Path to rehearsal-sync.toml (or its directory)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path) -> None:
    """Rehearsal calendar sync: export rehearsals, import availability."""
    ctx.obj = config_path


def _load(ctx: click.Context) -> SyncAppConfig:
    try:
        config = load_config(ctx.obj)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)
    log_file = Path(config.logging.log_file) if config.logging.log_file else None
    configure_logging(config.logging.level, config.logging.format, log_file)
    return config


async def _open_state_store(config: SyncAppConfig) -> KeyValueStore:
    if config.store.kind == "postgres":
        return await PostgresStateStore.connect(config.store.dsn)
    logger.warning("Using in-memory state store; nothing will persist after exit")
    return MemoryStateStore()


async def _close_state_store(store: KeyValueStore) -> None:
    if isinstance(store, PostgresStateStore):
        await store.close()


def _format_time(value: Any) -> str:
    return value.isoformat() if value is not None else "never"


def _echo_settings(settings: CalendarSyncSettings) -> None:
    click.echo(f"Export enabled:     {settings.export_enabled}")
    click.echo(f"Export calendar:    {settings.export_calendar_id or '-'}")
    click.echo(f"Last export:        {_format_time(settings.last_export_time)}")
    click.echo(f"Import enabled:     {settings.import_enabled}")
    click.echo(f"Import calendars:   {', '.join(settings.import_calendar_ids) or '-'}")
    click.echo(f"Import interval:    {settings.import_interval.value}")
    click.echo(f"Last import:        {_format_time(settings.last_import_time)}")


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show sync settings, counts and last run times."""
    config = _load(ctx)

    async def _status() -> None:
        state_store = await _open_state_store(config)
        try:
            store = MappingStore(state_store, namespace=config.store.key_prefix)
            _echo_settings(await store.get_settings())
            click.echo(f"Synced rehearsals:  {await store.synced_count()}")
            click.echo(f"Imported events:    {await store.imported_count()}")
        finally:
            await _close_state_store(state_store)

    asyncio.run(_status())


@cli.command()
@click.option(
    "--import-enabled/--import-disabled",
    "import_enabled",
    default=None,
    help="Turn calendar import on or off",
)
@click.option(
    "--interval",
    type=click.Choice([interval.value for interval in ImportInterval]),
    default=None,
    help="How often a foreground return may trigger an import",
)
@click.option(
    "--calendar",
    "calendar_ids",
    multiple=True,
    help="Calendar id to import from (repeatable; replaces the current selection)",
)
@click.option("--export-calendar", default=None, help="Calendar id rehearsals are exported to")
@click.pass_context
def configure(
    ctx: click.Context,
    import_enabled: bool | None,
    interval: str | None,
    calendar_ids: tuple[str, ...],
    export_calendar: str | None,
) -> None:
    """Update the user-editable sync settings."""
    changes: dict[str, Any] = {}
    if import_enabled is not None:
        changes["import_enabled"] = import_enabled
    if interval is not None:
        changes["import_interval"] = ImportInterval(interval)
    if calendar_ids:
        changes["import_calendar_ids"] = list(calendar_ids)
    if export_calendar is not None:
        changes["export_calendar_id"] = export_calendar

    if not changes:
        click.echo("Nothing to change")
        return

    config = _load(ctx)

    async def _configure() -> CalendarSyncSettings:
        state_store = await _open_state_store(config)
        try:
            store = MappingStore(state_store, namespace=config.store.key_prefix)
            return await store.update_settings(**changes)
        finally:
            await _close_state_store(state_store)

    _echo_settings(asyncio.run(_configure()))


@cli.command("clear-imported")
@click.confirmation_option(prompt="Delete every imported availability slot?")
@click.pass_context
def clear_imported(ctx: click.Context) -> None:
    """Delete all imported slots on the backend and clear import tracking."""
    config = _load(ctx)

    async def _clear() -> ImportResult:
        state_store = await _open_state_store(config)
        backend = HttpAvailabilityBackend(
            config.backend.base_url,
            api_token=config.backend.api_token,
            timeout=config.backend.timeout_seconds,
        )
        provider = HeadlessDeviceCalendar()
        try:
            importer = ImportPipeline(
                provider,
                PermissionGateway(provider),
                backend,
                MappingStore(state_store, namespace=config.store.key_prefix),
                source=config.sync.import_source,
            )
            return await importer.remove_all()
        finally:
            await backend.shutdown()
            await _close_state_store(state_store)

    try:
        result = asyncio.run(_clear())
    except Exception as exc:
        click.echo(f"Clear failed: {exc}", err=True)
        sys.exit(1)
    click.echo(f"Removed {result.succeeded} imported event(s), {result.failed} failed")


@cli.command()
@click.pass_context
def migrate(ctx: click.Context) -> None:
    """Create or upgrade the calendar_sync_state table."""
    config = _load(ctx)
    if config.store.kind != "postgres":
        click.echo("Migrations only apply to store.kind = 'postgres'", err=True)
        sys.exit(1)
    upgrade_to_head(config.store.dsn)
    click.echo("Migrations complete")


def main() -> None:
    cli()
