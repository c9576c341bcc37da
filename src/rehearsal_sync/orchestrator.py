"""Decides when import reconciliation runs.

Triggers are app-state transitions (background/inactive -> active) and
manual requests.  Automatic triggers pass through a short throttle window
and the interval policy stored in ``CalendarSyncSettings``; a manual
``force_sync`` skips both but still needs import to be enabled.

Only one reconciliation (or clear) runs at a time.  Automatic triggers that
arrive while a run is in flight are dropped; manual requests raise
``SyncInProgressError``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from rehearsal_sync.errors import ImportNotConfiguredError, SyncInProgressError
from rehearsal_sync.export import ProgressCallback
from rehearsal_sync.importer import ImportPipeline
from rehearsal_sync.models import (
    IMPORT_INTERVAL_DELTAS,
    CalendarSyncSettings,
    ImportResult,
    ensure_utc,
)
from rehearsal_sync.storage import MappingStore

logger = logging.getLogger(__name__)

DEFAULT_THROTTLE_SECONDS = 5.0


class AppState(StrEnum):
    active = "active"
    inactive = "inactive"
    background = "background"


_FOREGROUND_SOURCES = frozenset({AppState.inactive, AppState.background})


def is_foreground_transition(previous: AppState, current: AppState) -> bool:
    return previous in _FOREGROUND_SOURCES and current == AppState.active


def can_auto_import(settings: CalendarSyncSettings) -> bool:
    return settings.import_enabled and bool(settings.import_calendar_ids)


def is_import_due(settings: CalendarSyncSettings, now: datetime) -> bool:
    """Apply the interval policy; a configuration that never imported is due."""
    interval = IMPORT_INTERVAL_DELTAS.get(settings.import_interval)
    if interval is None:
        return False
    if settings.last_import_time is None:
        return True
    return ensure_utc(now) - ensure_utc(settings.last_import_time) >= interval


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SyncOrchestrator:
    def __init__(
        self,
        importer: ImportPipeline,
        store: MappingStore,
        *,
        throttle_seconds: float = DEFAULT_THROTTLE_SECONDS,
        initial_state: AppState = AppState.active,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._importer = importer
        self._store = store
        self._throttle_seconds = throttle_seconds
        self._app_state = initial_state
        self._monotonic = monotonic
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last_trigger_timestamp: float | None = None
        self._last_error: str | None = None

    @property
    def app_state(self) -> AppState:
        return self._app_state

    @property
    def last_trigger_timestamp(self) -> float | None:
        return self._last_trigger_timestamp

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    @property
    def last_error(self) -> str | None:
        return self._last_error

    async def on_app_state_change(self, state: AppState | str) -> ImportResult | None:
        """Record the new app state; a foreground return may trigger an import."""
        current = AppState(state)
        previous = self._app_state
        self._app_state = current
        if not is_foreground_transition(previous, current):
            return None
        logger.info("App came to foreground")
        return await self.maybe_sync()

    async def maybe_sync(self) -> ImportResult | None:
        """Run an automatic import if throttle, settings and interval allow it.

        Failures are logged and remembered in ``last_error``; nothing is raised.
        """
        now = self._monotonic()
        if (
            self._last_trigger_timestamp is not None
            and now - self._last_trigger_timestamp < self._throttle_seconds
        ):
            logger.debug(
                "Auto-sync throttled, last attempt %.1fs ago", now - self._last_trigger_timestamp
            )
            return None
        self._last_trigger_timestamp = now

        try:
            settings = await self._store.get_settings()
        except Exception as exc:
            logger.error("Error checking whether to import: %s", exc, exc_info=True)
            return None

        if not can_auto_import(settings) or not is_import_due(settings, self._clock()):
            logger.debug("No import needed at this time")
            return None

        if self._lock.locked():
            logger.info("Import already running; dropping automatic trigger")
            return None

        logger.info("Auto-importing calendar events")
        try:
            result = await self._run_exclusive(
                self._importer.reconcile, settings.import_calendar_ids, None
            )
        except Exception as exc:
            logger.error("Error during auto-import: %s", exc, exc_info=True)
            return None
        logger.info(
            "Auto-import completed: %d succeeded, %d failed, %d skipped",
            result.succeeded,
            result.failed,
            result.skipped,
        )
        return result

    async def force_sync(self, on_progress: ProgressCallback | None = None) -> ImportResult:
        """Run an import now, bypassing throttle and interval."""
        settings = await self._store.get_settings()
        if not settings.import_enabled:
            raise ImportNotConfiguredError("Calendar import is disabled")
        if not settings.import_calendar_ids:
            raise ImportNotConfiguredError("No calendars selected for import")
        return await self._run_exclusive(
            self._importer.reconcile, settings.import_calendar_ids, on_progress
        )

    async def clear_imported(self, on_progress: ProgressCallback | None = None) -> ImportResult:
        """Remove every imported slot while holding the run guard."""
        return await self._run_exclusive(self._importer.remove_all, on_progress)

    async def _run_exclusive(
        self, operation: Callable[..., Awaitable[ImportResult]], *args: Any
    ) -> ImportResult:
        if self._lock.locked():
            raise SyncInProgressError()
        async with self._lock:
            try:
                result = await operation(*args)
            except Exception as exc:
                self._last_error = str(exc) or type(exc).__name__
                raise
            self._last_error = result.errors[0] if result.failed and result.errors else None
            return result
