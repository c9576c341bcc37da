"""Public entry point for rehearsal export and availability import.

``CalendarSyncService`` wires the permission gateway, calendar enumerator,
both pipelines and the orchestrator around one mapping store, and keeps the
small amount of status a UI needs (export status, last errors, whether an
import is running).
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from rehearsal_sync.backend import AvailabilityBackend, HttpAvailabilityBackend
from rehearsal_sync.calendars import CalendarEnumerator, PermissionGateway
from rehearsal_sync.config import SyncAppConfig
from rehearsal_sync.device import DeviceCalendarProvider
from rehearsal_sync.errors import NoCalendarSelectedError
from rehearsal_sync.export import EXPORT_BATCH_SIZE, ExportPipeline, ProgressCallback
from rehearsal_sync.importer import IMPORT_WINDOW_DAYS, ImportPipeline, local_now
from rehearsal_sync.models import (
    BatchSyncResult,
    CalendarSyncSettings,
    DeviceCalendar,
    ImportResult,
    RehearsalWithProject,
    SlotSource,
    SyncStatus,
)
from rehearsal_sync.orchestrator import DEFAULT_THROTTLE_SECONDS, AppState, SyncOrchestrator
from rehearsal_sync.storage import KeyValueStore, MappingStore

logger = logging.getLogger(__name__)


def _error_text(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class CalendarSyncService:
    def __init__(
        self,
        provider: DeviceCalendarProvider,
        backend: AvailabilityBackend,
        store: MappingStore,
        *,
        import_source: SlotSource = SlotSource.apple_calendar,
        import_window_days: int = IMPORT_WINDOW_DAYS,
        export_batch_size: int = EXPORT_BATCH_SIZE,
        throttle_seconds: float = DEFAULT_THROTTLE_SECONDS,
        monotonic: Callable[[], float] = time.monotonic,
        local_clock: Callable[[], datetime] = local_now,
    ) -> None:
        self.store = store
        self.backend = backend
        self.permissions = PermissionGateway(provider)
        self.calendars = CalendarEnumerator(provider, self.permissions)
        self.exporter = ExportPipeline(
            provider, self.permissions, store, batch_size=export_batch_size
        )
        self.importer = ImportPipeline(
            provider,
            self.permissions,
            backend,
            store,
            source=import_source,
            window_days=import_window_days,
            clock=local_clock,
        )
        self.orchestrator = SyncOrchestrator(
            self.importer,
            store,
            throttle_seconds=throttle_seconds,
            monotonic=monotonic,
            clock=lambda: local_clock().astimezone(UTC),
        )

        self._has_permission = False
        self._sync_status = SyncStatus.idle
        self._sync_error: str | None = None
        self._import_error: str | None = None

    @classmethod
    def from_config(
        cls,
        config: SyncAppConfig,
        provider: DeviceCalendarProvider,
        state_store: KeyValueStore,
        *,
        backend: AvailabilityBackend | None = None,
    ) -> CalendarSyncService:
        """Build a service from a loaded configuration and an opened state store."""
        if backend is None:
            backend = HttpAvailabilityBackend(
                config.backend.base_url,
                api_token=config.backend.api_token,
                timeout=config.backend.timeout_seconds,
            )
        return cls(
            provider,
            backend,
            MappingStore(state_store, namespace=config.store.key_prefix),
            import_source=config.sync.import_source,
            import_window_days=config.sync.import_window_days,
            throttle_seconds=config.sync.throttle_seconds,
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def has_permission(self) -> bool:
        return self._has_permission

    @property
    def sync_status(self) -> SyncStatus:
        return self._sync_status

    @property
    def sync_error(self) -> str | None:
        return self._sync_error

    @property
    def is_syncing(self) -> bool:
        return self._sync_status == SyncStatus.syncing

    @property
    def is_importing(self) -> bool:
        return self.orchestrator.is_running

    @property
    def import_error(self) -> str | None:
        return self._import_error

    # ------------------------------------------------------------------
    # Permissions, calendars and settings
    # ------------------------------------------------------------------

    async def initialize(self) -> bool:
        """Load permission state and pick a default export calendar if none is set."""
        try:
            self._has_permission = await self.permissions.has_permission()
            if self._has_permission:
                await self._select_default_calendar()
        except Exception as exc:
            logger.error("Calendar sync initialization failed: %s", exc, exc_info=True)
        return self._has_permission

    async def request_permissions(self) -> bool:
        self._has_permission = await self.permissions.request_permission()
        if self._has_permission:
            await self._select_default_calendar()
        return self._has_permission

    async def _select_default_calendar(self) -> None:
        settings = await self.store.get_settings()
        if settings.export_calendar_id:
            return
        calendar = await self.calendars.default_calendar()
        if calendar is None:
            return
        await self.store.update_settings(export_calendar_id=calendar.id)
        logger.info("Selected default export calendar %s", calendar.id)

    async def list_calendars(self) -> list[DeviceCalendar]:
        return await self.calendars.list_writable_calendars()

    async def get_default_calendar(self) -> DeviceCalendar | None:
        return await self.calendars.default_calendar()

    async def get_settings(self) -> CalendarSyncSettings:
        return await self.store.get_settings()

    async def update_settings(self, **changes: Any) -> CalendarSyncSettings:
        return await self.store.update_settings(**changes)

    async def synced_count(self) -> int:
        return await self.store.synced_count()

    async def imported_count(self) -> int:
        return await self.store.imported_count()

    async def is_rehearsal_synced(self, rehearsal_id: str) -> bool:
        try:
            return await self.store.is_rehearsal_synced(rehearsal_id)
        except Exception as exc:
            logger.error("Failed to check sync status of %s: %s", rehearsal_id, exc, exc_info=True)
            return False

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _export_operation(self, name: str) -> AsyncIterator[None]:
        self._sync_status = SyncStatus.syncing
        self._sync_error = None
        try:
            yield
        except Exception as exc:
            logger.error("%s failed: %s", name, exc, exc_info=True)
            self._sync_status = SyncStatus.error
            self._sync_error = _error_text(exc)
            raise
        self._sync_status = SyncStatus.success

    async def _require_export_calendar(self) -> str:
        settings = await self.store.get_settings()
        if not settings.export_calendar_id:
            raise NoCalendarSelectedError()
        return settings.export_calendar_id

    async def sync_rehearsal(self, rehearsal: RehearsalWithProject) -> str:
        """Export one rehearsal; returns the device event id."""
        await self.permissions.require_permission()
        calendar_id = await self._require_export_calendar()
        async with self._export_operation("Sync rehearsal"):
            event_id = await self.exporter.sync_one(rehearsal, calendar_id)
            await self.store.touch_last_export_time()
        return event_id

    async def unsync_rehearsal(self, rehearsal_id: str) -> None:
        await self.permissions.require_permission()
        async with self._export_operation("Unsync rehearsal"):
            await self.exporter.unsync_one(rehearsal_id)

    async def sync_all_rehearsals(
        self,
        rehearsals: Sequence[RehearsalWithProject],
        on_progress: ProgressCallback | None = None,
    ) -> BatchSyncResult:
        await self.permissions.require_permission()
        calendar_id = await self._require_export_calendar()
        async with self._export_operation("Sync all rehearsals"):
            result = await self.exporter.sync_all(rehearsals, calendar_id, on_progress)
        return result

    async def remove_all_exported(
        self, on_progress: ProgressCallback | None = None
    ) -> BatchSyncResult:
        await self.permissions.require_permission()
        async with self._export_operation("Remove all exported events"):
            result = await self.exporter.remove_all(on_progress)
        return result

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    async def import_now(self, on_progress: ProgressCallback | None = None) -> ImportResult:
        """Reconcile the selected calendars right away (manual trigger)."""
        await self.permissions.require_permission()
        self._import_error = None
        try:
            return await self.orchestrator.force_sync(on_progress)
        except Exception as exc:
            logger.error("Import failed: %s", exc, exc_info=True)
            self._import_error = _error_text(exc)
            raise

    async def clear_imported(self, on_progress: ProgressCallback | None = None) -> ImportResult:
        """Delete every imported slot on the backend and forget the tracking."""
        await self.permissions.require_permission()
        self._import_error = None
        try:
            return await self.orchestrator.clear_imported(on_progress)
        except Exception as exc:
            logger.error("Clear imported failed: %s", exc, exc_info=True)
            self._import_error = _error_text(exc)
            raise

    async def handle_app_state_change(self, state: AppState | str) -> ImportResult | None:
        return await self.orchestrator.on_app_state_change(state)

    async def shutdown(self) -> None:
        await self.backend.shutdown()
