"""Export pipeline: mirror rehearsals as device calendar events.

Each rehearsal is in exactly one sync state, computed once per operation:

- ``Unsynced``  no mapping exists -> create (with duplicate detection)
- ``Synced``    mapping exists and its event resolves -> update in place
- ``Orphaned``  mapping exists but its event is gone -> drop mapping, recreate

An update that fails with ``EventNotFoundError`` is handled like
``Orphaned``; any other failure propagates to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import timedelta

from rehearsal_sync.calendars import PermissionGateway
from rehearsal_sync.device import DeviceCalendarProvider
from rehearsal_sync.errors import EventNotFoundError
from rehearsal_sync.logging import sync_run_context
from rehearsal_sync.models import (
    BatchSyncResult,
    DeviceEventCreate,
    DeviceEventUpdate,
    EventMapping,
    RehearsalWithProject,
    ensure_utc,
)
from rehearsal_sync.storage import MappingStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

EXPORT_BATCH_SIZE = 10
EVENT_TITLE_PREFIX = "Rehearsal: "
REMINDER_MINUTES_BEFORE = 30
DUPLICATE_SEARCH_PADDING = timedelta(days=1)
DUPLICATE_TIME_TOLERANCE = timedelta(seconds=60)


@dataclass(frozen=True)
class Unsynced:
    pass


@dataclass(frozen=True)
class Synced:
    mapping: EventMapping


@dataclass(frozen=True)
class Orphaned:
    mapping: EventMapping


SyncState = Unsynced | Synced | Orphaned


def build_event_title(rehearsal: RehearsalWithProject) -> str:
    return f"{EVENT_TITLE_PREFIX}{rehearsal.project_name}"


def build_event_notes(rehearsal: RehearsalWithProject) -> str:
    return f"Project: {rehearsal.project_name}\n\nCreated via Rehearsal Calendar app"


def _error_text(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class ExportPipeline:
    """Creates, updates and removes device events for rehearsals."""

    def __init__(
        self,
        provider: DeviceCalendarProvider,
        permissions: PermissionGateway,
        store: MappingStore,
        *,
        batch_size: int = EXPORT_BATCH_SIZE,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._provider = provider
        self._permissions = permissions
        self._store = store
        self._batch_size = batch_size

    # ------------------------------------------------------------------
    # Single event operations
    # ------------------------------------------------------------------

    async def find_duplicate_event(
        self, rehearsal: RehearsalWithProject, calendar_id: str
    ) -> str | None:
        """Return the id of an existing event that already mirrors *rehearsal*.

        Matches on the derived title, start/end within 60 seconds and an
        identical location, searching one day either side of the rehearsal.
        Lookup failures are logged and reported as "no duplicate".
        """
        starts_at = ensure_utc(rehearsal.starts_at)
        ends_at = ensure_utc(rehearsal.ends_at)
        try:
            events = await self._provider.list_events(
                [calendar_id],
                starts_at - DUPLICATE_SEARCH_PADDING,
                ends_at + DUPLICATE_SEARCH_PADDING,
            )
        except Exception as exc:
            logger.error("Error searching for duplicate events: %s", exc, exc_info=True)
            return None

        title = build_event_title(rehearsal)
        location = rehearsal.location or None
        for event in events:
            if event.title != title:
                continue
            if abs(ensure_utc(event.start_date) - starts_at) >= DUPLICATE_TIME_TOLERANCE:
                continue
            if abs(ensure_utc(event.end_date) - ends_at) >= DUPLICATE_TIME_TOLERANCE:
                continue
            if (event.location or None) != location:
                continue
            logger.warning("Found duplicate event %s for rehearsal %s", event.id, rehearsal.id)
            return event.id
        return None

    async def create_event(self, rehearsal: RehearsalWithProject, calendar_id: str) -> str:
        """Create (or re-bind to) the device event for *rehearsal* and persist the mapping."""
        await self._permissions.require_permission()

        duplicate_id = await self.find_duplicate_event(rehearsal, calendar_id)
        if duplicate_id is not None:
            logger.info("Using existing event %s instead of creating a duplicate", duplicate_id)
            await self._store.save_event_mapping(rehearsal.id, duplicate_id, calendar_id)
            return duplicate_id

        payload = DeviceEventCreate(
            title=build_event_title(rehearsal),
            start_date=rehearsal.starts_at,
            end_date=rehearsal.ends_at,
            location=rehearsal.location or None,
            notes=build_event_notes(rehearsal),
            reminder_minutes_before=REMINDER_MINUTES_BEFORE,
            busy=True,
        )
        event_id = await self._provider.create_event(calendar_id, payload)
        await self._store.save_event_mapping(rehearsal.id, event_id, calendar_id)
        logger.info("Created event %s for rehearsal %s", event_id, rehearsal.id)
        return event_id

    async def update_event(self, event_id: str, rehearsal: RehearsalWithProject) -> None:
        await self._permissions.require_permission()
        patch = DeviceEventUpdate(
            title=build_event_title(rehearsal),
            start_date=rehearsal.starts_at,
            end_date=rehearsal.ends_at,
            location=rehearsal.location or "",
            notes=build_event_notes(rehearsal),
        )
        await self._provider.update_event(event_id, patch)
        logger.info("Updated event %s", event_id)

    async def delete_event(self, event_id: str) -> None:
        await self._permissions.require_permission()
        await self._provider.delete_event(event_id)
        logger.info("Deleted event %s", event_id)

    async def resolve_state(self, rehearsal_id: str) -> SyncState:
        mapping = await self._store.get_event_mapping(rehearsal_id)
        if mapping is None:
            return Unsynced()
        try:
            event = await self._provider.get_event(mapping.event_id)
        except EventNotFoundError:
            event = None
        if event is None:
            return Orphaned(mapping)
        return Synced(mapping)

    async def sync_one(self, rehearsal: RehearsalWithProject, calendar_id: str) -> str:
        """Create or update the event for *rehearsal*; return the event id."""
        state = await self.resolve_state(rehearsal.id)

        if isinstance(state, Synced):
            mapping = state.mapping
            try:
                await self.update_event(mapping.event_id, rehearsal)
            except EventNotFoundError:
                logger.warning("Update failed for event %s, recreating", mapping.event_id)
            else:
                await self._store.save_event_mapping(
                    rehearsal.id, mapping.event_id, mapping.calendar_id
                )
                return mapping.event_id
        elif isinstance(state, Orphaned):
            logger.warning("Event %s no longer exists, recreating", state.mapping.event_id)
        else:
            logger.debug("Rehearsal %s not synced, creating", rehearsal.id)

        if not isinstance(state, Unsynced):
            await self._store.remove_event_mapping(rehearsal.id)
        return await self.create_event(rehearsal, calendar_id)

    async def unsync_one(self, rehearsal_id: str) -> None:
        """Delete the exported event and forget the mapping.

        The mapping is removed even when the delete fails; a failure other
        than "event already gone" is re-raised afterwards.
        """
        mapping = await self._store.get_event_mapping(rehearsal_id)
        if mapping is None:
            logger.info("Rehearsal %s not synced, nothing to do", rehearsal_id)
            return

        await self._permissions.require_permission()
        try:
            await self.delete_event(mapping.event_id)
        except EventNotFoundError:
            logger.info("Event %s already removed from calendar", mapping.event_id)
        finally:
            await self._store.remove_event_mapping(rehearsal_id)
        logger.info("Unsynced rehearsal %s", rehearsal_id)

    # ------------------------------------------------------------------
    # Batch operations
    # ------------------------------------------------------------------

    async def sync_all(
        self,
        rehearsals: Sequence[RehearsalWithProject],
        calendar_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> BatchSyncResult:
        """Sync every rehearsal in waves of ``batch_size`` concurrent operations."""
        result = BatchSyncResult()
        total = len(rehearsals)

        with sync_run_context("export"):
            for offset in range(0, total, self._batch_size):
                batch = rehearsals[offset : offset + self._batch_size]
                outcomes = await asyncio.gather(
                    *(self.sync_one(rehearsal, calendar_id) for rehearsal in batch),
                    return_exceptions=True,
                )
                for rehearsal, outcome in zip(batch, outcomes, strict=True):
                    if isinstance(outcome, BaseException):
                        result.failed += 1
                        result.errors.append(f"{rehearsal.project_name}: {_error_text(outcome)}")
                        logger.error(
                            "Failed to sync rehearsal %s: %s",
                            rehearsal.id,
                            outcome,
                            exc_info=outcome,
                        )
                    else:
                        result.succeeded += 1

                if on_progress is not None:
                    on_progress(min(offset + len(batch), total), total)

            await self._store.touch_last_export_time()
            logger.info(
                "Batch sync complete: %d succeeded, %d failed", result.succeeded, result.failed
            )
        return result

    async def remove_all(self, on_progress: ProgressCallback | None = None) -> BatchSyncResult:
        """Delete every exported event listed in the mapping store.

        The store, not the calendar, decides what to delete.  All mappings
        are cleared at the end even when some deletions failed.
        """
        mappings = await self._store.all_event_mappings()
        rehearsal_ids = list(mappings)
        total = len(rehearsal_ids)
        result = BatchSyncResult()

        async def _remove(rehearsal_id: str) -> None:
            try:
                await self.delete_event(mappings[rehearsal_id].event_id)
            except EventNotFoundError:
                logger.info("Event %s already removed", mappings[rehearsal_id].event_id)
            await self._store.remove_event_mapping(rehearsal_id)

        with sync_run_context("export-clear"):
            logger.info("Removing %d exported events", total)
            for offset in range(0, total, self._batch_size):
                batch_ids = rehearsal_ids[offset : offset + self._batch_size]
                outcomes = await asyncio.gather(
                    *(_remove(rehearsal_id) for rehearsal_id in batch_ids),
                    return_exceptions=True,
                )
                for rehearsal_id, outcome in zip(batch_ids, outcomes, strict=True):
                    event_id = mappings[rehearsal_id].event_id
                    if isinstance(outcome, BaseException):
                        result.failed += 1
                        result.errors.append(f"Event {event_id}: {_error_text(outcome)}")
                        logger.error(
                            "Failed to delete event %s: %s", event_id, outcome, exc_info=outcome
                        )
                    else:
                        result.succeeded += 1

                if on_progress is not None:
                    on_progress(min(offset + len(batch_ids), total), total)

            await self._store.clear_event_mappings()
            logger.info(
                "Remove all complete: %d succeeded, %d failed", result.succeeded, result.failed
            )
        return result
