"""Import pipeline: reconcile device calendar events into availability slots.

A run is a three-way diff between

1. device events in ``[today, now + window]`` from the selected calendars,
2. imported availability slots on the backend in the same window (widened to
   whole UTC days) or tied to one of those events, and
3. the ids of events this app exported itself (never imported back),

producing disjoint add / update / delete sets that are applied concurrently.
Only slots whose ``source`` is a device calendar and which carry an
``externalEventId`` are ever considered; manual and rehearsal slots are
invisible here.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Collection, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, time, timedelta

from rehearsal_sync.backend import AvailabilityBackend
from rehearsal_sync.calendars import PermissionGateway
from rehearsal_sync.device import DeviceCalendarProvider
from rehearsal_sync.errors import DataInconsistencyError, PermissionDeniedError
from rehearsal_sync.export import ProgressCallback
from rehearsal_sync.logging import sync_run_context
from rehearsal_sync.models import (
    DEFAULT_IMPORTED_TITLE,
    AvailabilitySlot,
    DeviceEvent,
    ImportResult,
    SlotSource,
    SlotType,
    SlotUpdate,
    ensure_utc,
)
from rehearsal_sync.storage import MappingStore

logger = logging.getLogger(__name__)

IMPORT_WINDOW_DAYS = 365
CREATE_CHUNK_SIZE = 50
_END_OF_DAY = time(23, 59, 59, 999000)


def local_now() -> datetime:
    return datetime.now().astimezone()


def _truncate_to_millis(value: datetime) -> datetime:
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def event_to_timestamps(event: DeviceEvent) -> tuple[datetime, datetime]:
    """Return the UTC ``(starts_at, ends_at)`` an event maps to.

    All-day events are pinned to ``00:00:00.000Z`` .. ``23:59:59.999Z`` on the
    event's own calendar date so that a one-day event never spans two days
    after timezone conversion.  Timed events convert directly to UTC.
    """
    if event.all_day:
        local_day = event.start_date.date()
        return (
            datetime.combine(local_day, time.min, tzinfo=UTC),
            datetime.combine(local_day, _END_OF_DAY, tzinfo=UTC),
        )
    return (
        _truncate_to_millis(ensure_utc(event.start_date)),
        _truncate_to_millis(ensure_utc(event.end_date)),
    )


def imported_title(event: DeviceEvent) -> str:
    return event.title or DEFAULT_IMPORTED_TITLE


def slot_differs(slot: AvailabilitySlot, event: DeviceEvent) -> bool:
    """True when start, end, title or the all-day flag changed."""
    starts_at, ends_at = event_to_timestamps(event)
    return (
        slot.starts_at != starts_at
        or slot.ends_at != ends_at
        or slot.title != imported_title(event)
        or slot.is_all_day != event.all_day
    )


def slot_window(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    """Widen a local import window to cover the UTC-pinned all-day slots of its edge days."""
    return (
        min(ensure_utc(start), datetime.combine(start.date(), time.min, tzinfo=UTC)),
        max(ensure_utc(end), datetime.combine(end.date(), _END_OF_DAY, tzinfo=UTC)),
    )


def select_managed_slots(
    slots: Iterable[AvailabilitySlot],
    start: datetime,
    end: datetime,
    event_ids: Collection[str] = (),
) -> list[AvailabilitySlot]:
    """Imported slots starting inside ``[start, end]`` or belonging to a fetched event.

    Everything else is off limits.
    """
    window_start = ensure_utc(start)
    window_end = ensure_utc(end)
    return [
        slot
        for slot in slots
        if slot.is_imported
        and (
            window_start <= slot.starts_at <= window_end
            or slot.external_event_id in event_ids
        )
    ]


@dataclass
class ReconciliationPlan:
    """Disjoint change sets computed by ``compute_diff``."""

    to_add: list[DeviceEvent] = field(default_factory=list)
    to_update: list[tuple[DeviceEvent, AvailabilitySlot]] = field(default_factory=list)
    to_delete: list[str] = field(default_factory=list)
    skipped: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.to_add or self.to_update or self.to_delete)

    @property
    def change_count(self) -> int:
        return len(self.to_add) + len(self.to_update) + len(self.to_delete)

    @property
    def add_ids(self) -> set[str]:
        return {event.id for event in self.to_add}

    @property
    def update_ids(self) -> set[str]:
        return {event.id for event, _ in self.to_update}


def compute_diff(
    events: Sequence[DeviceEvent],
    managed_slots: Sequence[AvailabilitySlot],
    exported_event_ids: set[str],
) -> ReconciliationPlan:
    """Partition calendar events and imported slots into add/update/delete sets.

    Events whose id belongs to an exported rehearsal are counted as skipped
    and never imported.  Unchanged events are skipped as well.
    """
    plan = ReconciliationPlan()

    slots_by_event_id: dict[str, AvailabilitySlot] = {}
    for slot in managed_slots:
        if slot.external_event_id:
            slots_by_event_id.setdefault(slot.external_event_id, slot)

    events_by_id: dict[str, DeviceEvent] = {}
    for event in events:
        if event.id in exported_event_ids:
            plan.skipped += 1
            continue
        events_by_id.setdefault(event.id, event)

    for event_id in slots_by_event_id:
        if event_id not in events_by_id and event_id not in exported_event_ids:
            plan.to_delete.append(event_id)

    for event_id, event in events_by_id.items():
        slot = slots_by_event_id.get(event_id)
        if slot is None:
            plan.to_add.append(event)
        elif slot_differs(slot, event):
            plan.to_update.append((event, slot))
        else:
            plan.skipped += 1

    return plan


def _chunked(items: Sequence[DeviceEvent], size: int) -> list[Sequence[DeviceEvent]]:
    return [items[offset : offset + size] for offset in range(0, len(items), size)]


class ImportPipeline:
    """Applies device calendar changes to the backend availability model."""

    def __init__(
        self,
        provider: DeviceCalendarProvider,
        permissions: PermissionGateway,
        backend: AvailabilityBackend,
        store: MappingStore,
        *,
        source: SlotSource = SlotSource.apple_calendar,
        window_days: int = IMPORT_WINDOW_DAYS,
        chunk_size: int = CREATE_CHUNK_SIZE,
        clock: Callable[[], datetime] = local_now,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self._provider = provider
        self._permissions = permissions
        self._backend = backend
        self._store = store
        self._source = source
        self._window = timedelta(days=window_days)
        self._chunk_size = chunk_size
        self._clock = clock

    def import_window(self) -> tuple[datetime, datetime]:
        """Return ``(start of today, now + window)`` in the clock's timezone."""
        now = self._clock()
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return start, now + self._window

    async def fetch_calendar_events(
        self, calendar_ids: Sequence[str], start: datetime, end: datetime
    ) -> list[DeviceEvent]:
        """Collect events from each calendar; a failing calendar is skipped."""
        await self._permissions.require_permission()

        events: list[DeviceEvent] = []
        for calendar_id in calendar_ids:
            try:
                calendar_events = await self._provider.list_events([calendar_id], start, end)
            except PermissionDeniedError:
                raise
            except Exception as exc:
                logger.error(
                    "Failed to fetch events from calendar %s: %s", calendar_id, exc, exc_info=True
                )
                continue
            logger.debug("Fetched %d events from calendar %s", len(calendar_events), calendar_id)
            events.extend(calendar_events)
        return events

    def _build_slot(self, event: DeviceEvent) -> AvailabilitySlot:
        starts_at, ends_at = event_to_timestamps(event)
        return AvailabilitySlot(
            starts_at=starts_at,
            ends_at=ends_at,
            type=SlotType.busy,
            source=self._source,
            external_event_id=event.id,
            title=imported_title(event),
            is_all_day=event.all_day,
        )

    @staticmethod
    def _build_update(event: DeviceEvent) -> SlotUpdate:
        starts_at, ends_at = event_to_timestamps(event)
        return SlotUpdate(
            external_event_id=event.id,
            starts_at=starts_at,
            ends_at=ends_at,
            title=imported_title(event),
            is_all_day=event.all_day,
        )

    async def _track(self, description: str, writes: Iterable) -> None:
        # Backend already holds the change; a tracking failure is repaired by the next run.
        try:
            await asyncio.gather(*writes)
        except Exception as exc:
            inconsistency = DataInconsistencyError(
                f"Import tracking update failed after {description}: {exc}"
            )
            logger.warning("%s; next run will reconcile", inconsistency, exc_info=True)

    async def _apply_deletes(
        self, event_ids: list[str], result: ImportResult, advance: Callable[[int], None]
    ) -> None:
        try:
            await self._backend.bulk_delete_slots_by_external_id(event_ids)
        except Exception as exc:
            logger.error(
                "Failed to delete %d imported slots: %s", len(event_ids), exc, exc_info=True
            )
            result.failed += len(event_ids)
            result.errors.append(f"Delete failed: {exc}")
        else:
            result.removed += len(event_ids)
            logger.info("Deleted %d imported slots", len(event_ids))
            await self._track(
                "delete",
                (self._store.remove_imported_event(event_id) for event_id in event_ids),
            )
        advance(len(event_ids))

    async def _apply_updates(
        self,
        pairs: list[tuple[DeviceEvent, AvailabilitySlot]],
        result: ImportResult,
        advance: Callable[[int], None],
    ) -> None:
        updates = [self._build_update(event) for event, _ in pairs]
        try:
            await self._backend.bulk_update_slots(updates)
        except Exception as exc:
            logger.error("Failed to update %d imported slots: %s", len(updates), exc, exc_info=True)
            result.failed += len(updates)
            result.errors.append(f"Update failed: {exc}")
        else:
            result.succeeded += len(updates)
            logger.info("Updated %d imported slots", len(updates))
            await self._track(
                "update",
                (
                    self._store.save_imported_event(
                        event.id, slot.id or event.id, event.calendar_id
                    )
                    for event, slot in pairs
                ),
            )
        advance(len(updates))

    async def _apply_create_chunk(
        self,
        events: Sequence[DeviceEvent],
        result: ImportResult,
        advance: Callable[[int], None],
    ) -> None:
        slots = [self._build_slot(event) for event in events]
        try:
            created = await self._backend.bulk_create_slots(slots)
        except Exception as exc:
            logger.error("Failed to add %d imported slots: %s", len(slots), exc, exc_info=True)
            result.failed += len(slots)
            result.errors.append(f"Add failed: {exc}")
        else:
            result.succeeded += len(slots)
            logger.info("Added %d imported slots", len(slots))
            slot_ids = {
                slot.external_event_id: slot.id
                for slot in created
                if slot.external_event_id and slot.id
            }
            await self._track(
                "create",
                (
                    self._store.save_imported_event(
                        event.id, slot_ids.get(event.id, event.id), event.calendar_id
                    )
                    for event in events
                ),
            )
        advance(len(slots))

    async def reconcile(
        self,
        calendar_ids: Sequence[str],
        on_progress: ProgressCallback | None = None,
    ) -> ImportResult:
        """Run one full reconciliation over *calendar_ids*.

        Raises only when a whole-run precondition fails (permission missing,
        backend listing unavailable); per-operation failures are counted in
        the returned ``ImportResult``.
        """
        result = ImportResult()

        with sync_run_context("import"):
            start, end = self.import_window()
            logger.info("Syncing events from %s to %s", start.isoformat(), end.isoformat())

            events, backend_slots, exported_ids = await asyncio.gather(
                self.fetch_calendar_events(calendar_ids, start, end),
                self._backend.get_all_availability_slots(),
                self._store.exported_event_ids(),
            )
            managed_slots = select_managed_slots(
                backend_slots, *slot_window(start, end), {event.id for event in events}
            )
            logger.info(
                "Found %d calendar events, %d imported slots, %d exported events",
                len(events),
                len(managed_slots),
                len(exported_ids),
            )

            plan = compute_diff(events, managed_slots, exported_ids)
            result.skipped = plan.skipped
            logger.info(
                "Changes: %d to add, %d to update, %d to delete, %d unchanged",
                len(plan.to_add),
                len(plan.to_update),
                len(plan.to_delete),
                plan.skipped,
            )
            if plan.to_delete:
                logger.debug("Events to delete: %s", plan.to_delete)

            if plan.is_empty:
                logger.info("No changes detected, sync complete")
                await self._store.touch_last_import_time()
                return result

            total = plan.change_count
            done = 0

            def advance(count: int) -> None:
                nonlocal done
                done += count
                if on_progress is not None:
                    on_progress(done, total)

            operations = []
            if plan.to_delete:
                operations.append(self._apply_deletes(plan.to_delete, result, advance))
            if plan.to_update:
                operations.append(self._apply_updates(plan.to_update, result, advance))
            for chunk in _chunked(plan.to_add, self._chunk_size):
                operations.append(self._apply_create_chunk(chunk, result, advance))

            await asyncio.gather(*operations)
            await self._store.touch_last_import_time()

            logger.info(
                "Import complete: %d succeeded, %d failed, %d skipped, %d removed",
                result.succeeded,
                result.failed,
                result.skipped,
                result.removed,
            )
        return result

    async def remove_all(self, on_progress: ProgressCallback | None = None) -> ImportResult:
        """Delete every imported slot on the backend, then forget the tracking.

        Tracking is only cleared once the backend deletion succeeded; a
        backend failure is recorded and re-raised with tracking untouched.
        """
        result = ImportResult()
        tracked = await self._store.imported_events()
        total = len(tracked)
        if total == 0:
            logger.info("No imported events to remove")
            return result

        with sync_run_context("import-clear"):
            logger.info("Removing %d imported events from the backend", total)
            try:
                await self._backend.delete_all_imported_slots()
            except Exception as exc:
                logger.error("Failed to delete imported slots: %s", exc, exc_info=True)
                result.failed = total
                result.errors.append(f"Database deletion failed: {exc}")
                raise

            await self._store.clear_imported_events()
            result.succeeded = total
            if on_progress is not None:
                on_progress(total, total)
            logger.info("Cleared %d imported events (backend + tracking)", total)
        return result
