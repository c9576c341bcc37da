"""Typed access to the three persisted sync records.

Layout inside the key-value store::

    {namespace}/export-mappings::{rehearsal_id}   -> EventMapping
    {namespace}/import-tracking::{event_id}       -> ImportedEvent
    {namespace}/sync-settings                     -> CalendarSyncSettings

Each mapping lives under its own key, so concurrent per-item writes from a
batch never overwrite each other.  Missing or unreadable records read as
absent/default; nothing here raises for a missing key.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ValidationError

from rehearsal_sync.models import CalendarSyncSettings, EventMapping, ImportedEvent
from rehearsal_sync.storage.state import KeyValueStore

logger = logging.getLogger(__name__)

EXPORT_MAPPINGS = "export-mappings"
IMPORT_TRACKING = "import-tracking"
SYNC_SETTINGS = "sync-settings"
DEFAULT_NAMESPACE = "calendar-sync"
_ENTRY_SEPARATOR = "::"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class MappingStore:
    """Pure data access for export mappings, import tracking and settings."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        namespace: str = DEFAULT_NAMESPACE,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._namespace = namespace.strip("/")
        self._clock = clock
        self._settings_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Key helpers
    # ------------------------------------------------------------------

    def _record_key(self, name: str) -> str:
        return f"{self._namespace}/{name}" if self._namespace else name

    def _entry_prefix(self, name: str) -> str:
        return f"{self._record_key(name)}{_ENTRY_SEPARATOR}"

    def _entry_key(self, name: str, entry_id: str) -> str:
        return f"{self._entry_prefix(name)}{entry_id}"

    @staticmethod
    def _dump(model: BaseModel) -> dict[str, Any]:
        return model.model_dump(mode="json", by_alias=True)

    @staticmethod
    def _load(model_cls: type[BaseModel], key: str, raw: Any) -> Any:
        if not isinstance(raw, dict):
            if raw is not None:
                logger.warning("Ignoring non-object value stored under %s", key)
            return None
        try:
            return model_cls.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Ignoring unreadable record under %s: %s", key, exc)
            return None

    async def _load_entries(self, name: str, model_cls: type[BaseModel]) -> dict[str, Any]:
        prefix = self._entry_prefix(name)
        raw_entries = await self._store.list(prefix)
        entries: dict[str, Any] = {}
        for key, raw in raw_entries.items():
            record = self._load(model_cls, key, raw)
            if record is not None:
                entries[key[len(prefix) :]] = record
        return entries

    # ------------------------------------------------------------------
    # Export mappings (rehearsal id -> device event)
    # ------------------------------------------------------------------

    async def save_event_mapping(
        self, rehearsal_id: str, event_id: str, calendar_id: str
    ) -> EventMapping:
        mapping = EventMapping(event_id=event_id, calendar_id=calendar_id, last_synced=self._clock())
        await self._store.set(self._entry_key(EXPORT_MAPPINGS, rehearsal_id), self._dump(mapping))
        return mapping

    async def get_event_mapping(self, rehearsal_id: str) -> EventMapping | None:
        key = self._entry_key(EXPORT_MAPPINGS, rehearsal_id)
        return self._load(EventMapping, key, await self._store.get(key))

    async def remove_event_mapping(self, rehearsal_id: str) -> None:
        await self._store.delete(self._entry_key(EXPORT_MAPPINGS, rehearsal_id))

    async def all_event_mappings(self) -> dict[str, EventMapping]:
        return await self._load_entries(EXPORT_MAPPINGS, EventMapping)

    async def exported_event_ids(self) -> set[str]:
        mappings = await self.all_event_mappings()
        return {mapping.event_id for mapping in mappings.values()}

    async def clear_event_mappings(self) -> int:
        return await self._store.delete_prefix(self._entry_prefix(EXPORT_MAPPINGS))

    async def is_rehearsal_synced(self, rehearsal_id: str) -> bool:
        return await self.get_event_mapping(rehearsal_id) is not None

    async def synced_count(self) -> int:
        return len(await self.all_event_mappings())

    # ------------------------------------------------------------------
    # Import tracking (device event -> availability slot)
    # ------------------------------------------------------------------

    async def save_imported_event(
        self, event_id: str, local_slot_id: str, calendar_id: str
    ) -> ImportedEvent:
        record = ImportedEvent(
            local_slot_id=local_slot_id,
            calendar_id=calendar_id,
            last_imported=self._clock(),
        )
        await self._store.set(self._entry_key(IMPORT_TRACKING, event_id), self._dump(record))
        return record

    async def get_imported_event(self, event_id: str) -> ImportedEvent | None:
        key = self._entry_key(IMPORT_TRACKING, event_id)
        return self._load(ImportedEvent, key, await self._store.get(key))

    async def remove_imported_event(self, event_id: str) -> None:
        await self._store.delete(self._entry_key(IMPORT_TRACKING, event_id))

    async def imported_events(self) -> dict[str, ImportedEvent]:
        return await self._load_entries(IMPORT_TRACKING, ImportedEvent)

    async def clear_imported_events(self) -> int:
        return await self._store.delete_prefix(self._entry_prefix(IMPORT_TRACKING))

    async def imported_count(self) -> int:
        return len(await self.imported_events())

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def get_settings(self) -> CalendarSyncSettings:
        key = self._record_key(SYNC_SETTINGS)
        settings = self._load(CalendarSyncSettings, key, await self._store.get(key))
        return settings if settings is not None else CalendarSyncSettings()

    async def save_settings(self, settings: CalendarSyncSettings) -> None:
        await self._store.set(self._record_key(SYNC_SETTINGS), self._dump(settings))

    async def update_settings(self, **changes: Any) -> CalendarSyncSettings:
        """Merge *changes* (snake_case field names) into the stored settings."""
        unknown = set(changes) - set(CalendarSyncSettings.model_fields)
        if unknown:
            raise ValueError(f"Unknown sync setting(s): {', '.join(sorted(unknown))}")

        async with self._settings_lock:
            current = await self.get_settings()
            merged = {**current.model_dump(), **changes}
            updated = CalendarSyncSettings.model_validate(merged)
            await self.save_settings(updated)
            return updated

    async def touch_last_export_time(self) -> CalendarSyncSettings:
        return await self.update_settings(last_export_time=self._clock())

    async def touch_last_import_time(self) -> CalendarSyncSettings:
        return await self.update_settings(last_import_time=self._clock())
