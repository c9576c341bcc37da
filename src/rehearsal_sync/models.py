"""Data model for rehearsal export and availability import.

All persisted and wire-level shapes use camelCase aliases so that stored
records and backend payloads keep the field names the mobile client and the
availability API already agree on (``eventId``, ``startsAt``, ``isAllDay``...).
Python code always uses the snake_case attribute names.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

DEFAULT_IMPORTED_TITLE = "Calendar Event"


class ImportInterval(StrEnum):
    """How often the orchestrator may re-run import on foreground events."""

    manual = "manual"
    always = "always"
    every_15_minutes = "15min"
    hourly = "hourly"
    every_6_hours = "6hours"
    daily = "daily"


# ``None`` means "never automatically"; a zero delta means "every foreground event".
IMPORT_INTERVAL_DELTAS: dict[ImportInterval, timedelta | None] = {
    ImportInterval.manual: None,
    ImportInterval.always: timedelta(0),
    ImportInterval.every_15_minutes: timedelta(minutes=15),
    ImportInterval.hourly: timedelta(hours=1),
    ImportInterval.every_6_hours: timedelta(hours=6),
    ImportInterval.daily: timedelta(days=1),
}


class SlotType(StrEnum):
    busy = "busy"
    available = "available"
    tentative = "tentative"


class SlotSource(StrEnum):
    """Origin of an availability slot on the backend."""

    manual = "manual"
    rehearsal = "rehearsal"
    apple_calendar = "apple_calendar"
    google_calendar = "google_calendar"


EXTERNAL_CALENDAR_SOURCES = frozenset({SlotSource.apple_calendar, SlotSource.google_calendar})


class SyncStatus(StrEnum):
    idle = "idle"
    syncing = "syncing"
    success = "success"
    error = "error"


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def format_utc_millis(value: datetime) -> str:
    """Render *value* as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    return ensure_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Mapping store records
# ---------------------------------------------------------------------------


class EventMapping(_CamelModel):
    """Rehearsal -> exported device event."""

    event_id: str = Field(min_length=1)
    calendar_id: str
    last_synced: datetime


class ImportedEvent(_CamelModel):
    """Device event -> availability slot created from it."""

    local_slot_id: str
    calendar_id: str
    last_imported: datetime


class CalendarSyncSettings(_CamelModel):
    """User-editable sync settings; singleton record in the mapping store."""

    export_enabled: bool = False
    export_calendar_id: str | None = None
    last_export_time: datetime | None = None
    import_enabled: bool = False
    import_calendar_ids: list[str] = Field(default_factory=list)
    import_interval: ImportInterval = ImportInterval.manual
    last_import_time: datetime | None = None

    @field_validator("import_calendar_ids", mode="before")
    @classmethod
    def _dedupe_calendar_ids(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list | tuple | set | frozenset):
            seen: dict[str, None] = {}
            for item in value:
                if isinstance(item, str) and item.strip():
                    seen.setdefault(item.strip(), None)
            return list(seen)
        return value

    @field_validator("import_interval", mode="before")
    @classmethod
    def _default_interval(cls, value: Any) -> Any:
        if value is None or value == "":
            return ImportInterval.manual
        return value


# ---------------------------------------------------------------------------
# Backend shapes
# ---------------------------------------------------------------------------


class AvailabilitySlot(_CamelModel):
    """Availability slot as owned by the backend."""

    id: str | None = None
    starts_at: datetime
    ends_at: datetime
    type: SlotType = SlotType.busy
    source: SlotSource = SlotSource.manual
    external_event_id: str | None = None
    title: str | None = None
    is_all_day: bool = False

    @field_validator("starts_at", "ends_at")
    @classmethod
    def _normalize_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_serializer("starts_at", "ends_at")
    def _serialize_timestamp(self, value: datetime) -> str:
        return format_utc_millis(value)

    @property
    def is_imported(self) -> bool:
        """True when the slot came from a device calendar and carries its event id."""
        return self.source in EXTERNAL_CALENDAR_SOURCES and bool(self.external_event_id)


class SlotUpdate(_CamelModel):
    """Field changes for one imported slot, keyed by its external event id."""

    external_event_id: str
    starts_at: datetime
    ends_at: datetime
    title: str
    is_all_day: bool = False

    @field_serializer("starts_at", "ends_at")
    def _serialize_timestamp(self, value: datetime) -> str:
        return format_utc_millis(value)


class RehearsalWithProject(_CamelModel):
    """Read-only rehearsal projection used for export."""

    model_config = ConfigDict(frozen=True)

    id: str
    project_id: str
    project_name: str
    starts_at: datetime
    ends_at: datetime
    location: str | None = None
    title: str | None = None
    description: str | None = None


# ---------------------------------------------------------------------------
# Device calendar shapes
# ---------------------------------------------------------------------------


class DeviceCalendar(_CamelModel):
    id: str
    title: str
    writable: bool = False
    is_primary: bool = False


class DeviceEvent(_CamelModel):
    """Event instance as reported by the device calendar."""

    id: str
    calendar_id: str
    title: str | None = None
    start_date: datetime
    end_date: datetime
    all_day: bool = False
    location: str | None = None
    notes: str | None = None


class DeviceEventCreate(_CamelModel):
    title: str
    start_date: datetime
    end_date: datetime
    location: str | None = None
    notes: str | None = None
    reminder_minutes_before: int = Field(default=30, ge=0)
    busy: bool = True


class DeviceEventUpdate(_CamelModel):
    """Partial update; ``None`` fields are left untouched and an empty ``location`` clears it."""

    title: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    location: str | None = None
    notes: str | None = None


# ---------------------------------------------------------------------------
# Batch results
# ---------------------------------------------------------------------------


class BatchSyncResult(BaseModel):
    """Accumulated outcome of an export batch run."""

    succeeded: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)


class ImportResult(BaseModel):
    """Accumulated outcome of an import reconciliation run.

    ``removed`` counts slots deleted because their source event disappeared;
    deletions are not part of ``succeeded``.
    """

    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    removed: int = 0
    errors: list[str] = Field(default_factory=list)
