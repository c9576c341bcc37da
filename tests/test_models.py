"""Unit tests for rehearsal_sync.models."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from rehearsal_sync.models import (
    IMPORT_INTERVAL_DELTAS,
    AvailabilitySlot,
    CalendarSyncSettings,
    EventMapping,
    ImportInterval,
    ImportResult,
    SlotSource,
    SlotUpdate,
    ensure_utc,
    format_utc_millis,
)

pytestmark = pytest.mark.unit


class TestCalendarSyncSettings:
    def test_defaults(self):
        settings = CalendarSyncSettings()
        assert settings.export_enabled is False
        assert settings.export_calendar_id is None
        assert settings.import_enabled is False
        assert settings.import_calendar_ids == []
        assert settings.import_interval == ImportInterval.manual
        assert settings.last_import_time is None

    def test_calendar_ids_are_deduplicated_in_order(self):
        settings = CalendarSyncSettings(import_calendar_ids=["a", "b", "a", " ", "c"])
        assert settings.import_calendar_ids == ["a", "b", "c"]

    def test_reads_camel_case_record(self):
        settings = CalendarSyncSettings.model_validate(
            {
                "importEnabled": True,
                "importCalendarIds": ["cal-1"],
                "importInterval": "6hours",
                "lastImportTime": "2025-03-01T09:00:00.000Z",
            }
        )
        assert settings.import_enabled is True
        assert settings.import_interval == ImportInterval.every_6_hours
        assert settings.last_import_time == datetime(2025, 3, 1, 9, 0, tzinfo=UTC)

    def test_missing_interval_defaults_to_manual(self):
        settings = CalendarSyncSettings.model_validate({"importInterval": None})
        assert settings.import_interval == ImportInterval.manual

    def test_unknown_interval_rejected(self):
        with pytest.raises(ValidationError):
            CalendarSyncSettings.model_validate({"importInterval": "weekly"})


class TestImportInterval:
    def test_wire_values(self):
        assert [i.value for i in ImportInterval] == [
            "manual",
            "always",
            "15min",
            "hourly",
            "6hours",
            "daily",
        ]

    def test_interval_table(self):
        assert IMPORT_INTERVAL_DELTAS[ImportInterval.manual] is None
        assert IMPORT_INTERVAL_DELTAS[ImportInterval.always] == timedelta(0)
        assert IMPORT_INTERVAL_DELTAS[ImportInterval.every_15_minutes] == timedelta(minutes=15)
        assert IMPORT_INTERVAL_DELTAS[ImportInterval.hourly] == timedelta(hours=1)
        assert IMPORT_INTERVAL_DELTAS[ImportInterval.every_6_hours] == timedelta(hours=6)
        assert IMPORT_INTERVAL_DELTAS[ImportInterval.daily] == timedelta(days=1)


class TestAvailabilitySlot:
    def test_serializes_camel_case_with_millisecond_utc(self):
        slot = AvailabilitySlot(
            starts_at=datetime(2025, 3, 10, 10, 0, tzinfo=timezone(timedelta(hours=2))),
            ends_at=datetime(2025, 3, 10, 11, 0, tzinfo=timezone(timedelta(hours=2))),
            source=SlotSource.apple_calendar,
            external_event_id="e1",
            title="Standup",
        )
        payload = slot.model_dump(mode="json", by_alias=True)
        assert payload["startsAt"] == "2025-03-10T08:00:00.000Z"
        assert payload["endsAt"] == "2025-03-10T09:00:00.000Z"
        assert payload["externalEventId"] == "e1"
        assert payload["isAllDay"] is False
        assert payload["source"] == "apple_calendar"

    def test_is_imported_requires_external_source_and_event_id(self):
        start = datetime(2025, 3, 10, 10, 0, tzinfo=UTC)
        end = start + timedelta(hours=1)
        assert AvailabilitySlot(
            starts_at=start, ends_at=end, source=SlotSource.google_calendar, external_event_id="x"
        ).is_imported
        assert not AvailabilitySlot(
            starts_at=start, ends_at=end, source=SlotSource.apple_calendar
        ).is_imported
        assert not AvailabilitySlot(
            starts_at=start, ends_at=end, source=SlotSource.manual, external_event_id="x"
        ).is_imported
        assert not AvailabilitySlot(
            starts_at=start, ends_at=end, source=SlotSource.rehearsal, external_event_id="x"
        ).is_imported

    def test_naive_timestamps_are_taken_as_utc(self):
        slot = AvailabilitySlot.model_validate(
            {"startsAt": "2025-03-10T10:00:00", "endsAt": "2025-03-10T11:00:00"}
        )
        assert slot.starts_at.tzinfo is UTC

    def test_unknown_fields_ignored(self):
        slot = AvailabilitySlot.model_validate(
            {
                "startsAt": "2025-03-10T10:00:00Z",
                "endsAt": "2025-03-10T11:00:00Z",
                "userId": 42,
            }
        )
        assert slot.id is None


class TestSlotUpdate:
    def test_payload_shape(self):
        update = SlotUpdate(
            external_event_id="e1",
            starts_at=datetime(2025, 3, 10, tzinfo=UTC),
            ends_at=datetime(2025, 3, 10, 23, 59, 59, 999000, tzinfo=UTC),
            title="Holiday",
            is_all_day=True,
        )
        assert update.model_dump(mode="json", by_alias=True) == {
            "externalEventId": "e1",
            "startsAt": "2025-03-10T00:00:00.000Z",
            "endsAt": "2025-03-10T23:59:59.999Z",
            "title": "Holiday",
            "isAllDay": True,
        }


class TestHelpers:
    def test_ensure_utc_converts_offsets(self):
        value = datetime(2025, 3, 10, 1, 0, tzinfo=timezone(timedelta(hours=3)))
        assert ensure_utc(value) == datetime(2025, 3, 9, 22, 0, tzinfo=UTC)

    def test_format_utc_millis(self):
        assert format_utc_millis(datetime(2025, 1, 2, 3, 4, 5, 6789, tzinfo=UTC)) == (
            "2025-01-02T03:04:05.006Z"
        )


class TestRecords:
    def test_event_mapping_requires_event_id(self):
        with pytest.raises(ValidationError):
            EventMapping(event_id="", calendar_id="cal-1", last_synced=datetime.now(UTC))

    def test_import_result_defaults(self):
        result = ImportResult()
        assert (result.succeeded, result.failed, result.skipped, result.removed) == (0, 0, 0, 0)
        assert result.errors == []
