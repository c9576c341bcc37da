"""Error taxonomy shared by the export and import pipelines.

Batch runners convert per-item failures into counters on a result object;
only precondition failures (``PermissionDeniedError`` and the
``PreconditionError`` family) escape a batch run.
"""

from __future__ import annotations


class CalendarSyncError(RuntimeError):
    """Base error raised by calendar sync components."""


class PermissionDeniedError(CalendarSyncError):
    """Raised when the host OS has not granted calendar access."""

    def __init__(self, message: str = "Calendar permission not granted") -> None:
        super().__init__(message)


class EventNotFoundError(CalendarSyncError):
    """Raised when a device calendar event no longer resolves."""

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Calendar event {event_id!r} not found")


class TransientIOError(CalendarSyncError):
    """Raised when a single device or backend call fails; safe to retry."""


class BackendRequestError(TransientIOError):
    """Raised when the availability backend answers with a non-2xx status."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Availability backend request failed ({status_code}): {message}")


class DataInconsistencyError(CalendarSyncError):
    """Backend accepted a write but local tracking could not be updated."""


class PreconditionError(CalendarSyncError):
    """Base class for whole-operation precondition failures."""


class NoCalendarSelectedError(PreconditionError):
    """Raised when export is requested without a target calendar."""

    def __init__(self) -> None:
        super().__init__("No calendar selected")


class ImportNotConfiguredError(PreconditionError):
    """Raised when import is requested but disabled or has no calendars."""


class SyncInProgressError(CalendarSyncError):
    """Raised when a manual reconciliation overlaps a running one."""

    def __init__(self) -> None:
        super().__init__("A calendar import is already running")
