"""Device calendar contract consumed by the sync pipelines.

The host platform (EventKit, Android CalendarContract, a CalDAV bridge...)
is wrapped behind ``DeviceCalendarProvider``.  Implementations raise
``EventNotFoundError`` when an event id no longer resolves and
``PermissionDeniedError`` when calendar access is missing; any other
failure should surface as ``TransientIOError``.
"""

from __future__ import annotations

import abc
from collections.abc import Sequence
from datetime import datetime

from rehearsal_sync.errors import PermissionDeniedError
from rehearsal_sync.models import DeviceCalendar, DeviceEvent, DeviceEventCreate, DeviceEventUpdate


class DeviceCalendarProvider(abc.ABC):
    """Provider abstraction over the host OS calendar store."""

    @abc.abstractmethod
    async def has_permission(self) -> bool:
        """Return whether calendar access is currently granted."""
        ...

    @abc.abstractmethod
    async def request_permission(self) -> bool:
        """Prompt for calendar access and return whether it was granted."""
        ...

    @abc.abstractmethod
    async def list_calendars(self) -> list[DeviceCalendar]:
        """Return every event calendar known to the device."""
        ...

    @abc.abstractmethod
    async def list_events(
        self,
        calendar_ids: Sequence[str],
        start: datetime,
        end: datetime,
    ) -> list[DeviceEvent]:
        """Return event instances overlapping ``[start, end]`` in the given calendars."""
        ...

    @abc.abstractmethod
    async def create_event(self, calendar_id: str, payload: DeviceEventCreate) -> str:
        """Create an event and return its id."""
        ...

    @abc.abstractmethod
    async def update_event(self, event_id: str, patch: DeviceEventUpdate) -> None:
        """Apply a partial update to an existing event."""
        ...

    @abc.abstractmethod
    async def delete_event(self, event_id: str) -> None:
        """Delete an event."""
        ...

    @abc.abstractmethod
    async def get_event(self, event_id: str) -> DeviceEvent | None:
        """Fetch a single event, or ``None`` when it does not exist."""
        ...


class HeadlessDeviceCalendar(DeviceCalendarProvider):
    """Provider for hosts without a device calendar (CLI, server jobs).

    Permission is never granted, so every calendar operation fails with
    ``PermissionDeniedError``; backend-only operations still work.
    """

    async def has_permission(self) -> bool:
        return False

    async def request_permission(self) -> bool:
        return False

    async def list_calendars(self) -> list[DeviceCalendar]:
        raise PermissionDeniedError()

    async def list_events(
        self,
        calendar_ids: Sequence[str],
        start: datetime,
        end: datetime,
    ) -> list[DeviceEvent]:
        raise PermissionDeniedError()

    async def create_event(self, calendar_id: str, payload: DeviceEventCreate) -> str:
        raise PermissionDeniedError()

    async def update_event(self, event_id: str, patch: DeviceEventUpdate) -> None:
        raise PermissionDeniedError()

    async def delete_event(self, event_id: str) -> None:
        raise PermissionDeniedError()

    async def get_event(self, event_id: str) -> DeviceEvent | None:
        raise PermissionDeniedError()
