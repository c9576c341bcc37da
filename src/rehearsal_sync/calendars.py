"""Permission gateway and writable-calendar enumeration."""

from __future__ import annotations

import logging

from rehearsal_sync.device import DeviceCalendarProvider
from rehearsal_sync.errors import PermissionDeniedError
from rehearsal_sync.models import DeviceCalendar

logger = logging.getLogger(__name__)


class PermissionGateway:
    """Fail-closed wrapper around the OS calendar permission APIs.

    Any error from the provider is reported as "not granted".
    """

    def __init__(self, provider: DeviceCalendarProvider) -> None:
        self._provider = provider

    async def has_permission(self) -> bool:
        try:
            return bool(await self._provider.has_permission())
        except Exception as exc:
            logger.error("Failed to check calendar permission: %s", exc, exc_info=True)
            return False

    async def request_permission(self) -> bool:
        try:
            granted = bool(await self._provider.request_permission())
        except Exception as exc:
            logger.error("Failed to request calendar permission: %s", exc, exc_info=True)
            return False
        logger.info("Calendar permission granted=%s", granted)
        return granted

    async def require_permission(self) -> None:
        """Raise ``PermissionDeniedError`` unless calendar access is granted."""
        if not await self.has_permission():
            raise PermissionDeniedError()


class CalendarEnumerator:
    def __init__(self, provider: DeviceCalendarProvider, permissions: PermissionGateway) -> None:
        self._provider = provider
        self._permissions = permissions

    async def list_writable_calendars(self) -> list[DeviceCalendar]:
        """Return calendars the OS reports as modifiable.

        Missing permission or a provider failure yields an empty list.
        """
        if not await self._permissions.has_permission():
            logger.info("No calendar permission; returning no calendars")
            return []
        try:
            calendars = await self._provider.list_calendars()
        except Exception as exc:
            logger.error("Failed to list device calendars: %s", exc, exc_info=True)
            return []

        writable = [calendar for calendar in calendars if calendar.writable]
        logger.info("Found %d writable calendars", len(writable))
        return writable

    async def default_calendar(self) -> DeviceCalendar | None:
        """Primary calendar if flagged, else the first writable one."""
        calendars = await self.list_writable_calendars()
        if not calendars:
            return None
        for calendar in calendars:
            if calendar.is_primary:
                return calendar
        return calendars[0]
