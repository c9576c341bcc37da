"""Bidirectional sync between rehearsals, availability slots and a device calendar."""

from rehearsal_sync.service import CalendarSyncService

__all__ = ["CalendarSyncService"]
