"""Shared fixtures for the rehearsal_sync test suite.

Every fixture is backed by the in-memory doubles from ``rehearsal_sync.testing``
and a ``MappingStore`` whose clock is pinned to ``tests.factories.NOW``.
"""

from __future__ import annotations

import pytest

from rehearsal_sync.calendars import PermissionGateway
from rehearsal_sync.storage import MappingStore, MemoryStateStore
from rehearsal_sync.testing import InMemoryAvailabilityBackend, InMemoryDeviceCalendar
from tests.factories import NOW


@pytest.fixture
def device() -> InMemoryDeviceCalendar:
    calendar = InMemoryDeviceCalendar()
    calendar.add_calendar("cal-1", "Personal", primary=True)
    return calendar


@pytest.fixture
def backend() -> InMemoryAvailabilityBackend:
    return InMemoryAvailabilityBackend()


@pytest.fixture
def state_store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def store(state_store: MemoryStateStore) -> MappingStore:
    return MappingStore(state_store, clock=lambda: NOW)


@pytest.fixture
def permissions(device: InMemoryDeviceCalendar) -> PermissionGateway:
    return PermissionGateway(device)
