"""Test support utilities for the rehearsal_sync package.

In-memory stand-ins for the device calendar and the availability backend,
usable from the test suite and from local tooling.  Nothing here depends on
pytest.
"""

from __future__ import annotations

from rehearsal_sync.testing.doubles import InMemoryAvailabilityBackend, InMemoryDeviceCalendar

__all__ = ["InMemoryAvailabilityBackend", "InMemoryDeviceCalendar"]
