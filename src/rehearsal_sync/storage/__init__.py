"""Persistence for sync mappings, import tracking and settings."""

from rehearsal_sync.storage.mappings import (
    EXPORT_MAPPINGS,
    IMPORT_TRACKING,
    SYNC_SETTINGS,
    MappingStore,
)
from rehearsal_sync.storage.state import (
    KeyValueStore,
    MemoryStateStore,
    PostgresStateStore,
    decode_jsonb,
)

__all__ = [
    "EXPORT_MAPPINGS",
    "IMPORT_TRACKING",
    "SYNC_SETTINGS",
    "KeyValueStore",
    "MappingStore",
    "MemoryStateStore",
    "PostgresStateStore",
    "decode_jsonb",
]
