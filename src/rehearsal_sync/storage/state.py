"""Key-value state store port and its implementations.

``MemoryStateStore`` keeps JSON-serialisable values in a dict (tests, local
tooling).  ``PostgresStateStore`` persists them in the
``calendar_sync_state`` JSONB table created by the Alembic migration.

All operations are total over the key space: reading a missing key yields
``None`` and deleting one is a no-op.  Writes are last-write-wins.
"""

from __future__ import annotations

import abc
import copy
import json
import logging
from typing import Any

import asyncpg

logger = logging.getLogger(__name__)

STATE_TABLE = "calendar_sync_state"


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value, handling potential double-encoding.

    asyncpg returns JSONB columns as text when no codec is registered.  A
    value that was JSON-encoded twice before storage needs a second pass.
    """
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str):
        logger.warning("Double-encoded JSONB detected; applying second decode pass")
        try:
            val = json.loads(val)
        except (json.JSONDecodeError, ValueError):
            pass
    return val


class KeyValueStore(abc.ABC):
    """Async key-value persistence with prefix listing."""

    @abc.abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the stored value for *key*, or ``None``."""
        ...

    @abc.abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Upsert *key* with a JSON-serialisable *value*."""
        ...

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        """Remove *key*; no-op when absent."""
        ...

    @abc.abstractmethod
    async def list(self, prefix: str) -> dict[str, Any]:
        """Return ``{key: value}`` for every key starting with *prefix*, ordered by key."""
        ...

    @abc.abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Remove every key starting with *prefix*; return how many were removed."""
        ...


class MemoryStateStore(KeyValueStore):
    """Process-local store; values are deep-copied on the way in and out."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}

    async def get(self, key: str) -> Any | None:
        return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        # Round-trip through JSON so non-serialisable values fail like they would in Postgres.
        self._data[key] = json.loads(json.dumps(value))

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list(self, prefix: str) -> dict[str, Any]:
        return {
            key: copy.deepcopy(self._data[key])
            for key in sorted(self._data)
            if key.startswith(prefix)
        }

    async def delete_prefix(self, prefix: str) -> int:
        doomed = [key for key in self._data if key.startswith(prefix)]
        for key in doomed:
            del self._data[key]
        return len(doomed)

    def snapshot(self) -> dict[str, Any]:
        """Return a copy of the raw contents (debugging and tests)."""
        return copy.deepcopy(self._data)


class PostgresStateStore(KeyValueStore):
    """JSONB-backed store on an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @classmethod
    async def connect(cls, dsn: str) -> PostgresStateStore:
        pool = await asyncpg.create_pool(dsn, min_size=1, max_size=5)
        return cls(pool)

    async def close(self) -> None:
        await self._pool.close()

    async def get(self, key: str) -> Any | None:
        row = await self._pool.fetchval(
            f"SELECT value FROM {STATE_TABLE} WHERE key = $1",
            key,
        )
        if row is None:
            return None
        return decode_jsonb(row)

    async def set(self, key: str, value: Any) -> None:
        json_value = json.dumps(value)
        await self._pool.execute(
            f"""
            INSERT INTO {STATE_TABLE} (key, value, updated_at)
            VALUES ($1, $2::jsonb, now())
            ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value,
                    updated_at = now()
            """,
            key,
            json_value,
        )

    async def delete(self, key: str) -> None:
        await self._pool.execute(f"DELETE FROM {STATE_TABLE} WHERE key = $1", key)

    async def list(self, prefix: str) -> dict[str, Any]:
        rows = await self._pool.fetch(
            f"SELECT key, value FROM {STATE_TABLE} WHERE starts_with(key, $1) ORDER BY key",
            prefix,
        )
        return {row["key"]: decode_jsonb(row["value"]) for row in rows}

    async def delete_prefix(self, prefix: str) -> int:
        rows = await self._pool.fetch(
            f"DELETE FROM {STATE_TABLE} WHERE starts_with(key, $1) RETURNING key",
            prefix,
        )
        return len(rows)
