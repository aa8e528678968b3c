"""Key-value state store for OAuth tokens, webhooks and reminder markers.

Two backends share the ``StateStore`` interface:

- ``InMemoryStateStore``: process-local dict, used by default and in tests
- ``PostgresStateStore``: asyncpg pool over a ``state`` table with a JSONB
  ``value`` column

Keys are namespaced by convention, e.g. ``calendar::webhook::{id}``.
"""

from __future__ import annotations

import abc
import copy
import json
import logging
from typing import Any

import asyncpg

logger = logging.getLogger(__name__)

STATE_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS state (
    key TEXT PRIMARY KEY,
    value JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    version INTEGER NOT NULL DEFAULT 1
)
"""


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value, handling potential double-encoding.

    asyncpg returns JSONB columns as Python strings when no custom codec is
    registered. If the stored value was double-encoded (a JSON string
    containing JSON text), a second pass is applied.
    """
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str):
        logger.warning("Double-encoded JSONB detected, applying second decode pass")
        try:
            val = json.loads(val)
        except (json.JSONDecodeError, ValueError):
            pass
    return val


async def state_get(pool: asyncpg.Pool, key: str) -> Any | None:
    """Return the JSONB value for *key*, or ``None`` if the key does not exist."""
    row = await pool.fetchval("SELECT value FROM state WHERE key = $1", key)
    if row is None:
        return None
    return decode_jsonb(row)


async def state_set(pool: asyncpg.Pool, key: str, value: Any) -> int:
    """Upsert *key* with *value* and return the row's new version."""
    json_value = json.dumps(value)
    new_version: int = await pool.fetchval(
        """
        INSERT INTO state (key, value, updated_at, version)
        VALUES ($1, $2::jsonb, now(), 1)
        ON CONFLICT (key) DO UPDATE
            SET value = EXCLUDED.value,
                updated_at = now(),
                version = state.version + 1
        RETURNING version
        """,
        key,
        json_value,
    )
    return new_version


async def state_delete(pool: asyncpg.Pool, key: str) -> None:
    """Delete *key*. No-op if the key does not exist."""
    await pool.execute("DELETE FROM state WHERE key = $1", key)


async def state_list(pool: asyncpg.Pool, prefix: str | None = None) -> list[str]:
    """Return keys ordered by key, optionally filtered by prefix."""
    if prefix is not None:
        rows = await pool.fetch(
            "SELECT key FROM state WHERE key LIKE $1 ORDER BY key",
            f"{prefix}%",
        )
    else:
        rows = await pool.fetch("SELECT key FROM state ORDER BY key")
    return [row["key"] for row in rows]


class StateStore(abc.ABC):
    """Async key-value persistence for JSON-serialisable values."""

    @abc.abstractmethod
    async def get(self, key: str) -> Any | None: ...

    @abc.abstractmethod
    async def set(self, key: str, value: Any) -> None: ...

    @abc.abstractmethod
    async def delete(self, key: str) -> None: ...

    @abc.abstractmethod
    async def list_keys(self, prefix: str | None = None) -> list[str]: ...

    async def close(self) -> None:
        """Release backend resources."""
        return None


class InMemoryStateStore(StateStore):
    """Dict-backed store. Values are deep-copied on the way in and out."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    async def get(self, key: str) -> Any | None:
        if key not in self._data:
            return None
        return copy.deepcopy(self._data[key])

    async def set(self, key: str, value: Any) -> None:
        # Round-trip through JSON so the in-memory backend rejects what Postgres would.
        self._data[key] = json.loads(json.dumps(value))

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list_keys(self, prefix: str | None = None) -> list[str]:
        keys = sorted(self._data)
        if prefix is None:
            return keys
        return [key for key in keys if key.startswith(prefix)]


class PostgresStateStore(StateStore):
    """asyncpg-backed store over the ``state`` table."""

    def __init__(self, pool: asyncpg.Pool, *, owns_pool: bool = False) -> None:
        self._pool = pool
        self._owns_pool = owns_pool

    @classmethod
    async def connect(cls, dsn: str) -> PostgresStateStore:
        pool = await asyncpg.create_pool(dsn=dsn, min_size=1, max_size=5)
        store = cls(pool, owns_pool=True)
        await store.ensure_schema()
        return store

    async def ensure_schema(self) -> None:
        await self._pool.execute(STATE_TABLE_DDL)

    async def get(self, key: str) -> Any | None:
        return await state_get(self._pool, key)

    async def set(self, key: str, value: Any) -> None:
        await state_set(self._pool, key, value)

    async def delete(self, key: str) -> None:
        await state_delete(self._pool, key)

    async def list_keys(self, prefix: str | None = None) -> list[str]:
        return await state_list(self._pool, prefix)

    async def close(self) -> None:
        if self._owns_pool:
            await self._pool.close()
