"""JSONB key-value state on PostgreSQL, used for durable sync cursors.

Rows live in a single table (``state`` unless configured otherwise)::

    key         TEXT PRIMARY KEY
    value       JSONB
    updated_at  TIMESTAMPTZ
    version     INTEGER   -- bumped on every upsert

Table names are interpolated into SQL, so they are validated as plain
identifiers first.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import asyncpg

logger = logging.getLogger(__name__)

DEFAULT_STATE_TABLE = "state"

_IDENTIFIER_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]{0,62}")


def _table(name: str) -> str:
    if not _IDENTIFIER_RE.fullmatch(name):
        raise ValueError(f"Invalid state table name: {name!r}")
    return name


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB column value as returned by asyncpg.

    Without a registered codec asyncpg hands back JSONB as text.  Values
    written by older clients may be JSON text wrapped in a JSON string, in
    which case a second pass is applied.
    """
    if not isinstance(val, str):
        return val
    decoded = json.loads(val)
    if not isinstance(decoded, str):
        return decoded
    try:
        inner = json.loads(decoded)
    except ValueError:
        return decoded
    logger.warning("Double-encoded JSONB detected; applied second decode pass")
    return inner


async def ensure_state_table(pool: asyncpg.Pool, table: str = DEFAULT_STATE_TABLE) -> None:
    """Create the state table if it does not exist yet."""
    name = _table(table)
    await pool.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {name} (
            key TEXT PRIMARY KEY,
            value JSONB NOT NULL DEFAULT '{{}}',
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            version INTEGER NOT NULL DEFAULT 1
        )
        """
    )


async def state_get(
    pool: asyncpg.Pool,
    key: str,
    *,
    table: str = DEFAULT_STATE_TABLE,
) -> Any | None:
    """Return the decoded value stored under *key*, or ``None``."""
    raw = await pool.fetchval(f"SELECT value FROM {_table(table)} WHERE key = $1", key)
    return None if raw is None else decode_jsonb(raw)


async def state_set(
    pool: asyncpg.Pool,
    key: str,
    value: Any,
    *,
    table: str = DEFAULT_STATE_TABLE,
) -> int:
    """Insert or replace *key* and return the row's version after the write."""
    name = _table(table)
    version: int = await pool.fetchval(
        f"""
        INSERT INTO {name} (key, value, updated_at, version)
        VALUES ($1, $2::jsonb, now(), 1)
        ON CONFLICT (key) DO UPDATE
            SET value = EXCLUDED.value,
                updated_at = now(),
                version = {name}.version + 1
        RETURNING version
        """,
        key,
        json.dumps(value),
    )
    return version


async def state_delete(
    pool: asyncpg.Pool,
    key: str,
    *,
    table: str = DEFAULT_STATE_TABLE,
) -> bool:
    """Delete *key*; returns whether a row was removed."""
    status = await pool.execute(f"DELETE FROM {_table(table)} WHERE key = $1", key)
    return status.rsplit(" ", 1)[-1] != "0"
