"""Collaborator contracts consumed by the sync engine, plus cursor stores."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from deltasync.core.state import (
    DEFAULT_STATE_TABLE,
    ensure_state_table,
    state_delete,
    state_get,
    state_set,
)
from deltasync.sync.errors import DeltaSyncError
from deltasync.sync.models import (
    NormalizedChange,
    ResourceType,
    SubscriptionRecord,
    SyncCursor,
)

logger = logging.getLogger(__name__)

CURSOR_KEY_PREFIX = "deltasync::cursor::"


class TokenProvider(Protocol):
    """Supplies access tokens; refreshing is entirely its concern."""

    async def get_valid_access_token(self, account_id: str) -> str:
        """Return a non-expired bearer token for *account_id*."""
        ...


class CursorStore(Protocol):
    """Persistence contract for one cursor per (account, resource type)."""

    async def get(self, account_id: str, resource_type: ResourceType) -> str | None:
        """Return the stored cursor token, or ``None`` when never synced."""
        ...

    async def upsert(self, account_id: str, resource_type: ResourceType, token: str) -> None:
        """Insert or overwrite the cursor token."""
        ...

    async def delete(self, account_id: str, resource_type: ResourceType) -> None:
        """Remove the cursor token.  No-op when absent."""
        ...


class SubscriptionStore(Protocol):
    """Read/deactivate access to the host application's webhook subscriptions."""

    async def find_by_subscription_id(self, subscription_id: str) -> SubscriptionRecord | None:
        ...

    async def deactivate(self, subscription_id: str) -> None:
        ...


class SubscriptionRenewer(Protocol):
    """Renews a provider webhook subscription (create/renew/delete live elsewhere)."""

    async def renew(self, subscription: SubscriptionRecord) -> SubscriptionRecord:
        """Renew *subscription* and return the updated record."""
        ...


class ChangeSink(Protocol):
    """Receives normalized change batches in delivery order."""

    async def __call__(self, batch: list[NormalizedChange]) -> None:
        ...


def _cursor_record(account_id: str, resource_type: ResourceType, token: str) -> dict[str, Any]:
    cursor = SyncCursor(account_id=account_id, resource_type=resource_type, token=token)
    return cursor.model_dump(mode="json")


def _token_from_record(raw: Any) -> str | None:
    if isinstance(raw, str):
        return raw or None
    if not isinstance(raw, dict):
        return None
    try:
        return SyncCursor.model_validate(raw).token
    except ValidationError:
        logger.warning("Ignoring malformed stored cursor record")
        return None


class StateCursorStore:
    """Cursor store on the JSONB ``state`` table via ``core.state``."""

    def __init__(
        self,
        pool: Any,
        *,
        key_prefix: str = CURSOR_KEY_PREFIX,
        table: str = DEFAULT_STATE_TABLE,
    ) -> None:
        self._pool = pool
        self._key_prefix = key_prefix
        self._table = table

    async def ensure_schema(self) -> None:
        await ensure_state_table(self._pool, self._table)

    def key(self, account_id: str, resource_type: ResourceType) -> str:
        return f"{self._key_prefix}{ResourceType(resource_type).value}::{account_id.strip()}"

    async def get(self, account_id: str, resource_type: ResourceType) -> str | None:
        raw = await state_get(self._pool, self.key(account_id, resource_type), table=self._table)
        return _token_from_record(raw)

    async def upsert(self, account_id: str, resource_type: ResourceType, token: str) -> None:
        version = await state_set(
            self._pool,
            self.key(account_id, resource_type),
            _cursor_record(account_id, resource_type, token),
            table=self._table,
        )
        logger.debug("Stored cursor for account %s (version %d)", account_id, version)

    async def delete(self, account_id: str, resource_type: ResourceType) -> None:
        key = self.key(account_id, resource_type)
        if await state_delete(self._pool, key, table=self._table):
            logger.debug("Deleted stored cursor for account %s", account_id)


class FileCursorStore:
    """Cursor store persisted as one JSON document on local disk.

    Suitable for single-process tools such as the CLI.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @staticmethod
    def _entry_key(account_id: str, resource_type: ResourceType) -> str:
        return f"{ResourceType(resource_type).value}::{account_id.strip()}"

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text())
        except ValueError as exc:
            raise DeltaSyncError(f"Cursor file {self._path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise DeltaSyncError(f"Cursor file {self._path} must contain a JSON object")
        return data

    def _write(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True))
        tmp_path.replace(self._path)

    async def get(self, account_id: str, resource_type: ResourceType) -> str | None:
        async with self._lock:
            data = self._read()
        return _token_from_record(data.get(self._entry_key(account_id, resource_type)))

    async def upsert(self, account_id: str, resource_type: ResourceType, token: str) -> None:
        async with self._lock:
            data = self._read()
            data[self._entry_key(account_id, resource_type)] = _cursor_record(
                account_id, resource_type, token
            )
            self._write(data)
        logger.debug("Saved cursor for account=%s resource=%s", account_id, resource_type)

    async def delete(self, account_id: str, resource_type: ResourceType) -> None:
        async with self._lock:
            data = self._read()
            if data.pop(self._entry_key(account_id, resource_type), None) is not None:
                self._write(data)
