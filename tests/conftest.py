"""Shared test doubles for the deltasync test suite."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest

from deltasync.config import FetcherConfig
from deltasync.sync.backoff import BackoffExecutor, BackoffPolicy
from deltasync.sync.fetcher import DeltaPageFetcher
from deltasync.sync.models import NormalizedChange, ResourceType, SubscriptionRecord
from deltasync.sync.rate_limiter import AccountRateLimiter

GRAPH = "https://graph.microsoft.com/v1.0"


class FakeClock:
    """Monotonic clock that only advances when something sleeps on it."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class InMemoryCursorStore:
    def __init__(self, initial: dict[tuple[str, ResourceType], str] | None = None) -> None:
        self.cursors: dict[tuple[str, ResourceType], str] = dict(initial or {})
        self.events: list[tuple[str, str | None]] = []

    async def get(self, account_id: str, resource_type: ResourceType) -> str | None:
        return self.cursors.get((account_id, ResourceType(resource_type)))

    async def upsert(self, account_id: str, resource_type: ResourceType, token: str) -> None:
        self.events.append(("upsert", token))
        self.cursors[(account_id, ResourceType(resource_type))] = token

    async def delete(self, account_id: str, resource_type: ResourceType) -> None:
        self.events.append(("delete", None))
        self.cursors.pop((account_id, ResourceType(resource_type)), None)


class StaticTokenProvider:
    def __init__(self, token: str = "tok-1") -> None:
        self.token = token
        self.calls: list[str] = []

    async def get_valid_access_token(self, account_id: str) -> str:
        self.calls.append(account_id)
        return self.token


class RecordingSink:
    def __init__(self, *, fail: Exception | None = None) -> None:
        self.batches: list[list[NormalizedChange]] = []
        self.fail = fail

    async def __call__(self, batch: list[NormalizedChange]) -> None:
        if self.fail is not None:
            raise self.fail
        self.batches.append(list(batch))


def subscription_record(**overrides) -> SubscriptionRecord:
    values = {
        "subscription_id": "sub-1",
        "account_id": "acct-1",
        "expires_at": datetime.now(UTC) + timedelta(days=2),
        "resource": "/me/events",
    }
    values.update(overrides)
    return SubscriptionRecord(**values)


class FakeSubscriptionStore:
    def __init__(self, *records: SubscriptionRecord) -> None:
        self.records = {record.subscription_id: record for record in records}
        self.deactivated: list[str] = []

    async def find_by_subscription_id(self, subscription_id: str) -> SubscriptionRecord | None:
        return self.records.get(subscription_id)

    async def deactivate(self, subscription_id: str) -> None:
        self.deactivated.append(subscription_id)
        record = self.records[subscription_id]
        self.records[subscription_id] = record.model_copy(update={"is_active": False})


class FakeRenewer:
    def __init__(self, *, fail: Exception | None = None) -> None:
        self.fail = fail
        self.renewed: list[str] = []

    async def renew(self, subscription: SubscriptionRecord) -> SubscriptionRecord:
        if self.fail is not None:
            raise self.fail
        self.renewed.append(subscription.subscription_id)
        return subscription.model_copy(
            update={"expires_at": subscription.expires_at + timedelta(days=3)}
        )


class FakeEngine:
    def __init__(
        self,
        *,
        changes: int = 0,
        fail: Exception | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.changes = changes
        self.fail = fail
        self.gate = gate
        self.calls: list[tuple[str, ResourceType]] = []

    async def sync(self, account_id: str, resource_type: ResourceType = ResourceType.CALENDAR):
        self.calls.append((account_id, resource_type))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        return [object()] * self.changes


class RecordingHook:
    def __init__(self, *, fail: Exception | None = None) -> None:
        self.events: list[tuple[str, dict]] = []
        self.fail = fail

    async def __call__(self, name: str, payload: dict) -> None:
        self.events.append((name, payload))
        if self.fail is not None:
            raise self.fail


def make_fetcher(
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    clock: FakeClock | None = None,
    config: FetcherConfig | None = None,
    max_retries: int = 3,
    token_provider: Any = None,
) -> DeltaPageFetcher:
    """Build a fetcher over ``httpx.MockTransport`` with no real sleeping."""
    clock = clock or FakeClock()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DeltaPageFetcher(
        token_provider or StaticTokenProvider(),
        rate_limiter=AccountRateLimiter(clock=clock, sleep=clock.sleep),
        executor=BackoffExecutor(
            BackoffPolicy(max_retries=max_retries, base_delay_seconds=1.0),
            sleep=clock.sleep,
        ),
        config=config or FetcherConfig(detail_paths={}),
        http_client=client,
        sleep=clock.sleep,
    )


def event(
    item_id: str | None,
    *,
    created: str | None = "2024-05-01T10:00:00Z",
    modified: str | None = None,
    removed: bool = False,
    **extra: Any,
) -> dict[str, Any]:
    """Build a Graph-shaped delta item."""
    payload: dict[str, Any] = dict(extra)
    if item_id is not None:
        payload["id"] = item_id
    if removed:
        payload["@removed"] = {"reason": "deleted"}
        return payload
    if created is not None:
        payload["createdDateTime"] = created
    if modified is not None:
        payload["lastModifiedDateTime"] = modified
    return payload


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cursor_store() -> InMemoryCursorStore:
    return InMemoryCursorStore()
