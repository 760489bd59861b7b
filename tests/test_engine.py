"""Tests for the incremental sync engine's cursor lifecycle."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import httpx
import pytest

from deltasync.config import EngineConfig
from deltasync.sync.engine import IncrementalSyncEngine, SyncMode
from deltasync.sync.errors import CursorExpiredError
from deltasync.sync.fetcher import DELTA_LINK_KEY, NEXT_LINK_KEY
from deltasync.sync.models import ChangeKind, DateWindow, NormalizedChange, ResourceType
from tests.conftest import GRAPH, InMemoryCursorStore, RecordingSink, event, make_fetcher

pytestmark = pytest.mark.unit

CALENDAR = ResourceType.CALENDAR


def _cursor(token: str) -> str:
    return f"{GRAPH}/me/events/delta?token={token}"


def _next(page: int) -> str:
    return f"{GRAPH}/me/events/delta?page={page}"


def _page(items: list[dict], *, next_page: int | None = None, cursor: str | None = None) -> dict:
    body: dict[str, Any] = {"value": items}
    if next_page is not None:
        body[NEXT_LINK_KEY] = _next(next_page)
    if cursor is not None:
        body[DELTA_LINK_KEY] = _cursor(cursor)
    return body


class _Feed:
    """Routes requests to canned pages keyed by ``fresh``, ``page:N`` or ``token:T``."""

    def __init__(self, routes: dict[str, dict | httpx.Response]) -> None:
        self.routes = routes
        self.requests: list[str] = []
        self.seen: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        token = request.url.params.get("token")
        page = request.url.params.get("page")
        if token:
            key = f"token:{token}"
        elif page:
            key = f"page:{page}"
        else:
            key = "fresh"
        self.requests.append(key)
        self.seen.append(request)
        route = self.routes[key]
        if isinstance(route, httpx.Response):
            return route
        return httpx.Response(200, json=route)


def _gone() -> httpx.Response:
    return httpx.Response(410, json={"error": {"code": "SyncStateNotFound", "message": "expired"}})


def _engine(
    feed: _Feed,
    store: InMemoryCursorStore,
    *,
    sink: Any = None,
    config: EngineConfig | None = None,
) -> IncrementalSyncEngine:
    return IncrementalSyncEngine(make_fetcher(feed), store, sink=sink, config=config)


def _stored(token: str) -> InMemoryCursorStore:
    return InMemoryCursorStore({("acct-1", CALENDAR): _cursor(token)})


class TestBufferedSync:
    async def test_cold_start_pages_to_head_and_persists_cursor(self, cursor_store):
        feed = _Feed(
            {
                "fresh": _page([event("a"), event("b")], next_page=2),
                "page:2": _page([event("c")], cursor="t1"),
            }
        )

        changes = await _engine(feed, cursor_store).sync("acct-1")

        assert [change.id for change in changes] == ["a", "b", "c"]
        assert {change.kind for change in changes} == {ChangeKind.CREATED}
        assert feed.requests == ["fresh", "page:2"]
        assert cursor_store.cursors == {("acct-1", CALENDAR): _cursor("t1")}

    async def test_resumes_from_stored_cursor(self):
        store = _stored("t1")
        feed = _Feed(
            {
                "token:t1": _page(
                    [event("a", modified="2024-05-02T10:00:00Z")],
                    cursor="t2",
                ),
            }
        )

        changes = await _engine(feed, store).sync("acct-1")

        assert [(change.id, change.kind) for change in changes] == [("a", ChangeKind.UPDATED)]
        assert feed.requests == ["token:t1"]
        assert store.cursors[("acct-1", CALENDAR)] == _cursor("t2")

    async def test_no_changes_still_advances_cursor(self):
        store = _stored("t1")
        sink = RecordingSink()
        feed = _Feed({"token:t1": _page([], cursor="t2")})

        changes = await _engine(feed, store, sink=sink).sync("acct-1")

        assert changes == []
        assert sink.batches == []
        assert store.cursors[("acct-1", CALENDAR)] == _cursor("t2")

    async def test_force_reset_discards_cursor(self):
        store = _stored("t0")
        feed = _Feed({"fresh": _page([event("a")], cursor="t1")})

        await _engine(feed, store).sync("acct-1", force_reset=True)

        assert feed.requests == ["fresh"]
        assert store.events == [("delete", None), ("upsert", _cursor("t1"))]

    async def test_repeated_cold_starts_are_idempotent(self):
        feed = _Feed({"fresh": _page([event("a"), event("b")], cursor="t1")})
        store = InMemoryCursorStore()
        engine = _engine(feed, store)

        first = await engine.sync("acct-1", force_reset=True)
        second = await engine.sync("acct-1", force_reset=True)

        assert first == second
        assert store.cursors == {("acct-1", CALENDAR): _cursor("t1")}

    async def test_expired_cursor_restarts_from_fresh_feed(self):
        store = _stored("t0")
        feed = _Feed(
            {
                "token:t0": _gone(),
                "fresh": _page([event("a")], cursor="t1"),
            }
        )

        changes = await _engine(feed, store).sync("acct-1")

        assert [change.id for change in changes] == ["a"]
        assert feed.requests == ["token:t0", "fresh"]
        assert store.events == [("delete", None), ("upsert", _cursor("t1"))]

    async def test_expiry_on_a_continuation_page_restarts_the_cycle(self):
        store = _stored("t0")
        feed = _Feed(
            {
                "token:t0": _page([event("stale")], next_page=2),
                "page:2": _gone(),
                "fresh": _page([event("a")], cursor="t1"),
            }
        )

        changes = await _engine(feed, store).sync("acct-1")

        assert [change.id for change in changes] == ["a"]
        assert feed.requests == ["token:t0", "page:2", "fresh"]

    async def test_expiry_on_fresh_feed_propagates(self, cursor_store):
        feed = _Feed({"fresh": _gone()})

        with pytest.raises(CursorExpiredError):
            await _engine(feed, cursor_store).sync("acct-1")

        assert cursor_store.events == []

    async def test_recovery_happens_at_most_once(self):
        store = _stored("t0")
        feed = _Feed({"token:t0": _gone(), "fresh": _gone()})

        with pytest.raises(CursorExpiredError):
            await _engine(feed, store).sync("acct-1")

        assert feed.requests == ["token:t0", "fresh"]
        assert store.events == [("delete", None)]

    async def test_recovery_reuses_the_callers_window(self):
        store = _stored("t0")
        feed = _Feed({"token:t0": _gone(), "fresh": _page([], cursor="t1")})
        window = DateWindow(
            start=datetime(2024, 5, 1, tzinfo=UTC),
            end=datetime(2024, 6, 1, tzinfo=UTC),
        )

        await _engine(feed, store).sync("acct-1", date_window=window)

        assert feed.seen[1].url.params["startDateTime"] == "2024-05-01T00:00:00Z"
        assert feed.seen[1].url.params["endDateTime"] == "2024-06-01T00:00:00Z"

    async def test_configured_initial_window(self, cursor_store):
        feed = _Feed({"fresh": _page([], cursor="t1")})
        engine = _engine(feed, cursor_store, config=EngineConfig(initial_window_days=30))

        await engine.sync("acct-1")

        params = feed.seen[0].url.params
        assert "startDateTime" in params
        assert "endDateTime" in params

    async def test_stored_cursor_ignores_window(self):
        store = _stored("t1")
        feed = _Feed({"token:t1": _page([], cursor="t2")})
        engine = _engine(feed, store, config=EngineConfig(initial_window_days=30))

        await engine.sync("acct-1")

        assert "startDateTime" not in feed.seen[0].url.params

    async def test_sink_runs_before_cursor_is_persisted(self, cursor_store):
        class _OrderedSink:
            async def __call__(self, batch: list[NormalizedChange]) -> None:
                cursor_store.events.append(("sink", None))

        feed = _Feed({"fresh": _page([event("a")], cursor="t1")})

        await _engine(feed, cursor_store, sink=_OrderedSink()).sync("acct-1")

        assert cursor_store.events == [("sink", None), ("upsert", _cursor("t1"))]

    async def test_sink_failure_keeps_previous_cursor(self):
        store = _stored("t0")
        feed = _Feed({"token:t0": _page([event("a")], cursor="t1")})
        sink = RecordingSink(fail=RuntimeError("downstream unavailable"))

        with pytest.raises(RuntimeError, match="downstream unavailable"):
            await _engine(feed, store, sink=sink).sync("acct-1")

        assert store.cursors[("acct-1", CALENDAR)] == _cursor("t0")

    async def test_replayed_items_are_deduplicated_across_pages(self, cursor_store):
        feed = _Feed(
            {
                "fresh": _page([event("a", subject="v1"), event("b")], next_page=2),
                "page:2": _page([event("a", subject="v2")], cursor="t1"),
            }
        )

        changes = await _engine(feed, cursor_store).sync("acct-1")

        assert [change.id for change in changes] == ["a", "b"]
        assert changes[0].payload["subject"] == "v2"

    async def test_email_feed(self, cursor_store):
        feed = _Feed({"fresh": _page([], cursor="m1")})

        await _engine(feed, cursor_store).sync("acct-1", ResourceType.EMAIL)

        assert feed.seen[0].url.path == "/v1.0/me/mailFolders/inbox/messages/delta"
        assert ("acct-1", ResourceType.EMAIL) in cursor_store.cursors


class TestStreamingSync:
    def _feed(self) -> _Feed:
        return _Feed(
            {
                "fresh": _page([event("a", created="2024-05-01T10:00:00Z")], next_page=2),
                "page:2": _page([], next_page=3),
                "page:3": _page([event("c", created="2024-05-01T12:00:00Z")], cursor="t1"),
            }
        )

    async def test_yields_one_batch_per_non_empty_page(self, cursor_store):
        sink = RecordingSink()
        engine = _engine(self._feed(), cursor_store, sink=sink)

        batches = [batch async for batch in engine.stream("acct-1")]

        assert [[change.id for change in batch] for batch in batches] == [["a"], ["c"]]
        assert sink.batches == batches
        assert cursor_store.cursors == {("acct-1", CALENDAR): _cursor("t1")}

    async def test_sync_in_streaming_mode_returns_the_iterator(self, cursor_store):
        engine = _engine(self._feed(), cursor_store)

        iterator = await engine.sync("acct-1", mode=SyncMode.STREAMING)
        batches = [batch async for batch in iterator]

        assert len(batches) == 2

    async def test_cursor_persisted_only_after_exhaustion(self, cursor_store):
        stream = _engine(self._feed(), cursor_store).stream("acct-1")

        await anext(stream)
        assert cursor_store.cursors == {}
        await anext(stream)
        assert cursor_store.cursors == {}

        with pytest.raises(StopAsyncIteration):
            await anext(stream)
        assert cursor_store.cursors == {("acct-1", CALENDAR): _cursor("t1")}

    async def test_early_close_keeps_cursor_and_stops_paging(self):
        store = _stored("t0")
        feed = _Feed(
            {
                "token:t0": _page([event("a")], next_page=2),
                "page:2": _page([event("b")], cursor="t1"),
            }
        )
        stream = _engine(feed, store).stream("acct-1")

        await anext(stream)
        await stream.aclose()

        assert feed.requests == ["token:t0"]
        assert store.cursors[("acct-1", CALENDAR)] == _cursor("t0")
        assert store.events == []

    async def test_expired_cursor_recovers(self):
        store = _stored("t0")
        feed = _Feed({"token:t0": _gone(), "fresh": _page([event("a")], cursor="t1")})

        batches = [batch async for batch in _engine(feed, store).stream("acct-1")]

        assert [[change.id for change in batch] for batch in batches] == [["a"]]
        assert store.events == [("delete", None), ("upsert", _cursor("t1"))]

    async def test_expiry_on_fresh_feed_propagates(self, cursor_store):
        feed = _Feed({"fresh": _gone()})

        with pytest.raises(CursorExpiredError):
            async for _ in _engine(feed, cursor_store).stream("acct-1"):
                pass

    async def test_replayed_delete_is_not_resurrected(self, cursor_store):
        feed = _Feed(
            {
                "fresh": _page([event("a", removed=True)], next_page=2),
                "page:2": _page([event("a"), event("b")], cursor="t1"),
            }
        )

        batches = [batch async for batch in _engine(feed, cursor_store).stream("acct-1")]

        assert [[(c.id, c.kind) for c in batch] for batch in batches] == [
            [("a", ChangeKind.DELETED)],
            [("b", ChangeKind.CREATED)],
        ]

    async def test_matches_buffered_result(self):
        buffered = await _engine(self._feed(), InMemoryCursorStore()).sync("acct-1")
        streamed = [
            change
            async for batch in _engine(self._feed(), InMemoryCursorStore()).stream("acct-1")
            for change in batch
        ]

        assert [change.model_dump() for change in streamed] == [
            change.model_dump() for change in buffered
        ]

    async def test_update_repeated_on_a_later_page_is_delivered_per_page(self):
        def feed() -> _Feed:
            return _Feed(
                {
                    "fresh": _page([event("a")], next_page=2),
                    "page:2": _page(
                        [event("a", modified="2024-05-03T10:00:00Z", subject="v2")],
                        cursor="t1",
                    ),
                }
            )

        buffered = await _engine(feed(), InMemoryCursorStore()).sync("acct-1")
        batches = [
            batch async for batch in _engine(feed(), InMemoryCursorStore()).stream("acct-1")
        ]

        assert [(change.id, change.kind) for change in buffered] == [("a", ChangeKind.UPDATED)]
        assert [[(change.id, change.kind) for change in batch] for batch in batches] == [
            [("a", ChangeKind.CREATED)],
            [("a", ChangeKind.UPDATED)],
        ]
        assert batches[-1][0].payload["subject"] == "v2"


class TestInitializeBaseline:
    async def test_stores_cursor_and_discards_items(self, cursor_store):
        sink = RecordingSink()
        feed = _Feed(
            {
                "fresh": _page([event("a")], next_page=2),
                "page:2": _page([event("b")], cursor="t1"),
            }
        )

        cursor = await _engine(feed, cursor_store, sink=sink).initialize_baseline("acct-1")

        assert cursor == _cursor("t1")
        assert cursor_store.cursors == {("acct-1", CALENDAR): _cursor("t1")}
        assert sink.batches == []

    async def test_ignores_existing_cursor(self):
        store = _stored("t0")
        feed = _Feed({"fresh": _page([], cursor="t1")})

        await _engine(feed, store).initialize_baseline("acct-1")

        assert feed.requests == ["fresh"]
        assert store.cursors[("acct-1", CALENDAR)] == _cursor("t1")
