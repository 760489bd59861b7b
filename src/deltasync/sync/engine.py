"""Incremental sync engine: cursor lifecycle around the delta page fetcher.

One sync cycle for an ``(account, resource type)`` pair:

1. Read the stored cursor.  No cursor (or ``force_reset``) means a cold
   start against the fresh feed, optionally bounded by a date window.
2. Page through the feed until a page carries a terminal cursor.
3. Normalize the items (replay dedup, time ordering, classification) and
   hand them to the sink.
4. Persist the terminal cursor.  Nothing is persisted mid-sequence, so an
   interrupted cycle replays from the previous cursor (at-least-once).

A cursor the provider reports as expired is deleted and the cycle restarts
as a cold start.  This happens at most once per cycle; an expiry reported
for the fresh feed itself propagates.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from datetime import timedelta

from opentelemetry import trace

from deltasync.config import EngineConfig
from deltasync.core.logging import sync_context
from deltasync.core.metrics import SyncMetrics
from deltasync.sync.changes import ChangeStream, ChangeStreamProcessor
from deltasync.sync.errors import CursorExpiredError, DeltaSyncError
from deltasync.sync.fetcher import DeltaPageFetcher, DeltaRequest
from deltasync.sync.models import (
    ChangeItem,
    DateWindow,
    NormalizedChange,
    ResourceType,
    SyncCursor,
)
from deltasync.sync.stores import ChangeSink, CursorStore

logger = logging.getLogger(__name__)


class SyncMode(enum.StrEnum):
    BUFFERED = "buffered"
    STREAMING = "streaming"


class SyncPhase(enum.StrEnum):
    COLD_START = "cold_start"
    PAGING = "paging"
    EXPIRED = "expired"
    SETTLED = "settled"


class IncrementalSyncEngine:
    """Drives cursor-based sync cycles; owns no durable state of its own."""

    def __init__(
        self,
        fetcher: DeltaPageFetcher,
        cursor_store: CursorStore,
        *,
        processor: ChangeStreamProcessor | None = None,
        sink: ChangeSink | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._cursor_store = cursor_store
        self._processor = processor or ChangeStreamProcessor()
        self._sink = sink
        self._config = config or EngineConfig()
        self._tracer = trace.get_tracer("deltasync")

    async def sync(
        self,
        account_id: str,
        resource_type: ResourceType = ResourceType.CALENDAR,
        *,
        force_reset: bool = False,
        date_window: DateWindow | None = None,
        mode: SyncMode = SyncMode.BUFFERED,
    ) -> list[NormalizedChange] | AsyncIterator[list[NormalizedChange]]:
        """Run one sync cycle.

        Buffered mode returns every normalized change of the cycle.  Streaming
        mode returns the async iterator from :meth:`stream` without starting it.
        """
        if SyncMode(mode) is SyncMode.STREAMING:
            return self.stream(
                account_id,
                resource_type,
                force_reset=force_reset,
                date_window=date_window,
            )
        return await self._sync_buffered(
            account_id,
            ResourceType(resource_type),
            force_reset=force_reset,
            date_window=date_window,
        )

    async def initialize_baseline(
        self,
        account_id: str,
        resource_type: ResourceType = ResourceType.CALENDAR,
        date_window: DateWindow | None = None,
    ) -> str:
        """Page a fresh feed to its head and persist the cursor, discarding items."""
        resource_type = ResourceType(resource_type)
        metrics = SyncMetrics(resource_type.value)
        with sync_context(account_id, resource_type.value, mode="baseline"):
            request = self._fetcher.fresh_request(resource_type, self._window(date_window))
            items, cursor = await self._collect(
                account_id, resource_type, request, SyncPhase.COLD_START, metrics
            )
            await self._persist_cursor(account_id, resource_type, cursor)
            logger.info(
                "Initialized baseline cursor for account %s (%d items skipped)",
                account_id,
                len(items),
            )
            return cursor

    async def stream(
        self,
        account_id: str,
        resource_type: ResourceType = ResourceType.CALENDAR,
        *,
        force_reset: bool = False,
        date_window: DateWindow | None = None,
    ) -> AsyncIterator[list[NormalizedChange]]:
        """Yield each page's normalized, non-empty batch as soon as it is ready.

        The batch is pushed to the sink before it is yielded.  The terminal
        cursor is persisted once the caller resumes past the final batch; a
        caller that stops early leaves the stored cursor untouched and no
        further pages are requested.

        Deduplication is per page, so an id updated again on a later page is
        delivered once per page, where the buffered result carries it once.
        Deletions stay sticky across pages.
        """
        resource_type = ResourceType(resource_type)
        metrics = SyncMetrics(resource_type.value)
        outcome = "error"
        try:
            request, phase = await self._start(account_id, resource_type, force_reset, date_window)
            changes = ChangeStream(
                self._processor,
                account_id=account_id,
                resource_type=resource_type,
            )
            cursor: str | None = None

            while True:
                try:
                    async with aclosing(
                        self._fetcher.pages(account_id, resource_type, request)
                    ) as pages:
                        async for page in pages:
                            metrics.record_page(phase.value)
                            if page.is_last:
                                cursor = page.terminal_cursor
                            batch = changes.feed(page.items)
                            if not batch:
                                continue
                            metrics.record_changes([change.kind.value for change in batch])
                            if self._sink is not None:
                                await self._sink(batch)
                            yield batch
                    break
                except CursorExpiredError:
                    if phase is not SyncPhase.PAGING:
                        raise
                    request, phase = await self._reset_expired(
                        account_id, resource_type, date_window, metrics
                    )

            if cursor is None:
                raise DeltaSyncError("Change feed ended without a terminal cursor")
            await self._persist_cursor(account_id, resource_type, cursor)
            outcome = "success"
            logger.info(
                "Streamed %d changes for account %s (%s)",
                changes.delivered,
                account_id,
                resource_type.value,
            )
        except GeneratorExit:
            outcome = "cancelled"
            logger.info("Streaming sync for account %s closed by consumer", account_id)
            raise
        finally:
            metrics.record_cycle(SyncMode.STREAMING.value, outcome)

    async def _sync_buffered(
        self,
        account_id: str,
        resource_type: ResourceType,
        *,
        force_reset: bool,
        date_window: DateWindow | None,
    ) -> list[NormalizedChange]:
        metrics = SyncMetrics(resource_type.value)
        outcome = "error"
        with (
            sync_context(account_id, resource_type.value, mode=SyncMode.BUFFERED.value),
            self._tracer.start_as_current_span("deltasync.sync") as span,
        ):
            span.set_attribute("deltasync.account_id", account_id)
            span.set_attribute("deltasync.resource_type", resource_type.value)
            try:
                request, phase = await self._start(
                    account_id, resource_type, force_reset, date_window
                )
                while True:
                    try:
                        items, cursor = await self._collect(
                            account_id, resource_type, request, phase, metrics
                        )
                        break
                    except CursorExpiredError:
                        if phase is not SyncPhase.PAGING:
                            raise
                        request, phase = await self._reset_expired(
                            account_id, resource_type, date_window, metrics
                        )

                changes = self._processor.normalize(
                    items,
                    account_id=account_id,
                    resource_type=resource_type,
                )
                metrics.record_changes([change.kind.value for change in changes])
                if changes and self._sink is not None:
                    await self._sink(changes)

                await self._persist_cursor(account_id, resource_type, cursor)
                span.set_attribute("deltasync.entry_phase", phase.value)
                span.set_attribute("deltasync.phase", SyncPhase.SETTLED.value)
                span.set_attribute("deltasync.change_count", len(changes))
                outcome = "success"
                logger.info(
                    "Synced %d changes for account %s (%s, %s)",
                    len(changes),
                    account_id,
                    resource_type.value,
                    phase.value,
                )
                return changes
            finally:
                metrics.record_cycle(SyncMode.BUFFERED.value, outcome)

    async def _start(
        self,
        account_id: str,
        resource_type: ResourceType,
        force_reset: bool,
        date_window: DateWindow | None,
    ) -> tuple[DeltaRequest, SyncPhase]:
        if force_reset:
            logger.info("Force reset requested, deleting cursor for account %s", account_id)
            await self._cursor_store.delete(account_id, resource_type)
            SyncMetrics(resource_type.value).record_cursor_reset("forced")
            cursor = None
        else:
            cursor = await self._cursor_store.get(account_id, resource_type)

        if cursor is None:
            logger.info("No cursor for account %s, starting from a fresh feed", account_id)
            return (
                self._fetcher.fresh_request(resource_type, self._window(date_window)),
                SyncPhase.COLD_START,
            )

        logger.debug("Resuming account %s from stored cursor", account_id)
        return self._fetcher.cursor_request(cursor), SyncPhase.PAGING

    async def _reset_expired(
        self,
        account_id: str,
        resource_type: ResourceType,
        date_window: DateWindow | None,
        metrics: SyncMetrics,
    ) -> tuple[DeltaRequest, SyncPhase]:
        """Drop an expired cursor and restart the cycle against a fresh feed."""
        logger.warning(
            "Cursor expired for account %s (%s), resetting to a fresh feed",
            account_id,
            resource_type.value,
        )
        await self._cursor_store.delete(account_id, resource_type)
        metrics.record_cursor_reset(SyncPhase.EXPIRED.value)
        return (
            self._fetcher.fresh_request(resource_type, self._window(date_window)),
            SyncPhase.COLD_START,
        )

    async def _collect(
        self,
        account_id: str,
        resource_type: ResourceType,
        request: DeltaRequest,
        phase: SyncPhase,
        metrics: SyncMetrics,
    ) -> tuple[list[ChangeItem], str]:
        items: list[ChangeItem] = []
        cursor: str | None = None
        async with aclosing(self._fetcher.pages(account_id, resource_type, request)) as pages:
            async for page in pages:
                metrics.record_page(phase.value)
                items.extend(page.items)
                if page.is_last:
                    cursor = page.terminal_cursor

        if cursor is None:
            raise DeltaSyncError("Change feed ended without a terminal cursor")
        return items, cursor

    async def _persist_cursor(
        self,
        account_id: str,
        resource_type: ResourceType,
        token: str,
    ) -> None:
        await self._cursor_store.upsert(account_id, resource_type, token)
        cursor = SyncCursor(account_id=account_id, resource_type=resource_type, token=token)
        logger.debug(
            "Persisted cursor for account %s (%s), expected expiry %s",
            account_id,
            resource_type.value,
            cursor.expected_expiry().isoformat(),
        )

    def _window(self, date_window: DateWindow | None) -> DateWindow | None:
        if date_window is not None:
            return date_window
        if self._config.initial_window_days is None:
            return None
        return DateWindow.around_now(
            self._config.initial_window_days,
            lookback=timedelta(seconds=self._config.window_lookback_s),
        )
