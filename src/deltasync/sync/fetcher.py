"""Delta page fetcher: one rate-limited, retried HTTP GET per change-feed page."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx
from pydantic import ValidationError

from deltasync.config import FetcherConfig
from deltasync.core.metrics import SyncMetrics
from deltasync.sync.backoff import BackoffExecutor
from deltasync.sync.errors import (
    DeltaSyncError,
    ErrorKind,
    ProviderRequestError,
    classify_response,
)
from deltasync.sync.models import ChangeItem, DateWindow, DeltaPage, ResourceType
from deltasync.sync.rate_limiter import AccountRateLimiter
from deltasync.sync.stores import TokenProvider

logger = logging.getLogger(__name__)

NEXT_LINK_KEY = "@odata.nextLink"
DELTA_LINK_KEY = "@odata.deltaLink"


@dataclass(frozen=True)
class DeltaRequest:
    """Where to fetch the next change-feed page from.

    ``url`` is either a feed path relative to the provider base URL or an
    absolute continuation/cursor URL, which is issued verbatim.
    """

    url: str
    params: dict[str, str] | None = None
    fresh: bool = False


def _format_window_bound(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


class DeltaPageFetcher:
    """Fetches change-feed pages for one provider.

    Every HTTP call (feed pages and per-item detail lookups) acquires a
    permit from the per-account rate limiter and runs inside the backoff
    executor.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        *,
        rate_limiter: AccountRateLimiter | None = None,
        executor: BackoffExecutor | None = None,
        config: FetcherConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._token_provider = token_provider
        self._rate_limiter = rate_limiter or AccountRateLimiter()
        self._executor = executor or BackoffExecutor()
        self._config = config or FetcherConfig()
        self._sleep = sleep
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                self._config.request_timeout_s,
                connect=self._config.connect_timeout_s,
            )
        )

    @property
    def rate_limiter(self) -> AccountRateLimiter:
        return self._rate_limiter

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    def fresh_request(
        self,
        resource_type: ResourceType,
        date_window: DateWindow | None = None,
    ) -> DeltaRequest:
        """Build the request for the head of a fresh (cursor-less) change feed."""
        path = self._config.feed_paths.get(ResourceType(resource_type).value)
        if path is None:
            raise DeltaSyncError(f"No change feed configured for resource type {resource_type!r}")

        params = None
        if date_window is not None:
            params = {
                "startDateTime": _format_window_bound(date_window.start),
                "endDateTime": _format_window_bound(date_window.end),
            }
        return DeltaRequest(url=path, params=params, fresh=True)

    def cursor_request(self, cursor: str) -> DeltaRequest:
        """Build the request resuming from a stored cursor."""
        normalized = cursor.strip()
        if not normalized:
            raise DeltaSyncError("Cannot resume from an empty cursor")
        return DeltaRequest(url=normalized)

    async def fetch_page(
        self,
        account_id: str,
        resource_type: ResourceType,
        request: DeltaRequest,
    ) -> DeltaPage:
        """Fetch and validate one page, fanning out detail lookups if configured."""
        payload = await self._get_json(
            account_id,
            request.url,
            params=request.params,
            operation_name="delta_page",
        )

        raw_items = payload.get("value", [])
        if not isinstance(raw_items, list):
            raise DeltaSyncError("Malformed delta page: 'value' is not a list")
        raw_items = [item for item in raw_items if isinstance(item, dict)]

        items, failed = await self._resolve_details(account_id, resource_type, raw_items)

        try:
            page = DeltaPage(
                items=[ChangeItem.from_provider(item) for item in items],
                next_page_token=payload.get(NEXT_LINK_KEY),
                terminal_cursor=payload.get(DELTA_LINK_KEY),
                failed_items=failed,
            )
        except ValidationError as exc:
            raise DeltaSyncError(f"Malformed delta page for account {account_id}: {exc}") from exc

        logger.debug(
            "Fetched delta page for account %s (%d items, %d failed, last=%s)",
            account_id,
            len(page.items),
            page.failed_items,
            page.is_last,
        )
        return page

    async def pages(
        self,
        account_id: str,
        resource_type: ResourceType,
        request: DeltaRequest,
    ) -> AsyncIterator[DeltaPage]:
        """Yield pages from *request* until the one carrying a terminal cursor.

        A page is only requested when the consumer asks for it, after the
        configured inter-page delay.
        """
        current = request
        page_count = 0
        while True:
            if page_count and self._config.inter_page_delay_s > 0:
                await self._sleep(self._config.inter_page_delay_s)

            page = await self.fetch_page(account_id, resource_type, current)
            page_count += 1
            yield page

            if page.is_last:
                logger.debug(
                    "Reached head of change feed for account %s after %d pages",
                    account_id,
                    page_count,
                )
                return
            current = DeltaRequest(url=page.next_page_token)

    async def _resolve_details(
        self,
        account_id: str,
        resource_type: ResourceType,
        raw_items: list[dict[str, Any]],
    ) -> tuple[list[dict[str, Any]], int]:
        template = self._config.detail_paths.get(ResourceType(resource_type).value)
        if template is None:
            return raw_items, 0

        async def _resolve(item: dict[str, Any]) -> dict[str, Any]:
            item_id = item.get("id")
            if item.get("@removed") is not None or not isinstance(item_id, str) or not item_id:
                return item
            detail = await self._get_json(
                account_id,
                template.format(id=item_id),
                operation_name="item_detail",
            )
            return detail

        results = await asyncio.gather(
            *(_resolve(item) for item in raw_items),
            return_exceptions=True,
        )

        resolved: list[dict[str, Any]] = []
        failed = 0
        for item, result in zip(raw_items, results, strict=True):
            if isinstance(result, Exception):
                failed += 1
                logger.warning(
                    "Detail lookup failed for item %s (account %s): %s",
                    item.get("id"),
                    account_id,
                    result,
                )
                continue
            if isinstance(result, BaseException):
                raise result
            resolved.append(result)

        if failed:
            SyncMetrics(ResourceType(resource_type).value).record_failed_items(failed)
        return resolved, failed

    def _absolute_url(self, url: str) -> str:
        if url.startswith(("http://", "https://")):
            return url
        path = url if url.startswith("/") else f"/{url}"
        return f"{self._config.base_url.rstrip('/')}{path}"

    async def _get_json(
        self,
        account_id: str,
        url: str,
        *,
        params: dict[str, str] | None = None,
        operation_name: str,
    ) -> dict[str, Any]:
        absolute_url = self._absolute_url(url)

        async def _attempt() -> dict[str, Any]:
            await self._rate_limiter.acquire(account_id)
            access_token = await self._token_provider.get_valid_access_token(account_id)
            headers = {"Authorization": f"Bearer {access_token}"}
            if self._config.max_page_size is not None:
                headers["Prefer"] = f"odata.maxpagesize={self._config.max_page_size}"

            try:
                response = await self._http_client.get(
                    absolute_url,
                    params=params,
                    headers=headers,
                )
            except httpx.TransportError as exc:
                raise ProviderRequestError(
                    kind=ErrorKind.NETWORK_ERROR,
                    message=f"Provider request failed: {exc}",
                ) from exc

            error = classify_response(response, min_retry_after=self._config.min_retry_after_s)
            if error is not None:
                if error.kind is ErrorKind.THROTTLED:
                    self._rate_limiter.notify_throttled(
                        account_id,
                        error.retry_after
                        if error.retry_after is not None
                        else self._config.min_retry_after_s,
                    )
                raise error

            try:
                payload = response.json()
            except ValueError as exc:
                raise DeltaSyncError("Provider returned a non-JSON response") from exc
            if not isinstance(payload, dict):
                raise DeltaSyncError("Provider returned an unexpected JSON payload")
            return payload

        return await self._executor.execute(_attempt, operation_name=operation_name)
