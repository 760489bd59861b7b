"""Per-account sliding-window rate limiter for provider requests.

Models the provider's per-mailbox quotas (Microsoft Graph: 4 requests per
second and 10,000 requests per 10 minutes per mailbox).  Permits are consumed
on :meth:`AccountRateLimiter.acquire`; there is nothing to release.

State is held in memory only and resets on process restart.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from deltasync.config import (
    DEFAULT_INACTIVE_THRESHOLD_SECONDS,
    DEFAULT_MAX_POLL_INTERVAL_SECONDS,
    DEFAULT_MAX_REQUESTS_PER_SECOND,
    DEFAULT_MAX_REQUESTS_PER_TEN_MINUTES,
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    RateLimitConfig,
)
from deltasync.core.metrics import record_cooldown, record_rate_limit_wait

logger = logging.getLogger(__name__)

SHORT_WINDOW_SECONDS = 1.0
LONG_WINDOW_SECONDS = 600.0
MIN_POLL_INTERVAL_SECONDS = 0.05
# Slack added on top of the computed window wait so the oldest entry has aged out.
WINDOW_WAIT_MARGIN_SECONDS = 0.05


@dataclass
class AccountQuotaState:
    """Sliding windows and cooldown for one external account."""

    account_id: str
    recent: deque[float] = field(default_factory=deque)
    long_window: deque[float] = field(default_factory=deque)
    cooldown_until: float | None = None
    last_activity: float = 0.0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def prune(self, now: float) -> None:
        while self.recent and now - self.recent[0] >= SHORT_WINDOW_SECONDS:
            self.recent.popleft()
        while self.long_window and now - self.long_window[0] >= LONG_WINDOW_SECONDS:
            self.long_window.popleft()


class AccountRateLimiter:
    """Registry of per-account quota state with blocking permit acquisition."""

    def __init__(
        self,
        *,
        max_per_second: int = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_per_ten_minutes: int = DEFAULT_MAX_REQUESTS_PER_TEN_MINUTES,
        inactive_threshold_seconds: float = DEFAULT_INACTIVE_THRESHOLD_SECONDS,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        max_poll_interval_seconds: float = DEFAULT_MAX_POLL_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_per_second < 1 or max_per_ten_minutes < 1:
            raise ValueError("rate limits must be at least 1")
        self._max_per_second = max_per_second
        self._max_per_ten_minutes = max_per_ten_minutes
        self._inactive_threshold = inactive_threshold_seconds
        self._sweep_interval = sweep_interval_seconds
        self._max_poll_interval = max(max_poll_interval_seconds, MIN_POLL_INTERVAL_SECONDS)
        self._clock = clock
        self._sleep = sleep
        self._accounts: dict[str, AccountQuotaState] = {}
        self._sweep_task: asyncio.Task | None = None

        self._permits_acquired = 0
        self._total_wait = 0.0
        self._cooldown_count = 0

    @classmethod
    def from_config(cls, config: RateLimitConfig, **kwargs: Any) -> AccountRateLimiter:
        return cls(
            max_per_second=config.max_per_second,
            max_per_ten_minutes=config.max_per_ten_minutes,
            inactive_threshold_seconds=config.inactive_threshold_s,
            sweep_interval_seconds=config.sweep_interval_s,
            max_poll_interval_seconds=config.max_poll_interval_s,
            **kwargs,
        )

    def _state_for(self, account_id: str) -> AccountQuotaState:
        state = self._accounts.get(account_id)
        if state is None:
            state = AccountQuotaState(account_id=account_id, last_activity=self._clock())
            self._accounts[account_id] = state
            logger.debug("Created rate limiter state for account %s", account_id)
        return state

    async def acquire(self, account_id: str) -> float:
        """Block until *account_id* may issue one request; return seconds waited."""
        started = self._clock()
        logged_wait = False

        while True:
            state = self._state_for(account_id)
            async with state.lock:
                now = self._clock()
                wait = self._required_wait(state, now)
                if wait <= 0:
                    state.recent.append(now)
                    state.long_window.append(now)
                    state.last_activity = now
                    waited = now - started
                    self._permits_acquired += 1
                    self._total_wait += waited
                    record_rate_limit_wait(waited)
                    if waited > MIN_POLL_INTERVAL_SECONDS:
                        logger.debug(
                            "Account %s waited %.3fs for permit (second: %d/%d, 10min: %d/%d)",
                            account_id,
                            waited,
                            len(state.recent),
                            self._max_per_second,
                            len(state.long_window),
                            self._max_per_ten_minutes,
                        )
                    return waited

            if not logged_wait:
                logged_wait = True
                logger.debug("Account %s rate limited, waiting for capacity", account_id)
            await self._sleep(min(max(wait, MIN_POLL_INTERVAL_SECONDS), self._max_poll_interval))

    def notify_throttled(self, account_id: str, retry_after_seconds: float) -> None:
        """Put *account_id* under cooldown after a provider throttling response."""
        state = self._state_for(account_id)
        now = self._clock()
        until = now + max(retry_after_seconds, 0.0)
        if state.cooldown_until is None or until > state.cooldown_until:
            state.cooldown_until = until
        state.last_activity = now
        self._cooldown_count += 1
        record_cooldown()
        logger.warning(
            "Account %s throttled by provider, cooling down for %.1fs",
            account_id,
            retry_after_seconds,
        )

    def _required_wait(self, state: AccountQuotaState, now: float) -> float:
        state.prune(now)

        if state.cooldown_until is not None:
            if now < state.cooldown_until:
                return state.cooldown_until - now
            state.cooldown_until = None

        if len(state.recent) >= self._max_per_second:
            return state.recent[0] + SHORT_WINDOW_SECONDS - now + WINDOW_WAIT_MARGIN_SECONDS

        if len(state.long_window) >= self._max_per_ten_minutes:
            logger.warning(
                "Account %s hit 10-minute limit (%d/%d)",
                state.account_id,
                len(state.long_window),
                self._max_per_ten_minutes,
            )
            return state.long_window[0] + LONG_WINDOW_SECONDS - now + WINDOW_WAIT_MARGIN_SECONDS

        return 0.0

    def evict_inactive(self) -> int:
        """Drop state for accounts idle longer than the inactivity threshold."""
        now = self._clock()
        stale = [
            account_id
            for account_id, state in self._accounts.items()
            if now - state.last_activity >= self._inactive_threshold and not state.lock.locked()
        ]
        for account_id in stale:
            del self._accounts[account_id]
        if stale:
            logger.info(
                "Evicted %d inactive rate limiter accounts (%d remaining)",
                len(stale),
                len(self._accounts),
            )
        return len(stale)

    def start(self) -> None:
        """Start the background sweep task."""
        if self._sweep_task is not None:
            logger.warning("Rate limiter sweep task already running")
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Stop the background sweep task."""
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            await self._sleep(self._sweep_interval)
            try:
                self.evict_inactive()
            except Exception:
                logger.exception("Rate limiter sweep failed")

    def __contains__(self, account_id: object) -> bool:
        return account_id in self._accounts

    def stats(self) -> dict[str, Any]:
        permits = self._permits_acquired
        return {
            "active_accounts": len(self._accounts),
            "total_permits_acquired": permits,
            "total_wait_seconds": round(self._total_wait, 3),
            "average_wait_seconds": round(self._total_wait / permits, 3) if permits else 0.0,
            "cooldown_count": self._cooldown_count,
        }

    def account_stats(self, account_id: str) -> dict[str, Any] | None:
        state = self._accounts.get(account_id)
        if state is None:
            return None
        now = self._clock()
        state.prune(now)
        return {
            "account_id": account_id,
            "recent_request_count": len(state.recent),
            "ten_minute_request_count": len(state.long_window),
            "cooldown_remaining_seconds": (
                max(state.cooldown_until - now, 0.0) if state.cooldown_until is not None else 0.0
            ),
            "idle_seconds": now - state.last_activity,
        }
