"""Classified retry with exponential backoff for provider calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from deltasync.config import BackoffConfig
from deltasync.core.metrics import record_retry
from deltasync.sync.errors import ErrorClassification, ErrorKind, classify_exception

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry ceiling and delay schedule.

    ``max_retries`` counts retries, so an operation runs at most
    ``max_retries + 1`` times.
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS
    max_delay_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.max_delay_seconds is not None and self.max_delay_seconds < 0:
            raise ValueError("max_delay_seconds must be >= 0")

    @classmethod
    def from_config(cls, config: BackoffConfig) -> BackoffPolicy:
        return cls(
            max_retries=config.max_retries,
            base_delay_seconds=config.base_delay_s,
            max_delay_seconds=config.max_delay_s,
        )

    def delay_for(self, attempt: int) -> float:
        """Exponential delay ``base * 2**attempt`` for the zero-based retry *attempt*."""
        delay = self.base_delay_seconds * (2**attempt)
        if self.max_delay_seconds is not None:
            delay = min(delay, self.max_delay_seconds)
        return delay


@dataclass(frozen=True)
class RetryAttempt:
    """One observed retry decision."""

    operation: str
    attempt: int
    max_retries: int
    delay_seconds: float
    classification: ErrorClassification
    error: BaseException


RetryHook = Callable[[RetryAttempt], None]


class BackoffExecutor:
    """Runs an async operation, retrying retryable failures.

    Non-retryable failures are re-raised immediately.  Throttled failures
    carrying a provider wait hint sleep exactly that hint; everything else
    retryable sleeps ``base * 2**attempt``.  After the final attempt the
    original exception is re-raised unchanged.
    """

    def __init__(
        self,
        policy: BackoffPolicy | None = None,
        *,
        on_retry: RetryHook | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._policy = policy or BackoffPolicy()
        self._on_retry = on_retry
        self._sleep = sleep

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: BackoffPolicy | None = None,
        *,
        operation_name: str = "operation",
    ) -> T:
        effective = policy or self._policy
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as exc:
                classification = classify_exception(exc)
                if not classification.retryable:
                    logger.debug(
                        "Non-retryable error for %s (%s), not retrying",
                        operation_name,
                        classification.kind.value,
                    )
                    raise

                if attempt >= effective.max_retries:
                    logger.warning(
                        "Max retries (%d) exceeded for %s (%s)",
                        effective.max_retries,
                        operation_name,
                        classification.kind.value,
                    )
                    raise

                delay = self._delay(effective, attempt, classification)
                logger.warning(
                    "Retry %d/%d for %s after %.2fs (%s, status=%s)",
                    attempt + 1,
                    effective.max_retries,
                    operation_name,
                    delay,
                    classification.kind.value,
                    classification.status_code,
                )
                record_retry(operation_name, classification.kind.value)
                if self._on_retry is not None:
                    self._on_retry(
                        RetryAttempt(
                            operation=operation_name,
                            attempt=attempt,
                            max_retries=effective.max_retries,
                            delay_seconds=delay,
                            classification=classification,
                            error=exc,
                        )
                    )

                await self._sleep(delay)
                attempt += 1

    @staticmethod
    def _delay(
        policy: BackoffPolicy,
        attempt: int,
        classification: ErrorClassification,
    ) -> float:
        if classification.kind is ErrorKind.THROTTLED and classification.retry_after is not None:
            return classification.retry_after
        return policy.delay_for(attempt)
