"""Error taxonomy and the closed provider-error classification.

Provider responses are inspected exactly once, here, at the boundary where
they are first received.  Everything downstream (backoff, engine, lifecycle)
switches on :class:`ErrorKind` and never inspects response or exception shape.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from deltasync.config import DEFAULT_MIN_RETRY_AFTER_SECONDS

logger = logging.getLogger(__name__)

# Graph error codes that mean "the delta token is no longer usable".
CURSOR_EXPIRED_ERROR_CODES = frozenset(
    {
        "syncstatenotfound",
        "syncstateinvalid",
        "resyncrequired",
    }
)


class ErrorKind(enum.StrEnum):
    """Retry disposition of a failed provider call."""

    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    GONE = "gone"
    THROTTLED = "throttled"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE_KINDS


_RETRYABLE_KINDS = frozenset(
    {ErrorKind.THROTTLED, ErrorKind.SERVER_ERROR, ErrorKind.NETWORK_ERROR}
)


@dataclass(frozen=True)
class ErrorClassification:
    """Result of classifying one failure."""

    kind: ErrorKind
    retry_after: float | None = None
    status_code: int | None = None

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class DeltaSyncError(RuntimeError):
    """Base delta sync error."""


class ProviderRequestError(DeltaSyncError):
    """Raised when a provider change-feed or detail request fails."""

    def __init__(
        self,
        *,
        kind: ErrorKind,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        self.kind = kind
        self.status_code = status_code
        self.message = message
        self.retry_after = retry_after
        status = status_code if status_code is not None else "n/a"
        super().__init__(f"Provider request failed ({kind.value}, status={status}): {message}")

    @property
    def classification(self) -> ErrorClassification:
        return ErrorClassification(
            kind=self.kind,
            retry_after=self.retry_after,
            status_code=self.status_code,
        )


class CursorExpiredError(ProviderRequestError):
    """Raised when the provider reports a sync cursor as expired/invalid."""

    def __init__(self, *, message: str, status_code: int | None = 410) -> None:
        super().__init__(kind=ErrorKind.GONE, message=message, status_code=status_code)


def classify_status(status_code: int) -> ErrorKind | None:
    """Map an HTTP status code to an :class:`ErrorKind`; ``None`` for 2xx/3xx."""
    if status_code < 400:
        return None
    if status_code == 401:
        return ErrorKind.UNAUTHORIZED
    if status_code == 403:
        return ErrorKind.FORBIDDEN
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code == 410:
        return ErrorKind.GONE
    if status_code == 429:
        return ErrorKind.THROTTLED
    if 500 <= status_code < 600:
        return ErrorKind.SERVER_ERROR
    return ErrorKind.UNKNOWN


def classify_response(
    response: httpx.Response,
    *,
    min_retry_after: float = DEFAULT_MIN_RETRY_AFTER_SECONDS,
) -> ProviderRequestError | None:
    """Return the classified error for a failed response, or ``None`` on success."""
    kind = classify_status(response.status_code)
    error_code, message = _provider_error_details(response)

    if error_code is not None and error_code.lower() in CURSOR_EXPIRED_ERROR_CODES:
        return CursorExpiredError(message=message, status_code=response.status_code)

    if kind is None:
        return None

    if kind is ErrorKind.GONE:
        return CursorExpiredError(message=message, status_code=response.status_code)

    retry_after = None
    if kind is ErrorKind.THROTTLED or response.status_code == 503:
        retry_after = parse_retry_after(
            response.headers.get("Retry-After"),
            minimum=min_retry_after,
        )

    return ProviderRequestError(
        kind=kind,
        message=message,
        status_code=response.status_code,
        retry_after=retry_after,
    )


def classify_exception(exc: BaseException) -> ErrorClassification:
    """Classify any exception raised while talking to the provider."""
    if isinstance(exc, ProviderRequestError):
        return exc.classification
    if isinstance(exc, httpx.TransportError):
        # Covers timeouts, connect errors, read errors and protocol errors.
        return ErrorClassification(kind=ErrorKind.NETWORK_ERROR)
    if isinstance(exc, httpx.HTTPStatusError):
        error = classify_response(exc.response)
        if error is not None:
            return error.classification
    return ErrorClassification(kind=ErrorKind.UNKNOWN)


def parse_retry_after(
    value: str | None,
    *,
    minimum: float = DEFAULT_MIN_RETRY_AFTER_SECONDS,
    now: datetime | None = None,
) -> float | None:
    """Parse a ``Retry-After`` header given in seconds or as an HTTP date.

    Returns ``None`` when the header is absent or unparsable so callers fall
    back to exponential backoff.
    """
    if value is None:
        return None
    raw = value.strip()
    if not raw:
        return None

    try:
        seconds = float(raw)
    except ValueError:
        try:
            when = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            logger.debug("Ignoring unparsable Retry-After header: %r", raw)
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        reference = now if now is not None else datetime.now(UTC)
        seconds = (when - reference).total_seconds()

    return max(seconds, minimum)


def _provider_error_details(response: httpx.Response) -> tuple[str | None, str]:
    """Extract ``(error_code, message)`` from a provider error body."""
    if response.status_code < 400:
        return None, ""

    try:
        payload: Any = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            code = error_payload.get("code")
            message = error_payload.get("message")
            code_str = code.strip() if isinstance(code, str) and code.strip() else None
            if isinstance(message, str) and message.strip():
                return code_str, " ".join(message.split())[:200]
            return code_str, code_str or "unknown error"
        message = payload.get("error_description") or payload.get("message")
        if isinstance(message, str) and message.strip():
            return None, " ".join(message.split())[:200]

    text = response.text.strip()
    if text:
        return None, " ".join(text.split())[:200]
    return None, "unknown error"
