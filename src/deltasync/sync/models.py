"""Provider-neutral data model for delta sync."""

from __future__ import annotations

import enum
import logging
import re
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# Outlook delta tokens are bounded by an internal cache; stay conservative.
CALENDAR_CURSOR_LIFETIME = timedelta(days=6)
DEFAULT_CURSOR_LIFETIME = timedelta(days=7)

_FRACTION_PATTERN = re.compile(r"(\.\d{6})\d+")


class ResourceType(enum.StrEnum):
    """Provider resource families that expose a change feed."""

    CALENDAR = "calendar"
    EMAIL = "email"


class ChangeKind(enum.StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a provider timestamp; naive values are treated as UTC.

    Graph emits up to seven fractional digits (``2024-05-01T10:00:00.1234567Z``)
    which :func:`datetime.fromisoformat` does not accept, so the fraction is
    truncated to microseconds first.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    raw = _FRACTION_PATTERN.sub(r"\1", raw)
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        logger.debug("Ignoring unparsable provider timestamp: %r", value)
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _as_non_empty_string(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


class ChangeItem(BaseModel):
    """Envelope over one raw resource delta."""

    model_config = ConfigDict(extra="forbid")

    id: str | None = None
    created_at: datetime | None = None
    last_modified_at: datetime | None = None
    removed: bool = False
    removed_reason: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("created_at", "last_modified_at", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> datetime | None:
        if value is None:
            return None
        return parse_timestamp(value)

    @property
    def sort_key(self) -> datetime | None:
        return self.last_modified_at or self.created_at

    @classmethod
    def from_provider(cls, payload: dict[str, Any]) -> ChangeItem:
        removed_payload = payload.get("@removed")
        removed = removed_payload is not None and removed_payload is not False
        reason = None
        if isinstance(removed_payload, dict):
            reason = _as_non_empty_string(removed_payload.get("reason"))
        return cls(
            id=_as_non_empty_string(payload.get("id")),
            created_at=payload.get("createdDateTime"),
            last_modified_at=payload.get("lastModifiedDateTime"),
            removed=removed,
            removed_reason=reason,
            payload=payload,
        )


class NormalizedChange(BaseModel):
    """A classified change ready for a downstream sink."""

    model_config = ConfigDict(extra="forbid")

    id: str | None
    kind: ChangeKind
    payload: dict[str, Any] = Field(default_factory=dict)
    account_id: str
    resource_type: ResourceType
    modified_at: datetime | None = None


class DeltaPage(BaseModel):
    """One change-feed page as returned by the fetcher."""

    model_config = ConfigDict(extra="forbid")

    items: list[ChangeItem] = Field(default_factory=list)
    next_page_token: str | None = None
    terminal_cursor: str | None = None
    failed_items: int = Field(default=0, ge=0)

    @field_validator("next_page_token", "terminal_cursor")
    @classmethod
    def _normalize_tokens(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @model_validator(mode="after")
    def _exactly_one_continuation(self) -> DeltaPage:
        if self.next_page_token is None and self.terminal_cursor is None:
            raise ValueError("page must carry either next_page_token or terminal_cursor")
        if self.next_page_token is not None and self.terminal_cursor is not None:
            # Keep paging; the head of the feed has not been reached yet.
            self.terminal_cursor = None
        return self

    @property
    def is_last(self) -> bool:
        return self.terminal_cursor is not None


class DateWindow(BaseModel):
    """Bounded time range for a windowed initial import."""

    model_config = ConfigDict(extra="forbid")

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)

    @model_validator(mode="after")
    def _ordered(self) -> DateWindow:
        if self.start >= self.end:
            raise ValueError("start must be before end")
        return self

    @classmethod
    def around_now(
        cls,
        days: int,
        *,
        lookback: timedelta = timedelta(minutes=1),
        now: datetime | None = None,
    ) -> DateWindow:
        reference = now if now is not None else datetime.now(UTC)
        return cls(start=reference - lookback, end=reference + timedelta(days=days))


class SyncCursor(BaseModel):
    """Opaque provider cursor bound to an (account, resource type) pair."""

    model_config = ConfigDict(extra="ignore")

    account_id: str = Field(min_length=1)
    resource_type: ResourceType
    token: str = Field(min_length=1)
    issued_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def expected_expiry(self) -> datetime:
        lifetime = (
            CALENDAR_CURSOR_LIFETIME
            if self.resource_type is ResourceType.CALENDAR
            else DEFAULT_CURSOR_LIFETIME
        )
        return self.issued_at + lifetime


class SubscriptionRecord(BaseModel):
    """Webhook subscription as held by the host application's store."""

    model_config = ConfigDict(extra="ignore")

    subscription_id: str = Field(min_length=1)
    account_id: str = Field(min_length=1)
    resource_type: ResourceType = ResourceType.CALENDAR
    expires_at: datetime
    is_active: bool = True
    client_state: str | None = None
    resource: str | None = None

    @field_validator("expires_at")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)

    def is_live(self, now: datetime | None = None) -> bool:
        reference = now if now is not None else datetime.now(UTC)
        return self.is_active and self.expires_at > reference
