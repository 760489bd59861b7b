"""Inbound webhook change notifications: validation and dispatch to the engine."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from deltasync.sync.engine import IncrementalSyncEngine
from deltasync.sync.lifecycle import WebhookLifecycleCoordinator
from deltasync.sync.models import ResourceType, SubscriptionRecord
from deltasync.sync.stores import SubscriptionStore

logger = logging.getLogger(__name__)

EXPECTED_ODATA_TYPES: dict[ResourceType, str] = {
    ResourceType.CALENDAR: "#microsoft.graph.event",
    ResourceType.EMAIL: "#microsoft.graph.message",
}
SUPPORTED_CHANGE_TYPES = frozenset({"created", "updated", "deleted"})


class ChangeNotification(BaseModel):
    """One item of a provider webhook notification collection."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    subscription_id: str | None = Field(default=None, alias="subscriptionId")
    resource: str | None = None
    change_type: str | None = Field(default=None, alias="changeType")
    resource_data: dict[str, Any] | None = Field(default=None, alias="resourceData")
    client_state: str | None = Field(default=None, alias="clientState")
    tenant_id: str | None = Field(default=None, alias="tenantId")
    lifecycle_event: str | None = Field(default=None, alias="lifecycleEvent")

    @field_validator(
        "subscription_id",
        "resource",
        "change_type",
        "client_state",
        "tenant_id",
        "lifecycle_event",
    )
    @classmethod
    def _normalize_optional(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class NotificationCollection(BaseModel):
    """Webhook request body: ``{"value": [...]}``."""

    model_config = ConfigDict(extra="ignore")

    value: list[ChangeNotification] = Field(default_factory=list)


@dataclass(frozen=True)
class NotificationValidation:
    is_valid: bool
    should_skip: bool
    is_lifecycle_event: bool = False
    lifecycle_event: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    message: str
    changes: int = 0
    coalesced: bool = False


def validate_notification(
    notification: ChangeNotification,
    resource_type: ResourceType,
) -> NotificationValidation:
    """Decide whether a notification should trigger a sync.

    Lifecycle notifications are flagged rather than processed here.  A
    missing ``resourceData`` on a created/updated notification is logged as
    an error since the change can only be recovered by the next sync.
    """
    if notification.subscription_id is None or notification.resource is None:
        logger.warning("Notification missing required fields (subscriptionId or resource)")
        return NotificationValidation(
            is_valid=False, should_skip=True, reason="Missing required fields"
        )

    if notification.lifecycle_event is not None:
        logger.info(
            "Received lifecycle event %s for subscription %s",
            notification.lifecycle_event,
            notification.subscription_id,
        )
        return NotificationValidation(
            is_valid=False,
            should_skip=True,
            is_lifecycle_event=True,
            lifecycle_event=notification.lifecycle_event,
            reason=f"Lifecycle event: {notification.lifecycle_event}",
        )

    if notification.change_type is None:
        logger.warning(
            "Notification missing changeType (resource=%s, subscription=%s)",
            notification.resource,
            notification.subscription_id,
        )
        return NotificationValidation(is_valid=False, should_skip=True, reason="Missing changeType")

    if notification.change_type not in SUPPORTED_CHANGE_TYPES:
        logger.warning("Unsupported change type: %s", notification.change_type)
        return NotificationValidation(
            is_valid=False,
            should_skip=True,
            reason=f"Unsupported change type: {notification.change_type}",
        )

    if notification.resource_data is None:
        if notification.change_type == "deleted":
            logger.warning(
                "Missing resourceData for deleted %s (resource=%s, subscription=%s)",
                resource_type.value,
                notification.resource,
                notification.subscription_id,
            )
        else:
            logger.error(
                "Missing resourceData for %s %s; run a manual sync "
                "(resource=%s, subscription=%s)",
                notification.change_type,
                resource_type.value,
                notification.resource,
                notification.subscription_id,
            )
        return NotificationValidation(
            is_valid=False, should_skip=True, reason="Missing resourceData"
        )

    expected = EXPECTED_ODATA_TYPES[resource_type]
    odata_type = notification.resource_data.get("@odata.type")
    if odata_type and odata_type != expected:
        logger.warning(
            "Invalid @odata.type %s (expected %s, resource=%s)",
            odata_type,
            expected,
            notification.resource,
        )
        return NotificationValidation(
            is_valid=False,
            should_skip=True,
            reason=f"Invalid @odata.type: expected {expected}",
        )

    return NotificationValidation(is_valid=True, should_skip=False)


class WebhookDispatcher:
    """Turns validated change notifications into sync cycles.

    At most one cycle runs per ``(account, resource type)`` in this process.
    Notifications arriving while it runs are coalesced into a single
    follow-up cycle started as soon as the running one finishes.
    """

    def __init__(
        self,
        engine: IncrementalSyncEngine,
        subscription_store: SubscriptionStore,
        lifecycle: WebhookLifecycleCoordinator,
    ) -> None:
        self._engine = engine
        self._subscriptions = subscription_store
        self._lifecycle = lifecycle
        self._in_progress: set[tuple[str, ResourceType]] = set()
        self._pending: set[tuple[str, ResourceType]] = set()

    def is_running(self, account_id: str, resource_type: ResourceType) -> bool:
        return (account_id, ResourceType(resource_type)) in self._in_progress

    async def dispatch_collection(self, body: dict[str, Any]) -> list[DispatchResult]:
        try:
            collection = NotificationCollection.model_validate(body)
        except ValidationError as exc:
            logger.warning("Rejected malformed notification collection: %s", exc)
            return [DispatchResult(success=False, message="Malformed notification collection")]
        return [await self.dispatch(item) for item in collection.value]

    async def dispatch(self, notification: ChangeNotification | dict[str, Any]) -> DispatchResult:
        if not isinstance(notification, ChangeNotification):
            try:
                notification = ChangeNotification.model_validate(notification)
            except ValidationError as exc:
                logger.warning("Rejected malformed notification: %s", exc)
                return DispatchResult(success=False, message="Malformed notification")

        try:
            return await self._dispatch(notification)
        except Exception as exc:
            logger.exception(
                "Error processing notification for subscription %s",
                notification.subscription_id,
            )
            return DispatchResult(success=False, message=str(exc) or type(exc).__name__)

    async def _dispatch(self, notification: ChangeNotification) -> DispatchResult:
        if notification.subscription_id is None:
            logger.warning("Notification without subscription id")
            return DispatchResult(success=False, message="Missing subscription id")

        subscription = await self._subscriptions.find_by_subscription_id(
            notification.subscription_id
        )
        if subscription is None:
            logger.warning("Unknown subscription id: %s", notification.subscription_id)
            return DispatchResult(success=False, message="Unknown subscription")

        if not _client_state_matches(subscription, notification):
            logger.warning(
                "Client state mismatch for subscription %s", subscription.subscription_id
            )
            return DispatchResult(success=False, message="Client state mismatch")

        validation = validate_notification(notification, subscription.resource_type)
        if validation.is_lifecycle_event:
            result = await self._lifecycle.handle_lifecycle_signal(
                validation.lifecycle_event,
                subscription.subscription_id,
                notification.tenant_id,
                run_sync=self._sync_serialized,
            )
            return DispatchResult(
                success=result.success,
                message=result.message,
                changes=result.changes_recovered or 0,
                coalesced=result.coalesced,
            )
        if validation.should_skip:
            return DispatchResult(success=False, message=validation.reason or "Skipped")

        if not subscription.is_live():
            logger.warning(
                "Ignoring notification for inactive or expired subscription %s",
                subscription.subscription_id,
            )
            return DispatchResult(success=False, message="Subscription is inactive or expired")

        return await self._run_coalesced(subscription.account_id, subscription.resource_type)

    async def _run_coalesced(self, account_id: str, resource_type: ResourceType) -> DispatchResult:
        total = await self._sync_serialized(account_id, resource_type)
        if total is None:
            return DispatchResult(success=True, message="Sync already in progress", coalesced=True)
        return DispatchResult(success=True, message="Notification processed", changes=total)

    async def _sync_serialized(self, account_id: str, resource_type: ResourceType) -> int | None:
        """Sync the pair until no follow-up is pending.

        Returns the total change count, or ``None`` when a cycle for the pair
        is already running; that cycle then runs once more before finishing.
        """
        key = (account_id, ResourceType(resource_type))
        if key in self._in_progress:
            self._pending.add(key)
            logger.debug("Sync already running for account %s; coalescing", account_id)
            return None

        self._in_progress.add(key)
        total = 0
        cycles = 0
        try:
            while True:
                self._pending.discard(key)
                changes = await self._engine.sync(account_id, resource_type)
                total += len(changes)
                cycles += 1
                if key not in self._pending:
                    break
        finally:
            self._in_progress.discard(key)
            self._pending.discard(key)

        logger.info(
            "Processed notification for account %s: %d changes in %d cycle(s)",
            account_id,
            total,
            cycles,
        )
        return total


def _client_state_matches(
    subscription: SubscriptionRecord,
    notification: ChangeNotification,
) -> bool:
    if not subscription.client_state:
        return True
    if notification.client_state is None:
        return False
    return secrets.compare_digest(
        subscription.client_state.encode(), notification.client_state.encode()
    )
