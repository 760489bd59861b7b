"""Webhook subscription lifecycle signals.

The provider sends lifecycle notifications when a subscription needs
reauthorization, has been removed, or when change notifications were
dropped.  Each signal maps to one action:

- ``reauthorizationRequired``: renew the subscription through the renewer.
- ``subscriptionRemoved``: deactivate the local record.  Terminal; the
  subscription is not re-created here.
- ``missed``: run one incremental sync cycle to recover the dropped changes.
  Callers that serialize syncs per account pass their own ``run_sync``; a
  runner returning ``None`` has folded the recovery into a cycle already
  in flight.

Failures never escape :meth:`WebhookLifecycleCoordinator.handle_lifecycle_signal`;
they are logged and returned as ``success=False`` results.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from deltasync.sync.engine import IncrementalSyncEngine
from deltasync.sync.models import ResourceType
from deltasync.sync.stores import SubscriptionRenewer, SubscriptionStore

logger = logging.getLogger(__name__)

EVENT_REAUTHORIZATION_REQUIRED = "deltasync.lifecycle.reauthorization_required"
EVENT_SUBSCRIPTION_REMOVED = "deltasync.lifecycle.subscription_removed"
EVENT_MISSED = "deltasync.lifecycle.missed"

LifecycleEventHook = Callable[[str, dict[str, Any]], Awaitable[None]]
# Runs one recovery cycle and returns the change count, or None when coalesced.
SyncRunner = Callable[[str, ResourceType], Awaitable[int | None]]


class LifecycleEventKind(enum.StrEnum):
    REAUTHORIZATION_REQUIRED = "reauthorizationRequired"
    SUBSCRIPTION_REMOVED = "subscriptionRemoved"
    MISSED = "missed"


@dataclass(frozen=True)
class LifecycleResult:
    success: bool
    message: str
    changes_recovered: int | None = None
    coalesced: bool = False


class WebhookLifecycleCoordinator:
    """Routes lifecycle signals to renewal, deactivation, or a recovery sync."""

    def __init__(
        self,
        engine: IncrementalSyncEngine,
        subscription_store: SubscriptionStore,
        renewer: SubscriptionRenewer,
        *,
        event_hook: LifecycleEventHook | None = None,
    ) -> None:
        self._engine = engine
        self._subscriptions = subscription_store
        self._renewer = renewer
        self._event_hook = event_hook

    async def handle_lifecycle_signal(
        self,
        kind: str | None,
        subscription_id: str | None,
        tenant: str | None = None,
        *,
        run_sync: SyncRunner | None = None,
    ) -> LifecycleResult:
        if not kind:
            return LifecycleResult(success=False, message="Missing lifecycle event kind")
        if not subscription_id:
            logger.warning("Lifecycle signal %s received without subscription id", kind)
            return LifecycleResult(success=False, message="Missing subscription id")

        try:
            event_kind = LifecycleEventKind(kind)
        except ValueError:
            logger.warning("Unknown lifecycle event kind: %s", kind)
            return LifecycleResult(success=False, message=f"Unknown lifecycle event kind: {kind}")

        logger.info("Handling lifecycle signal %s for subscription %s", kind, subscription_id)
        try:
            if event_kind is LifecycleEventKind.REAUTHORIZATION_REQUIRED:
                return await self._handle_reauthorization(subscription_id, tenant)
            if event_kind is LifecycleEventKind.SUBSCRIPTION_REMOVED:
                return await self._handle_removed(subscription_id, tenant)
            return await self._handle_missed(subscription_id, tenant, run_sync or self._sync)
        except Exception as exc:
            logger.exception(
                "Error handling lifecycle signal %s for subscription %s",
                kind,
                subscription_id,
            )
            return LifecycleResult(success=False, message=str(exc) or type(exc).__name__)

    async def _handle_reauthorization(
        self,
        subscription_id: str,
        tenant: str | None,
    ) -> LifecycleResult:
        subscription = await self._subscriptions.find_by_subscription_id(subscription_id)
        if subscription is None:
            logger.warning("Subscription %s requiring reauthorization not found", subscription_id)
            return LifecycleResult(success=False, message="Subscription not found")

        try:
            renewed = await self._renewer.renew(subscription)
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.error("Failed to renew subscription %s: %s", subscription_id, error)
            await self._emit(
                EVENT_REAUTHORIZATION_REQUIRED,
                {
                    "subscription_id": subscription_id,
                    "tenant": tenant,
                    "account_id": subscription.account_id,
                    "renewal_successful": False,
                    "error": error,
                },
            )
            return LifecycleResult(success=False, message=f"Failed to renew subscription: {error}")

        logger.info(
            "Renewed subscription %s, new expiry %s",
            subscription_id,
            renewed.expires_at.isoformat(),
        )
        await self._emit(
            EVENT_REAUTHORIZATION_REQUIRED,
            {
                "subscription_id": subscription_id,
                "tenant": tenant,
                "account_id": subscription.account_id,
                "renewal_successful": True,
            },
        )
        return LifecycleResult(success=True, message="Subscription renewed successfully")

    async def _handle_removed(self, subscription_id: str, tenant: str | None) -> LifecycleResult:
        subscription = await self._subscriptions.find_by_subscription_id(subscription_id)
        if subscription is None:
            logger.warning("Removed subscription %s not found locally", subscription_id)
            return LifecycleResult(success=True, message="Subscription not found (already removed)")

        await self._subscriptions.deactivate(subscription_id)
        logger.warning("Subscription %s removed by provider; deactivated", subscription_id)
        await self._emit(
            EVENT_SUBSCRIPTION_REMOVED,
            {
                "subscription_id": subscription_id,
                "tenant": tenant,
                "account_id": subscription.account_id,
                "resource": subscription.resource,
            },
        )
        return LifecycleResult(success=True, message="Subscription marked as inactive")

    async def _sync(self, account_id: str, resource_type: ResourceType) -> int:
        return len(await self._engine.sync(account_id, resource_type))

    async def _handle_missed(
        self,
        subscription_id: str,
        tenant: str | None,
        run_sync: SyncRunner,
    ) -> LifecycleResult:
        subscription = await self._subscriptions.find_by_subscription_id(subscription_id)
        if subscription is None:
            logger.warning("Subscription %s with missed notifications not found", subscription_id)
            return LifecycleResult(success=False, message="Subscription not found")

        recovered = await run_sync(subscription.account_id, subscription.resource_type)
        if recovered is None:
            logger.info(
                "Recovery for subscription %s folded into the sync already running",
                subscription_id,
            )
            return LifecycleResult(
                success=True,
                message="Recovery coalesced into running sync",
                coalesced=True,
            )

        logger.info(
            "Recovered %d changes for subscription %s after missed notifications",
            recovered,
            subscription_id,
        )
        await self._emit(
            EVENT_MISSED,
            {
                "subscription_id": subscription_id,
                "tenant": tenant,
                "account_id": subscription.account_id,
                "changes_recovered": recovered,
            },
        )
        return LifecycleResult(
            success=True,
            message=f"Recovered {recovered} missed changes",
            changes_recovered=recovered,
        )

    async def _emit(self, event_name: str, payload: dict[str, Any]) -> None:
        if self._event_hook is None:
            return
        try:
            await self._event_hook(event_name, payload)
        except Exception:
            logger.exception("Lifecycle event hook failed for %s", event_name)
