"""Prometheus metrics instrumentation for delta sync cycles.

Metrics exported:
- deltasync_pages_fetched_total: Counter of change-feed pages fetched
- deltasync_retries_total: Counter of retry attempts by error kind
- deltasync_rate_limit_wait_seconds: Histogram of time spent waiting for a permit
- deltasync_rate_limit_cooldowns_total: Counter of throttling cooldowns applied
- deltasync_cursor_resets_total: Counter of cursor deletions by reason
- deltasync_changes_total: Counter of normalized changes by kind
- deltasync_failed_items_total: Counter of items dropped by failed detail lookups
- deltasync_sync_cycles_total: Counter of sync cycles by mode/outcome

All metrics carry the ``resource_type`` label.  Account identifiers are
deliberately not used as labels.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

pages_fetched_total = Counter(
    "deltasync_pages_fetched_total",
    "Total number of change-feed pages fetched",
    labelnames=["resource_type", "phase"],
)

retries_total = Counter(
    "deltasync_retries_total",
    "Total number of provider call retry attempts",
    labelnames=["operation", "error_kind"],
)

rate_limit_wait_seconds = Histogram(
    "deltasync_rate_limit_wait_seconds",
    "Time spent waiting for a per-account rate-limit permit",
    buckets=(0.0, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

rate_limit_cooldowns_total = Counter(
    "deltasync_rate_limit_cooldowns_total",
    "Total number of throttling cooldowns applied to accounts",
)

cursor_resets_total = Counter(
    "deltasync_cursor_resets_total",
    "Total number of stored cursors deleted",
    labelnames=["resource_type", "reason"],
)

changes_total = Counter(
    "deltasync_changes_total",
    "Total number of normalized changes delivered",
    labelnames=["resource_type", "kind"],
)

failed_items_total = Counter(
    "deltasync_failed_items_total",
    "Total number of change items excluded after a failed detail lookup",
    labelnames=["resource_type"],
)

sync_cycles_total = Counter(
    "deltasync_sync_cycles_total",
    "Total number of sync cycles by mode and outcome",
    labelnames=["resource_type", "mode", "outcome"],
)


class SyncMetrics:
    """Metrics collector bound to one resource type."""

    def __init__(self, resource_type: str) -> None:
        self._resource_type = resource_type

    def record_page(self, phase: str) -> None:
        pages_fetched_total.labels(resource_type=self._resource_type, phase=phase).inc()

    def record_cursor_reset(self, reason: str) -> None:
        """Record a cursor deletion.

        Args:
            reason: ``"expired"`` or ``"forced"``
        """
        cursor_resets_total.labels(resource_type=self._resource_type, reason=reason).inc()

    def record_changes(self, kinds: list[str]) -> None:
        for kind in kinds:
            changes_total.labels(resource_type=self._resource_type, kind=kind).inc()

    def record_failed_items(self, count: int) -> None:
        if count > 0:
            failed_items_total.labels(resource_type=self._resource_type).inc(count)

    def record_cycle(self, mode: str, outcome: str) -> None:
        sync_cycles_total.labels(
            resource_type=self._resource_type,
            mode=mode,
            outcome=outcome,
        ).inc()


def record_retry(operation: str, error_kind: str) -> None:
    retries_total.labels(operation=operation, error_kind=error_kind).inc()


def record_rate_limit_wait(seconds: float) -> None:
    rate_limit_wait_seconds.observe(seconds)


def record_cooldown() -> None:
    rate_limit_cooldowns_total.inc()
