"""Change stream processing: replay dedup, time ordering and classification."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

from deltasync.sync.models import (
    ChangeItem,
    ChangeKind,
    NormalizedChange,
    ResourceType,
)

logger = logging.getLogger(__name__)

# A modification within this gap of creation still counts as the create itself.
CREATED_THRESHOLD = timedelta(seconds=1)

_EARLIEST = datetime.min.replace(tzinfo=UTC)


class ChangeStreamProcessor:
    """Stateless normalization of raw change items."""

    def __init__(self, *, created_threshold: timedelta = CREATED_THRESHOLD) -> None:
        self._created_threshold = created_threshold

    def deduplicate(self, items: Iterable[ChangeItem]) -> list[ChangeItem]:
        """Collapse replayed items by id; a deletion is sticky.

        Later occurrences of an id replace earlier ones in place, unless the
        earlier occurrence was a deletion.  Items without an id cannot be
        matched and are all kept.
        """
        slots: list[ChangeItem] = []
        positions: dict[str, int] = {}

        for item in items:
            if item.id is None:
                slots.append(item)
                continue

            position = positions.get(item.id)
            if position is None:
                positions[item.id] = len(slots)
                slots.append(item)
            elif item.removed or not slots[position].removed:
                slots[position] = item

        return slots

    def sort(self, items: Iterable[ChangeItem]) -> list[ChangeItem]:
        """Stable ascending sort by ``last_modified_at`` falling back to ``created_at``."""
        return sorted(items, key=lambda item: item.sort_key or _EARLIEST)

    def classify(self, item: ChangeItem) -> ChangeKind:
        if item.removed:
            return ChangeKind.DELETED
        if item.created_at is None:
            return ChangeKind.CREATED
        modified = item.last_modified_at or item.created_at
        if modified - item.created_at <= self._created_threshold:
            return ChangeKind.CREATED
        return ChangeKind.UPDATED

    def normalize(
        self,
        items: Iterable[ChangeItem],
        *,
        account_id: str,
        resource_type: ResourceType,
    ) -> list[NormalizedChange]:
        ordered = self.sort(self.deduplicate(items))
        return [self._to_change(item, account_id, resource_type) for item in ordered]

    def _to_change(
        self,
        item: ChangeItem,
        account_id: str,
        resource_type: ResourceType,
    ) -> NormalizedChange:
        return NormalizedChange(
            id=item.id,
            kind=self.classify(item),
            payload=item.payload,
            account_id=account_id,
            resource_type=resource_type,
            modified_at=item.sort_key,
        )


class ChangeStream:
    """Page-at-a-time normalization for one streaming sync cycle.

    Remembers ids already delivered as deletions so a replay on a later page
    cannot resurrect them.  Earlier batches are never retracted.
    """

    def __init__(
        self,
        processor: ChangeStreamProcessor,
        *,
        account_id: str,
        resource_type: ResourceType,
    ) -> None:
        self._processor = processor
        self._account_id = account_id
        self._resource_type = resource_type
        self._deleted_ids: set[str] = set()
        self.delivered = 0

    def feed(self, items: Iterable[ChangeItem]) -> list[NormalizedChange]:
        batch: list[NormalizedChange] = []
        for change in self._processor.normalize(
            items,
            account_id=self._account_id,
            resource_type=self._resource_type,
        ):
            if change.id is not None and change.id in self._deleted_ids:
                logger.debug("Dropping replay of deleted item %s", change.id)
                continue
            if change.id is not None and change.kind is ChangeKind.DELETED:
                self._deleted_ids.add(change.id)
            batch.append(change)
        self.delivered += len(batch)
        return batch
