"""Durable, deduplicated, prioritized backlog of scrape targets."""
from __future__ import annotations

import logging
import math
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from ..config import QueueConfig
from ..models import (
    ALL_CATEGORIES,
    DataCategory,
    QueueItem,
    QueueItemKind,
    QueueItemMetadata,
    utcnow,
)
from ..storage.base import ListingStore, QueueStore
from .priority import compute_priority

LOGGER = logging.getLogger(__name__)


@dataclass
class QueueStats:
    """Queue counters used by the health cycle and the CLI."""

    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    by_source: Dict[str, Dict[str, float]] = field(default_factory=dict)

    @classmethod
    def from_counts(cls, counts: Mapping[str, Any]) -> QueueStats:
        return cls(
            total=counts.get("total", 0),
            pending=counts.get("pending", 0),
            processing=counts.get("processing", 0),
            completed=counts.get("completed", 0),
            failed=counts.get("failed", 0),
            by_source=dict(counts.get("by_source", {})),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class WorkQueue:
    """Work queue over a ``QueueStore``.

    Selection always goes through ``QueueStore.claim``, a conditional
    pending -> processing transition, so two concurrent callers can never
    receive the same row.
    """

    def __init__(
        self,
        store: QueueStore,
        listings: Optional[ListingStore] = None,
        config: Optional[QueueConfig] = None,
    ) -> None:
        self.store = store
        self.listings = listings
        self.config = config or QueueConfig()
        self.config.validate()

    def priority_for(self, item: QueueItem) -> int:
        return compute_priority(item, self.config.priority_weights)

    async def enqueue(self, items: Iterable[Union[QueueItem, Mapping[str, Any]]]) -> int:
        """Upsert targets on (source, url) and return how many rows were touched."""
        prepared: List[QueueItem] = []
        for raw in items:
            item = raw if isinstance(raw, QueueItem) else QueueItem.model_validate(raw)
            if item.priority is None:
                item = item.model_copy(update={"priority": self.priority_for(item)})
            prepared.append(item)

        if not prepared:
            return 0
        stored = await self.store.upsert_queue_items(prepared)
        LOGGER.info("Enqueued %d item(s)", len(stored))
        return len(stored)

    async def next_batch(self, source: Optional[str] = None) -> List[QueueItem]:
        """Claim up to ``batch_size`` eligible items, optionally for one source."""
        candidates = await self.store.select_eligible(
            limit=self.config.batch_size,
            max_retries=self.config.max_retries,
            retry_before=self._retry_cutoff(),
            source=source,
        )
        if not candidates:
            return []
        claimed = await self.store.claim([c.id for c in candidates])
        LOGGER.debug("Claimed %d of %d candidate(s)", len(claimed), len(candidates))
        return claimed

    async def by_fair_share(self) -> Dict[str, List[QueueItem]]:
        """Claim a batch grouped by source, each source capped at its fair share."""
        # Each source contributes at most one batch of candidates.
        candidates = await self.store.select_eligible(
            limit=None,
            max_retries=self.config.max_retries,
            retry_before=self._retry_cutoff(),
            per_source=self.config.batch_size,
        )
        if not candidates:
            return {}

        grouped: Dict[str, List[QueueItem]] = OrderedDict()
        for item in candidates:
            grouped.setdefault(item.source, []).append(item)

        fair_share = math.ceil(self.config.batch_size / len(grouped))
        allowed = {item.id for items in grouped.values() for item in items[:fair_share]}
        selected = [item.id for item in candidates if item.id in allowed][: self.config.batch_size]

        claimed = await self.store.claim(selected)
        result: Dict[str, List[QueueItem]] = OrderedDict()
        for item in claimed:
            result.setdefault(item.source, []).append(item)

        LOGGER.info(
            "Fair-share batch: %d item(s) across %d source(s) (share=%d)",
            len(claimed),
            len(result),
            fair_share,
        )
        return result

    async def mark_completed(self, item_id: int, result: Optional[Mapping[str, Any]] = None) -> None:
        payload = dict(result) if result is not None else None
        if not await self.store.complete_queue_item(item_id, payload):
            LOGGER.warning("Queue item %d not found", item_id)
            return
        LOGGER.debug("Marked queue item %d as completed", item_id)

    async def mark_failed(self, item_id: int, error: str, retry: bool = True) -> Optional[QueueItem]:
        """Count a failed attempt.

        The item becomes terminally ``failed`` once attempts reach
        ``max_retries`` (or immediately when ``retry`` is False); otherwise it
        returns to ``pending`` and waits out the retry delay.
        """
        item = await self.store.fail_queue_item(
            item_id,
            error,
            max_retries=self.config.max_retries,
            retry=retry,
        )
        if item is None:
            LOGGER.warning("Queue item %d not found", item_id)
            return None
        LOGGER.warning(
            "Marked queue item %d as %s (attempt %d/%d): %s",
            item_id,
            item.status.value,
            item.attempts,
            self.config.max_retries,
            error,
        )
        return item

    async def cleanup(self, retention_days: Optional[int] = None) -> int:
        """Purge completed rows older than the retention window."""
        days = self.config.retention_days if retention_days is None else retention_days
        count = await self.store.delete_completed_before(utcnow() - timedelta(days=days))
        if count > 0:
            LOGGER.info("Purged %d completed queue item(s)", count)
        return count

    async def requeue_failed(self) -> int:
        count = await self.store.reset_failed()
        if count > 0:
            LOGGER.info("Requeued %d failed item(s)", count)
        return count

    async def reenqueue_stale(self) -> int:
        """Enqueue listings not refreshed within the staleness threshold."""
        if self.listings is None:
            return 0
        cutoff = utcnow() - timedelta(seconds=self.config.stale_threshold)
        stale = await self.listings.find_stale_listings(cutoff, self.config.stale_scan_limit)
        if not stale:
            return 0

        items = [
            QueueItem(
                source=listing.source,
                url=listing.url,
                listing_id=listing.id,
                priority=self.config.priority_weights.stale,
                data_needed=set(ALL_CATEGORIES),
                metadata=QueueItemMetadata(kind=QueueItemKind.DETAIL, external_id=listing.external_id),
            )
            for listing in stale
        ]
        return await self.enqueue(items)

    async def reenqueue_incomplete(self) -> int:
        """Enqueue listings that are still missing descriptive data."""
        if self.listings is None:
            return 0
        incomplete = await self.listings.find_incomplete_listings(self.config.incomplete_scan_limit)
        if not incomplete:
            return 0

        items = [
            QueueItem(
                source=listing.source,
                url=listing.url,
                listing_id=listing.id,
                priority=self.config.priority_weights.incomplete,
                data_needed=listing.missing_categories() | {DataCategory.AMENITIES},
                metadata=QueueItemMetadata(kind=QueueItemKind.DETAIL, external_id=listing.external_id),
            )
            for listing in incomplete
        ]
        return await self.enqueue(items)

    async def get_stats(self) -> QueueStats:
        return QueueStats.from_counts(await self.store.queue_counts())

    def _retry_cutoff(self):
        return utcnow() - timedelta(seconds=self.config.retry_delay)
