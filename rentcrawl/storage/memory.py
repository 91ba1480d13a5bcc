"""In-process store used for tests and dry runs."""
from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..models import (
    ListingStatus,
    MatchRecord,
    NormalizedListing,
    QueueItem,
    QueueItemMetadata,
    QueueStatus,
    UserPreferenceProfile,
    utcnow,
)

LOGGER = logging.getLogger(__name__)

TERMINAL = (QueueStatus.COMPLETED, QueueStatus.FAILED)


def merge_metadata(old: QueueItemMetadata, new: QueueItemMetadata) -> QueueItemMetadata:
    """Overlay the keys explicitly set on ``new`` onto ``old``."""
    merged = old.model_dump(exclude_none=True)
    merged.update(new.model_dump(exclude_unset=True, exclude_none=True))
    return QueueItemMetadata(**merged)


class MemoryStore:
    """Queue, listing, match and profile store kept in dictionaries.

    All mutations run under one ``asyncio.Lock`` so status transitions are
    serialized the same way row locks serialize them in Postgres.
    """

    def __init__(self, profiles: Optional[Iterable[UserPreferenceProfile]] = None) -> None:
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self._listing_ids = itertools.count(1)

        self.queue: Dict[int, QueueItem] = {}
        self._queue_keys: Dict[Tuple[str, str], int] = {}
        self.listings: Dict[int, NormalizedListing] = {}
        self._listing_keys: Dict[Tuple[str, str], int] = {}
        self.matches: Dict[Tuple[str, int], MatchRecord] = {}
        self.profiles: List[UserPreferenceProfile] = list(profiles or [])

    async def connect(self) -> None:
        LOGGER.info("Using in-memory store; nothing is persisted across runs")

    async def close(self) -> None:
        pass

    # -- queue -------------------------------------------------------------

    async def upsert_queue_items(self, items: Sequence[QueueItem]) -> List[QueueItem]:
        now = utcnow()
        stored: List[QueueItem] = []
        async with self._lock:
            for item in items:
                existing_id = self._queue_keys.get(item.key)
                if existing_id is None:
                    row = item.model_copy(deep=True)
                    row.id = next(self._ids)
                    row.created_at = row.updated_at = now
                    self.queue[row.id] = row
                    self._queue_keys[row.key] = row.id
                    stored.append(row.model_copy(deep=True))
                    continue

                row = self.queue[existing_id]
                row.priority = max(row.priority or 0, item.priority or 0)
                row.metadata = merge_metadata(row.metadata, item.metadata)
                row.listing_id = item.listing_id or row.listing_id
                if row.status in TERMINAL:
                    row.status = QueueStatus.PENDING
                    row.attempts = 0
                    row.last_attempt_at = None
                    row.error_message = None
                    row.data_needed = set(item.data_needed)
                else:
                    row.data_needed = row.data_needed | item.data_needed
                row.updated_at = now
                stored.append(row.model_copy(deep=True))
        return stored

    async def select_eligible(
        self,
        *,
        limit: Optional[int],
        max_retries: int,
        retry_before: datetime,
        source: Optional[str] = None,
        per_source: Optional[int] = None,
    ) -> List[QueueItem]:
        async with self._lock:
            rows = [
                row
                for row in self.queue.values()
                if row.status == QueueStatus.PENDING
                and row.attempts < max_retries
                and (row.last_attempt_at is None or row.last_attempt_at < retry_before)
                and (source is None or row.source == source)
            ]
            rows.sort(key=lambda r: (-(r.priority or 0), r.created_at, r.id))
            if per_source is not None:
                taken: Dict[str, int] = {}
                ranked = []
                for row in rows:
                    if taken.get(row.source, 0) < per_source:
                        taken[row.source] = taken.get(row.source, 0) + 1
                        ranked.append(row)
                rows = ranked
            if limit is not None:
                rows = rows[:limit]
            return [row.model_copy(deep=True) for row in rows]

    async def claim(self, ids: Sequence[int]) -> List[QueueItem]:
        now = utcnow()
        claimed: List[QueueItem] = []
        async with self._lock:
            for item_id in ids:
                row = self.queue.get(item_id)
                if row is None or row.status != QueueStatus.PENDING:
                    continue
                row.status = QueueStatus.PROCESSING
                row.processing_started_at = now
                row.updated_at = now
                claimed.append(row.model_copy(deep=True))
        return claimed

    async def get_queue_item(self, item_id: int) -> Optional[QueueItem]:
        row = self.queue.get(item_id)
        return row.model_copy(deep=True) if row else None

    async def complete_queue_item(self, item_id: int, result: Optional[Dict[str, Any]]) -> bool:
        now = utcnow()
        async with self._lock:
            row = self.queue.get(item_id)
            if row is None:
                return False
            row.status = QueueStatus.COMPLETED
            row.result = result
            row.error_message = None
            row.processing_ended_at = now
            row.updated_at = now
            if result and result.get("listing_id"):
                row.listing_id = result["listing_id"]
            return True

    async def fail_queue_item(
        self,
        item_id: int,
        error: str,
        *,
        max_retries: int,
        retry: bool = True,
    ) -> Optional[QueueItem]:
        now = utcnow()
        async with self._lock:
            row = self.queue.get(item_id)
            if row is None:
                return None
            if row.status == QueueStatus.FAILED:
                return row.model_copy(deep=True)
            row.attempts += 1
            row.last_attempt_at = now
            row.error_message = error
            row.updated_at = now
            if not retry or row.attempts >= max_retries:
                row.status = QueueStatus.FAILED
                row.processing_ended_at = now
            else:
                row.status = QueueStatus.PENDING
            return row.model_copy(deep=True)

    async def delete_completed_before(self, cutoff: datetime) -> int:
        async with self._lock:
            expired = [
                row for row in self.queue.values()
                if row.status == QueueStatus.COMPLETED and row.updated_at < cutoff
            ]
            for row in expired:
                del self.queue[row.id]
                del self._queue_keys[row.key]
            return len(expired)

    async def reset_failed(self) -> int:
        now = utcnow()
        count = 0
        async with self._lock:
            for row in self.queue.values():
                if row.status == QueueStatus.FAILED:
                    row.status = QueueStatus.PENDING
                    row.attempts = 0
                    row.last_attempt_at = None
                    row.error_message = None
                    row.updated_at = now
                    count += 1
        return count

    async def queue_counts(self) -> Dict[str, Any]:
        counts: Dict[str, Any] = {status.value: 0 for status in QueueStatus}
        by_source: Dict[str, Dict[str, float]] = defaultdict(
            lambda: {"pending": 0, "processing": 0, "avg_processing_seconds": 0.0}
        )
        durations: Dict[str, List[float]] = defaultdict(list)
        for row in self.queue.values():
            counts[row.status.value] += 1
            source_counts = by_source[row.source]
            if row.status in (QueueStatus.PENDING, QueueStatus.PROCESSING):
                source_counts[row.status.value] += 1
            if (
                row.status == QueueStatus.COMPLETED
                and row.processing_started_at
                and row.processing_ended_at
            ):
                durations[row.source].append(
                    (row.processing_ended_at - row.processing_started_at).total_seconds()
                )
        for source, values in durations.items():
            by_source[source]["avg_processing_seconds"] = sum(values) / len(values)
        counts["total"] = len(self.queue)
        counts["by_source"] = dict(by_source)
        return counts

    # -- listings ------------------------------------------------------------

    async def upsert_listing(self, listing: NormalizedListing) -> Tuple[int, bool]:
        now = utcnow()
        async with self._lock:
            existing_id = self._listing_keys.get(listing.key)
            if existing_id is None:
                row = listing.model_copy(deep=True)
                row.id = next(self._listing_ids)
                row.first_seen_at = row.last_updated_at = now
                row.status = ListingStatus.ACTIVE
                self.listings[row.id] = row
                self._listing_keys[row.key] = row.id
                return row.id, True

            old = self.listings[existing_id]
            row = listing.model_copy(deep=True)
            row.id = existing_id
            row.first_seen_at = old.first_seen_at
            row.last_updated_at = now
            row.status = ListingStatus.ACTIVE
            row.description = row.description or old.description
            if not row.media.images:
                row.media.images = list(old.media.images)
            self.listings[existing_id] = row
            return existing_id, False

    async def get_listing(self, listing_id: int) -> Optional[NormalizedListing]:
        row = self.listings.get(listing_id)
        return row.model_copy(deep=True) if row else None

    async def find_stale_listings(self, updated_before: datetime, limit: int) -> List[NormalizedListing]:
        rows = [
            row for row in self.listings.values()
            if row.status == ListingStatus.ACTIVE and row.last_updated_at < updated_before
        ]
        rows.sort(key=lambda r: r.last_updated_at)
        return [row.model_copy(deep=True) for row in rows[:limit]]

    async def find_incomplete_listings(self, limit: int) -> List[NormalizedListing]:
        rows = [
            row for row in self.listings.values()
            if row.status == ListingStatus.ACTIVE and row.missing_categories()
        ]
        rows.sort(key=lambda r: r.id)
        return [row.model_copy(deep=True) for row in rows[:limit]]

    async def mark_listing_inactive(self, source: str, external_id: str) -> bool:
        async with self._lock:
            listing_id = self._listing_keys.get((source, external_id))
            if listing_id is None:
                return False
            self.listings[listing_id].status = ListingStatus.INACTIVE
            return True

    async def count_listings(self, source: Optional[str] = None) -> int:
        return sum(1 for row in self.listings.values() if source is None or row.source == source)

    # -- matches / profiles --------------------------------------------------

    async def upsert_matches(self, matches: Iterable[MatchRecord]) -> int:
        written = 0
        async with self._lock:
            for match in matches:
                existing = self.matches.get(match.key)
                if existing is not None and existing.score > match.score:
                    continue
                self.matches[match.key] = match.model_copy(deep=True)
                written += 1
        return written

    async def list_matches(self, since: Optional[datetime] = None) -> List[MatchRecord]:
        return [
            m.model_copy(deep=True)
            for m in self.matches.values()
            if since is None or m.created_at >= since
        ]

    async def active_profiles(self) -> List[UserPreferenceProfile]:
        return [p for p in self.profiles if p.is_active]

    async def upsert_profile(self, profile: UserPreferenceProfile) -> None:
        async with self._lock:
            self.profiles = [p for p in self.profiles if p.user_id != profile.user_id]
            self.profiles.append(profile.model_copy(deep=True))

    def add_profile(self, profile: UserPreferenceProfile) -> None:
        self.profiles.append(profile)
