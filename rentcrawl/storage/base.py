"""Persistence collaborator interfaces.

The core talks to storage only through these protocols; ``MemoryStore`` and
``PostgresStore`` implement all of them.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from ..models import MatchRecord, NormalizedListing, QueueItem, UserPreferenceProfile


class QueueStore(Protocol):
    """Durable backlog rows keyed by (source, url)."""

    async def upsert_queue_items(self, items: Sequence[QueueItem]) -> List[QueueItem]:
        """Insert new rows or merge into existing ones.

        Existing rows keep the higher priority; finished rows are reset to
        pending; rows in flight keep their status.
        """
        ...

    async def select_eligible(
        self,
        *,
        limit: Optional[int],
        max_retries: int,
        retry_before: datetime,
        source: Optional[str] = None,
        per_source: Optional[int] = None,
    ) -> List[QueueItem]:
        """Pending rows ready to run, priority desc then created_at asc.

        ``per_source`` caps how many rows each source contributes before
        ``limit`` is applied.
        """
        ...

    async def claim(self, ids: Sequence[int]) -> List[QueueItem]:
        """Flip the given rows from pending to processing.

        Only rows that are still pending are returned, in the order given.
        """
        ...

    async def get_queue_item(self, item_id: int) -> Optional[QueueItem]:
        ...

    async def complete_queue_item(self, item_id: int, result: Optional[Dict[str, Any]]) -> bool:
        ...

    async def fail_queue_item(
        self,
        item_id: int,
        error: str,
        *,
        max_retries: int,
        retry: bool = True,
    ) -> Optional[QueueItem]:
        """Count a failed attempt and return the updated row."""
        ...

    async def delete_completed_before(self, cutoff: datetime) -> int:
        ...

    async def reset_failed(self) -> int:
        ...

    async def queue_counts(self) -> Dict[str, Any]:
        """Counts per status, per source, and average processing seconds."""
        ...


class ListingStore(Protocol):
    """Normalized listings keyed by (source, external_id)."""

    async def upsert_listing(self, listing: NormalizedListing) -> Tuple[int, bool]:
        """Return ``(listing_id, is_new)``."""
        ...

    async def get_listing(self, listing_id: int) -> Optional[NormalizedListing]:
        ...

    async def find_stale_listings(self, updated_before: datetime, limit: int) -> List[NormalizedListing]:
        ...

    async def find_incomplete_listings(self, limit: int) -> List[NormalizedListing]:
        ...

    async def mark_listing_inactive(self, source: str, external_id: str) -> bool:
        ...

    async def count_listings(self, source: Optional[str] = None) -> int:
        ...


class MatchStore(Protocol):
    async def upsert_matches(self, matches: Iterable[MatchRecord]) -> int:
        """Insert matches; an existing pair keeps the higher score."""
        ...

    async def list_matches(self, since: Optional[datetime] = None) -> List[MatchRecord]:
        ...


class ProfileStore(Protocol):
    async def active_profiles(self) -> List[UserPreferenceProfile]:
        ...
