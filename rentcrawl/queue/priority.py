"""Priority heuristic for scrape targets."""
from __future__ import annotations

from ..config import PriorityWeights
from ..models import QueueItem


def compute_priority(item: QueueItem, weights: PriorityWeights) -> int:
    """Rank a target by how much a scrape of it is worth.

    Sum of: ``weights.new`` for targets without a listing yet, the source's
    configured weight, and ``weights.per_missing_category`` for each data
    category still needed.
    """
    priority = 0
    if item.listing_id is None:
        priority += weights.new
    priority += weights.sources.get(item.source, 0)
    priority += len(item.data_needed) * weights.per_missing_category
    return priority
