"""Prioritized, deduplicated backlog of scrape targets."""

from .priority import compute_priority
from .work_queue import QueueStats, WorkQueue

__all__ = [
    "compute_priority",
    "QueueStats",
    "WorkQueue",
]
