"""Rental listing crawl system.

This package coordinates scraping of rental listings across many sites:
- Resource pool of per-source browser sessions
- Deduplicated, prioritized work queue
- Coordinator running discovery, update and health cycles
- Match engine scoring listings against user preferences
"""

from .config import (
    CoordinatorConfig,
    MatchConfig,
    PoolConfig,
    QueueConfig,
    Settings,
    load_settings,
)
from .coordinator import Coordinator, CoordinatorState
from .events import EventBus
from .matching import MatchEngine, MatchStats, score
from .pool import Lease, ResourcePool, WorkerSession
from .queue import WorkQueue, compute_priority
from .sources import BaseSourceAdapter, SourceAdapter, SourceConfig, SourceRegistry

__version__ = "0.1.0"

__all__ = [
    "CoordinatorConfig",
    "MatchConfig",
    "PoolConfig",
    "QueueConfig",
    "Settings",
    "load_settings",
    "Coordinator",
    "CoordinatorState",
    "EventBus",
    "MatchEngine",
    "MatchStats",
    "score",
    "Lease",
    "ResourcePool",
    "WorkerSession",
    "WorkQueue",
    "compute_priority",
    "BaseSourceAdapter",
    "SourceAdapter",
    "SourceConfig",
    "SourceRegistry",
]
