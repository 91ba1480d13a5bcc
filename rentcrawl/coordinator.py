"""Drives discovery, update and health cycles over the pool, queue and sources."""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from .config import CoordinatorConfig
from .errors import (
    AuthenticationFailure,
    BlockedError,
    ConfigurationError,
    ListingGone,
    TransientFetchError,
)
from .events import (
    DiscoveryCompleted,
    EventBus,
    HealthWarning,
    Started,
    Stopped,
    UpdateCompleted,
)
from .matching import MatchEngine
from .models import (
    DETAIL_CATEGORIES,
    DataCategory,
    NormalizedListing,
    QueueItem,
    QueueItemKind,
    QueueItemMetadata,
    utcnow,
)
from .pool import Lease, ResourcePool
from .queue import WorkQueue
from .sources import SourceAdapter, SourceRegistry
from .storage.base import ListingStore

LOGGER = logging.getLogger(__name__)


class CoordinatorState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass
class SourceStats:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    average_time: float = 0.0  # seconds per item

    def record(self, success: bool, duration: float) -> None:
        self.processed += 1
        if success:
            self.successful += 1
        else:
            self.failed += 1
        self.average_time += (duration - self.average_time) / self.processed


@dataclass
class SourceResult:
    """What one source group produced during an update cycle."""

    new: List[NormalizedListing] = field(default_factory=list)
    updated: List[NormalizedListing] = field(default_factory=list)
    targets_found: int = 0
    done: Set[int] = field(default_factory=set)


class Coordinator:
    """Runs the crawl on three timers until stopped.

    * discovery: enqueue each enabled source's search target
    * update: claim a fair-share batch and work it, one task per source
    * health: inspect queue and pool statistics and publish warnings

    A failing item or source is logged into a bounded error buffer and never
    aborts its siblings; only misconfiguration detected at construction is
    fatal.
    """

    def __init__(
        self,
        registry: SourceRegistry,
        pool: ResourcePool,
        queue: WorkQueue,
        listings: ListingStore,
        match_engine: Optional[MatchEngine] = None,
        *,
        events: Optional[EventBus] = None,
        config: Optional[CoordinatorConfig] = None,
    ) -> None:
        self.config = config or CoordinatorConfig()
        self.config.validate()
        registry.validate()
        if self.config.enable_auto_matching and match_engine is None:
            raise ConfigurationError("Auto-matching is enabled but no match engine was given")

        self.registry = registry
        self.pool = pool
        self.queue = queue
        self.listings = listings
        self.match_engine = match_engine
        self.events = events or pool.events

        self.state = CoordinatorState.STOPPED
        self._timers: Dict[str, asyncio.Task] = {}
        self._updating = False
        self._reset_stats()

    # -- lifecycle --------------------------------------------------------

    @property
    def running(self) -> bool:
        return self.state == CoordinatorState.RUNNING

    async def start(self, run_initial: bool = True) -> None:
        """Start the timers; with ``run_initial`` run discovery and update once now."""
        if self.running:
            LOGGER.warning("Coordinator is already running")
            return

        LOGGER.info("Starting coordinator")
        self.state = CoordinatorState.RUNNING
        self._reset_stats()
        self.pool.start()

        if self.config.enable_auto_discovery:
            self._start_timer("discovery", self.config.discovery_interval, self.run_discovery)
        self._start_timer("update", self.config.update_interval, self.run_update)
        self._start_timer("health", self.config.health_interval, self.run_health_check)

        self.events.publish(Started(config=self.config.to_dict()))

        if run_initial:
            await self.run_discovery()
            await self.run_update()

    async def stop(self) -> None:
        """Cancel every timer, shut the pool down and publish ``Stopped``."""
        if not self.running:
            return
        LOGGER.info("Stopping coordinator")
        self.state = CoordinatorState.STOPPED

        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

        await self.pool.shutdown()
        self.events.publish(Stopped(stats=self.get_stats()))
        LOGGER.info("Coordinator stopped")

    @property
    def active_timers(self) -> List[str]:
        return [name for name, task in self._timers.items() if not task.done()]

    def _start_timer(self, name: str, minutes: float, cycle: Callable[[], Awaitable[Any]]) -> None:
        self._timers[name] = asyncio.create_task(
            self._timer_loop(name, minutes * 60, cycle),
            name=f"coordinator-{name}",
        )

    async def _timer_loop(self, name: str, interval: float, cycle: Callable[[], Awaitable[Any]]) -> None:
        while self.running:
            await asyncio.sleep(interval)
            LOGGER.debug("Timer %s fired", name)
            try:
                await cycle()
            except Exception as exc:
                LOGGER.error("Timer %s cycle failed: %s", name, exc, exc_info=True)
                self._log_error(name, exc)

    # -- discovery --------------------------------------------------------

    async def run_discovery(self) -> Optional[DiscoveryCompleted]:
        """Enqueue the first search-results page of every enabled source."""
        if not self.running:
            return None

        LOGGER.info("Running discovery for all sources")
        started = time.monotonic()
        sources = self.registry.enabled_sources()
        enqueued = 0
        for source in sources:
            try:
                adapter = self.registry.get_adapter(source)
                filters = self.registry.get_config(source).search_filters
                url = adapter.build_search_target(filters, 1)
                enqueued += await self.queue.enqueue([
                    QueueItem(
                        source=source,
                        url=url,
                        priority=self.config.discovery_priority,
                        data_needed={DataCategory.BASIC},
                        metadata=QueueItemMetadata(kind=QueueItemKind.DISCOVERY, page=1),
                    )
                ])
            except Exception as exc:
                LOGGER.error("Discovery failed for %s: %s", source, exc, exc_info=True)
                self._log_error(f"discovery:{source}", exc)

        event = DiscoveryCompleted(sources=len(sources), duration=time.monotonic() - started)
        LOGGER.info("Discovery enqueued %d target(s) for %d source(s)", enqueued, len(sources))
        self.events.publish(event)
        return event

    # -- update -----------------------------------------------------------

    async def run_update(self) -> Optional[UpdateCompleted]:
        """Work one fair-share batch, then match and clean up."""
        if not self.running:
            return None

        LOGGER.info("Running update cycle")
        started = time.monotonic()
        self._updating = True
        try:
            groups = await self.queue.by_fair_share()
            results: Dict[str, SourceResult] = {}
            if groups:
                total = sum(len(items) for items in groups.values())
                LOGGER.info("Processing %d item(s) across %d source(s)", total, len(groups))
                results = await self._process_sources(groups)
            else:
                LOGGER.info("No items in queue")

            new = [listing for result in results.values() for listing in result.new]
            updated = [listing for result in results.values() for listing in result.updated]
            self.stats["total_listings_processed"] += len(new) + len(updated)

            if self.config.enable_auto_matching and new:
                await self._create_matches(new)
            if self.config.enable_auto_cleanup:
                await self._perform_cleanup()
        except Exception as exc:
            LOGGER.error("Update cycle failed: %s", exc, exc_info=True)
            self._log_error("update", exc)
            return None
        finally:
            self._updating = False

        event = UpdateCompleted(
            processed=len(new) + len(updated),
            new=len(new),
            updated=len(updated),
            duration=time.monotonic() - started,
        )
        LOGGER.info(
            "Update cycle completed in %.1fs: %d new, %d updated",
            event.duration,
            event.new,
            event.updated,
        )
        self.events.publish(event)
        return event

    async def _process_sources(self, groups: Dict[str, List[QueueItem]]) -> Dict[str, SourceResult]:
        semaphore = asyncio.Semaphore(self.config.max_concurrent_sources)

        async def guarded(source: str, items: List[QueueItem]) -> SourceResult:
            async with semaphore:
                return await self._process_source_safely(source, items)

        sources = list(groups)
        outcomes = await asyncio.gather(*(guarded(source, groups[source]) for source in sources))
        return dict(zip(sources, outcomes))

    async def _process_source_safely(self, source: str, items: List[QueueItem]) -> SourceResult:
        result = SourceResult()
        try:
            await self._process_source(source, items, result)
        except Exception as exc:
            LOGGER.error("Failed to process %s: %s", source, exc, exc_info=True)
            self._log_error(source, exc)
            # Items never reached go back to the queue instead of staying claimed.
            retry = not isinstance(exc, ConfigurationError)
            for item in items:
                if item.id in result.done:
                    continue
                try:
                    await self.queue.mark_failed(item.id, f"Source processing failed: {exc}", retry=retry)
                except Exception as mark_exc:
                    LOGGER.error("Could not release queue item %d: %s", item.id, mark_exc)
        return result

    async def _process_source(self, source: str, items: List[QueueItem], result: SourceResult) -> None:
        LOGGER.info("Processing %s (%d items)", source, len(items))
        adapter = self.registry.get_adapter(source)
        source_config = self.registry.get_config(source)
        priority = max((item.priority or 0) for item in items)

        lease = await self.pool.acquire(source, requires_auth=source_config.requires_auth, priority=priority)
        try:
            if not lease.session.is_authenticated:
                await self._authenticate(adapter, lease)

            delay = self.registry.request_delay(source)
            for index, item in enumerate(items):
                await self._process_item(adapter, lease.unit, item, result)
                result.done.add(item.id)
                if index < len(items) - 1 and delay > 0:
                    await asyncio.sleep(delay)
        finally:
            await self.pool.release(lease.session, lease.unit)

    async def _authenticate(self, adapter: SourceAdapter, lease: Lease) -> None:
        try:
            ok = await asyncio.wait_for(adapter.authenticate(lease.unit), self.config.item_timeout)
            if not ok:
                raise AuthenticationFailure(f"{adapter.source} rejected the credentials")
        except Exception as exc:
            LOGGER.warning("Authentication failed for %s, continuing unauthenticated: %s", adapter.source, exc)
            self._log_error(f"auth:{adapter.source}", exc)
            return
        self.pool.mark_authenticated(lease.session)

    async def _process_item(
        self,
        adapter: SourceAdapter,
        unit: Any,
        item: QueueItem,
        result: SourceResult,
    ) -> None:
        started = time.monotonic()
        timeout = self.config.item_timeout
        success = False
        LOGGER.debug("Processing %s item %d: %s", item.kind.value, item.id, item.url)
        try:
            await asyncio.wait_for(adapter.navigate(unit, item.url, timeout), timeout)
            if await asyncio.wait_for(adapter.detect_blocked(unit), timeout):
                raise BlockedError(f"Challenge page detected at {item.url}")

            if item.kind == QueueItemKind.DISCOVERY:
                found = await self._handle_discovery(adapter, unit, item)
                result.targets_found += found
                await self.queue.mark_completed(item.id, {"kind": "discovery", "targets_found": found})
            else:
                try:
                    listing, is_new = await self._handle_detail(adapter, unit, item)
                except ListingGone as gone:
                    retired = await self._retire_listing(adapter.source, item, gone)
                    await self.queue.mark_completed(item.id, {"kind": "detail", "gone": True, "retired": retired})
                else:
                    (result.new if is_new else result.updated).append(listing)
                    await self.queue.mark_completed(
                        item.id,
                        {"kind": "detail", "listing_id": listing.id, "is_new": is_new},
                    )
            success = True
        except BlockedError as exc:
            LOGGER.warning("%s: %s", adapter.source, exc)
            await self.queue.mark_failed(item.id, str(exc), retry=False)
        except asyncio.TimeoutError:
            LOGGER.warning("%s: item %d timed out after %.0fs", adapter.source, item.id, timeout)
            await self.queue.mark_failed(item.id, f"Timed out after {timeout:.0f}s")
        except Exception as exc:
            LOGGER.warning("%s: item %d failed: %s", adapter.source, item.id, exc)
            await self.queue.mark_failed(item.id, str(exc) or type(exc).__name__)
        finally:
            self._source_stats(adapter.source).record(success, time.monotonic() - started)

    async def _handle_discovery(self, adapter: SourceAdapter, unit: Any, item: QueueItem) -> int:
        targets = await asyncio.wait_for(adapter.extract_targets(unit), self.config.item_timeout)
        LOGGER.info("%s: found %d listing(s) on %s", adapter.source, len(targets), item.url)
        if not targets:
            return 0
        await self.queue.enqueue(
            QueueItem(
                source=adapter.source,
                url=target.url,
                priority=self.config.detail_priority,
                data_needed=set(DETAIL_CATEGORIES),
                metadata=QueueItemMetadata(
                    kind=QueueItemKind.DETAIL,
                    external_id=target.external_id,
                    title=target.title,
                ),
            )
            for target in targets
        )
        return len(targets)

    async def _handle_detail(self, adapter: SourceAdapter, unit: Any, item: QueueItem):
        detail = await asyncio.wait_for(adapter.extract_detail(unit, item.url), self.config.item_timeout)
        if detail is None:
            raise TransientFetchError(f"No data extracted from {item.url}")

        listing = adapter.to_normalized_listing(detail)
        listing_id, is_new = await self.listings.upsert_listing(listing)
        listing.id = listing_id
        LOGGER.debug("%s: %s listing %d", adapter.source, "inserted" if is_new else "updated", listing_id)
        return listing, is_new

    async def _retire_listing(self, source: str, item: QueueItem, gone: ListingGone) -> bool:
        external_id = gone.external_id or item.metadata.external_id
        if not external_id:
            LOGGER.info("%s: %s is gone but carries no external id", source, item.url)
            return False
        retired = await self.listings.mark_listing_inactive(source, external_id)
        if retired:
            self.stats["total_listings_retired"] += 1
        LOGGER.info("%s: listing %s is gone (retired=%s)", source, external_id, retired)
        return retired

    async def _create_matches(self, listings: List[NormalizedListing]) -> None:
        try:
            stats = await self.match_engine.create_matches(listings)
        except Exception as exc:
            LOGGER.error("Match creation failed: %s", exc, exc_info=True)
            self._log_error("matching", exc)
            return
        self.stats["total_matches_created"] += stats.total_matches

    async def _perform_cleanup(self) -> None:
        steps = (
            ("cleanup", self.queue.cleanup),
            ("stale", self.queue.reenqueue_stale),
            ("incomplete", self.queue.reenqueue_incomplete),
        )
        for name, step in steps:
            try:
                count = await step()
            except Exception as exc:
                LOGGER.error("Queue %s step failed: %s", name, exc, exc_info=True)
                self._log_error(f"cleanup:{name}", exc)
                continue
            if count:
                LOGGER.info("Queue %s step touched %d item(s)", name, count)

    # -- health -----------------------------------------------------------

    async def run_health_check(self) -> List[HealthWarning]:
        """Publish warnings for unhealthy queue or pool state. Never corrects anything."""
        warnings: List[HealthWarning] = []
        try:
            queue_stats = await self.queue.get_stats()
        except Exception as exc:
            LOGGER.error("Health check could not read queue stats: %s", exc, exc_info=True)
            self._log_error("health", exc)
            return warnings
        pool_stats = self.pool.get_stats()

        if queue_stats.failed > queue_stats.completed * self.config.failure_ratio_threshold:
            LOGGER.warning(
                "High failure rate in queue: %d failed vs %d completed",
                queue_stats.failed,
                queue_stats.completed,
            )
            warnings.append(HealthWarning(type="queue", stats=queue_stats.to_dict()))

        if pool_stats["total_sessions"] == 0 and queue_stats.pending > 0:
            LOGGER.warning("No sessions available but %d item(s) pending", queue_stats.pending)
            warnings.append(HealthWarning(type="sessions", stats=pool_stats))

        if not self._updating and queue_stats.processing > self.config.stuck_processing_threshold:
            LOGGER.warning("%d item(s) stuck in processing", queue_stats.processing)
            warnings.append(HealthWarning(type="processing", stats=queue_stats.to_dict()))

        for warning in warnings:
            self.events.publish(warning)
        return warnings

    # -- stats ------------------------------------------------------------

    def _reset_stats(self) -> None:
        self.stats: Dict[str, Any] = {
            "start_time": utcnow(),
            "total_listings_processed": 0,
            "total_matches_created": 0,
            "total_listings_retired": 0,
        }
        self._per_source: Dict[str, SourceStats] = {}
        self.errors: Deque[Dict[str, Any]] = deque(maxlen=self.config.error_buffer_size)

    def _source_stats(self, source: str) -> SourceStats:
        if source not in self._per_source:
            self._per_source[source] = SourceStats()
        return self._per_source[source]

    def _log_error(self, context: str, error: BaseException) -> None:
        self.errors.append({
            "context": context,
            "error": str(error) or type(error).__name__,
            "timestamp": utcnow(),
        })

    def get_stats(self) -> Dict[str, Any]:
        pool_stats = self.pool.get_stats()
        start_time: datetime = self.stats["start_time"]
        return {
            "state": self.state.value,
            "start_time": start_time.isoformat(),
            "total_listings_processed": self.stats["total_listings_processed"],
            "total_matches_created": self.stats["total_matches_created"],
            "total_listings_retired": self.stats["total_listings_retired"],
            "sources": {source: asdict(stats) for source, stats in self._per_source.items()},
            "sessions": {
                "active": pool_stats["total_sessions"],
                "authenticated": pool_stats["authenticated"],
            },
            "errors": [
                {**entry, "timestamp": entry["timestamp"].isoformat()} for entry in self.errors
            ],
        }
