"""Bounded pool of per-source worker sessions."""
from __future__ import annotations

import asyncio
import bisect
import itertools
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from ..config import PoolConfig
from ..errors import AcquireTimeout, PoolClosedError
from ..events import EventBus, SessionClosed, SessionCreated
from ..models import utcnow
from .session import SessionFactory, WorkerSession

LOGGER = logging.getLogger(__name__)


@dataclass
class Lease:
    """A checked-out unit together with the session that owns it."""

    session: WorkerSession
    unit: Any


@dataclass(order=True)
class _Waiter:
    sort_key: tuple
    requires_auth: bool = field(compare=False)
    future: asyncio.Future = field(compare=False)


class ResourcePool:
    """Rations worker sessions and their units across sources.

    Invariants kept at every suspension point:

    * ``session.active_units <= max_units_per_session``
    * sessions per source ``<= max_sessions_per_source``
    * sessions in total ``<= max_total_sessions``

    Capacity is reserved synchronously before any await, so two coroutines
    can never both pass a cap check for the same slot.
    """

    def __init__(
        self,
        factory: SessionFactory,
        config: Optional[PoolConfig] = None,
        *,
        events: Optional[EventBus] = None,
    ) -> None:
        self.factory = factory
        self.config = config or PoolConfig()
        self.config.validate()
        self.events = events or EventBus()

        self._sessions: Dict[str, List[WorkerSession]] = defaultdict(list)
        self._creating: Dict[str, int] = defaultdict(int)
        self._waiting: Dict[str, List[_Waiter]] = defaultdict(list)
        self._seq = itertools.count()
        self._sweep_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._closed = False

    # -- public API -------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def total_sessions(self) -> int:
        return sum(len(s) for s in self._sessions.values()) + sum(self._creating.values())

    def sessions(self, source: Optional[str] = None) -> List[WorkerSession]:
        if source is not None:
            return list(self._sessions.get(source, []))
        return [s for sessions in self._sessions.values() for s in sessions]

    def start(self) -> None:
        """Start the periodic idle/auth sweep."""
        if self._closed:
            raise PoolClosedError("Resource pool is shut down")
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="pool-sweep")

    async def acquire(
        self,
        source: str,
        requires_auth: bool = False,
        priority: int = 0,
        timeout: Optional[float] = None,
    ) -> Lease:
        """Check out one unit for ``source``.

        Suspends in the source's wait list when every cap is reached. Raises
        ``AcquireTimeout`` when nothing frees up within ``timeout`` (default
        ``PoolConfig.acquire_timeout``) and ``PoolClosedError`` on shutdown.
        Session creation errors propagate unchanged.
        """
        if self._closed:
            raise PoolClosedError("Resource pool is shut down")

        LOGGER.debug("Session requested for %s (auth=%s, priority=%d)", source, requires_auth, priority)

        session = self._reserve_existing(source, requires_auth)
        if session is None and self._can_create(source):
            session = await self._create_session(source)
        if session is None:
            LOGGER.info("Waiting for an available session for %s", source)
            session = await self._wait_for_available(source, requires_auth, priority, timeout)

        return await self._open_unit(session)

    async def release(self, session: WorkerSession, unit: Any) -> None:
        """Return a unit to the pool and serve the source's wait list."""
        if session.closed:
            LOGGER.debug("Release on closed session %s ignored", session.id)
            return
        try:
            await session.handle.close_unit(unit)
        except Exception as exc:
            session.error_count += 1
            LOGGER.warning(
                "Error releasing unit of session %s (%d errors): %s",
                session.id,
                session.error_count,
                exc,
            )
            if session.error_count > self.config.max_release_errors:
                LOGGER.warning("Destroying session %s after repeated release errors", session.id)
                await self._destroy(session)
            return

        session.active_units = max(0, session.active_units - 1)
        session.last_used_at = utcnow()
        LOGGER.debug("Released unit for %s (active: %d)", session.source, session.active_units)
        self._serve_waiters(session.source)

    def mark_authenticated(self, session: WorkerSession, metadata: Optional[Dict[str, Any]] = None) -> None:
        session.is_authenticated = True
        session.authenticated_at = utcnow()
        if metadata:
            session.metadata.update(metadata)
        LOGGER.info("Session %s authenticated for %s", session.id, session.source)

    def get_stats(self) -> Dict[str, Any]:
        by_source: Dict[str, Dict[str, int]] = {}
        for source in set(self._sessions) | set(self._waiting):
            sessions = self._sessions.get(source, [])
            waiting = [w for w in self._waiting.get(source, []) if not w.future.done()]
            if not sessions and not waiting:
                continue
            by_source[source] = {
                "sessions": len(sessions),
                "authenticated": sum(1 for s in sessions if s.is_authenticated),
                "active_units": sum(s.active_units for s in sessions),
                "waiting": len(waiting),
            }
        return {
            "total_sessions": self.total_sessions,
            "authenticated": sum(v["authenticated"] for v in by_source.values()),
            "active_units": sum(v["active_units"] for v in by_source.values()),
            "by_source": by_source,
        }

    async def sweep(self) -> None:
        """Destroy idle sessions and expire stale authentication."""
        now = utcnow()
        idle: List[WorkerSession] = []
        for session in self.sessions():
            if session.active_units == 0 and session.idle_seconds(now) > self.config.session_timeout:
                LOGGER.info("Closing idle session %s", session.id)
                idle.append(session)
                continue
            auth_age = session.auth_age_seconds(now)
            if session.is_authenticated and auth_age is not None and auth_age > self.config.auth_session_lifetime:
                session.is_authenticated = False
                LOGGER.info("Authentication expired for session %s", session.id)

        if idle:
            await asyncio.gather(*(self._destroy(s, serve=False) for s in idle))
        self._serve_all()

    async def shutdown(self) -> None:
        """Force-close every session and cancel every pending acquire."""
        if self._closed:
            return
        LOGGER.info("Shutting down resource pool")
        self._closed = True

        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        for waiters in self._waiting.values():
            for waiter in waiters:
                if not waiter.future.done():
                    waiter.future.set_exception(PoolClosedError("Resource pool is shut down"))
        self._waiting.clear()

        await asyncio.gather(*(self._destroy(s, serve=False) for s in self.sessions()))
        self._sessions.clear()

        try:
            await self.factory.close()
        except Exception as exc:
            LOGGER.warning("Error closing session factory: %s", exc)
        LOGGER.info("Resource pool shutdown complete")

    # -- internals --------------------------------------------------------

    def _find_available(self, source: str, requires_auth: bool) -> Optional[WorkerSession]:
        candidates = [
            s
            for s in self._sessions.get(source, [])
            if not s.closed and s.active_units < self.config.max_units_per_session
        ]
        if not candidates:
            return None
        if requires_auth:
            candidates.sort(key=lambda s: (not s.is_authenticated, s.active_units))
        else:
            candidates.sort(key=lambda s: s.active_units)
        return candidates[0]

    def _reserve_existing(self, source: str, requires_auth: bool) -> Optional[WorkerSession]:
        if any(not w.future.done() for w in self._waiting.get(source, [])):
            return None
        session = self._find_available(source, requires_auth)
        if session is not None:
            session.active_units += 1
        return session

    def _can_create(self, source: str) -> bool:
        per_source = len(self._sessions.get(source, [])) + self._creating[source]
        return (
            not self._closed
            and self.total_sessions < self.config.max_total_sessions
            and per_source < self.config.max_sessions_per_source
        )

    async def _create_session(self, source: str) -> WorkerSession:
        """Create a session with one unit already reserved for the caller."""
        self._creating[source] += 1
        try:
            LOGGER.info("Creating new session for %s", source)
            handle = await self.factory.create(source)
        except BaseException:
            self._creating[source] -= 1
            self._serve_all()
            raise

        self._creating[source] -= 1
        session = WorkerSession(source=source, handle=handle, active_units=1)
        if self._closed:
            await self._close_handle(session)
            raise PoolClosedError("Resource pool is shut down")
        self._sessions[source].append(session)
        self.events.publish(SessionCreated(source=source, id=session.id))
        self._serve_waiters(source)
        return session

    async def _open_unit(self, session: WorkerSession) -> Lease:
        try:
            unit = await session.handle.new_unit()
        except BaseException:
            session.active_units = max(0, session.active_units - 1)
            session.error_count += 1
            self._serve_waiters(session.source)
            raise
        session.last_used_at = utcnow()
        return Lease(session=session, unit=unit)

    async def _wait_for_available(
        self,
        source: str,
        requires_auth: bool,
        priority: int,
        timeout: Optional[float],
    ) -> WorkerSession:
        timeout = self.config.acquire_timeout if timeout is None else timeout
        future = asyncio.get_running_loop().create_future()
        waiter = _Waiter(sort_key=(-priority, next(self._seq)), requires_auth=requires_auth, future=future)
        bisect.insort(self._waiting[source], waiter)

        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.TimeoutError:
            self._abandon(source, waiter)
            raise AcquireTimeout(source, timeout) from None
        except asyncio.CancelledError:
            self._abandon(source, waiter)
            raise

    def _abandon(self, source: str, waiter: _Waiter) -> None:
        waiting = self._waiting.get(source, [])
        if waiter in waiting:
            waiting.remove(waiter)
        future = waiter.future
        if not future.done():
            future.cancel()
            return
        # Served in the same tick the wait ended: hand the reservation back.
        if not future.cancelled() and future.exception() is None:
            session = future.result()
            session.active_units = max(0, session.active_units - 1)
            self._serve_waiters(source)

    def _serve_waiters(self, source: str) -> None:
        waiting = self._waiting.get(source)
        while waiting:
            head = waiting[0]
            if head.future.done():
                waiting.pop(0)
                continue
            session = self._find_available(source, head.requires_auth)
            if session is not None:
                waiting.pop(0)
                session.active_units += 1
                head.future.set_result(session)
                continue
            if self._can_create(source):
                waiting.pop(0)
                task = asyncio.ensure_future(self._create_for_waiter(source, head))
                self._background.add(task)
                task.add_done_callback(self._background.discard)
                continue
            break
        if not waiting:
            self._waiting.pop(source, None)

    def _serve_all(self) -> None:
        for source in list(self._waiting):
            self._serve_waiters(source)

    async def _create_for_waiter(self, source: str, waiter: _Waiter) -> None:
        try:
            session = await self._create_session(source)
        except Exception as exc:
            if not waiter.future.done():
                waiter.future.set_exception(exc)
            return
        if waiter.future.done():
            # Waiter gave up while the session was launching.
            session.active_units -= 1
            self._serve_waiters(source)
        else:
            waiter.future.set_result(session)

    async def _destroy(self, session: WorkerSession, serve: bool = True) -> None:
        if session.closed:
            return
        session.closed = True
        sessions = self._sessions.get(session.source)
        if sessions and session in sessions:
            sessions.remove(session)
            if not sessions:
                self._sessions.pop(session.source, None)
        await self._close_handle(session)
        self.events.publish(SessionClosed(source=session.source, id=session.id))
        if serve and not self._closed:
            self._serve_all()

    async def _close_handle(self, session: WorkerSession) -> None:
        try:
            await session.handle.close()
        except Exception as exc:
            LOGGER.error("Error closing session %s: %s", session.id, exc)

    async def _sweep_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.config.cleanup_interval)
            try:
                await self.sweep()
            except Exception as exc:
                LOGGER.error("Pool sweep failed: %s", exc, exc_info=True)
