import asyncio
from datetime import timedelta

import pytest

from rentcrawl.config import PoolConfig
from rentcrawl.errors import AcquireTimeout, ConfigurationError, PoolClosedError
from rentcrawl.events import EventBus, SessionClosed, SessionCreated
from rentcrawl.models import utcnow
from rentcrawl.pool import ResourcePool

from .fakes import FakeSessionFactory


async def _settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def test_third_acquire_waits_for_a_release():
    async def scenario():
        factory = FakeSessionFactory()
        pool = ResourcePool(
            factory,
            PoolConfig(max_units_per_session=2, max_sessions_per_source=1, max_total_sessions=2),
        )
        first = await pool.acquire("alpha")
        second = await pool.acquire("alpha")
        third_task = asyncio.create_task(pool.acquire("alpha"))
        await _settle()
        waiting_before = not third_task.done()

        await pool.release(first.session, first.unit)
        third = await asyncio.wait_for(third_task, 1)
        await pool.shutdown()
        return factory, first, second, third, waiting_before

    factory, first, second, third, waiting_before = asyncio.run(scenario())
    assert factory.created == 1
    assert first.session is second.session is third.session
    assert waiting_before
    assert first.unit.closed


def test_released_session_is_reused():
    async def scenario():
        factory = FakeSessionFactory()
        pool = ResourcePool(factory)
        lease = await pool.acquire("alpha")
        await pool.release(lease.session, lease.unit)
        again = await pool.acquire("alpha")
        stats = pool.get_stats()
        await pool.shutdown()
        return factory, lease, again, stats

    factory, lease, again, stats = asyncio.run(scenario())
    assert factory.created == 1
    assert again.session is lease.session
    assert stats["total_sessions"] == 1
    assert stats["by_source"]["alpha"]["active_units"] == 1


def test_caps_hold_under_concurrent_acquires():
    config = PoolConfig(max_units_per_session=2, max_sessions_per_source=2, max_total_sessions=3)
    observed = []

    async def worker(pool):
        lease = await pool.acquire("alpha", timeout=5)
        observed.append((
            lease.session.active_units,
            len(pool.sessions("alpha")),
            pool.total_sessions,
        ))
        await asyncio.sleep(0.01)
        await pool.release(lease.session, lease.unit)

    async def scenario():
        factory = FakeSessionFactory()
        pool = ResourcePool(factory, config)
        await asyncio.gather(*(worker(pool) for _ in range(12)))
        await pool.shutdown()
        return factory

    factory = asyncio.run(scenario())
    assert len(observed) == 12
    assert factory.created <= 2
    for active_units, per_source, total in observed:
        assert active_units <= 2
        assert per_source <= 2
        assert total <= 3


def test_total_cap_is_shared_across_sources():
    async def scenario():
        factory = FakeSessionFactory()
        pool = ResourcePool(
            factory,
            PoolConfig(max_units_per_session=1, max_sessions_per_source=2, max_total_sessions=2),
        )
        alpha = await pool.acquire("alpha")
        await pool.acquire("beta")
        gamma_task = asyncio.create_task(pool.acquire("gamma", timeout=1))
        await _settle()
        blocked = not gamma_task.done()

        await pool.release(alpha.session, alpha.unit)
        await pool.sweep()
        await pool.shutdown()
        with pytest.raises(PoolClosedError):
            await gamma_task
        return blocked, factory

    blocked, factory = asyncio.run(scenario())
    assert blocked
    assert factory.created == 2


def test_waiters_are_served_by_priority():
    async def scenario():
        factory = FakeSessionFactory()
        pool = ResourcePool(
            factory,
            PoolConfig(max_units_per_session=1, max_sessions_per_source=1, max_total_sessions=1),
        )
        held = await pool.acquire("alpha")
        low = asyncio.create_task(pool.acquire("alpha", priority=1))
        await _settle()
        high = asyncio.create_task(pool.acquire("alpha", priority=10))
        await _settle()

        await pool.release(held.session, held.unit)
        await _settle()
        order = (high.done(), low.done())

        lease = high.result()
        await pool.release(lease.session, lease.unit)
        await asyncio.wait_for(low, 1)
        await pool.shutdown()
        return order

    assert asyncio.run(scenario()) == (True, False)


def test_acquire_times_out():
    async def scenario():
        pool = ResourcePool(
            FakeSessionFactory(),
            PoolConfig(max_units_per_session=1, max_sessions_per_source=1, max_total_sessions=1),
        )
        await pool.acquire("alpha")
        with pytest.raises(AcquireTimeout) as info:
            await pool.acquire("alpha", timeout=0.05)
        stats = pool.get_stats()
        await pool.shutdown()
        return info.value, stats

    error, stats = asyncio.run(scenario())
    assert error.source == "alpha"
    assert stats["by_source"]["alpha"]["waiting"] == 0


def test_shutdown_fails_waiters_and_closes_everything():
    async def scenario():
        factory = FakeSessionFactory()
        pool = ResourcePool(
            factory,
            PoolConfig(max_units_per_session=1, max_sessions_per_source=1, max_total_sessions=1),
        )
        pool.start()
        await pool.acquire("alpha")
        waiter = asyncio.create_task(pool.acquire("alpha"))
        await _settle()
        await pool.shutdown()
        with pytest.raises(PoolClosedError):
            await waiter
        with pytest.raises(PoolClosedError):
            await pool.acquire("alpha")
        return factory, pool

    factory, pool = asyncio.run(scenario())
    assert factory.closed
    assert all(handle.closed for handle in factory.handles)
    assert pool.total_sessions == 0
    assert pool.closed


def test_sweep_closes_idle_sessions():
    events = []

    async def scenario():
        factory = FakeSessionFactory()
        bus = EventBus()
        bus.subscribe(SessionClosed, events.append)
        pool = ResourcePool(factory, PoolConfig(session_timeout=60), events=bus)
        lease = await pool.acquire("alpha")
        await pool.release(lease.session, lease.unit)
        lease.session.last_used_at = utcnow() - timedelta(minutes=5)
        await pool.sweep()
        return factory, pool

    factory, pool = asyncio.run(scenario())
    assert pool.total_sessions == 0
    assert factory.handles[0].closed
    assert [event.source for event in events] == ["alpha"]


def test_sweep_expires_authentication_but_keeps_busy_session():
    async def scenario():
        pool = ResourcePool(FakeSessionFactory(), PoolConfig(auth_session_lifetime=60))
        lease = await pool.acquire("alpha", requires_auth=True)
        pool.mark_authenticated(lease.session, {"user": "crawler"})
        lease.session.authenticated_at = utcnow() - timedelta(minutes=2)
        await pool.sweep()
        return pool, lease

    pool, lease = asyncio.run(scenario())
    assert not lease.session.is_authenticated
    assert lease.session.metadata == {"user": "crawler"}
    assert pool.sessions("alpha") == [lease.session]


def test_requires_auth_prefers_authenticated_sessions():
    async def scenario():
        pool = ResourcePool(
            FakeSessionFactory(),
            PoolConfig(max_units_per_session=1, max_sessions_per_source=2, max_total_sessions=2),
        )
        first = await pool.acquire("alpha")
        second = await pool.acquire("alpha")
        pool.mark_authenticated(second.session)
        await pool.release(first.session, first.unit)
        await pool.release(second.session, second.unit)

        authed = await pool.acquire("alpha", requires_auth=True)
        other = await pool.acquire("alpha", requires_auth=True)
        return first, second, authed, other

    first, second, authed, other = asyncio.run(scenario())
    assert authed.session is second.session
    assert other.session is first.session


def test_repeated_release_errors_destroy_the_session():
    async def scenario():
        factory = FakeSessionFactory()
        pool = ResourcePool(factory, PoolConfig(max_release_errors=1))
        first = await pool.acquire("alpha")
        second = await pool.acquire("alpha")
        first.session.handle.fail_close_unit = True

        await pool.release(first.session, first.unit)
        after_one = (first.session.error_count, first.session.active_units, pool.total_sessions)
        await pool.release(second.session, second.unit)
        return factory, first, after_one, pool

    factory, first, after_one, pool = asyncio.run(scenario())
    assert after_one == (1, 2, 1)
    assert first.session.closed
    assert pool.total_sessions == 0
    assert factory.handles[0].closed


def test_creation_failure_propagates_and_frees_the_slot():
    async def scenario():
        factory = FakeSessionFactory()
        factory.fail_next = RuntimeError("browser crashed")
        pool = ResourcePool(factory)
        with pytest.raises(RuntimeError, match="browser crashed"):
            await pool.acquire("alpha")
        count = pool.total_sessions
        lease = await pool.acquire("alpha")
        return count, lease, pool

    count, lease, pool = asyncio.run(scenario())
    assert count == 0
    assert lease.session.source == "alpha"
    assert pool.total_sessions == 1


def test_session_created_events():
    events = []

    async def scenario():
        bus = EventBus()
        bus.subscribe(SessionCreated, events.append)
        pool = ResourcePool(FakeSessionFactory(), events=bus)
        await pool.acquire("alpha")
        await pool.acquire("beta")
        await pool.shutdown()

    asyncio.run(scenario())
    assert [event.source for event in events] == ["alpha", "beta"]
    assert all(event.id for event in events)


def test_invalid_pool_config_is_rejected():
    with pytest.raises(ConfigurationError):
        ResourcePool(FakeSessionFactory(), PoolConfig(max_sessions_per_source=5, max_total_sessions=2))
