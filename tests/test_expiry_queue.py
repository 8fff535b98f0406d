"""Tests for the Redis expiry queue: enqueue, pop, scheduler and startup recovery."""

import uuid
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from repairhub.money import Money
from repairhub.services.expiry_queue import (
    EXPIRY_KEY,
    ExpiryScheduler,
    cancel_expiry,
    enqueue_expiry,
    pop_due,
    recover_expiries,
)
from tests.conftest import T0


@pytest.mark.asyncio
async def test_enqueue_uses_due_timestamp() -> None:
    redis = AsyncMock()
    job_id = uuid.uuid4()
    await enqueue_expiry(redis, job_id, T0 + timedelta(hours=24))
    redis.zadd.assert_awaited_once_with(EXPIRY_KEY, {str(job_id): (T0 + timedelta(hours=24)).timestamp()})

    await cancel_expiry(redis, job_id)
    redis.zrem.assert_awaited_once_with(EXPIRY_KEY, str(job_id))


@pytest.mark.asyncio
async def test_pop_due_empty() -> None:
    redis = AsyncMock()
    redis.zrangebyscore.return_value = []
    assert await pop_due(redis, T0) == (None, None)


@pytest.mark.asyncio
async def test_pop_due_not_yet() -> None:
    redis = AsyncMock()
    job_id = uuid.uuid4()
    redis.zrangebyscore.return_value = [(str(job_id).encode(), (T0 + timedelta(seconds=90)).timestamp())]
    job, wait = await pop_due(redis, T0)
    assert job is None
    assert wait == pytest.approx(90)
    redis.zrem.assert_not_awaited()


@pytest.mark.asyncio
async def test_pop_due_claims_entry() -> None:
    redis = AsyncMock()
    job_id = uuid.uuid4()
    redis.zrangebyscore.return_value = [(str(job_id).encode(), T0.timestamp())]
    redis.zrem.return_value = 1
    assert await pop_due(redis, T0 + timedelta(seconds=1)) == (job_id, None)


@pytest.mark.asyncio
async def test_pop_due_lost_race() -> None:
    redis = AsyncMock()
    redis.zrangebyscore.return_value = [(str(uuid.uuid4()).encode(), T0.timestamp())]
    redis.zrem.return_value = 0
    assert await pop_due(redis, T0) == (None, 0.0)


@pytest.mark.asyncio
async def test_scheduler_swallows_redis_errors() -> None:
    redis = AsyncMock()
    redis.zadd.side_effect = ConnectionError("redis down")
    redis.zrem.side_effect = ConnectionError("redis down")
    scheduler = ExpiryScheduler(redis)
    await scheduler.schedule(uuid.uuid4(), T0)
    await scheduler.cancel(uuid.uuid4())


@pytest.mark.asyncio
async def test_coordinator_schedules_deadlines(session_factory, clock, gateway, notifier) -> None:
    from repairhub.services.coordinator import LifecycleCoordinator
    from repairhub.services.job_lock import LocalJobLocks

    redis = AsyncMock()
    coordinator = LifecycleCoordinator(
        session_factory, clock=clock, gateway=gateway, notifier=notifier,
        locks=LocalJobLocks(), scheduler=ExpiryScheduler(redis),
    )
    customer_id = uuid.uuid4()
    job = (await coordinator.create_job(customer_id, "tyres", "Swap tyres", Money.of("90.00"))).data
    redis.zadd.assert_awaited_with(EXPIRY_KEY, {str(job.job_id): (T0 + timedelta(hours=24)).timestamp()})

    bid = (await coordinator.submit_bid(job.job_id, uuid.uuid4(), Money.of("80.00"))).data
    await coordinator.accept_bid(job.job_id, bid.bid_id, customer_id)
    redis.zrem.assert_awaited_with(EXPIRY_KEY, str(job.job_id))


@pytest.mark.asyncio
async def test_recover_expiries(coordinator, session_factory, clock) -> None:
    customer_id = uuid.uuid4()
    open_job = (await coordinator.create_job(customer_id, "tyres", "Swap tyres", Money.of("90.00"))).data
    closed_job = (await coordinator.create_job(customer_id, "oil", "Oil change", Money.of("40.00"))).data
    await coordinator.cancel_job(closed_job.job_id, customer_id)

    redis = AsyncMock()
    count = await recover_expiries(redis, session_factory)

    assert count == 1
    redis.zadd.assert_awaited_once_with(
        EXPIRY_KEY, {str(open_job.job_id): (T0 + timedelta(hours=24)).timestamp()}
    )
