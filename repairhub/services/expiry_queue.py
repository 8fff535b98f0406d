"""Job expiry queue using a Redis sorted set.

Every job with a pending deadline (the bidding window of an open job, or the
response window of a pending change order) sits in the set with
score = due unix timestamp. A single async consumer sleeps until the earliest
entry is due, then asks the coordinator to sweep that job. Sweeping is
idempotent, so a duplicate or late pop is harmless.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import redis.asyncio as aioredis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from repairhub.clock import ensure_aware
from repairhub.config import settings
from repairhub.models.change_order import ChangeOrder, ChangeOrderStatus
from repairhub.models.job import OPEN_FOR_BIDS, Job

if TYPE_CHECKING:
    from repairhub.services.coordinator import LifecycleCoordinator

logger = logging.getLogger(__name__)

EXPIRY_KEY = "job:expiries"


async def enqueue_expiry(redis: aioredis.Redis, job_id: uuid.UUID, due: datetime) -> None:
    """Schedule a sweep of ``job_id`` at ``due``. Re-adding replaces the score."""
    await redis.zadd(EXPIRY_KEY, {str(job_id): ensure_aware(due).timestamp()})
    logger.info("Enqueued expiry for job %s at %s", job_id, due.isoformat())


async def cancel_expiry(redis: aioredis.Redis, job_id: uuid.UUID) -> None:
    await redis.zrem(EXPIRY_KEY, str(job_id))


class ExpiryScheduler:
    """Coordinator-facing handle on the queue. Redis failures never fail a transition;
    ``sweep_all_expired`` remains the backstop for anything missed here.
    """

    def __init__(self, redis: aioredis.Redis) -> None:
        self.redis = redis

    async def schedule(self, job_id: uuid.UUID, due: datetime) -> None:
        try:
            await enqueue_expiry(self.redis, job_id, due)
        except Exception:
            logger.exception("Failed to enqueue expiry for job %s", job_id)

    async def cancel(self, job_id: uuid.UUID) -> None:
        try:
            await cancel_expiry(self.redis, job_id)
        except Exception:
            logger.exception("Failed to cancel expiry for job %s", job_id)


async def pop_due(redis: aioredis.Redis, now: datetime) -> tuple[uuid.UUID | None, float | None]:
    """Claim the earliest entry if it is due.

    Returns ``(job_id, None)`` for a claimed job, ``(None, seconds)`` when the
    earliest entry is still in the future and ``(None, None)`` when the set is empty.
    """
    entries = await redis.zrangebyscore(EXPIRY_KEY, "-inf", "+inf", start=0, num=1, withscores=True)
    if not entries:
        return None, None

    member, due_ts = entries[0]
    wait = due_ts - now.timestamp()
    if wait > 0:
        return None, wait

    removed = await redis.zrem(EXPIRY_KEY, member)
    if not removed:
        # Another consumer got it
        return None, 0.0
    raw = member.decode() if isinstance(member, bytes) else member
    return uuid.UUID(raw), None


async def run_expiry_consumer(coordinator: "LifecycleCoordinator", redis: aioredis.Redis | None = None) -> None:
    """Block on the sorted set, sweeping jobs as their deadlines arrive."""
    from repairhub.redis import redis_pool

    owns_client = redis is None
    if redis is None:
        redis = aioredis.Redis(connection_pool=redis_pool)

    while True:
        try:
            job_id, wait = await pop_due(redis, coordinator.clock.now())
            if job_id is None:
                # Cap the nap so newly added, earlier deadlines are picked up
                await asyncio.sleep(10 if wait is None else min(wait, 60.0))
                continue

            result = await coordinator.sweep_expired(job_id)
            if not result.success:
                logger.info("Expiry sweep for job %s skipped: %s", job_id, result.error.code.value)

        except asyncio.CancelledError:
            logger.info("Expiry consumer shutting down")
            break
        except Exception:
            logger.exception("Expiry consumer error, retrying in 5s")
            await asyncio.sleep(5)

    if owns_client:
        await redis.aclose()


async def recover_expiries(
    redis: aioredis.Redis,
    session_factory: async_sessionmaker[AsyncSession],
) -> int:
    """Re-enqueue deadlines for open jobs and pending change orders after a restart."""
    count = 0
    async with session_factory() as db:
        result = await db.execute(select(Job.job_id, Job.created_at).where(Job.status.in_(list(OPEN_FOR_BIDS))))
        for job_id, created_at in result.all():
            await enqueue_expiry(redis, job_id, ensure_aware(created_at) + timedelta(hours=settings.job_expiry_hours))
            count += 1

        result = await db.execute(
            select(ChangeOrder.job_id, ChangeOrder.expires_at).where(
                ChangeOrder.status == ChangeOrderStatus.PENDING
            )
        )
        for job_id, expires_at in result.all():
            await enqueue_expiry(redis, job_id, expires_at)
            count += 1

    logger.info("Expiry recovery: re-enqueued %d deadlines", count)
    return count
