"""Per-job write serialization.

Two mutating operations on the same job never interleave; operations on
different jobs never wait on each other. The local backend covers a single
process, the Redis backend covers several API workers sharing one database.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Protocol

import redis.asyncio as aioredis
from redis.exceptions import LockError

from repairhub.config import settings
from repairhub.errors import ConcurrentModification

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "job:lock:"


class JobLocks(Protocol):
    def hold(self, job_id: uuid.UUID) -> "AsyncIterator[None]": ...


class LocalJobLocks:
    """asyncio locks keyed by job id, dropped once nobody holds or waits on them."""

    def __init__(self, wait_seconds: float | None = None) -> None:
        self.wait_seconds = wait_seconds if wait_seconds is not None else settings.job_lock_wait_seconds
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}
        self._users: dict[uuid.UUID, int] = {}

    @asynccontextmanager
    async def hold(self, job_id: uuid.UUID) -> AsyncIterator[None]:
        lock = self._locks.setdefault(job_id, asyncio.Lock())
        self._users[job_id] = self._users.get(job_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.wait_seconds)
            except asyncio.TimeoutError:
                raise ConcurrentModification(
                    "Job is busy with another operation, try again", job_id=job_id
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[job_id] -= 1
            if self._users[job_id] == 0:
                del self._users[job_id]
                self._locks.pop(job_id, None)

    def __len__(self) -> int:
        return len(self._locks)


class RedisJobLocks:
    """redis-py Lock per job.

    The lease (``timeout``) frees a job whose holder crashed; ``blocking_timeout``
    bounds how long a caller waits before reporting a concurrent modification.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        lease_seconds: float | None = None,
        wait_seconds: float | None = None,
    ) -> None:
        self.redis = redis
        self.lease_seconds = lease_seconds or settings.job_lock_timeout_seconds
        self.wait_seconds = wait_seconds if wait_seconds is not None else settings.job_lock_wait_seconds

    @asynccontextmanager
    async def hold(self, job_id: uuid.UUID) -> AsyncIterator[None]:
        lock = self.redis.lock(
            f"{LOCK_KEY_PREFIX}{job_id}",
            timeout=self.lease_seconds,
            blocking_timeout=self.wait_seconds,
        )
        acquired = await lock.acquire()
        if not acquired:
            raise ConcurrentModification("Job is busy with another operation, try again", job_id=job_id)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # Lease ran out mid-operation; the version check still guards the write.
                logger.warning("Lock for job %s expired before release", job_id)


def build_job_locks() -> JobLocks:
    if settings.job_lock_backend == "redis":
        from repairhub.redis import redis_pool

        return RedisJobLocks(aioredis.Redis(connection_pool=redis_pool))
    return LocalJobLocks()
