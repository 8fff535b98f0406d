"""Process-wide lifecycle coordinator, built on first use."""

import redis.asyncio as aioredis

from repairhub.config import settings
from repairhub.database import async_session_factory
from repairhub.services.coordinator import LifecycleCoordinator
from repairhub.services.expiry_queue import ExpiryScheduler

_coordinator: LifecycleCoordinator | None = None


def build_coordinator() -> LifecycleCoordinator:
    scheduler = None
    if settings.expiry_consumer_enabled:
        from repairhub.redis import redis_pool

        scheduler = ExpiryScheduler(aioredis.Redis(connection_pool=redis_pool))
    return LifecycleCoordinator(async_session_factory, scheduler=scheduler)


def get_coordinator() -> LifecycleCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = build_coordinator()
    return _coordinator
