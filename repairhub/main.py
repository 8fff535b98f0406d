"""FastAPI application entry point."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from repairhub.config import settings
from repairhub.middleware import BodySizeLimitMiddleware, RateLimitHeadersMiddleware, SecurityHeadersMiddleware
from repairhub.routers import jobs

logger = logging.getLogger(__name__)


async def _recover_expiries() -> None:
    """Re-enqueue open deadlines after a restart.

    ZADD with the same score is a no-op, so this is safe to run unconditionally.
    """
    import redis.asyncio as aioredis

    from repairhub.database import async_session_factory
    from repairhub.redis import redis_pool
    from repairhub.services.expiry_queue import recover_expiries

    redis = aioredis.Redis(connection_pool=redis_pool)
    try:
        await recover_expiries(redis, async_session_factory)
    except Exception:
        logger.exception("Expiry recovery failed")
    finally:
        await redis.aclose()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    expiry_task = None
    if settings.expiry_consumer_enabled:
        from repairhub.dependencies import get_coordinator
        from repairhub.services.expiry_queue import run_expiry_consumer

        await _recover_expiries()
        expiry_task = asyncio.create_task(run_expiry_consumer(get_coordinator()))

    yield

    if expiry_task is not None:
        expiry_task.cancel()
        try:
            await expiry_task
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title="RepairHub Marketplace",
    description="Job, bid, escrow and change-order lifecycle for the repair marketplace",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware: the last one added runs outermost
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(BodySizeLimitMiddleware, max_bytes=262_144)
app.add_middleware(RateLimitHeadersMiddleware)

app.include_router(jobs.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
