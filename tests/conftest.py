"""Test configuration and fixtures.

Every test gets its own SQLite database file (via aiosqlite), a frozen clock,
the in-memory payment gateway and a notifier that records what was published.
Redis is replaced by AsyncMock; nothing here needs a running service.
"""

import json
import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

import repairhub.models  # noqa: F401 register every table
from repairhub.clock import FrozenClock
from repairhub.config import settings
from repairhub.database import Base
from repairhub.dependencies import get_coordinator
from repairhub.main import app
from repairhub.models.job import Job
from repairhub.money import Money
from repairhub.redis import get_redis
from repairhub.services.bid_ledger import accept_bid, submit_bid
from repairhub.services.coordinator import LifecycleCoordinator
from repairhub.services.job import confirm_schedule, create_job, start_work
from repairhub.services.job_lock import LocalJobLocks
from repairhub.services.notifications import DomainEvent, sign_payload
from repairhub.services.payments import InMemoryPaymentGateway

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    async def publish(self, event: DomainEvent) -> None:
        self.events.append(event)

    @property
    def names(self) -> list[str]:
        return [e.name for e in self.events]


@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'repairhub.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture
def gateway() -> InMemoryPaymentGateway:
    return InMemoryPaymentGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def coordinator(
    session_factory: async_sessionmaker[AsyncSession],
    clock: FrozenClock,
    gateway: InMemoryPaymentGateway,
    notifier: RecordingNotifier,
) -> LifecycleCoordinator:
    return LifecycleCoordinator(
        session_factory,
        clock=clock,
        gateway=gateway,
        notifier=notifier,
        locks=LocalJobLocks(),
    )


@pytest.fixture
def fake_redis() -> AsyncMock:
    """Redis stand-in: every rate-limit bucket has tokens to spare."""
    redis = AsyncMock()
    redis.eval.return_value = [1, 99, 0]
    return redis


@pytest_asyncio.fixture
async def client(
    coordinator: LifecycleCoordinator,
    fake_redis: AsyncMock,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with overridden coordinator and Redis dependencies."""

    async def override_get_redis() -> AsyncGenerator[AsyncMock, None]:
        yield fake_redis

    app.dependency_overrides[get_coordinator] = lambda: coordinator
    app.dependency_overrides[get_redis] = override_get_redis

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def actor_headers(actor_id: uuid.UUID | str) -> dict[str, str]:
    return {"X-Actor-Id": str(actor_id)}


def posted_job(now: datetime = T0, estimate: str = "180.00") -> Job:
    """A freshly posted job, not persisted."""
    return create_job(uuid.uuid4(), "brakes", "Replace front brake pads", Money.of(estimate), now)


def in_progress_job(now: datetime = T0, price: str = "200.00") -> tuple[Job, uuid.UUID]:
    """Drive a job through bidding, acceptance and scheduling into in_progress.

    Returns the job and the selected mechanic's id.
    """
    job = posted_job(now)
    mechanic_id = uuid.uuid4()
    bid = submit_bid(job, mechanic_id, Money.of(price), now)
    accept_bid(job, bid.bid_id, now, customer_id=job.customer_id)
    confirm_schedule(job, job.customer_id, now + timedelta(days=1), now)
    start_work(job, mechanic_id, now)
    return job, mechanic_id


def signed_capture(payment_intent_id: str, outcome: str | None = None) -> dict:
    """Request kwargs for a deposit capture signed the way the payments backend signs it."""
    payload: dict[str, str] = {"payment_intent_id": payment_intent_id}
    if outcome is not None:
        payload["outcome"] = outcome
    body = json.dumps(payload)
    timestamp = datetime.now(UTC).isoformat()
    return {
        "content": body,
        "headers": {
            "Content-Type": "application/json",
            "X-Payment-Timestamp": timestamp,
            "X-Payment-Signature": sign_payload(settings.payment_callback_secret, timestamp, body),
        },
    }
