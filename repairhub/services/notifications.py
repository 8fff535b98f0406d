"""Outbound notifications for lifecycle events.

Events are published only after the transition they describe has committed.
Publishing never raises into the caller: a failed delivery is logged and the
transition stands.
"""

import hashlib
import hmac
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from repairhub.config import settings
from repairhub.models.job import Job
from repairhub.models.notification import DeliveryStatus, NotificationDelivery

logger = logging.getLogger(__name__)

JOB_CREATED = "job.created"
BID_SUBMITTED = "bid.submitted"
BID_WITHDRAWN = "bid.withdrawn"
BID_REJECTED = "bid.rejected"
BID_ACCEPTED = "bid.accepted"
ESCROW_AUTHORIZED = "escrow.authorized"
ESCROW_CAPTURED = "escrow.captured"
ESCROW_FAILED = "escrow.failed"
JOB_SCHEDULED = "job.scheduled"
JOB_SCHEDULE_REJECTED = "job.schedule_rejected"
JOB_RESCHEDULING = "job.rescheduling"
JOB_STARTED = "job.started"
JOB_COMPLETED = "job.completed"
JOB_CANCELLED = "job.cancelled"
JOB_EXPIRED = "job.expired"
CHANGE_ORDER_CREATED = "change_order.created"
CHANGE_ORDER_APPROVED = "change_order.approved"
CHANGE_ORDER_REJECTED = "change_order.rejected"
CHANGE_ORDER_WITHDRAWN = "change_order.withdrawn"
CHANGE_ORDER_EXPIRED = "change_order.expired"


@dataclass(frozen=True)
class Recipient:
    user_id: uuid.UUID
    role: str  # "customer" | "mechanic"


@dataclass
class DomainEvent:
    name: str
    job_id: uuid.UUID
    payload: dict = field(default_factory=dict)
    audience: list[Recipient] = field(default_factory=list)


class Notifier(Protocol):
    async def publish(self, event: DomainEvent) -> None: ...


def customer_of(job: Job) -> Recipient:
    return Recipient(job.customer_id, "customer")


def mechanic_of(job: Job) -> list[Recipient]:
    if job.selected_mechanic_id is None:
        return []
    return [Recipient(job.selected_mechanic_id, "mechanic")]


def both_parties(job: Job) -> list[Recipient]:
    return [customer_of(job), *mechanic_of(job)]


def sign_payload(secret: str, timestamp: str, body: str) -> str:
    """HMAC-SHA256 over ``timestamp.body`` so receivers can verify origin."""
    message = f"{timestamp}.{body}"
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def build_message(event: DomainEvent, recipient: Recipient, timestamp: str) -> dict:
    return {
        "event": event.name,
        "job_id": str(event.job_id),
        "recipient_role": recipient.role,
        "timestamp": timestamp,
        "data": event.payload,
    }


class OutboxNotifier:
    """Persists one signed delivery row per recipient for the dispatcher to send."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], secret: str | None = None) -> None:
        self.session_factory = session_factory
        self.secret = secret or settings.notification_signing_secret

    async def publish(self, event: DomainEvent) -> None:
        if not event.audience:
            return
        timestamp = datetime.now(UTC).isoformat()
        async with self.session_factory() as db:
            for recipient in event.audience:
                message = build_message(event, recipient, timestamp)
                body = json.dumps(message, sort_keys=True, default=str)
                db.add(
                    NotificationDelivery(
                        delivery_id=uuid.uuid4(),
                        job_id=event.job_id,
                        recipient_id=recipient.user_id,
                        recipient_role=recipient.role,
                        event_type=event.name,
                        payload=message,
                        signature=sign_payload(self.secret, timestamp, body),
                        status=DeliveryStatus.PENDING,
                    )
                )
            await db.commit()
        logger.info("Queued %s for %d recipient(s) on job %s", event.name, len(event.audience), event.job_id)


class LoggingNotifier:
    """Writes events to the log only. Useful locally when no dispatcher runs."""

    async def publish(self, event: DomainEvent) -> None:
        for recipient in event.audience:
            logger.info("[notify %s %s] %s job=%s", recipient.role, recipient.user_id, event.name, event.job_id)


async def publish_all(notifier: Notifier, events: list[DomainEvent]) -> None:
    for event in events:
        try:
            await notifier.publish(event)
        except Exception:
            logger.exception("Failed to publish %s for job %s", event.name, event.job_id)


def build_notifier(session_factory: async_sessionmaker[AsyncSession]) -> Notifier:
    if settings.notification_backend == "log":
        return LoggingNotifier()
    return OutboxNotifier(session_factory)
