"""Tests for notification signing, the outbox and failure isolation."""

import json
import uuid

import pytest
from sqlalchemy import select

from repairhub.models.notification import DeliveryStatus, NotificationDelivery
from repairhub.services.notifications import (
    BID_ACCEPTED,
    DomainEvent,
    OutboxNotifier,
    Recipient,
    both_parties,
    publish_all,
    sign_payload,
)
from tests.conftest import RecordingNotifier, in_progress_job, posted_job


def test_sign_payload_is_stable() -> None:
    a = sign_payload("secret", "2026-03-02T09:00:00+00:00", '{"a": 1}')
    b = sign_payload("secret", "2026-03-02T09:00:00+00:00", '{"a": 1}')
    c = sign_payload("other", "2026-03-02T09:00:00+00:00", '{"a": 1}')
    assert a == b
    assert a != c
    assert len(a) == 64


def test_both_parties() -> None:
    job = posted_job()
    assert both_parties(job) == [Recipient(job.customer_id, "customer")]

    job, mechanic_id = in_progress_job()
    assert both_parties(job) == [Recipient(job.customer_id, "customer"), Recipient(mechanic_id, "mechanic")]


@pytest.mark.asyncio
async def test_outbox_writes_signed_row_per_recipient(session_factory) -> None:
    job_id, customer_id, mechanic_id = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    event = DomainEvent(
        BID_ACCEPTED,
        job_id,
        {"amount": "150.00"},
        [Recipient(customer_id, "customer"), Recipient(mechanic_id, "mechanic")],
    )

    await OutboxNotifier(session_factory, secret="s3cret").publish(event)

    async with session_factory() as db:
        rows = (await db.execute(select(NotificationDelivery))).scalars().all()
    assert {r.recipient_id for r in rows} == {customer_id, mechanic_id}
    for row in rows:
        assert row.status == DeliveryStatus.PENDING
        assert row.event_type == BID_ACCEPTED
        assert row.payload["data"] == {"amount": "150.00"}
        body = json.dumps(row.payload, sort_keys=True, default=str)
        assert row.signature == sign_payload("s3cret", row.payload["timestamp"], body)


@pytest.mark.asyncio
async def test_outbox_skips_events_without_audience(session_factory) -> None:
    await OutboxNotifier(session_factory).publish(DomainEvent(BID_ACCEPTED, uuid.uuid4()))
    async with session_factory() as db:
        assert (await db.execute(select(NotificationDelivery))).scalars().all() == []


@pytest.mark.asyncio
async def test_publish_all_continues_past_failures() -> None:
    recorder = RecordingNotifier()

    class FlakyNotifier:
        async def publish(self, event: DomainEvent) -> None:
            if event.name == "boom":
                raise RuntimeError("down")
            await recorder.publish(event)

    await publish_all(FlakyNotifier(), [DomainEvent("boom", uuid.uuid4()), DomainEvent("ok", uuid.uuid4())])
    assert recorder.names == ["ok"]
