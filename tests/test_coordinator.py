"""Integration tests for the lifecycle coordinator against a real (SQLite) database."""

import asyncio
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

import repairhub.services.coordinator as coordinator_module
from repairhub.errors import ConcurrentModification, ErrorCode
from repairhub.models.bid import BidStatus
from repairhub.models.change_order import ChangeOrderStatus
from repairhub.models.escrow import EscrowStatus, EscrowTransaction
from repairhub.models.job import CancellationReason, Job, JobStatus
from repairhub.money import Money
from repairhub.services import notifications as events
from repairhub.services.coordinator import LifecycleCoordinator
from repairhub.services.job_lock import LocalJobLocks
from repairhub.services.repository import load_job, save
from tests.conftest import T0


async def _post(coordinator: LifecycleCoordinator, estimate: str = "180.00") -> tuple[uuid.UUID, uuid.UUID]:
    customer_id = uuid.uuid4()
    result = await coordinator.create_job(customer_id, "brakes", "Replace pads", Money.of(estimate))
    assert result.success
    return result.data.job_id, customer_id


async def _bid(coordinator: LifecycleCoordinator, job_id: uuid.UUID, amount: str) -> tuple[uuid.UUID, uuid.UUID]:
    mechanic_id = uuid.uuid4()
    result = await coordinator.submit_bid(job_id, mechanic_id, Money.of(amount), mechanic_name="Sam")
    assert result.success, result.error
    return result.data.bid_id, mechanic_id


async def _in_progress(coordinator: LifecycleCoordinator, price: str = "200.00") -> tuple[uuid.UUID, uuid.UUID, uuid.UUID]:
    job_id, customer_id = await _post(coordinator)
    bid_id, mechanic_id = await _bid(coordinator, job_id, price)
    assert (await coordinator.accept_bid(job_id, bid_id, customer_id)).success
    assert (await coordinator.confirm_schedule(job_id, customer_id, T0 + timedelta(days=1))).success
    assert (await coordinator.start_work(job_id, mechanic_id)).success
    return job_id, customer_id, mechanic_id


@pytest.mark.asyncio
async def test_create_job_persists_and_notifies(coordinator, notifier, session_factory) -> None:
    job_id, customer_id = await _post(coordinator)

    async with session_factory() as db:
        job = await load_job(db, job_id)
    assert job.status == JobStatus.POSTED
    assert job.customer_id == customer_id
    assert job.version == 1
    assert notifier.names == [events.JOB_CREATED]


@pytest.mark.asyncio
async def test_unknown_job_returns_failure(coordinator) -> None:
    result = await coordinator.submit_bid(uuid.uuid4(), uuid.uuid4(), Money.of("10.00"))
    assert not result.success
    assert result.error_code == ErrorCode.JOB_NOT_FOUND


@pytest.mark.asyncio
async def test_domain_error_leaves_job_untouched(coordinator, notifier) -> None:
    job_id, customer_id = await _post(coordinator)
    result = await coordinator.submit_bid(job_id, customer_id, Money.of("10.00"))
    assert result.error_code == ErrorCode.NOT_JOB_PARTY

    job = (await coordinator.get_job(job_id)).data
    assert job.status == JobStatus.POSTED
    assert job.bids == []
    assert notifier.names == [events.JOB_CREATED]


@pytest.mark.asyncio
async def test_accepting_150_over_100(coordinator, notifier) -> None:
    job_id, customer_id = await _post(coordinator)
    cheap_id, cheap_mechanic = await _bid(coordinator, job_id, "100.00")
    dear_id, dear_mechanic = await _bid(coordinator, job_id, "150.00")

    listing = (await coordinator.list_bids(job_id)).data
    assert listing.lowest_pending_bid_id == cheap_id

    result = await coordinator.accept_bid(job_id, dear_id, customer_id)
    assert result.success

    job = (await coordinator.get_job(job_id)).data
    assert job.status == JobStatus.ACCEPTED
    assert job.selected_mechanic_id == dear_mechanic
    assert job.agreed_price == Money.of("150.00")
    statuses = {b.bid_id: b.status for b in job.bids}
    assert statuses == {cheap_id: BidStatus.REJECTED, dear_id: BidStatus.ACCEPTED}

    accepted = next(e for e in notifier.events if e.name == events.BID_ACCEPTED)
    assert accepted.payload["deposit_amount"] == "22.50"
    assert accepted.payload["final_balance"] == "127.50"
    rejected = [e for e in notifier.events if e.name == events.BID_REJECTED]
    assert [e.audience[0].user_id for e in rejected] == [cheap_mechanic]


@pytest.mark.asyncio
async def test_concurrent_accepts_pick_exactly_one(coordinator) -> None:
    job_id, customer_id = await _post(coordinator)
    bid_ids = [(await _bid(coordinator, job_id, amount))[0] for amount in ("120.00", "130.00", "140.00")]

    results = await asyncio.gather(*(coordinator.accept_bid(job_id, b, customer_id) for b in bid_ids))

    assert sum(r.success for r in results) == 1
    assert {r.error_code for r in results if not r.success} == {ErrorCode.BID_NOT_PENDING}
    job = (await coordinator.get_job(job_id)).data
    assert [b.status for b in job.bids].count(BidStatus.ACCEPTED) == 1
    winner = next(r for r in results if r.success).data
    assert job.selected_bid_id == winner.bid_id


@pytest.mark.asyncio
async def test_expiry_is_idempotent(coordinator, clock, notifier) -> None:
    job_id, _ = await _post(coordinator)
    await _bid(coordinator, job_id, "150.00")

    clock.set(T0 + timedelta(hours=12))
    early = await coordinator.sweep_expired(job_id)
    assert early.data["job_expired"] is False

    clock.set(T0 + timedelta(hours=25))
    first = await coordinator.sweep_expired(job_id)
    assert first.data["job_expired"] is True

    clock.set(T0 + timedelta(hours=30))
    second = await coordinator.sweep_expired(job_id)
    assert second.success
    assert second.data["job_expired"] is False

    job = (await coordinator.get_job(job_id)).data
    assert job.status == JobStatus.CANCELLED
    assert job.cancellation_reason == CancellationReason.EXPIRED
    assert job.bids[0].status == BidStatus.REJECTED
    assert notifier.names.count(events.JOB_EXPIRED) == 1

    status = (await coordinator.expiry_status(job_id)).data
    assert status.is_expired


@pytest.mark.asyncio
async def test_sweep_all_expired(coordinator, clock) -> None:
    stale_id, _ = await _post(coordinator)
    clock.set(T0 + timedelta(hours=20))
    fresh_id, _ = await _post(coordinator)
    busy_id, _, mechanic_id = await _in_progress(coordinator)
    co = (await coordinator.create_change_order(busy_id, mechanic_id, "Rotors", Money.of("50.00"))).data

    clock.set(T0 + timedelta(hours=25))
    result = await coordinator.sweep_all_expired()
    assert result.data["expired_jobs"] == [stale_id]
    assert result.data["expired_change_orders"] == []

    clock.set(T0 + timedelta(hours=45))
    result = await coordinator.sweep_all_expired()
    assert result.data["expired_jobs"] == [fresh_id]
    assert result.data["expired_change_orders"] == [co.change_order_id]

    again = await coordinator.sweep_all_expired()
    assert again.data == {"expired_jobs": [], "expired_change_orders": []}


@pytest.mark.asyncio
async def test_lapsed_change_order_excluded_from_total(coordinator, clock, notifier) -> None:
    job_id, customer_id, mechanic_id = await _in_progress(coordinator, price="200.00")
    created = await coordinator.create_change_order(job_id, mechanic_id, "Rotors", Money.of("50.00"))
    assert created.success
    assert (await coordinator.get_job(job_id)).data.status == JobStatus.PENDING

    clock.advance(hours=25)
    late = await coordinator.approve_change_order(job_id, created.data.change_order_id, customer_id)
    assert late.error_code == ErrorCode.CHANGE_ORDER_NOT_PENDING

    swept = await coordinator.sweep_expired(job_id)
    assert swept.data["expired_change_orders"] == [created.data.change_order_id]

    job = (await coordinator.get_job(job_id)).data
    assert job.status == JobStatus.IN_PROGRESS
    assert job.change_orders[0].status == ChangeOrderStatus.EXPIRED
    summary = (await coordinator.cost_summary(job_id)).data
    assert summary.total_cost == Money.of("200.00")
    assert events.CHANGE_ORDER_EXPIRED in notifier.names


@pytest.mark.asyncio
async def test_approved_change_order_flows_into_cost(coordinator) -> None:
    job_id, customer_id, mechanic_id = await _in_progress(coordinator, price="200.00")
    co = (await coordinator.create_change_order(job_id, mechanic_id, "Rotors", Money.of("80.00"))).data
    assert (await coordinator.approve_change_order(job_id, co.change_order_id, customer_id)).success

    summary = (await coordinator.cost_summary(job_id)).data
    assert summary.total_cost == Money.of("280.00")
    stats = (await coordinator.change_order_stats(job_id)).data
    assert stats["by_status"]["approved"] == 1

    assert (await coordinator.complete_work(job_id, mechanic_id, notes="All done")).success
    job = (await coordinator.get_job(job_id)).data
    assert job.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_escrow_authorize_and_capture(coordinator, gateway, notifier) -> None:
    job_id, customer_id = await _post(coordinator)
    bid_id, _ = await _bid(coordinator, job_id, "200.00")
    await coordinator.accept_bid(job_id, bid_id, customer_id)

    first = await coordinator.authorize_escrow(job_id, bid_id, customer_id)
    assert first.success
    txn = first.data
    assert txn.deposit_amount == Money.of("30.00")

    replay = await coordinator.authorize_escrow(job_id, bid_id, customer_id)
    assert replay.data.transaction_id == txn.transaction_id
    assert gateway.create_calls == 1
    assert notifier.names.count(events.ESCROW_AUTHORIZED) == 1

    captured = await coordinator.capture_escrow(job_id, txn.payment_intent_id)
    assert captured.success
    assert captured.data.status == EscrowStatus.CAPTURED
    summary = (await coordinator.cost_summary(job_id)).data
    assert summary.captured_deposit == Money.of("30.00")
    assert summary.balance_due == Money.of("170.00")
    assert gateway.total_charged() == Decimal("30.00")


@pytest.mark.asyncio
async def test_declined_deposit_is_persisted(coordinator, gateway, notifier) -> None:
    job_id, customer_id = await _post(coordinator)
    bid_id, _ = await _bid(coordinator, job_id, "200.00")
    await coordinator.accept_bid(job_id, bid_id, customer_id)

    gateway.decline_next = "card_declined"
    result = await coordinator.authorize_escrow(job_id, bid_id, customer_id)
    assert result.error_code == ErrorCode.PAYMENT_AUTHORIZATION_FAILED
    assert result.error.retryable

    job = (await coordinator.get_job(job_id)).data
    assert [t.status for t in job.escrow_transactions] == [EscrowStatus.FAILED]
    assert job.status == JobStatus.ACCEPTED
    assert events.ESCROW_FAILED in notifier.names

    retry = await coordinator.authorize_escrow(job_id, bid_id, customer_id)
    assert retry.success
    assert retry.data.attempt == 2


@pytest.mark.asyncio
async def test_only_customer_authorizes_escrow(coordinator) -> None:
    job_id, customer_id = await _post(coordinator)
    bid_id, mechanic_id = await _bid(coordinator, job_id, "200.00")
    await coordinator.accept_bid(job_id, bid_id, customer_id)

    result = await coordinator.authorize_escrow(job_id, bid_id, mechanic_id)
    assert result.error_code == ErrorCode.NOT_JOB_PARTY


@pytest.mark.asyncio
async def test_cancel_notifies_open_bidders(coordinator, notifier) -> None:
    job_id, customer_id = await _post(coordinator)
    _, mechanic_id = await _bid(coordinator, job_id, "150.00")

    result = await coordinator.cancel_job(job_id, customer_id, note="Fixed it myself")
    assert result.success
    cancelled = next(e for e in notifier.events if e.name == events.JOB_CANCELLED)
    assert {r.user_id for r in cancelled.audience} == {customer_id, mechanic_id}


@pytest.mark.asyncio
async def test_notifications_only_after_commit(session_factory, clock, gateway) -> None:
    seen: list[JobStatus] = []

    class PeekingNotifier:
        async def publish(self, event: events.DomainEvent) -> None:
            async with session_factory() as db:
                job = await load_job(db, event.job_id)
                seen.append(job.status)

    coordinator = LifecycleCoordinator(
        session_factory, clock=clock, gateway=gateway, notifier=PeekingNotifier(), locks=LocalJobLocks()
    )
    job_id, _ = await _post(coordinator)
    await _bid(coordinator, job_id, "150.00")
    assert seen == [JobStatus.POSTED, JobStatus.BIDDING]


@pytest.mark.asyncio
async def test_notifier_failure_does_not_undo_transition(session_factory, clock, gateway) -> None:
    class BrokenNotifier:
        async def publish(self, event: events.DomainEvent) -> None:
            raise RuntimeError("push service down")

    coordinator = LifecycleCoordinator(
        session_factory, clock=clock, gateway=gateway, notifier=BrokenNotifier(), locks=LocalJobLocks()
    )
    job_id, _ = await _post(coordinator)
    result = await coordinator.submit_bid(job_id, uuid.uuid4(), Money.of("150.00"))
    assert result.success
    assert (await coordinator.get_job(job_id)).data.status == JobStatus.BIDDING


@pytest.mark.asyncio
async def test_concurrent_modification_retried_once(coordinator, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    job_id, _ = await _post(coordinator)
    calls = {"n": 0}

    async def flaky_save(db) -> None:  # type: ignore[no-untyped-def]
        calls["n"] += 1
        if calls["n"] == 1:
            await db.rollback()
            raise ConcurrentModification("simulated")
        await save(db)

    monkeypatch.setattr(coordinator_module, "save", flaky_save)
    result = await coordinator.submit_bid(job_id, uuid.uuid4(), Money.of("150.00"))
    assert result.success
    assert calls["n"] == 2
    assert len((await coordinator.get_job(job_id)).data.bids) == 1


@pytest.mark.asyncio
async def test_escrow_replayed_after_failed_commit_opens_one_intent(coordinator, gateway, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    job_id, customer_id = await _post(coordinator)
    bid_id, _ = await _bid(coordinator, job_id, "200.00")
    await coordinator.accept_bid(job_id, bid_id, customer_id)
    calls = {"n": 0}

    async def flaky_save(db) -> None:  # type: ignore[no-untyped-def]
        calls["n"] += 1
        if calls["n"] == 1:
            await db.rollback()
            raise ConcurrentModification("simulated")
        await save(db)

    monkeypatch.setattr(coordinator_module, "save", flaky_save)
    result = await coordinator.authorize_escrow(job_id, bid_id, customer_id)
    assert result.success
    assert calls["n"] == 2

    # The provider saw the request twice under the same key and opened one intent
    assert gateway.create_calls == 2
    assert len(gateway.intents) == 1
    assert result.data.payment_intent_id in gateway.intents
    assert result.data.idempotency_key == f"escrow:{bid_id}:1"

    monkeypatch.undo()
    job = (await coordinator.get_job(job_id)).data
    assert len(job.escrow_transactions) == 1
    assert job.escrow_transactions[0].payment_intent_id == result.data.payment_intent_id


@pytest.mark.asyncio
async def test_escrow_retry_after_decline_uses_next_key(coordinator, gateway) -> None:
    job_id, customer_id = await _post(coordinator)
    bid_id, _ = await _bid(coordinator, job_id, "200.00")
    await coordinator.accept_bid(job_id, bid_id, customer_id)

    gateway.decline_next = "card_declined"
    assert not (await coordinator.authorize_escrow(job_id, bid_id, customer_id)).success
    retry = await coordinator.authorize_escrow(job_id, bid_id, customer_id)
    assert retry.data.idempotency_key == f"escrow:{bid_id}:2"
    assert gateway.by_idempotency_key == {f"escrow:{bid_id}:2": retry.data.payment_intent_id}


@pytest.mark.asyncio
async def test_escrow_amounts_load_in_stored_currency(coordinator, session_factory) -> None:
    job_id, customer_id = await _post(coordinator)
    bid_id, _ = await _bid(coordinator, job_id, "200.00")
    await coordinator.accept_bid(job_id, bid_id, customer_id)
    txn = (await coordinator.authorize_escrow(job_id, bid_id, customer_id)).data
    assert txn.deposit_amount.currency == "USD"

    async with session_factory() as db:
        await db.execute(
            update(EscrowTransaction)
            .where(EscrowTransaction.transaction_id == txn.transaction_id)
            .values(currency="CAD")
        )
        await db.commit()

    async with session_factory() as db:
        loaded = (await load_job(db, job_id)).escrow_transactions[0]
    assert loaded.bid_amount == Money(20000, "CAD")
    assert loaded.deposit_amount == Money(3000, "CAD")
    assert loaded.final_balance == Money(17000, "CAD")


@pytest.mark.asyncio
async def test_concurrent_modification_reported_after_retry(coordinator, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    job_id, _ = await _post(coordinator)

    async def always_stale(db) -> None:  # type: ignore[no-untyped-def]
        await db.rollback()
        raise ConcurrentModification("simulated")

    monkeypatch.setattr(coordinator_module, "save", always_stale)
    result = await coordinator.submit_bid(job_id, uuid.uuid4(), Money.of("150.00"))
    assert result.error_code == ErrorCode.CONCURRENT_MODIFICATION

    monkeypatch.undo()
    assert (await coordinator.get_job(job_id)).data.bids == []


@pytest.mark.asyncio
async def test_stale_version_raises_concurrent_modification(coordinator, session_factory) -> None:
    job_id, _ = await _post(coordinator)

    async with session_factory() as first, session_factory() as second:
        a = await load_job(first, job_id)
        b = await load_job(second, job_id)
        a.title = "First writer"
        await save(first)

        b.title = "Second writer"
        with pytest.raises(ConcurrentModification):
            await save(second)

    async with session_factory() as db:
        result = await db.execute(select(Job.title).where(Job.job_id == job_id))
        assert result.scalar_one() == "First writer"
