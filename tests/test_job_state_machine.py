"""Tests for the job state machine, expiry rules and cost figures (no database)."""

import uuid
from datetime import timedelta

import pytest

from repairhub.errors import InvalidAmount, InvalidStateTransition, NotJobParty
from repairhub.models.bid import BidStatus
from repairhub.models.job import VALID_TRANSITIONS, CancellationReason, JobStatus
from repairhub.money import Money
from repairhub.services.bid_ledger import accept_bid, submit_bid
from repairhub.services.change_order import approve_change_order, create_change_order
from repairhub.services.job import (
    assert_transition,
    cancel_job,
    complete_work,
    confirm_schedule,
    cost_summary,
    create_job,
    expiry_status,
    is_expired,
    reject_schedule,
    reopen_scheduling,
    start_work,
    sweep_expired_job,
)
from tests.conftest import T0, in_progress_job, posted_job


def _accepted_job():
    job = posted_job()
    mechanic_id = uuid.uuid4()
    bid = submit_bid(job, mechanic_id, Money.of("200.00"), T0)
    accept_bid(job, bid.bid_id, T0, customer_id=job.customer_id)
    return job, mechanic_id


def test_new_job_is_posted_with_timeline() -> None:
    job = posted_job()
    assert job.status == JobStatus.POSTED
    assert job.agreed_price is None
    assert [e.status for e in job.timeline] == ["posted"]
    assert job.timeline[0].sequence == 1


def test_negative_estimate_rejected() -> None:
    with pytest.raises(InvalidAmount):
        create_job(uuid.uuid4(), "brakes", "Pads", Money.of("-1.00"), T0)


def test_terminal_statuses_have_no_exits() -> None:
    assert VALID_TRANSITIONS[JobStatus.COMPLETED] == set()
    assert VALID_TRANSITIONS[JobStatus.CANCELLED] == set()


def test_posted_cannot_jump_to_accepted() -> None:
    job = posted_job()
    with pytest.raises(InvalidStateTransition):
        assert_transition(job, JobStatus.ACCEPTED)


def test_full_happy_path() -> None:
    job, mechanic_id = _accepted_job()
    assert job.status == JobStatus.ACCEPTED

    confirm_schedule(job, job.customer_id, T0 + timedelta(days=2), T0, notes="Morning")
    assert job.status == JobStatus.SCHEDULED
    assert job.schedule_notes == "Morning"

    start_work(job, mechanic_id, T0 + timedelta(days=2))
    assert job.status == JobStatus.IN_PROGRESS
    assert job.started_at == T0 + timedelta(days=2)

    complete_work(job, mechanic_id, T0 + timedelta(days=2, hours=3), notes="Done")
    assert job.status == JobStatus.COMPLETED
    assert job.completion_notes == "Done"
    assert [e.sequence for e in job.timeline] == list(range(1, len(job.timeline) + 1))


def test_schedule_rejection_and_reopen() -> None:
    job, mechanic_id = _accepted_job()
    confirm_schedule(job, job.customer_id, T0 + timedelta(days=1), T0)

    reject_schedule(job, mechanic_id, T0, reason="Booked that day")
    assert job.status == JobStatus.SCHEDULE_REJECTED

    reopen_scheduling(job, job.customer_id, T0)
    assert job.status == JobStatus.ACCEPTED
    assert job.scheduled_for is None

    confirm_schedule(job, mechanic_id, T0 + timedelta(days=3), T0)
    assert job.status == JobStatus.SCHEDULED


def test_only_assigned_mechanic_starts_work() -> None:
    job, _ = _accepted_job()
    confirm_schedule(job, job.customer_id, T0 + timedelta(days=1), T0)
    with pytest.raises(NotJobParty):
        start_work(job, job.customer_id, T0)
    with pytest.raises(NotJobParty):
        start_work(job, uuid.uuid4(), T0)
    assert job.status == JobStatus.SCHEDULED


def test_cannot_start_before_scheduling() -> None:
    job, mechanic_id = _accepted_job()
    with pytest.raises(InvalidStateTransition):
        start_work(job, mechanic_id, T0)


def test_stranger_cannot_confirm_schedule() -> None:
    job, _ = _accepted_job()
    with pytest.raises(NotJobParty):
        confirm_schedule(job, uuid.uuid4(), T0 + timedelta(days=1), T0)


def test_cancel_rejects_open_bids() -> None:
    job = posted_job()
    submit_bid(job, uuid.uuid4(), Money.of("150.00"), T0)
    submit_bid(job, uuid.uuid4(), Money.of("170.00"), T0)

    cancel_job(job, job.customer_id, CancellationReason.CUSTOMER_REQUEST, T0, note="Sold the car")
    assert job.status == JobStatus.CANCELLED
    assert job.cancellation_reason == CancellationReason.CUSTOMER_REQUEST
    assert all(b.status == BidStatus.REJECTED for b in job.bids)
    assert "Sold the car" in job.timeline[-1].description


def test_cannot_cancel_terminal_job() -> None:
    job, mechanic_id = in_progress_job()
    complete_work(job, mechanic_id, T0)
    with pytest.raises(InvalidStateTransition):
        cancel_job(job, job.customer_id, CancellationReason.OTHER, T0)


def test_completion_can_require_captured_deposit(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    from repairhub.config import settings

    monkeypatch.setattr(settings, "require_captured_deposit_for_completion", True)
    job, mechanic_id = in_progress_job()
    with pytest.raises(InvalidStateTransition):
        complete_work(job, mechanic_id, T0)
    assert job.status == JobStatus.IN_PROGRESS


# --- Expiry -----------------------------------------------------------------

def test_expiry_boundary_is_inclusive() -> None:
    job = posted_job()
    assert not is_expired(job, T0 + timedelta(hours=23, minutes=59))
    assert is_expired(job, T0 + timedelta(hours=24))


def test_expiring_soon_hint() -> None:
    job = posted_job()
    early = expiry_status(job, T0 + timedelta(hours=1))
    assert not early.is_expiring_soon
    assert not early.is_expired

    late = expiry_status(job, T0 + timedelta(hours=22, minutes=30))
    assert late.is_expiring_soon
    assert late.remaining == timedelta(hours=1, minutes=30)
    assert late.to_dict()["remaining_seconds"] == 5400


def test_sweep_cancels_and_is_idempotent() -> None:
    job = posted_job()
    submit_bid(job, uuid.uuid4(), Money.of("150.00"), T0)

    assert sweep_expired_job(job, T0 + timedelta(hours=12)) is False
    assert job.status == JobStatus.BIDDING

    assert sweep_expired_job(job, T0 + timedelta(hours=25)) is True
    assert job.status == JobStatus.CANCELLED
    assert job.cancellation_reason == CancellationReason.EXPIRED
    assert job.bids[0].status == BidStatus.REJECTED
    entries = len(job.timeline)

    assert sweep_expired_job(job, T0 + timedelta(hours=30)) is False
    assert job.cancelled_at == T0 + timedelta(hours=25)
    assert len(job.timeline) == entries
    assert expiry_status(job, T0 + timedelta(hours=30)).is_expired


def test_accepted_job_never_expires() -> None:
    job, _ = _accepted_job()
    assert sweep_expired_job(job, T0 + timedelta(days=5)) is False
    status = expiry_status(job, T0 + timedelta(days=5))
    assert status.expires_at is None
    assert not status.is_expired


# --- Costs ------------------------------------------------------------------

def test_cost_before_acceptance_uses_estimate() -> None:
    summary = cost_summary(posted_job(estimate="180.00"))
    assert summary.base_cost == Money.of("180.00")
    assert summary.total_cost == Money.of("180.00")


def test_cost_includes_approved_change_orders_only() -> None:
    job, mechanic_id = in_progress_job(price="200.00")
    co = create_change_order(job, mechanic_id, "Rotors", T0, total_amount=Money.of("80.00"))
    approve_change_order(job, co.change_order_id, job.customer_id, T0)

    summary = cost_summary(job)
    assert summary.base_cost == Money.of("200.00")
    assert summary.approved_change_total == Money.of("80.00")
    assert summary.total_cost == Money.of("280.00")
    assert summary.balance_due == Money.of("280.00")
    assert summary.to_dict()["total_cost"] == "280.00"
