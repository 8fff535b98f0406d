"""Bid ledger: submission, withdrawal and the single-acceptance protocol."""

import logging
import uuid
from datetime import datetime

from repairhub.clock import ensure_aware
from repairhub.errors import (
    BidNotFound,
    BidNotPending,
    DuplicatePendingBid,
    InvalidAmount,
    InvalidStateTransition,
    JobNotAcceptingBids,
    NotJobParty,
)
from repairhub.models.bid import Bid, BidStatus
from repairhub.models.job import OPEN_FOR_BIDS, Job, JobStatus
from repairhub.money import Money
from repairhub.services.job import assert_party, assert_transition, is_expired, move, record

logger = logging.getLogger(__name__)


def find_bid(job: Job, bid_id: uuid.UUID) -> Bid:
    for bid in job.bids:
        if bid.bid_id == bid_id:
            return bid
    raise BidNotFound(f"Bid {bid_id} not found on job {job.job_id}")


def pending_bids(job: Job) -> list[Bid]:
    return [b for b in job.bids if b.status == BidStatus.PENDING]


def accepted_bid(job: Job) -> Bid | None:
    for bid in job.bids:
        if bid.status == BidStatus.ACCEPTED:
            return bid
    return None


def lowest_pending_bid(job: Job) -> Bid | None:
    """Cheapest open offer, for highlighting only. Acceptance is always an explicit choice."""
    candidates = pending_bids(job)
    if not candidates:
        return None
    return min(candidates, key=lambda b: (b.amount.cents, ensure_aware(b.created_at)))


def submit_bid(
    job: Job,
    mechanic_id: uuid.UUID,
    amount: Money,
    now: datetime,
    message: str | None = None,
    duration_minutes: int | None = None,
    mechanic_name: str | None = None,
) -> Bid:
    """Mechanic places a bid. Moves a posted job into bidding."""
    if job.status not in OPEN_FOR_BIDS:
        raise JobNotAcceptingBids(
            f"Job is {job.status.value} and no longer accepts bids", job_status=job.status.value
        )
    if is_expired(job, now):
        raise JobNotAcceptingBids("Job bidding window has expired", job_status=job.status.value)
    if mechanic_id == job.customer_id:
        raise NotJobParty("Customers cannot bid on their own jobs")
    if amount.cents <= 0:
        raise InvalidAmount("Bid amount must be positive")
    if duration_minutes is not None and duration_minutes <= 0:
        raise InvalidAmount("Estimated duration must be positive")
    if any(b.mechanic_id == mechanic_id for b in pending_bids(job)):
        raise DuplicatePendingBid("Mechanic already has a pending bid on this job")
    assert_transition(job, JobStatus.BIDDING)

    bid = Bid(
        bid_id=uuid.uuid4(),
        job_id=job.job_id,
        mechanic_id=mechanic_id,
        mechanic_name=mechanic_name,
        amount=amount,
        message=message,
        estimated_duration_minutes=duration_minutes,
        status=BidStatus.PENDING,
        created_at=now,
    )
    job.bids.append(bid)
    move(
        job,
        JobStatus.BIDDING,
        now,
        f"Bid submitted by {mechanic_name or 'mechanic'} for ${amount}",
        actor="mechanic",
    )
    return bid


def accept_bid(job: Job, bid_id: uuid.UUID, now: datetime, customer_id: uuid.UUID | None = None) -> Bid:
    """Customer accepts one bid.

    The chosen bid becomes accepted, every other pending bid is rejected and the
    job records the selected mechanic, all in the same unit of work. Bid checks
    come first so the loser of a race sees BidNotPending.
    """
    bid = find_bid(job, bid_id)
    if bid.status != BidStatus.PENDING:
        raise BidNotPending(f"Bid is {bid.status.value}", bid_status=bid.status.value)
    if customer_id is not None:
        assert_party(job, customer_id, allowed="customer")
    if job.status != JobStatus.BIDDING:
        raise InvalidStateTransition(
            f"Cannot accept a bid while job is {job.status.value}", job_status=job.status.value
        )
    if is_expired(job, now):
        raise InvalidStateTransition("Job bidding window has expired", job_status=job.status.value)
    assert_transition(job, JobStatus.ACCEPTED)

    bid.status = BidStatus.ACCEPTED
    bid.resolved_at = now
    rejected = 0
    for other in job.bids:
        if other.bid_id != bid.bid_id and other.status == BidStatus.PENDING:
            other.status = BidStatus.REJECTED
            other.resolved_at = now
            rejected += 1

    job.selected_bid_id = bid.bid_id
    job.selected_mechanic_id = bid.mechanic_id
    job.agreed_price = bid.amount
    move(
        job,
        JobStatus.ACCEPTED,
        now,
        f"Bid accepted from {bid.mechanic_name or 'mechanic'} for ${bid.amount}",
        actor="customer",
    )
    logger.info("Accepted bid %s on job %s (%d competing bids rejected)", bid.bid_id, job.job_id, rejected)
    return bid


def withdraw_bid(job: Job, bid_id: uuid.UUID, mechanic_id: uuid.UUID, now: datetime) -> Bid:
    """Mechanic retracts their own pending bid. They may bid again afterwards."""
    bid = find_bid(job, bid_id)
    if bid.mechanic_id != mechanic_id:
        raise NotJobParty("Only the bidding mechanic can withdraw this bid")
    if bid.status != BidStatus.PENDING:
        raise BidNotPending(f"Bid is {bid.status.value}", bid_status=bid.status.value)

    bid.status = BidStatus.WITHDRAWN
    bid.resolved_at = now
    job.updated_at = now
    record(job, job.status.value, f"Bid withdrawn by {bid.mechanic_name or 'mechanic'}", now, actor="mechanic")
    return bid


def reject_bid(job: Job, bid_id: uuid.UUID, customer_id: uuid.UUID, now: datetime) -> Bid:
    """Customer declines a single pending bid without accepting another."""
    bid = find_bid(job, bid_id)
    assert_party(job, customer_id, allowed="customer")
    if bid.status != BidStatus.PENDING:
        raise BidNotPending(f"Bid is {bid.status.value}", bid_status=bid.status.value)

    bid.status = BidStatus.REJECTED
    bid.resolved_at = now
    job.updated_at = now
    record(job, job.status.value, f"Bid from {bid.mechanic_name or 'mechanic'} declined", now, actor="customer")
    return bid
