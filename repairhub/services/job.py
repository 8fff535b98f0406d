"""Job aggregate: state machine, expiry rules and derived cost figures.

Everything here is synchronous and works on an already-loaded aggregate.
Guards run before the first mutation, so a failed call leaves the job as it
found it. Loading, locking and committing belong to the coordinator.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from repairhub.clock import ensure_aware
from repairhub.config import settings
from repairhub.errors import InvalidAmount, InvalidStateTransition, NotJobParty
from repairhub.models.bid import BidStatus
from repairhub.models.change_order import ChangeOrderStatus
from repairhub.models.escrow import EscrowStatus
from repairhub.models.job import (
    OPEN_FOR_BIDS,
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    CancellationReason,
    Job,
    JobStatus,
)
from repairhub.models.timeline import JobTimelineEntry
from repairhub.money import Money

logger = logging.getLogger(__name__)


def assert_transition(job: Job, target: JobStatus) -> None:
    """Raise InvalidStateTransition if the job cannot move to ``target``."""
    if target not in VALID_TRANSITIONS.get(job.status, set()):
        raise InvalidStateTransition(
            f"Cannot transition from {job.status.value} to {target.value}",
            job_status=job.status.value,
        )


def assert_party(job: Job, actor_id: uuid.UUID, allowed: str = "both") -> None:
    """Ensure the actor is a party to the job. allowed: 'customer', 'mechanic', 'both'."""
    is_customer = job.customer_id == actor_id
    is_mechanic = job.selected_mechanic_id is not None and job.selected_mechanic_id == actor_id
    if allowed == "customer" and not is_customer:
        raise NotJobParty("Only the customer can perform this action")
    if allowed == "mechanic" and not is_mechanic:
        raise NotJobParty("Only the assigned mechanic can perform this action")
    if allowed == "both" and not (is_customer or is_mechanic):
        raise NotJobParty("Not a party to this job")


def record(
    job: Job,
    status: str,
    description: str,
    now: datetime,
    actor: str = "system",
    metadata: dict | None = None,
) -> JobTimelineEntry:
    """Append a progression timeline entry."""
    entry = JobTimelineEntry(
        entry_id=uuid.uuid4(),
        job_id=job.job_id,
        sequence=len(job.timeline) + 1,
        status=status,
        description=description,
        actor=actor,
        metadata_=metadata,
        created_at=now,
    )
    job.timeline.append(entry)
    return entry


def move(job: Job, target: JobStatus, now: datetime, description: str, actor: str = "system") -> None:
    """Apply an already-validated transition and log it on the timeline."""
    job.status = target
    job.updated_at = now
    record(job, target.value, description, now, actor)


# --- Creation ---------------------------------------------------------------

def create_job(
    customer_id: uuid.UUID,
    category: str,
    title: str,
    estimated_cost: Money,
    now: datetime,
    description: str | None = None,
    vehicle: str | None = None,
    location: str | None = None,
) -> Job:
    """Customer posts a new job."""
    if estimated_cost.is_negative:
        raise InvalidAmount("Estimated cost cannot be negative")

    job = Job(
        job_id=uuid.uuid4(),
        customer_id=customer_id,
        status=JobStatus.POSTED,
        category=category,
        title=title,
        description=description,
        vehicle=vehicle,
        location=location,
        estimated_cost=estimated_cost,
        agreed_price=None,
        selected_mechanic_id=None,
        selected_bid_id=None,
        cancellation_reason=None,
        created_at=now,
        updated_at=now,
        bids=[],
        change_orders=[],
        escrow_transactions=[],
        timeline=[],
    )
    record(job, JobStatus.POSTED.value, f"Job posted: {title}", now, actor="customer")
    return job


# --- Expiry -----------------------------------------------------------------

@dataclass(frozen=True)
class ExpiryStatus:
    """Read-time view of a job's bidding deadline. Never persisted."""
    expires_at: datetime | None
    remaining: timedelta | None
    is_expiring_soon: bool
    is_expired: bool

    def to_dict(self) -> dict:
        return {
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "remaining_seconds": int(self.remaining.total_seconds()) if self.remaining is not None else None,
            "is_expiring_soon": self.is_expiring_soon,
            "is_expired": self.is_expired,
        }


def expires_at(job: Job) -> datetime:
    return ensure_aware(job.created_at) + timedelta(hours=settings.job_expiry_hours)


def is_expired(job: Job, now: datetime) -> bool:
    """An open job is expired once ``now - created_at >= job_expiry_hours``."""
    return job.status in OPEN_FOR_BIDS and now >= expires_at(job)


def expiry_status(job: Job, now: datetime) -> ExpiryStatus:
    if job.status == JobStatus.CANCELLED and job.cancellation_reason == CancellationReason.EXPIRED:
        return ExpiryStatus(expires_at(job), timedelta(0), False, True)
    if job.status not in OPEN_FOR_BIDS:
        # Bidding deadline no longer applies once a bid is accepted.
        return ExpiryStatus(None, None, False, False)

    deadline = expires_at(job)
    remaining = deadline - now
    if remaining <= timedelta(0):
        return ExpiryStatus(deadline, timedelta(0), False, True)
    soon = remaining <= timedelta(hours=settings.expiring_soon_hours)
    return ExpiryStatus(deadline, remaining, soon, False)


def sweep_expired_job(job: Job, now: datetime) -> bool:
    """Cancel an open job whose bidding window has lapsed.

    Idempotent: returns False (and changes nothing) when the job is not due,
    or was already swept.
    """
    if not is_expired(job, now):
        return False

    for bid in job.bids:
        if bid.status == BidStatus.PENDING:
            bid.status = BidStatus.REJECTED
            bid.resolved_at = now
    job.cancellation_reason = CancellationReason.EXPIRED
    job.cancelled_at = now
    move(
        job,
        JobStatus.CANCELLED,
        now,
        f"Job expired after {settings.job_expiry_hours} hours without an accepted bid",
    )
    logger.info("Job %s expired", job.job_id)
    return True


# --- Scheduling and work ----------------------------------------------------

def confirm_schedule(
    job: Job,
    actor_id: uuid.UUID,
    scheduled_for: datetime,
    now: datetime,
    notes: str | None = None,
) -> Job:
    """Either party fixes the appointment for an accepted job."""
    assert_party(job, actor_id)
    assert_transition(job, JobStatus.SCHEDULED)

    job.scheduled_for = ensure_aware(scheduled_for)
    job.schedule_notes = notes
    move(
        job,
        JobStatus.SCHEDULED,
        now,
        f"Job scheduled for {job.scheduled_for.isoformat()}",
        actor=_role(job, actor_id),
    )
    return job


def reject_schedule(job: Job, mechanic_id: uuid.UUID, now: datetime, reason: str | None = None) -> Job:
    """Assigned mechanic declines the proposed appointment."""
    assert_party(job, mechanic_id, allowed="mechanic")
    assert_transition(job, JobStatus.SCHEDULE_REJECTED)

    move(
        job,
        JobStatus.SCHEDULE_REJECTED,
        now,
        f"Schedule declined{': ' + reason if reason else ''}",
        actor="mechanic",
    )
    return job


def reopen_scheduling(job: Job, actor_id: uuid.UUID, now: datetime) -> Job:
    """Return a job with a declined schedule to ``accepted`` so it can be rescheduled."""
    assert_party(job, actor_id)
    assert_transition(job, JobStatus.ACCEPTED)

    job.scheduled_for = None
    job.schedule_notes = None
    move(job, JobStatus.ACCEPTED, now, "Rescheduling requested", actor=_role(job, actor_id))
    return job


def start_work(job: Job, mechanic_id: uuid.UUID, now: datetime) -> Job:
    assert_party(job, mechanic_id, allowed="mechanic")
    assert_transition(job, JobStatus.IN_PROGRESS)
    if job.status != JobStatus.SCHEDULED:
        raise InvalidStateTransition("Job must be scheduled before starting", job_status=job.status.value)

    job.started_at = now
    move(job, JobStatus.IN_PROGRESS, now, "Work started by mechanic", actor="mechanic")
    return job


def complete_work(job: Job, mechanic_id: uuid.UUID, now: datetime, notes: str | None = None) -> Job:
    assert_party(job, mechanic_id, allowed="mechanic")
    assert_transition(job, JobStatus.COMPLETED)
    if settings.require_captured_deposit_for_completion and captured_deposit(job).is_zero:
        raise InvalidStateTransition(
            "Escrow deposit must be captured before the job can be completed",
            job_status=job.status.value,
        )

    job.completed_at = now
    job.completion_notes = notes
    move(job, JobStatus.COMPLETED, now, "Job completed by mechanic", actor="mechanic")
    return job


def cancel_job(
    job: Job,
    actor_id: uuid.UUID,
    reason: CancellationReason,
    now: datetime,
    note: str | None = None,
) -> Job:
    """Cancel any non-terminal job. Open bids are rejected and a pending change order lapses."""
    if job.status in TERMINAL_STATUSES:
        raise InvalidStateTransition(
            f"Cannot cancel a job in status {job.status.value}", job_status=job.status.value
        )
    assert_party(job, actor_id)

    for bid in job.bids:
        if bid.status == BidStatus.PENDING:
            bid.status = BidStatus.REJECTED
            bid.resolved_at = now
    for change_order in job.change_orders:
        if change_order.status == ChangeOrderStatus.PENDING:
            change_order.status = ChangeOrderStatus.EXPIRED
            change_order.resolved_at = now

    job.cancellation_reason = reason
    job.cancelled_at = now
    description = f"Job cancelled ({reason.value})"
    if note:
        description = f"{description}: {note}"
    move(job, JobStatus.CANCELLED, now, description, actor=_role(job, actor_id))
    return job


# --- Derived figures --------------------------------------------------------

@dataclass(frozen=True)
class CostSummary:
    base_cost: Money
    approved_change_total: Money
    total_cost: Money
    captured_deposit: Money
    balance_due: Money

    def to_dict(self) -> dict:
        return {
            "base_cost": str(self.base_cost),
            "approved_change_total": str(self.approved_change_total),
            "total_cost": str(self.total_cost),
            "captured_deposit": str(self.captured_deposit),
            "balance_due": str(self.balance_due),
            "currency": self.total_cost.currency,
        }


def base_cost(job: Job) -> Money:
    """Accepted bid amount once a mechanic is selected, the customer's estimate before."""
    return job.agreed_price if job.agreed_price is not None else job.estimated_cost


def approved_change_total(job: Job) -> Money:
    return sum(
        (co.total_amount for co in job.change_orders if co.status == ChangeOrderStatus.APPROVED),
        Money.zero(job.estimated_cost.currency),
    )


def total_cost(job: Job) -> Money:
    return base_cost(job) + approved_change_total(job)


def captured_deposit(job: Job) -> Money:
    return sum(
        (t.deposit_amount for t in job.escrow_transactions if t.status == EscrowStatus.CAPTURED),
        Money.zero(job.estimated_cost.currency),
    )


def cost_summary(job: Job) -> CostSummary:
    total = total_cost(job)
    deposit = captured_deposit(job)
    return CostSummary(
        base_cost=base_cost(job),
        approved_change_total=approved_change_total(job),
        total_cost=total,
        captured_deposit=deposit,
        balance_due=total - deposit,
    )


def _role(job: Job, actor_id: uuid.UUID) -> str:
    return "customer" if actor_id == job.customer_id else "mechanic"
