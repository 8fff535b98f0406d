"""Change orders: mid-job requests for extra paid work.

A job holds at most one pending change order. While it is open the job sits
in ``pending``; approving, rejecting, withdrawing or letting it lapse puts the
job back to ``in_progress``.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from repairhub.clock import ensure_aware
from repairhub.config import settings
from repairhub.errors import (
    ChangeOrderAlreadyExists,
    ChangeOrderNotFound,
    ChangeOrderNotPending,
    InvalidAmount,
    InvalidStateTransition,
)
from repairhub.models.change_order import ChangeOrder, ChangeOrderLineItem, ChangeOrderStatus
from repairhub.models.job import Job, JobStatus
from repairhub.money import Money
from repairhub.services.job import assert_party, assert_transition, move

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LineItemInput:
    description: str
    quantity: int
    unit_price: Money


def find_change_order(job: Job, change_order_id: uuid.UUID) -> ChangeOrder:
    for change_order in job.change_orders:
        if change_order.change_order_id == change_order_id:
            return change_order
    raise ChangeOrderNotFound(f"Change order {change_order_id} not found on job {job.job_id}")


def pending_change_order(job: Job) -> ChangeOrder | None:
    for change_order in job.change_orders:
        if change_order.status == ChangeOrderStatus.PENDING:
            return change_order
    return None


def is_overdue(change_order: ChangeOrder, now: datetime) -> bool:
    return change_order.status == ChangeOrderStatus.PENDING and now >= ensure_aware(change_order.expires_at)


def create_change_order(
    job: Job,
    mechanic_id: uuid.UUID,
    title: str,
    now: datetime,
    total_amount: Money | None = None,
    line_items: list[LineItemInput] | None = None,
    description: str | None = None,
    reason: str | None = None,
    mechanic_name: str | None = None,
) -> ChangeOrder:
    """Mechanic requests additional work on an in-progress job.

    Either ``total_amount`` or ``line_items`` must be given. With line items the
    total is their sum, and an explicit total that disagrees is rejected.
    """
    if pending_change_order(job) is not None:
        raise ChangeOrderAlreadyExists("Job already has a pending change order")
    if job.status != JobStatus.IN_PROGRESS:
        raise InvalidStateTransition(
            f"Change orders require an in-progress job, job is {job.status.value}",
            job_status=job.status.value,
        )
    assert_party(job, mechanic_id, allowed="mechanic")
    assert_transition(job, JobStatus.PENDING)

    items = list(line_items or [])
    for item in items:
        if item.quantity <= 0:
            raise InvalidAmount("Line item quantity must be positive")
        if item.unit_price.is_negative:
            raise InvalidAmount("Line item price cannot be negative")
    if items:
        computed = sum((i.unit_price * i.quantity for i in items), Money.zero(items[0].unit_price.currency))
        if total_amount is not None and total_amount != computed:
            raise InvalidAmount(
                f"Total {total_amount} does not match line items {computed}",
                expected=str(computed),
            )
        total_amount = computed
    if total_amount is None:
        raise InvalidAmount("Change order needs a total amount or line items")
    if total_amount.is_negative:
        raise InvalidAmount("Change order amount cannot be negative")

    change_order = ChangeOrder(
        change_order_id=uuid.uuid4(),
        job_id=job.job_id,
        mechanic_id=mechanic_id,
        mechanic_name=mechanic_name,
        title=title,
        description=description,
        reason=reason,
        total_amount=total_amount,
        status=ChangeOrderStatus.PENDING,
        created_at=now,
        expires_at=now + timedelta(hours=settings.change_order_window_hours),
        line_items=[],
    )
    for position, item in enumerate(items, start=1):
        change_order.line_items.append(
            ChangeOrderLineItem(
                line_item_id=uuid.uuid4(),
                position=position,
                description=item.description,
                quantity=item.quantity,
                unit_price=item.unit_price,
                total_price=item.unit_price * item.quantity,
            )
        )
    job.change_orders.append(change_order)
    move(
        job,
        JobStatus.PENDING,
        now,
        f"Change order requested: {title} (${total_amount})",
        actor="mechanic",
    )
    return change_order


def _open_for_decision(job: Job, change_order_id: uuid.UUID, customer_id: uuid.UUID, now: datetime) -> ChangeOrder:
    change_order = find_change_order(job, change_order_id)
    assert_party(job, customer_id, allowed="customer")
    if change_order.status != ChangeOrderStatus.PENDING:
        raise ChangeOrderNotPending(
            f"Change order is {change_order.status.value}", change_order_status=change_order.status.value
        )
    if is_overdue(change_order, now):
        # Lapsed but not yet swept: the sweep owns the transition to expired.
        raise ChangeOrderNotPending("Change order has expired", change_order_status="expired")
    return change_order


def approve_change_order(job: Job, change_order_id: uuid.UUID, customer_id: uuid.UUID, now: datetime) -> ChangeOrder:
    change_order = _open_for_decision(job, change_order_id, customer_id, now)
    assert_transition(job, JobStatus.IN_PROGRESS)

    change_order.status = ChangeOrderStatus.APPROVED
    change_order.resolved_at = now
    change_order.resolved_by = customer_id
    move(
        job,
        JobStatus.IN_PROGRESS,
        now,
        f"Change order approved: {change_order.title} (+${change_order.total_amount})",
        actor="customer",
    )
    return change_order


def reject_change_order(
    job: Job,
    change_order_id: uuid.UUID,
    customer_id: uuid.UUID,
    now: datetime,
    reason: str | None = None,
) -> ChangeOrder:
    change_order = _open_for_decision(job, change_order_id, customer_id, now)
    assert_transition(job, JobStatus.IN_PROGRESS)

    change_order.status = ChangeOrderStatus.REJECTED
    change_order.resolved_at = now
    change_order.resolved_by = customer_id
    change_order.rejection_reason = reason
    move(
        job,
        JobStatus.IN_PROGRESS,
        now,
        f"Change order declined: {change_order.title}",
        actor="customer",
    )
    return change_order


def withdraw_change_order(
    job: Job,
    change_order_id: uuid.UUID,
    mechanic_id: uuid.UUID,
    now: datetime,
    reason: str | None = None,
) -> ChangeOrder:
    """Mechanic retracts their own pending change order."""
    change_order = find_change_order(job, change_order_id)
    assert_party(job, mechanic_id, allowed="mechanic")
    if change_order.status != ChangeOrderStatus.PENDING:
        raise ChangeOrderNotPending(
            f"Change order is {change_order.status.value}", change_order_status=change_order.status.value
        )
    assert_transition(job, JobStatus.IN_PROGRESS)

    change_order.status = ChangeOrderStatus.WITHDRAWN
    change_order.resolved_at = now
    change_order.resolved_by = mechanic_id
    change_order.rejection_reason = reason
    move(
        job,
        JobStatus.IN_PROGRESS,
        now,
        f"Change order withdrawn: {change_order.title}",
        actor="mechanic",
    )
    return change_order


def sweep_change_order(job: Job, change_order_id: uuid.UUID, now: datetime) -> bool:
    """Expire one overdue change order. Returns False when nothing was due."""
    change_order = find_change_order(job, change_order_id)
    if not is_overdue(change_order, now):
        return False

    change_order.status = ChangeOrderStatus.EXPIRED
    change_order.resolved_at = now
    if job.status == JobStatus.PENDING:
        move(
            job,
            JobStatus.IN_PROGRESS,
            now,
            f"Change order expired without a response: {change_order.title}",
        )
    else:
        job.updated_at = now
    logger.info("Change order %s on job %s expired", change_order.change_order_id, job.job_id)
    return True


def sweep_change_orders(job: Job, now: datetime) -> list[ChangeOrder]:
    return [
        co for co in list(job.change_orders)
        if is_overdue(co, now) and sweep_change_order(job, co.change_order_id, now)
    ]


def next_change_order_deadline(job: Job) -> datetime | None:
    pending = pending_change_order(job)
    return ensure_aware(pending.expires_at) if pending is not None else None


def change_order_stats(job: Job) -> dict:
    counts = {status.value: 0 for status in ChangeOrderStatus}
    approved = Money.zero(job.estimated_cost.currency)
    for change_order in job.change_orders:
        counts[change_order.status.value] += 1
        if change_order.status == ChangeOrderStatus.APPROVED:
            approved = approved + change_order.total_amount
    return {
        "total": len(job.change_orders),
        "by_status": counts,
        "approved_total": str(approved),
    }
