"""Lifecycle coordinator: the single entry point for every job intent.

Each mutating call takes the per-job lock, loads the aggregate in a fresh
session, delegates to the domain services, commits, and only then publishes
notifications and refreshes the expiry queue. Domain errors come back as a
failed ``OperationResult``; infrastructure errors propagate after rollback.
"""

import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from repairhub.clock import Clock, SystemClock
from repairhub.config import settings
from repairhub.errors import ConcurrentModification, ErrorCode, MarketplaceError, PaymentAuthorizationFailed
from repairhub.models.bid import Bid
from repairhub.models.change_order import ChangeOrder, ChangeOrderStatus
from repairhub.models.escrow import EscrowStatus, EscrowTransaction
from repairhub.models.job import OPEN_FOR_BIDS, CancellationReason, Job
from repairhub.money import Money
from repairhub.services import bid_ledger, change_order, escrow, job as job_service
from repairhub.services import notifications as events
from repairhub.services.expiry_queue import ExpiryScheduler
from repairhub.services.job_lock import JobLocks
from repairhub.services.notifications import DomainEvent, Notifier, Recipient, publish_all
from repairhub.services.payments import PaymentGateway, PaymentOutcome
from repairhub.services.repository import load_job, save

logger = logging.getLogger(__name__)

Action = Callable[[Job, datetime], Any]
Describe = Callable[[Job, Any], list[DomainEvent]]


@dataclass
class OperationResult:
    success: bool
    data: Any = None
    error: MarketplaceError | None = None

    @classmethod
    def ok(cls, data: Any = None) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: MarketplaceError) -> "OperationResult":
        return cls(success=False, error=error)

    @property
    def error_code(self) -> ErrorCode | None:
        return self.error.code if self.error is not None else None


@dataclass
class BidListing:
    bids: list[Bid]
    lowest_pending_bid_id: uuid.UUID | None


class LifecycleCoordinator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock | None = None,
        gateway: PaymentGateway | None = None,
        notifier: Notifier | None = None,
        locks: JobLocks | None = None,
        scheduler: ExpiryScheduler | None = None,
    ) -> None:
        from repairhub.services.job_lock import build_job_locks
        from repairhub.services.notifications import build_notifier
        from repairhub.services.payments import build_payment_gateway

        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.gateway = gateway or build_payment_gateway()
        self.notifier = notifier or build_notifier(session_factory)
        self.locks = locks or build_job_locks()
        self.scheduler = scheduler

    # --- Plumbing -----------------------------------------------------------

    async def _run(
        self,
        job_id: uuid.UUID,
        action: Action,
        describe: Describe | None = None,
        on_error: Callable[[Job, MarketplaceError], list[DomainEvent]] | None = None,
    ) -> OperationResult:
        """Lock, load, mutate, commit, publish. Retries once on a concurrent modification."""
        for attempt in (1, 2):
            try:
                value, error, published, deadline = await self._run_once(job_id, action, describe, on_error)
            except ConcurrentModification as exc:
                if attempt == 1:
                    logger.info("Concurrent modification on job %s, retrying once", job_id)
                    continue
                return OperationResult.fail(exc)
            except MarketplaceError as exc:
                return OperationResult.fail(exc)

            await publish_all(self.notifier, published)
            await self._reschedule(job_id, deadline)
            if error is not None:
                return OperationResult.fail(error)
            return OperationResult.ok(value)
        raise AssertionError("unreachable")

    async def _run_once(
        self,
        job_id: uuid.UUID,
        action: Action,
        describe: Describe | None,
        on_error: Callable[[Job, MarketplaceError], list[DomainEvent]] | None,
    ) -> tuple[Any, MarketplaceError | None, list[DomainEvent], datetime | None]:
        async with self.locks.hold(job_id):
            async with self.session_factory() as db:
                job = await load_job(db, job_id, for_update=True)
                now = self.clock.now()
                try:
                    value = action(job, now)
                    if inspect.isawaitable(value):
                        value = await value
                except MarketplaceError as exc:
                    if not exc.persist_changes:
                        await db.rollback()
                        raise
                    await save(db)
                    published = on_error(job, exc) if on_error else []
                    return None, exc, published, _next_deadline(job)

                await save(db)
                published = describe(job, value) if describe else []
                return value, None, published, _next_deadline(job)

    async def _reschedule(self, job_id: uuid.UUID, deadline: datetime | None) -> None:
        if self.scheduler is None:
            return
        if deadline is None:
            await self.scheduler.cancel(job_id)
        else:
            await self.scheduler.schedule(job_id, deadline)

    async def _read(self, job_id: uuid.UUID, view: Callable[[Job], Any]) -> OperationResult:
        async with self.session_factory() as db:
            try:
                job = await load_job(db, job_id)
            except MarketplaceError as exc:
                return OperationResult.fail(exc)
            try:
                return OperationResult.ok(view(job))
            except MarketplaceError as exc:
                return OperationResult.fail(exc)

    # --- Jobs ---------------------------------------------------------------

    async def create_job(
        self,
        customer_id: uuid.UUID,
        category: str,
        title: str,
        estimated_cost: Money,
        description: str | None = None,
        vehicle: str | None = None,
        location: str | None = None,
    ) -> OperationResult:
        now = self.clock.now()
        try:
            job = job_service.create_job(
                customer_id, category, title, estimated_cost, now,
                description=description, vehicle=vehicle, location=location,
            )
        except MarketplaceError as exc:
            return OperationResult.fail(exc)

        async with self.session_factory() as db:
            db.add(job)
            await save(db)

        logger.info("Job %s created by customer %s", job.job_id, customer_id)
        await publish_all(self.notifier, [
            DomainEvent(events.JOB_CREATED, job.job_id, {"title": title, "category": category},
                        [events.customer_of(job)]),
        ])
        await self._reschedule(job.job_id, job_service.expires_at(job))
        return OperationResult.ok(job)

    async def confirm_schedule(
        self,
        job_id: uuid.UUID,
        actor_id: uuid.UUID,
        scheduled_for: datetime,
        notes: str | None = None,
    ) -> OperationResult:
        return await self._run(
            job_id,
            lambda job, now: job_service.confirm_schedule(job, actor_id, scheduled_for, now, notes),
            lambda job, _: [DomainEvent(
                events.JOB_SCHEDULED, job.job_id,
                {"scheduled_for": job.scheduled_for.isoformat()}, events.both_parties(job),
            )],
        )

    async def reject_schedule(
        self, job_id: uuid.UUID, mechanic_id: uuid.UUID, reason: str | None = None
    ) -> OperationResult:
        return await self._run(
            job_id,
            lambda job, now: job_service.reject_schedule(job, mechanic_id, now, reason),
            lambda job, _: [DomainEvent(
                events.JOB_SCHEDULE_REJECTED, job.job_id, {"reason": reason}, events.both_parties(job),
            )],
        )

    async def reopen_scheduling(self, job_id: uuid.UUID, actor_id: uuid.UUID) -> OperationResult:
        return await self._run(
            job_id,
            lambda job, now: job_service.reopen_scheduling(job, actor_id, now),
            lambda job, _: [DomainEvent(events.JOB_RESCHEDULING, job.job_id, {}, events.both_parties(job))],
        )

    async def start_work(self, job_id: uuid.UUID, mechanic_id: uuid.UUID) -> OperationResult:
        return await self._run(
            job_id,
            lambda job, now: job_service.start_work(job, mechanic_id, now),
            lambda job, _: [DomainEvent(events.JOB_STARTED, job.job_id, {}, [events.customer_of(job)])],
        )

    async def complete_work(
        self, job_id: uuid.UUID, mechanic_id: uuid.UUID, notes: str | None = None
    ) -> OperationResult:
        return await self._run(
            job_id,
            lambda job, now: job_service.complete_work(job, mechanic_id, now, notes),
            lambda job, _: [DomainEvent(
                events.JOB_COMPLETED, job.job_id,
                {"total_cost": str(job_service.total_cost(job))}, events.both_parties(job),
            )],
        )

    async def cancel_job(
        self,
        job_id: uuid.UUID,
        actor_id: uuid.UUID,
        reason: CancellationReason = CancellationReason.CUSTOMER_REQUEST,
        note: str | None = None,
    ) -> OperationResult:
        open_bidders: list[Recipient] = []

        def action(job: Job, now: datetime) -> Job:
            open_bidders[:] = [Recipient(b.mechanic_id, "mechanic") for b in bid_ledger.pending_bids(job)]
            return job_service.cancel_job(job, actor_id, reason, now, note)

        def describe(job: Job, _: Job) -> list[DomainEvent]:
            audience = _dedupe([*events.both_parties(job), *open_bidders])
            return [DomainEvent(events.JOB_CANCELLED, job.job_id, {"reason": reason.value}, audience)]

        return await self._run(job_id, action, describe)

    # --- Bids ---------------------------------------------------------------

    async def submit_bid(
        self,
        job_id: uuid.UUID,
        mechanic_id: uuid.UUID,
        amount: Money,
        message: str | None = None,
        duration_minutes: int | None = None,
        mechanic_name: str | None = None,
    ) -> OperationResult:
        return await self._run(
            job_id,
            lambda job, now: bid_ledger.submit_bid(
                job, mechanic_id, amount, now,
                message=message, duration_minutes=duration_minutes, mechanic_name=mechanic_name,
            ),
            lambda job, bid: [DomainEvent(
                events.BID_SUBMITTED, job.job_id,
                {"bid_id": str(bid.bid_id), "amount": str(bid.amount), "mechanic_name": mechanic_name},
                [events.customer_of(job)],
            )],
        )

    async def withdraw_bid(self, job_id: uuid.UUID, bid_id: uuid.UUID, mechanic_id: uuid.UUID) -> OperationResult:
        return await self._run(
            job_id,
            lambda job, now: bid_ledger.withdraw_bid(job, bid_id, mechanic_id, now),
            lambda job, bid: [DomainEvent(
                events.BID_WITHDRAWN, job.job_id, {"bid_id": str(bid.bid_id)}, [events.customer_of(job)],
            )],
        )

    async def reject_bid(self, job_id: uuid.UUID, bid_id: uuid.UUID, customer_id: uuid.UUID) -> OperationResult:
        return await self._run(
            job_id,
            lambda job, now: bid_ledger.reject_bid(job, bid_id, customer_id, now),
            lambda job, bid: [DomainEvent(
                events.BID_REJECTED, job.job_id, {"bid_id": str(bid.bid_id)},
                [Recipient(bid.mechanic_id, "mechanic")],
            )],
        )

    async def accept_bid(
        self, job_id: uuid.UUID, bid_id: uuid.UUID, customer_id: uuid.UUID | None = None
    ) -> OperationResult:
        losers: list[Bid] = []

        def action(job: Job, now: datetime) -> Bid:
            competing = [b for b in bid_ledger.pending_bids(job) if b.bid_id != bid_id]
            bid = bid_ledger.accept_bid(job, bid_id, now, customer_id=customer_id)
            losers[:] = competing
            return bid

        def describe(job: Job, bid: Bid) -> list[DomainEvent]:
            split = escrow.compute_deposit(bid.amount)
            published = [DomainEvent(
                events.BID_ACCEPTED, job.job_id,
                {"bid_id": str(bid.bid_id), "amount": str(bid.amount), **split.to_dict()},
                events.both_parties(job),
            )]
            published.extend(
                DomainEvent(events.BID_REJECTED, job.job_id, {"bid_id": str(b.bid_id)},
                            [Recipient(b.mechanic_id, "mechanic")])
                for b in losers
            )
            return published

        return await self._run(job_id, action, describe)

    async def list_bids(self, job_id: uuid.UUID) -> OperationResult:
        def view(job: Job) -> BidListing:
            lowest = bid_ledger.lowest_pending_bid(job)
            return BidListing(list(job.bids), lowest.bid_id if lowest else None)

        return await self._read(job_id, view)

    # --- Escrow -------------------------------------------------------------

    async def authorize_escrow(
        self, job_id: uuid.UUID, bid_id: uuid.UUID, customer_id: uuid.UUID | None = None
    ) -> OperationResult:
        known_intents: dict[uuid.UUID, str | None] = {}

        def action(job: Job, now: datetime) -> Awaitable[EscrowTransaction]:
            if customer_id is not None:
                job_service.assert_party(job, customer_id, allowed="customer")
            known_intents.clear()
            known_intents.update({t.transaction_id: t.payment_intent_id for t in job.escrow_transactions})
            return escrow.authorize(job, bid_id, self.gateway, now)

        def describe(job: Job, txn: EscrowTransaction) -> list[DomainEvent]:
            if known_intents.get(txn.transaction_id) is not None:
                # Replayed authorization, nothing new to tell the customer
                return []
            name = events.ESCROW_CAPTURED if txn.status == EscrowStatus.CAPTURED else events.ESCROW_AUTHORIZED
            return [DomainEvent(name, job.job_id, _escrow_payload(txn), [events.customer_of(job)])]

        return await self._run(job_id, action, describe, _escrow_failure_events)

    async def capture_escrow(
        self,
        job_id: uuid.UUID,
        payment_intent_id: str,
        outcome: PaymentOutcome | None = None,
    ) -> OperationResult:
        def describe(job: Job, txn: EscrowTransaction) -> list[DomainEvent]:
            if txn.status != EscrowStatus.CAPTURED:
                return []
            return [DomainEvent(events.ESCROW_CAPTURED, job.job_id, _escrow_payload(txn), events.both_parties(job))]

        return await self._run(
            job_id,
            lambda job, now: escrow.capture(job, payment_intent_id, self.gateway, now, outcome),
            describe,
            _escrow_failure_events,
        )

    async def cost_summary(self, job_id: uuid.UUID) -> OperationResult:
        return await self._read(job_id, job_service.cost_summary)

    # --- Change orders ------------------------------------------------------

    async def create_change_order(
        self,
        job_id: uuid.UUID,
        mechanic_id: uuid.UUID,
        title: str,
        total_amount: Money | None = None,
        line_items: list[change_order.LineItemInput] | None = None,
        description: str | None = None,
        reason: str | None = None,
        mechanic_name: str | None = None,
    ) -> OperationResult:
        return await self._run(
            job_id,
            lambda job, now: change_order.create_change_order(
                job, mechanic_id, title, now,
                total_amount=total_amount, line_items=line_items,
                description=description, reason=reason, mechanic_name=mechanic_name,
            ),
            lambda job, co: [DomainEvent(
                events.CHANGE_ORDER_CREATED, job.job_id, _change_order_payload(co), [events.customer_of(job)],
            )],
        )

    async def approve_change_order(
        self, job_id: uuid.UUID, change_order_id: uuid.UUID, customer_id: uuid.UUID
    ) -> OperationResult:
        return await self._run(
            job_id,
            lambda job, now: change_order.approve_change_order(job, change_order_id, customer_id, now),
            lambda job, co: [DomainEvent(
                events.CHANGE_ORDER_APPROVED, job.job_id,
                {**_change_order_payload(co), "total_cost": str(job_service.total_cost(job))},
                [Recipient(co.mechanic_id, "mechanic")],
            )],
        )

    async def reject_change_order(
        self,
        job_id: uuid.UUID,
        change_order_id: uuid.UUID,
        customer_id: uuid.UUID,
        reason: str | None = None,
    ) -> OperationResult:
        return await self._run(
            job_id,
            lambda job, now: change_order.reject_change_order(job, change_order_id, customer_id, now, reason),
            lambda job, co: [DomainEvent(
                events.CHANGE_ORDER_REJECTED, job.job_id,
                {**_change_order_payload(co), "reason": reason}, [Recipient(co.mechanic_id, "mechanic")],
            )],
        )

    async def withdraw_change_order(
        self,
        job_id: uuid.UUID,
        change_order_id: uuid.UUID,
        mechanic_id: uuid.UUID,
        reason: str | None = None,
    ) -> OperationResult:
        return await self._run(
            job_id,
            lambda job, now: change_order.withdraw_change_order(job, change_order_id, mechanic_id, now, reason),
            lambda job, co: [DomainEvent(
                events.CHANGE_ORDER_WITHDRAWN, job.job_id, _change_order_payload(co), [events.customer_of(job)],
            )],
        )

    async def change_order_stats(self, job_id: uuid.UUID) -> OperationResult:
        return await self._read(job_id, change_order.change_order_stats)

    # --- Expiry -------------------------------------------------------------

    async def sweep_expired(self, job_id: uuid.UUID) -> OperationResult:
        """Apply every lapsed deadline on one job. Safe to repeat."""
        losers: list[Recipient] = []

        def action(job: Job, now: datetime) -> dict:
            bidders = [Recipient(b.mechanic_id, "mechanic") for b in bid_ledger.pending_bids(job)]
            expired = job_service.sweep_expired_job(job, now)
            if expired:
                losers[:] = bidders
            lapsed = change_order.sweep_change_orders(job, now)
            return {
                "job_expired": expired,
                "expired_change_orders": [co.change_order_id for co in lapsed],
            }

        def describe(job: Job, outcome: dict) -> list[DomainEvent]:
            published = []
            if outcome["job_expired"]:
                published.append(DomainEvent(
                    events.JOB_EXPIRED, job.job_id, {"expires_at": job_service.expires_at(job).isoformat()},
                    _dedupe([events.customer_of(job), *losers]),
                ))
            for change_order_id in outcome["expired_change_orders"]:
                published.append(DomainEvent(
                    events.CHANGE_ORDER_EXPIRED, job.job_id, {"change_order_id": str(change_order_id)},
                    events.both_parties(job),
                ))
            return published

        return await self._run(job_id, action, describe)

    async def sweep_all_expired(self) -> OperationResult:
        """Sweep every job with a lapsed deadline, each under its own lock."""
        now = self.clock.now()
        cutoff = now - timedelta(hours=settings.job_expiry_hours)
        async with self.session_factory() as db:
            open_jobs = await db.execute(
                select(Job.job_id).where(Job.status.in_(list(OPEN_FOR_BIDS)), Job.created_at <= cutoff)
            )
            overdue_orders = await db.execute(
                select(ChangeOrder.job_id).where(
                    ChangeOrder.status == ChangeOrderStatus.PENDING, ChangeOrder.expires_at <= now
                )
            )
            candidates = list(dict.fromkeys([*open_jobs.scalars().all(), *overdue_orders.scalars().all()]))

        expired_jobs: list[uuid.UUID] = []
        expired_change_orders: list[uuid.UUID] = []
        for job_id in candidates:
            result = await self.sweep_expired(job_id)
            if not result.success:
                logger.warning("Sweep of job %s failed: %s", job_id, result.error.message)
                continue
            if result.data["job_expired"]:
                expired_jobs.append(job_id)
            expired_change_orders.extend(result.data["expired_change_orders"])

        if expired_jobs or expired_change_orders:
            logger.info(
                "Expiry sweep: %d jobs and %d change orders expired",
                len(expired_jobs), len(expired_change_orders),
            )
        return OperationResult.ok({"expired_jobs": expired_jobs, "expired_change_orders": expired_change_orders})

    # --- Reads --------------------------------------------------------------

    async def get_job(self, job_id: uuid.UUID) -> OperationResult:
        return await self._read(job_id, lambda job: job)

    async def expiry_status(self, job_id: uuid.UUID) -> OperationResult:
        return await self._read(job_id, lambda job: job_service.expiry_status(job, self.clock.now()))


def _next_deadline(job: Job) -> datetime | None:
    if job.status in OPEN_FOR_BIDS:
        return job_service.expires_at(job)
    return change_order.next_change_order_deadline(job)


def _dedupe(recipients: list[Recipient]) -> list[Recipient]:
    return list(dict.fromkeys(recipients))


def _escrow_payload(txn: EscrowTransaction) -> dict:
    return {
        "transaction_id": str(txn.transaction_id),
        "bid_id": str(txn.bid_id),
        "deposit_amount": str(txn.deposit_amount),
        "final_balance": str(txn.final_balance),
        "payment_intent_id": txn.payment_intent_id,
        "status": txn.status.value,
    }


def _escrow_failure_events(job: Job, exc: MarketplaceError) -> list[DomainEvent]:
    if not isinstance(exc, PaymentAuthorizationFailed):
        return []
    transaction_id = exc.details.get("transaction_id")
    for txn in job.escrow_transactions:
        if txn.transaction_id == transaction_id and txn.status == EscrowStatus.FAILED:
            return [DomainEvent(events.ESCROW_FAILED, job.job_id,
                                {**_escrow_payload(txn), "reason": txn.failure_reason},
                                [events.customer_of(job)])]
    return []


def _change_order_payload(co: ChangeOrder) -> dict:
    return {
        "change_order_id": str(co.change_order_id),
        "title": co.title,
        "total_amount": str(co.total_amount),
        "status": co.status.value,
    }
