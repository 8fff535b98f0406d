"""Escrow deposit coordination.

The deposit is a fixed share of the accepted bid collected before work
begins. Each bid has at most one live (pending) transaction; retries after a
failure create the next attempt, and retries after a timeout reuse the same
idempotency key so the provider never charges twice. Keys are derived from the
bid and attempt number, never minted per call, so a replayed unit of work
also lands on the intent it already opened.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from repairhub.config import settings
from repairhub.errors import (
    EscrowNotFound,
    InvalidAmount,
    InvalidStateTransition,
    PaymentAlreadyCaptured,
    PaymentAuthorizationFailed,
)
from repairhub.models.bid import Bid
from repairhub.models.escrow import EscrowStatus, EscrowTransaction
from repairhub.models.job import Job
from repairhub.money import Money
from repairhub.services.bid_ledger import accepted_bid, find_bid
from repairhub.services.job import record
from repairhub.services.payments import (
    PaymentDeclined,
    PaymentGateway,
    PaymentGatewayTimeout,
    PaymentOutcome,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DepositSplit:
    deposit: Money
    final_balance: Money

    def to_dict(self) -> dict:
        return {
            "deposit_amount": str(self.deposit),
            "final_balance": str(self.final_balance),
            "currency": self.deposit.currency,
        }


def compute_deposit(bid_amount: Money, rate: Decimal | None = None) -> DepositSplit:
    """Split a bid into the upfront deposit and the balance due on completion.

    The deposit is rounded half-up to the cent; the balance is the exact
    remainder, so the two always add back up to the bid.
    """
    if bid_amount.is_negative:
        raise InvalidAmount("Bid amount cannot be negative")
    rate = settings.escrow_deposit_rate if rate is None else rate
    if not Decimal("0") <= rate <= Decimal("1"):
        raise ValueError(f"Deposit rate must be between 0 and 1, got {rate}")
    deposit = bid_amount.percent(rate)
    return DepositSplit(deposit=deposit, final_balance=bid_amount - deposit)


def idempotency_key_for(bid: Bid, attempt: int) -> str:
    return f"escrow:{bid.bid_id}:{attempt}"


def transactions_for_bid(job: Job, bid_id: uuid.UUID) -> list[EscrowTransaction]:
    return [t for t in job.escrow_transactions if t.bid_id == bid_id]


def find_by_intent(job: Job, payment_intent_id: str) -> EscrowTransaction:
    for txn in job.escrow_transactions:
        if txn.payment_intent_id == payment_intent_id:
            return txn
    raise EscrowNotFound(f"No escrow transaction for payment intent {payment_intent_id}")


async def authorize(
    job: Job,
    bid_id: uuid.UUID,
    gateway: PaymentGateway,
    now: datetime,
) -> EscrowTransaction:
    """Open (or resume) the deposit transaction for an accepted bid."""
    bid = find_bid(job, bid_id)
    if accepted_bid(job) is not bid:
        raise InvalidStateTransition(
            f"Escrow requires an accepted bid, bid is {bid.status.value}", bid_status=bid.status.value
        )

    attempts = transactions_for_bid(job, bid_id)
    if any(t.status == EscrowStatus.CAPTURED for t in attempts):
        raise PaymentAlreadyCaptured("Deposit for this bid has already been captured")

    live = next((t for t in attempts if t.status == EscrowStatus.PENDING), None)
    if live is not None and live.payment_intent_id is not None:
        return live

    if live is None:
        split = compute_deposit(bid.amount)
        attempt = len(attempts) + 1
        live = EscrowTransaction(
            transaction_id=uuid.uuid4(),
            job_id=job.job_id,
            bid_id=bid.bid_id,
            attempt=attempt,
            idempotency_key=idempotency_key_for(bid, attempt),
            bid_amount=bid.amount,
            deposit_amount=split.deposit,
            final_balance=split.final_balance,
            currency=bid.amount.currency,
            status=EscrowStatus.PENDING,
            created_at=now,
        )
        job.escrow_transactions.append(live)
        job.updated_at = now
        record(
            job,
            job.status.value,
            f"Escrow deposit of ${split.deposit} requested (attempt {live.attempt})",
            now,
            metadata={"transaction_id": str(live.transaction_id)},
        )

    if live.deposit_amount.is_zero:
        # Nothing to collect; the deposit is settled without a provider round-trip.
        _mark_captured(job, live, now)
        return live

    await _request_intent(job, live, gateway, now)
    return live


async def _request_intent(
    job: Job,
    txn: EscrowTransaction,
    gateway: PaymentGateway,
    now: datetime,
) -> None:
    metadata = {
        "type": "escrow_deposit",
        "job_id": str(job.job_id),
        "bid_id": str(txn.bid_id),
        "attempt": str(txn.attempt),
        "deposit_percent": str(settings.deposit_percent),
    }
    try:
        intent = await asyncio.wait_for(
            gateway.create_payment_intent(
                amount=txn.deposit_amount,
                currency=txn.currency,
                metadata=metadata,
                idempotency_key=txn.idempotency_key,
            ),
            timeout=settings.payment_timeout_seconds,
        )
    except (asyncio.TimeoutError, PaymentGatewayTimeout):
        logger.warning("Payment intent request timed out for escrow %s", txn.transaction_id)
        raise PaymentAuthorizationFailed(
            "Payment provider timed out; retry authorization",
            retryable=True,
            transaction_id=txn.transaction_id,
        )
    except PaymentDeclined as exc:
        _mark_failed(job, txn, str(exc), now)
        raise PaymentAuthorizationFailed(
            f"Payment declined: {exc}",
            retryable=True,
            transaction_id=txn.transaction_id,
        )

    txn.payment_intent_id = intent.intent_id
    txn.client_secret = intent.client_secret
    job.updated_at = now


async def capture(
    job: Job,
    payment_intent_id: str,
    gateway: PaymentGateway,
    now: datetime,
    outcome: PaymentOutcome | None = None,
) -> EscrowTransaction:
    """Settle a pending deposit. Job status is never changed here."""
    txn = find_by_intent(job, payment_intent_id)
    if txn.status == EscrowStatus.CAPTURED:
        raise PaymentAlreadyCaptured("Deposit has already been captured")
    if txn.status == EscrowStatus.FAILED:
        raise InvalidStateTransition("Escrow transaction failed; authorize again to retry")

    failure_reason = "Payment failed"
    if outcome is None:
        try:
            outcome = await asyncio.wait_for(
                gateway.confirm(payment_intent_id), timeout=settings.payment_timeout_seconds
            )
        except (asyncio.TimeoutError, PaymentGatewayTimeout):
            logger.warning("Payment confirmation timed out for intent %s", payment_intent_id)
            raise PaymentAuthorizationFailed(
                "Payment provider timed out; retry capture",
                retryable=True,
                transaction_id=txn.transaction_id,
            )
        except PaymentDeclined as exc:
            outcome = PaymentOutcome.FAILED
            failure_reason = str(exc)

    if outcome == PaymentOutcome.PROCESSING:
        return txn
    if outcome == PaymentOutcome.SUCCEEDED:
        _mark_captured(job, txn, now)
        return txn

    _mark_failed(job, txn, failure_reason, now)
    raise PaymentAuthorizationFailed(
        f"Deposit capture failed: {failure_reason}",
        retryable=True,
        transaction_id=txn.transaction_id,
    )


def _mark_captured(job: Job, txn: EscrowTransaction, now: datetime) -> None:
    txn.status = EscrowStatus.CAPTURED
    txn.captured_at = now
    job.updated_at = now
    record(
        job,
        job.status.value,
        f"Escrow deposit of ${txn.deposit_amount} captured",
        now,
        metadata={"transaction_id": str(txn.transaction_id)},
    )
    logger.info("Captured escrow %s for job %s", txn.transaction_id, job.job_id)


def _mark_failed(job: Job, txn: EscrowTransaction, reason: str, now: datetime) -> None:
    txn.status = EscrowStatus.FAILED
    txn.failure_reason = reason
    txn.failed_at = now
    job.updated_at = now
    record(
        job,
        job.status.value,
        f"Escrow deposit failed: {reason}",
        now,
        metadata={"transaction_id": str(txn.transaction_id)},
    )
    logger.info("Escrow %s for job %s failed: %s", txn.transaction_id, job.job_id, reason)
