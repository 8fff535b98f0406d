"""Job lifecycle endpoints.

Every route answers with the ``{success, data, error}`` envelope. Domain
errors keep their stable code and map onto the HTTP status they carry.
"""

import uuid
from collections.abc import Callable
from typing import Any

from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from repairhub.actor import get_actor_id, verify_payment_callback
from repairhub.dependencies import get_coordinator
from repairhub.models.job import CancellationReason
from repairhub.money import Money
from repairhub.rate_limit import check_rate_limit
from repairhub.schemas.common import Envelope
from repairhub.schemas.escrow import EscrowAuthorize, EscrowCapture, EscrowResponse
from repairhub.schemas.job import (
    BidCreate,
    BidListResponse,
    BidResponse,
    CancelJob,
    ChangeOrderCreate,
    ChangeOrderDecision,
    ChangeOrderResponse,
    CompleteWork,
    JobCreate,
    JobResponse,
    ScheduleConfirm,
    ScheduleReject,
)
from repairhub.services.change_order import LineItemInput
from repairhub.services.coordinator import LifecycleCoordinator, OperationResult
from repairhub.services.payments import PaymentOutcome

router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[Depends(check_rate_limit)])


def _respond(
    result: OperationResult,
    render: Callable[[Any], Any] | None = None,
    status_code: int = 200,
) -> JSONResponse:
    if not result.success:
        envelope = Envelope(success=False, error=result.error.to_dict())
        return JSONResponse(status_code=result.error.http_status, content=jsonable_encoder(envelope))
    data = render(result.data) if render else result.data
    return JSONResponse(status_code=status_code, content=jsonable_encoder(Envelope(success=True, data=data)))


def _job(job: Any) -> JobResponse:
    return JobResponse.model_validate(job)


def _bid(bid: Any) -> BidResponse:
    return BidResponse.model_validate(bid)


def _change_order(change_order: Any) -> ChangeOrderResponse:
    return ChangeOrderResponse.model_validate(change_order)


def _escrow(txn: Any) -> EscrowResponse:
    return EscrowResponse.model_validate(txn)


def _to_dict(value: Any) -> dict:
    return value.to_dict()


# --- Jobs -------------------------------------------------------------------

@router.post("", status_code=201)
async def create_job(
    data: JobCreate,
    actor_id: uuid.UUID = Depends(get_actor_id),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    """Customer posts a repair job."""
    result = await coordinator.create_job(
        actor_id,
        data.category,
        data.title,
        Money.of(data.estimated_cost),
        description=data.description,
        vehicle=data.vehicle,
        location=data.location,
    )
    return _respond(result, _job, status_code=201)


@router.post("/sweep")
async def sweep_all_expired(
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    """Expire every job and change order whose window has lapsed. Safe to call repeatedly."""
    return _respond(await coordinator.sweep_all_expired())


@router.get("/{job_id}")
async def get_job(
    job_id: uuid.UUID,
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    return _respond(await coordinator.get_job(job_id), _job)


@router.get("/{job_id}/expiry")
async def get_expiry_status(
    job_id: uuid.UUID,
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    """Bidding deadline and the "expiring soon" hint, computed at read time."""
    return _respond(await coordinator.expiry_status(job_id), _to_dict)


@router.get("/{job_id}/costs")
async def get_cost_summary(
    job_id: uuid.UUID,
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    return _respond(await coordinator.cost_summary(job_id), _to_dict)


@router.post("/{job_id}/sweep")
async def sweep_expired(
    job_id: uuid.UUID,
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    return _respond(await coordinator.sweep_expired(job_id))


@router.post("/{job_id}/cancel")
async def cancel_job(
    job_id: uuid.UUID,
    data: CancelJob | None = None,
    actor_id: uuid.UUID = Depends(get_actor_id),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    """Either party cancels a job that has not finished."""
    data = data or CancelJob()
    result = await coordinator.cancel_job(job_id, actor_id, CancellationReason(data.reason), data.note)
    return _respond(result, _job)


# --- Scheduling and work ----------------------------------------------------

@router.post("/{job_id}/schedule/confirm")
async def confirm_schedule(
    job_id: uuid.UUID,
    data: ScheduleConfirm,
    actor_id: uuid.UUID = Depends(get_actor_id),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    result = await coordinator.confirm_schedule(job_id, actor_id, data.scheduled_for, data.notes)
    return _respond(result, _job)


@router.post("/{job_id}/schedule/reject")
async def reject_schedule(
    job_id: uuid.UUID,
    data: ScheduleReject | None = None,
    actor_id: uuid.UUID = Depends(get_actor_id),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    """Assigned mechanic declines the proposed appointment."""
    reason = data.reason if data else None
    return _respond(await coordinator.reject_schedule(job_id, actor_id, reason), _job)


@router.post("/{job_id}/schedule/reopen")
async def reopen_scheduling(
    job_id: uuid.UUID,
    actor_id: uuid.UUID = Depends(get_actor_id),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    return _respond(await coordinator.reopen_scheduling(job_id, actor_id), _job)


@router.post("/{job_id}/start")
async def start_work(
    job_id: uuid.UUID,
    actor_id: uuid.UUID = Depends(get_actor_id),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    """Mechanic begins work. Job must be scheduled."""
    return _respond(await coordinator.start_work(job_id, actor_id), _job)


@router.post("/{job_id}/complete")
async def complete_work(
    job_id: uuid.UUID,
    data: CompleteWork | None = None,
    actor_id: uuid.UUID = Depends(get_actor_id),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    notes = data.notes if data else None
    return _respond(await coordinator.complete_work(job_id, actor_id, notes), _job)


# --- Bids -------------------------------------------------------------------

@router.get("/{job_id}/bids")
async def list_bids(
    job_id: uuid.UUID,
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    return _respond(await coordinator.list_bids(job_id), BidListResponse.model_validate)


@router.post("/{job_id}/bids", status_code=201)
async def submit_bid(
    job_id: uuid.UUID,
    data: BidCreate,
    actor_id: uuid.UUID = Depends(get_actor_id),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    """Mechanic bids on an open job."""
    result = await coordinator.submit_bid(
        job_id,
        actor_id,
        Money.of(data.amount),
        message=data.message,
        duration_minutes=data.estimated_duration_minutes,
        mechanic_name=data.mechanic_name,
    )
    return _respond(result, _bid, status_code=201)


@router.post("/{job_id}/bids/{bid_id}/accept")
async def accept_bid(
    job_id: uuid.UUID,
    bid_id: uuid.UUID,
    actor_id: uuid.UUID = Depends(get_actor_id),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    """Customer accepts one bid; every other pending bid is rejected."""
    return _respond(await coordinator.accept_bid(job_id, bid_id, customer_id=actor_id), _bid)


@router.post("/{job_id}/bids/{bid_id}/reject")
async def reject_bid(
    job_id: uuid.UUID,
    bid_id: uuid.UUID,
    actor_id: uuid.UUID = Depends(get_actor_id),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    return _respond(await coordinator.reject_bid(job_id, bid_id, actor_id), _bid)


@router.post("/{job_id}/bids/{bid_id}/withdraw")
async def withdraw_bid(
    job_id: uuid.UUID,
    bid_id: uuid.UUID,
    actor_id: uuid.UUID = Depends(get_actor_id),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    return _respond(await coordinator.withdraw_bid(job_id, bid_id, actor_id), _bid)


# --- Escrow -----------------------------------------------------------------

@router.post("/{job_id}/escrow/authorize")
async def authorize_escrow(
    job_id: uuid.UUID,
    data: EscrowAuthorize,
    actor_id: uuid.UUID = Depends(get_actor_id),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    """Customer opens the deposit payment for the accepted bid.

    Retrying after a timeout reuses the same payment intent; retrying after a
    decline starts a new attempt.
    """
    result = await coordinator.authorize_escrow(job_id, data.bid_id, customer_id=actor_id)
    return _respond(result, _escrow)


@router.post("/{job_id}/escrow/capture", dependencies=[Depends(verify_payment_callback)])
async def capture_escrow(
    job_id: uuid.UUID,
    data: EscrowCapture,
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    """Settle a deposit once the payment backend reports an outcome.

    Called by the payments backend only; the body must carry its signature.
    """
    outcome = PaymentOutcome(data.outcome) if data.outcome else None
    result = await coordinator.capture_escrow(job_id, data.payment_intent_id, outcome)
    return _respond(result, _escrow)


# --- Change orders ----------------------------------------------------------

@router.post("/{job_id}/change-orders", status_code=201)
async def create_change_order(
    job_id: uuid.UUID,
    data: ChangeOrderCreate,
    actor_id: uuid.UUID = Depends(get_actor_id),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    """Assigned mechanic requests extra work on an in-progress job."""
    line_items = None
    if data.line_items:
        line_items = [
            LineItemInput(item.description, item.quantity, Money.of(item.unit_price))
            for item in data.line_items
        ]
    result = await coordinator.create_change_order(
        job_id,
        actor_id,
        data.title,
        total_amount=Money.of(data.total_amount) if data.total_amount is not None else None,
        line_items=line_items,
        description=data.description,
        reason=data.reason,
        mechanic_name=data.mechanic_name,
    )
    return _respond(result, _change_order, status_code=201)


@router.get("/{job_id}/change-orders/stats")
async def change_order_stats(
    job_id: uuid.UUID,
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    return _respond(await coordinator.change_order_stats(job_id))


@router.post("/{job_id}/change-orders/{change_order_id}/approve")
async def approve_change_order(
    job_id: uuid.UUID,
    change_order_id: uuid.UUID,
    actor_id: uuid.UUID = Depends(get_actor_id),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    result = await coordinator.approve_change_order(job_id, change_order_id, actor_id)
    return _respond(result, _change_order)


@router.post("/{job_id}/change-orders/{change_order_id}/reject")
async def reject_change_order(
    job_id: uuid.UUID,
    change_order_id: uuid.UUID,
    data: ChangeOrderDecision | None = None,
    actor_id: uuid.UUID = Depends(get_actor_id),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    reason = data.reason if data else None
    result = await coordinator.reject_change_order(job_id, change_order_id, actor_id, reason)
    return _respond(result, _change_order)


@router.post("/{job_id}/change-orders/{change_order_id}/withdraw")
async def withdraw_change_order(
    job_id: uuid.UUID,
    change_order_id: uuid.UUID,
    data: ChangeOrderDecision | None = None,
    actor_id: uuid.UUID = Depends(get_actor_id),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    reason = data.reason if data else None
    result = await coordinator.withdraw_change_order(job_id, change_order_id, actor_id, reason)
    return _respond(result, _change_order)
