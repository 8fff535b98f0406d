"""Pydantic v2 schemas for job lifecycle endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from repairhub.schemas.common import enum_to_value, money_to_decimal
from repairhub.schemas.escrow import EscrowResponse


class JobCreate(BaseModel):
    """Customer posts a repair job."""
    category: str = Field(..., min_length=1, max_length=64)
    title: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(None, max_length=4096)
    vehicle: str | None = Field(None, max_length=200)
    location: str | None = Field(None, max_length=500)
    estimated_cost: Decimal = Field(..., max_digits=12, decimal_places=2)


class BidCreate(BaseModel):
    """Mechanic bids on a job."""
    amount: Decimal = Field(..., max_digits=12, decimal_places=2)
    message: str | None = Field(None, max_length=2048)
    estimated_duration_minutes: int | None = None
    mechanic_name: str | None = Field(None, max_length=200)


class ScheduleConfirm(BaseModel):
    scheduled_for: datetime
    notes: str | None = Field(None, max_length=2048)


class ScheduleReject(BaseModel):
    reason: str | None = Field(None, max_length=2048)


class CompleteWork(BaseModel):
    notes: str | None = Field(None, max_length=4096)


class CancelJob(BaseModel):
    reason: Literal["customer_request", "mechanic_request", "payment_failed", "other"] = "customer_request"
    note: str | None = Field(None, max_length=2048)


class LineItemCreate(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)
    quantity: int = Field(1, ge=1, le=10_000)
    unit_price: Decimal = Field(..., max_digits=12, decimal_places=2)


class ChangeOrderCreate(BaseModel):
    """Mechanic asks for extra work. Give a total, line items, or both (they must agree)."""
    title: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(None, max_length=4096)
    reason: str | None = Field(None, max_length=2048)
    total_amount: Decimal | None = Field(None, max_digits=12, decimal_places=2)
    line_items: list[LineItemCreate] | None = Field(None, max_length=50)
    mechanic_name: str | None = Field(None, max_length=200)

    @model_validator(mode="after")
    def require_amount(self) -> "ChangeOrderCreate":
        if self.total_amount is None and not self.line_items:
            raise ValueError("Provide total_amount or line_items")
        return self


class ChangeOrderDecision(BaseModel):
    reason: str | None = Field(None, max_length=2048)


class BidResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    bid_id: uuid.UUID
    job_id: uuid.UUID
    mechanic_id: uuid.UUID
    mechanic_name: str | None
    amount: Decimal
    message: str | None
    estimated_duration_minutes: int | None
    status: str
    created_at: datetime
    resolved_at: datetime | None

    @field_validator("amount", mode="before")
    @classmethod
    def serialize_amount(cls, v: object) -> object:
        return money_to_decimal(v)

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return str(enum_to_value(v))


class BidListResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    bids: list[BidResponse]
    lowest_pending_bid_id: uuid.UUID | None


class LineItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    position: int
    description: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal

    @field_validator("unit_price", "total_price", mode="before")
    @classmethod
    def serialize_money(cls, v: object) -> object:
        return money_to_decimal(v)


class ChangeOrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    change_order_id: uuid.UUID
    job_id: uuid.UUID
    mechanic_id: uuid.UUID
    mechanic_name: str | None
    title: str
    description: str | None
    reason: str | None
    total_amount: Decimal
    status: str
    line_items: list[LineItemResponse]
    created_at: datetime
    expires_at: datetime
    resolved_at: datetime | None
    resolved_by: uuid.UUID | None
    rejection_reason: str | None

    @field_validator("total_amount", mode="before")
    @classmethod
    def serialize_amount(cls, v: object) -> object:
        return money_to_decimal(v)

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return str(enum_to_value(v))


class TimelineEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sequence: int
    status: str
    description: str
    actor: str
    metadata: dict | None = Field(None, validation_alias="metadata_")
    created_at: datetime


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: uuid.UUID
    customer_id: uuid.UUID
    status: str
    category: str
    title: str
    description: str | None
    vehicle: str | None
    location: str | None
    estimated_cost: Decimal
    agreed_price: Decimal | None
    selected_mechanic_id: uuid.UUID | None
    selected_bid_id: uuid.UUID | None
    cancellation_reason: str | None
    scheduled_for: datetime | None
    schedule_notes: str | None
    started_at: datetime | None
    completed_at: datetime | None
    completion_notes: str | None
    cancelled_at: datetime | None
    version: int
    created_at: datetime
    updated_at: datetime
    bids: list[BidResponse]
    change_orders: list[ChangeOrderResponse]
    escrow_transactions: list[EscrowResponse]
    timeline: list[TimelineEntryResponse]

    @field_validator("estimated_cost", "agreed_price", mode="before")
    @classmethod
    def serialize_money(cls, v: object) -> object:
        return money_to_decimal(v)

    @field_validator("status", "cancellation_reason", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str | None:
        if v is None:
            return None
        return str(enum_to_value(v))
