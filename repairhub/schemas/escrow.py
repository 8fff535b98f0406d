"""Pydantic v2 schemas for escrow deposits."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from repairhub.schemas.common import enum_to_value, money_to_decimal


class EscrowAuthorize(BaseModel):
    bid_id: uuid.UUID


class EscrowCapture(BaseModel):
    """Settle a deposit. Without ``outcome`` the payment backend is asked for it."""
    payment_intent_id: str = Field(..., min_length=1, max_length=255)
    outcome: Literal["succeeded", "failed", "processing"] | None = None


class EscrowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transaction_id: uuid.UUID
    job_id: uuid.UUID
    bid_id: uuid.UUID
    attempt: int
    bid_amount: Decimal
    deposit_amount: Decimal
    final_balance: Decimal
    currency: str
    payment_intent_id: str | None
    client_secret: str | None
    status: str
    failure_reason: str | None
    created_at: datetime
    captured_at: datetime | None
    failed_at: datetime | None

    @field_validator("bid_amount", "deposit_amount", "final_balance", mode="before")
    @classmethod
    def serialize_money(cls, v: object) -> object:
        return money_to_decimal(v)

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return str(enum_to_value(v))
