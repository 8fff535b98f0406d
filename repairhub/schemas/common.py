"""Shared response envelope and field helpers."""

from typing import Any

from pydantic import BaseModel

from repairhub.money import Money


def money_to_decimal(v: object) -> object:
    if isinstance(v, Money):
        return v.to_decimal()
    return v


def enum_to_value(v: object) -> object:
    if hasattr(v, "value"):
        return v.value
    return v


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class Envelope(BaseModel):
    """Every job endpoint answers ``{success, data, error}``."""
    success: bool
    data: Any = None
    error: ErrorBody | None = None


