"""Caller identity.

Authentication happens upstream (API gateway / session service); by the time a
request reaches this service the authenticated user id is in ``X-Actor-Id``.
Deposit settlement is the exception: only the payments backend may call it,
and it proves so by signing the request body with the shared callback secret.
"""

import hmac
import uuid
from datetime import UTC, datetime

from fastapi import Header, HTTPException, Request

from repairhub.config import settings
from repairhub.services.notifications import sign_payload

ACTOR_HEADER = "X-Actor-Id"
PAYMENT_TIMESTAMP_HEADER = "X-Payment-Timestamp"
PAYMENT_SIGNATURE_HEADER = "X-Payment-Signature"


async def get_actor_id(x_actor_id: str | None = Header(None, alias=ACTOR_HEADER)) -> uuid.UUID:
    if not x_actor_id:
        raise HTTPException(status_code=401, detail=f"Missing {ACTOR_HEADER} header")
    try:
        return uuid.UUID(x_actor_id)
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Malformed {ACTOR_HEADER} header")


def _is_timestamp_valid(timestamp: str, max_age_seconds: int) -> bool:
    try:
        ts = datetime.fromisoformat(timestamp)
    except (ValueError, TypeError):
        return False
    if ts.tzinfo is None:
        return False
    return abs((datetime.now(UTC) - ts).total_seconds()) <= max_age_seconds


async def verify_payment_callback(request: Request) -> None:
    """Verify the HMAC-SHA256 signature the payments backend puts on ``timestamp.body``."""
    timestamp = request.headers.get(PAYMENT_TIMESTAMP_HEADER)
    signature = request.headers.get(PAYMENT_SIGNATURE_HEADER)
    if not timestamp or not signature:
        raise HTTPException(status_code=403, detail="Missing payment callback signature")

    if not _is_timestamp_valid(timestamp, settings.payment_callback_max_age_seconds):
        raise HTTPException(status_code=403, detail="Payment callback timestamp expired")

    body = (await request.body()).decode("utf-8", errors="replace")
    expected = sign_payload(settings.payment_callback_secret, timestamp, body)
    if not hmac.compare_digest(expected, signature):
        raise HTTPException(status_code=403, detail="Invalid payment callback signature")
