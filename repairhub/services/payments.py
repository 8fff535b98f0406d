"""Payment port and its adapters.

The marketplace never sees card data. It asks the payments backend for a
payment intent covering the escrow deposit, hands the client secret to the
app, and later confirms the intent's outcome.
"""

import enum
import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol

import httpx

from repairhub.config import settings
from repairhub.money import Money

logger = logging.getLogger(__name__)


class PaymentOutcome(enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PROCESSING = "processing"


@dataclass
class PaymentIntent:
    intent_id: str
    amount: Money
    status: str
    client_secret: str | None = None


class PaymentDeclined(Exception):
    """The provider refused the payment (card declined, invalid request...)."""


class PaymentGatewayTimeout(Exception):
    """The provider did not answer in time. The outcome is unknown."""


class PaymentGatewayError(Exception):
    """Transport or provider failure unrelated to the payment itself."""


class PaymentGateway(Protocol):
    async def create_payment_intent(
        self,
        amount: Money,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> PaymentIntent: ...

    async def confirm(self, intent_id: str) -> PaymentOutcome: ...


# Provider intent states → marketplace outcome
_STATUS_OUTCOMES = {
    "succeeded": PaymentOutcome.SUCCEEDED,
    "processing": PaymentOutcome.PROCESSING,
    "requires_action": PaymentOutcome.PROCESSING,
    "requires_confirmation": PaymentOutcome.PROCESSING,
    "requires_capture": PaymentOutcome.PROCESSING,
    "requires_payment_method": PaymentOutcome.FAILED,
    "canceled": PaymentOutcome.FAILED,
}


def outcome_for_status(status: str) -> PaymentOutcome:
    return _STATUS_OUTCOMES.get(status, PaymentOutcome.PROCESSING)


class HttpPaymentGateway:
    """Talks to the payments backend that wraps the card processor.

    POST /payment-intents creates an intent; PUT /payment-intents confirms one.
    Amounts go over the wire in major units, as the backend expects.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.payment_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.payment_api_key
        self.timeout = timeout or settings.payment_timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _send(self, method: str, body: dict, headers: dict[str, str] | None = None) -> dict:
        async with self._client() as client:
            try:
                resp = await client.request(method, "/payment-intents", json=body, headers=headers)
            except httpx.TimeoutException as exc:
                logger.error("Payment backend timed out on %s /payment-intents", method)
                raise PaymentGatewayTimeout("Payment backend timed out") from exc
            except httpx.RequestError as exc:
                logger.error("Payment backend request failed: %s", exc)
                raise PaymentGatewayError("Failed to reach payment backend") from exc

        if resp.status_code in (400, 402):
            data = resp.json() if resp.content else {}
            raise PaymentDeclined(data.get("message") or data.get("error") or "Payment declined")
        if resp.status_code != 200:
            logger.error("Payment backend returned %d: %s", resp.status_code, resp.text[:500])
            raise PaymentGatewayError(f"Payment backend error (status {resp.status_code})")
        return resp.json()

    async def create_payment_intent(
        self,
        amount: Money,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> PaymentIntent:
        data = await self._send(
            "POST",
            {
                "amount": str(amount.to_decimal()),
                "currency": currency.lower(),
                "metadata": metadata,
            },
            headers={"Idempotency-Key": idempotency_key},
        )
        return PaymentIntent(
            intent_id=data["id"],
            amount=amount,
            status=data.get("status", "requires_payment_method"),
            client_secret=data.get("client_secret"),
        )

    async def confirm(self, intent_id: str) -> PaymentOutcome:
        data = await self._send("PUT", {"paymentIntentId": intent_id})
        return outcome_for_status(data.get("status", ""))


@dataclass
class InMemoryPaymentGateway:
    """Local stand-in for the payments backend (development and tests).

    Honours idempotency keys the way the real provider does, and can be told
    to decline or time out the next call.
    """

    intents: dict[str, PaymentIntent] = field(default_factory=dict)
    by_idempotency_key: dict[str, str] = field(default_factory=dict)
    outcomes: dict[str, PaymentOutcome] = field(default_factory=dict)
    create_calls: int = 0
    confirm_calls: int = 0
    decline_next: str | None = None
    timeout_next: bool = False
    default_outcome: PaymentOutcome = PaymentOutcome.SUCCEEDED

    async def create_payment_intent(
        self,
        amount: Money,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> PaymentIntent:
        self.create_calls += 1
        if self.timeout_next:
            self.timeout_next = False
            raise PaymentGatewayTimeout("Simulated provider timeout")
        if self.decline_next is not None:
            reason, self.decline_next = self.decline_next, None
            raise PaymentDeclined(reason)

        existing = self.by_idempotency_key.get(idempotency_key)
        if existing is not None:
            return self.intents[existing]

        intent_id = f"pi_{uuid.uuid4().hex[:24]}"
        intent = PaymentIntent(
            intent_id=intent_id,
            amount=amount,
            status="requires_confirmation",
            client_secret=f"{intent_id}_secret_{uuid.uuid4().hex[:12]}",
        )
        self.intents[intent_id] = intent
        self.by_idempotency_key[idempotency_key] = intent_id
        return intent

    async def confirm(self, intent_id: str) -> PaymentOutcome:
        self.confirm_calls += 1
        if self.timeout_next:
            self.timeout_next = False
            raise PaymentGatewayTimeout("Simulated provider timeout")
        if intent_id not in self.intents:
            raise PaymentDeclined(f"No such payment intent: {intent_id}")
        outcome = self.outcomes.get(intent_id, self.default_outcome)
        self.intents[intent_id].status = outcome.value
        return outcome

    def total_charged(self) -> Decimal:
        return sum(
            (i.amount.to_decimal() for i in self.intents.values() if i.status == "succeeded"),
            Decimal("0"),
        )


def build_payment_gateway() -> PaymentGateway:
    if settings.payment_backend == "http":
        return HttpPaymentGateway()
    return InMemoryPaymentGateway()
