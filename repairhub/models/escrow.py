"""Escrow deposit transaction model."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, reconstructor, relationship
from sqlalchemy.orm.attributes import set_committed_value

from repairhub.database import Base
from repairhub.money import Money, MoneyType


class EscrowStatus(enum.Enum):
    PENDING = "pending"
    CAPTURED = "captured"
    FAILED = "failed"


class EscrowTransaction(Base):
    """One attempt at collecting the deposit for an accepted bid.

    A failed attempt stays on record; retrying creates the next attempt.
    ``idempotency_key`` is derived from the bid and attempt number, so a unit of
    work replayed after a failed commit asks the provider for the same intent.
    """
    __tablename__ = "escrow_transactions"

    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.job_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    bid_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bids.bid_id", ondelete="RESTRICT"), nullable=False
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    bid_amount: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    deposit_amount: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    final_balance: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    client_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[EscrowStatus] = mapped_column(
        Enum(EscrowStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=EscrowStatus.PENDING,
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    captured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    job = relationship("Job", back_populates="escrow_transactions")

    @reconstructor
    def _restore_currency(self) -> None:
        # Amounts are stored as bare cents; the row's currency is authoritative.
        for name in ("bid_amount", "deposit_amount", "final_balance"):
            value = self.__dict__.get(name)
            if value is not None and value.currency != self.currency:
                set_committed_value(self, name, Money(value.cents, self.currency))
