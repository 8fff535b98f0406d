"""Job SQLAlchemy model: aggregate root of the bidding lifecycle.

A job owns its bids, change orders, escrow transactions and progression
timeline; they are loaded, locked and committed together.
"""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from repairhub.database import Base
from repairhub.money import Money, MoneyType


class JobStatus(enum.Enum):
    POSTED = "posted"
    BIDDING = "bidding"
    ACCEPTED = "accepted"
    SCHEDULED = "scheduled"
    SCHEDULE_REJECTED = "schedule_rejected"
    IN_PROGRESS = "in_progress"
    PENDING = "pending"  # waiting on a change order decision
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CancellationReason(enum.Enum):
    EXPIRED = "expired"
    CUSTOMER_REQUEST = "customer_request"
    MECHANIC_REQUEST = "mechanic_request"
    PAYMENT_FAILED = "payment_failed"
    OTHER = "other"


# Valid state transitions
VALID_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.POSTED: {JobStatus.BIDDING, JobStatus.CANCELLED},
    JobStatus.BIDDING: {JobStatus.BIDDING, JobStatus.ACCEPTED, JobStatus.CANCELLED},
    JobStatus.ACCEPTED: {JobStatus.SCHEDULED, JobStatus.CANCELLED},
    JobStatus.SCHEDULED: {JobStatus.IN_PROGRESS, JobStatus.SCHEDULE_REJECTED, JobStatus.CANCELLED},
    JobStatus.SCHEDULE_REJECTED: {JobStatus.ACCEPTED, JobStatus.CANCELLED},
    JobStatus.IN_PROGRESS: {JobStatus.PENDING, JobStatus.COMPLETED, JobStatus.CANCELLED},
    JobStatus.PENDING: {JobStatus.IN_PROGRESS, JobStatus.CANCELLED},
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})
OPEN_FOR_BIDS = frozenset({JobStatus.POSTED, JobStatus.BIDDING})


class Job(Base):
    __tablename__ = "jobs"

    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=JobStatus.POSTED,
    )
    category: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    vehicle: Mapped[str | None] = mapped_column(String(200), nullable=True)
    location: Mapped[str | None] = mapped_column(String(500), nullable=True)
    estimated_cost: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    agreed_price: Mapped[Money | None] = mapped_column(MoneyType, nullable=True)
    selected_mechanic_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    selected_bid_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    cancellation_reason: Mapped[CancellationReason | None] = mapped_column(
        Enum(CancellationReason, values_callable=lambda x: [e.value for e in x]),
        nullable=True,
    )
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    schedule_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completion_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    bids = relationship(
        "Bid",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="Bid.created_at",
        lazy="selectin",
    )
    change_orders = relationship(
        "ChangeOrder",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="ChangeOrder.created_at",
        lazy="selectin",
    )
    escrow_transactions = relationship(
        "EscrowTransaction",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="EscrowTransaction.attempt",
        lazy="selectin",
    )
    timeline = relationship(
        "JobTimelineEntry",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="JobTimelineEntry.sequence",
        lazy="selectin",
    )

    # Optimistic concurrency: every UPDATE checks and bumps `version`.
    __mapper_args__ = {"version_id_col": version}

    @property
    def change_order_ids(self) -> list[uuid.UUID]:
        return [co.change_order_id for co in self.change_orders]
