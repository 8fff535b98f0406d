"""Change order models: mid-job requests for additional paid work."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from repairhub.database import Base
from repairhub.money import Money, MoneyType


class ChangeOrderStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    WITHDRAWN = "withdrawn"


class ChangeOrder(Base):
    __tablename__ = "change_orders"
    __table_args__ = (
        Index(
            "uq_change_orders_one_pending_per_job",
            "job_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    change_order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.job_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    mechanic_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    mechanic_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_amount: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    status: Mapped[ChangeOrderStatus] = mapped_column(
        Enum(ChangeOrderStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=ChangeOrderStatus.PENDING,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    job = relationship("Job", back_populates="change_orders")
    line_items = relationship(
        "ChangeOrderLineItem",
        back_populates="change_order",
        cascade="all, delete-orphan",
        order_by="ChangeOrderLineItem.position",
        lazy="selectin",
    )


class ChangeOrderLineItem(Base):
    """Itemized part or labour line. Immutable once the order is created."""
    __tablename__ = "change_order_line_items"

    line_item_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    change_order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("change_orders.change_order_id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    total_price: Mapped[Money] = mapped_column(MoneyType, nullable=False)

    change_order = relationship("ChangeOrder", back_populates="line_items")
