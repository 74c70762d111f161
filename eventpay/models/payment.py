"""Payment model definitions."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, Money


class PaymentStatus(str, enum.Enum):
    """Possible statuses for a payment."""

    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"


TERMINAL_PAYMENT_STATUSES = frozenset(
    {
        PaymentStatus.PAID,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
        PaymentStatus.EXPIRED,
        PaymentStatus.REFUNDED,
    }
)


class Payment(Base):
    """A participant's attempt to pay for an event registration."""

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
        CheckConstraint("quantity > 0", name="ck_payment_positive_quantity"),
        Index("ix_payments_status", "status"),
        Index("ix_payments_user_event", "user_id", "event_id"),
        Index("ix_payments_status_created", "status", "created_at"),
    )

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id"), nullable=False, index=True)
    ticket_type_id: Mapped[int | None] = mapped_column(ForeignKey("ticket_types.id"), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="IDR")
    status: Mapped[PaymentStatus] = mapped_column(SqlEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    gateway: Mapped[str] = mapped_column(String(32), nullable=False, default="midtrans")
    gateway_order_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    gateway_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payment_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    redirect_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    snap_token: Mapped[str | None] = mapped_column(String(256), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    requires_manual_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    review_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    registration_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    user = relationship("User")
    event = relationship("Event")
    ticket_type = relationship("TicketType")


class PaymentStatusHistory(Base):
    """Append-only trail of payment status changes."""

    __tablename__ = "payment_status_history"

    payment_id: Mapped[int] = mapped_column(ForeignKey("payments.id"), nullable=False, index=True)
    from_status: Mapped[PaymentStatus | None] = mapped_column(SqlEnum(PaymentStatus), nullable=True)
    to_status: Mapped[PaymentStatus] = mapped_column(SqlEnum(PaymentStatus), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
