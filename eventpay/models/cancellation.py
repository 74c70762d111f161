"""Event cancellation and refund request models."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, DateTime, Enum as SqlEnum, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, Money


class RefundStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class EventCancellation(Base):
    __tablename__ = "event_cancellations"

    event_id: Mapped[int] = mapped_column(ForeignKey("events.id"), nullable=False, index=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    cancelled_by: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    cancelled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    hours_until_event: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    refund_percentage: Mapped[int] = mapped_column(Integer, nullable=False)

    refunds = relationship("RefundRequest", back_populates="cancellation")


class RefundRequest(Base):
    __tablename__ = "refund_requests"

    cancellation_id: Mapped[int] = mapped_column(ForeignKey("event_cancellations.id"), nullable=False, index=True)
    registration_id: Mapped[int | None] = mapped_column(ForeignKey("registrations.id"), nullable=True)
    payment_id: Mapped[int] = mapped_column(ForeignKey("payments.id"), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    percentage: Mapped[int] = mapped_column(Integer, nullable=False)
    reference: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    status: Mapped[RefundStatus] = mapped_column(SqlEnum(RefundStatus), nullable=False, default=RefundStatus.PENDING)
    gateway_response: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    cancellation = relationship("EventCancellation", back_populates="refunds")
