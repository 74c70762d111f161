"""Registration model."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Enum as SqlEnum, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, Money


class RegistrationStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"


class Registration(Base):
    """A user's admission to an event, created from a settled payment or a free signup."""

    __tablename__ = "registrations"
    __table_args__ = (Index("ix_registrations_user_event_status", "user_id", "event_id", "status"),)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id"), nullable=False, index=True)
    ticket_type_id: Mapped[int | None] = mapped_column(ForeignKey("ticket_types.id"), nullable=True)
    payment_id: Mapped[int | None] = mapped_column(ForeignKey("payments.id"), unique=True, nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    amount_paid: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    ticket_code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    status: Mapped[RegistrationStatus] = mapped_column(
        SqlEnum(RegistrationStatus), nullable=False, default=RegistrationStatus.ACTIVE
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    payment = relationship("Payment")
    event = relationship("Event")
