"""Event and ticket type models."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, Money


class EventStatus(str, enum.Enum):
    PUBLISHED = "PUBLISHED"
    CANCELLED = "CANCELLED"


class Event(Base):
    """A ticketed event owned by an organizer."""

    __tablename__ = "events"
    __table_args__ = (
        CheckConstraint("registered_count >= 0", name="ck_events_registered_non_negative"),
        CheckConstraint("capacity IS NULL OR registered_count <= capacity", name="ck_events_capacity"),
    )

    organizer_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_free: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    price: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="IDR")
    capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    registered_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    allows_multiple_tickets: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    platform_fee_percent: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    status: Mapped[EventStatus] = mapped_column(SqlEnum(EventStatus), nullable=False, default=EventStatus.PUBLISHED)

    organizer = relationship("User")
    ticket_types = relationship("TicketType", back_populates="event")


class TicketType(Base):
    __tablename__ = "ticket_types"
    __table_args__ = (
        CheckConstraint("sold_count >= 0", name="ck_ticket_types_sold_non_negative"),
        CheckConstraint("sold_count <= capacity", name="ck_ticket_types_capacity"),
    )

    event_id: Mapped[int] = mapped_column(ForeignKey("events.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    sold_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_per_order: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    event = relationship("Event", back_populates="ticket_types")
