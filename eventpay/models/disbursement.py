"""Disbursement (organizer payout) model."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, CheckConstraint, DateTime, Enum as SqlEnum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, Money


class DisbursementStatus(str, enum.Enum):
    REQUESTED = "REQUESTED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class Disbursement(Base):
    __tablename__ = "disbursements"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_disbursement_positive_amount"),
        Index("ix_disbursements_organizer_status", "organizer_id", "status"),
    )

    organizer_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    payout_account_id: Mapped[int] = mapped_column(ForeignKey("payout_accounts.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    fee: Mapped[Decimal] = mapped_column(Money, nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="IDR")
    status: Mapped[DisbursementStatus] = mapped_column(
        SqlEnum(DisbursementStatus), nullable=False, default=DisbursementStatus.REQUESTED
    )
    gateway_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    external_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    payout_account = relationship("PayoutAccount")
