"""Organizer balance ledger."""
import enum
from decimal import Decimal

from sqlalchemy import JSON, Enum as SqlEnum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, Money


class BalanceTransactionType(str, enum.Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class BalanceTransactionKind(str, enum.Enum):
    TICKET_SALE = "TICKET_SALE"
    PAYOUT_RESERVE = "PAYOUT_RESERVE"
    PAYOUT_RELEASE = "PAYOUT_RELEASE"
    REFUND = "REFUND"


class BalanceTransaction(Base):
    """Immutable signed ledger entry; an organizer's balance is the sum of ``amount``."""

    __tablename__ = "balance_transactions"
    __table_args__ = (
        Index("ix_balance_transactions_organizer_created", "organizer_id", "created_at"),
        Index("ix_balance_transactions_reference", "reference_type", "reference_id"),
    )

    organizer_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    type: Mapped[BalanceTransactionType] = mapped_column(SqlEnum(BalanceTransactionType), nullable=False)
    kind: Mapped[BalanceTransactionKind] = mapped_column(SqlEnum(BalanceTransactionKind), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Money, nullable=False)
    reference_type: Mapped[str] = mapped_column(String(32), nullable=False)
    reference_id: Mapped[int] = mapped_column(Integer, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
