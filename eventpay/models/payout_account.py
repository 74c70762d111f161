"""Organizer payout destination."""
import enum

from sqlalchemy import Boolean, Enum as SqlEnum, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class PayoutAccountType(str, enum.Enum):
    BANK_ACCOUNT = "BANK_ACCOUNT"
    E_WALLET = "E_WALLET"


class PayoutAccount(Base):
    __tablename__ = "payout_accounts"

    organizer_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    account_type: Mapped[PayoutAccountType] = mapped_column(SqlEnum(PayoutAccountType), nullable=False)
    bank_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    ewallet_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    account_name: Mapped[str] = mapped_column(String(200), nullable=False)
    account_number: Mapped[str] = mapped_column(String(64), nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
