"""Schemas for payouts, balance and payout accounts."""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from eventpay.models.disbursement import DisbursementStatus
from eventpay.models.ledger import BalanceTransactionKind, BalanceTransactionType
from eventpay.models.payout_account import PayoutAccountType


class PayoutRequest(BaseModel):
    payout_account_id: int
    amount: Decimal = Field(gt=Decimal("0"))


class DisbursementRead(BaseModel):
    id: int
    organizer_id: int
    payout_account_id: int
    amount: Decimal
    fee: Decimal
    net_amount: Decimal
    currency: str
    status: DisbursementStatus
    gateway_id: str | None
    external_id: str
    attempt: int
    failure_reason: str | None
    requested_at: datetime
    processed_at: datetime | None
    completed_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class FeeEstimate(BaseModel):
    amount: Decimal
    base_fee: Decimal
    percentage_fee: Decimal
    tax: Decimal
    total_fee: Decimal
    net_amount: Decimal

    model_config = ConfigDict(from_attributes=True)


class BalanceSummary(BaseModel):
    available_balance: Decimal
    total_earned: Decimal
    total_refunded: Decimal
    pending_payouts: Decimal
    total_withdrawn: Decimal


class BalanceTransactionRead(BaseModel):
    id: int
    type: BalanceTransactionType
    kind: BalanceTransactionKind
    amount: Decimal
    balance_after: Decimal
    reference_type: str
    reference_id: int
    description: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PayoutAccountCreate(BaseModel):
    account_type: PayoutAccountType
    account_name: str = Field(min_length=1, max_length=200)
    account_number: str = Field(min_length=4, max_length=64)
    bank_code: str | None = Field(default=None, max_length=32)
    ewallet_type: str | None = Field(default=None, max_length=32)
    is_default: bool = False


class PayoutAccountRead(BaseModel):
    id: int
    account_type: PayoutAccountType
    bank_code: str | None
    ewallet_type: str | None
    account_name: str
    account_number: str
    is_default: bool
    is_verified: bool
    is_active: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
