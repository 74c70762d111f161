"""Schemas for payments and registrations."""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from eventpay.models.payment import PaymentStatus
from eventpay.models.registration import RegistrationStatus


class PaymentCreate(BaseModel):
    event_id: int
    ticket_type_id: int | None = None
    quantity: int = Field(default=1, ge=1)


class PaymentRead(BaseModel):
    id: int
    user_id: int
    event_id: int
    ticket_type_id: int | None
    quantity: int
    amount: Decimal
    currency: str
    status: PaymentStatus
    gateway: str
    gateway_order_id: str
    payment_type: str | None
    redirect_url: str | None
    snap_token: str | None
    failure_reason: str | None
    requires_manual_review: bool
    review_reason: str | None
    paid_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RegistrationRead(BaseModel):
    id: int
    user_id: int
    event_id: int
    ticket_type_id: int | None
    payment_id: int | None
    quantity: int
    amount_paid: Decimal
    ticket_code: str
    status: RegistrationStatus
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
