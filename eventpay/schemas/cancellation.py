"""Schemas for event cancellation and refunds."""
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from eventpay.models.cancellation import RefundStatus


class EventCancelRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)


class RefundRead(BaseModel):
    id: int
    cancellation_id: int
    registration_id: int | None
    payment_id: int
    user_id: int
    amount: Decimal
    percentage: int
    reference: str
    status: RefundStatus
    failure_reason: str | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class EventCancellationRead(BaseModel):
    id: int
    event_id: int
    reason: str
    cancelled_by: int
    cancelled_at: datetime
    hours_until_event: Decimal
    refund_percentage: int
    refunds: list[RefundRead] = []

    model_config = ConfigDict(from_attributes=True)


class RefundStatusUpdate(BaseModel):
    status: RefundStatus
    failure_reason: str | None = None
    gateway_response: dict[str, Any] | None = None
