"""Refund lookup and admin status updates."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from eventpay.core.deps import get_notifier
from eventpay.db import get_db
from eventpay.models import User, UserRole
from eventpay.schemas.cancellation import RefundRead, RefundStatusUpdate
from eventpay.security import get_current_user, require_role
from eventpay.services import cancellation as cancellation_service
from eventpay.services.notifications import NotificationDispatcher
from eventpay.utils.errors import success_response

router = APIRouter(prefix="/refunds", tags=["refunds"])


@router.get("/{reference}")
def get_refund(
    reference: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict[str, Any]:
    refund = cancellation_service.get_refund(db, user=user, reference=reference)
    return success_response(RefundRead.model_validate(refund).model_dump(mode="json"))


@router.post("/{reference}/status")
def update_refund_status(
    reference: str,
    payload: RefundStatusUpdate,
    db: Session = Depends(get_db),
    admin: User = Depends(require_role(UserRole.ADMIN)),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> dict[str, Any]:
    refund = cancellation_service.update_refund_status(
        db,
        actor=admin,
        reference=reference,
        status=payload.status,
        notifier=notifier,
        failure_reason=payload.failure_reason,
        gateway_response=payload.gateway_response,
    )
    return success_response(RefundRead.model_validate(refund).model_dump(mode="json"), "Refund updated")


__all__ = ["router"]
