"""Payment checkout, status and Midtrans webhook routes."""
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from eventpay.config import Settings
from eventpay.core.deps import get_app_settings, get_notifier, get_payment_gateway
from eventpay.db import get_db
from eventpay.models import User
from eventpay.schemas.payment import PaymentCreate, PaymentRead, RegistrationRead
from eventpay.security import get_current_user
from eventpay.services import payments as payments_service
from eventpay.services import settlement
from eventpay.services.gateway import PaymentGateway
from eventpay.services.notifications import NotificationDispatcher
from eventpay.services.webhook_events import mark_processed, midtrans_event_key, record_webhook_event
from eventpay.utils.errors import UnauthorizedWebhook, ValidationError, success_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def _payment(payment) -> dict[str, Any]:
    return PaymentRead.model_validate(payment).model_dump(mode="json")


@router.post("/webhook", status_code=status.HTTP_200_OK)
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    settings: Settings = Depends(get_app_settings),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> dict[str, Any]:
    """Verify, parse, then apply a payment notification.

    Answers 200 for duplicates and statuses we do not act on so the gateway
    stops retrying; only a bad signature is rejected.
    """

    try:
        payload = await request.json()
    except ValueError as exc:
        raise ValidationError("Webhook body must be JSON", code="INVALID_WEBHOOK_BODY") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object", code="INVALID_WEBHOOK_BODY")

    if not gateway.verify_webhook_signature(payload, payload.get("signature_key")):
        logger.warning("Payment webhook signature rejected", extra={"order_id": payload.get("order_id")})
        raise UnauthorizedWebhook("Invalid webhook signature")

    event = gateway.parse_webhook_event(payload)
    log_row, already_processed = record_webhook_event(
        db,
        provider=gateway.name,
        event_key=midtrans_event_key(payload),
        reference=event.gateway_order_id,
        payload=payload,
    )
    if already_processed:
        db.commit()
        logger.info("Duplicate payment webhook ignored", extra={"order_id": event.gateway_order_id})
        return success_response(message="Already processed")

    result = settlement.apply_payment_event(db, event, settings=settings, notifier=notifier)
    mark_processed(db, log_row, result.outcome.value)
    db.commit()
    await run_in_threadpool(notifier.deliver, db, result.notifications)
    return success_response(message=f"Notification processed: {result.outcome.value}")


@router.post("/create-order", status_code=status.HTTP_201_CREATED)
def create_order(
    payload: PaymentCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    payment = payments_service.create_order(
        db,
        user=user,
        event_id=payload.event_id,
        quantity=payload.quantity,
        ticket_type_id=payload.ticket_type_id,
        gateway=gateway,
        settings=settings,
    )
    return success_response(_payment(payment), "Payment order created")


@router.get("/status/{payment_id}")
def payment_status(
    payment_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict[str, Any]:
    return success_response(_payment(payments_service.get_payment(db, user=user, payment_id=payment_id)))


@router.get("/order/{order_id}")
def payment_by_order(
    order_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict[str, Any]:
    return success_response(_payment(payments_service.get_payment_by_order(db, user=user, order_id=order_id)))


@router.get("/history")
def payment_history(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict[str, Any]:
    payments = payments_service.list_history(db, user=user, limit=limit, offset=offset)
    return success_response([_payment(payment) for payment in payments])


@router.post("/{payment_id}/cancel")
def cancel_payment(
    payment_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict[str, Any]:
    payment = payments_service.cancel_payment(db, user=user, payment_id=payment_id)
    return success_response(_payment(payment), "Payment cancelled")


@router.post("/order/{order_id}/sync")
def sync_payment(
    order_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    settings: Settings = Depends(get_app_settings),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> dict[str, Any]:
    result = payments_service.sync_payment(
        db, user=user, order_id=order_id, gateway=gateway, settings=settings, notifier=notifier
    )
    return success_response(_payment(result.payment), f"Sync result: {result.outcome.value}")


@router.post("/{payment_id}/trigger-registration")
def trigger_registration(
    payment_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    settings: Settings = Depends(get_app_settings),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> dict[str, Any]:
    result = settlement.trigger_registration_from_payment(
        db, payment_id=payment_id, actor=user, settings=settings, notifier=notifier
    )
    db.commit()
    notifier.deliver(db, result.notifications)
    if result.error is not None:
        # The review flag and attempt counter are committed; report why it still failed.
        raise result.error
    return success_response(
        {
            "payment": _payment(result.payment),
            "registration": RegistrationRead.model_validate(result.registration).model_dump(mode="json"),
        },
        "Registration created",
    )


__all__ = ["router"]
