"""Organizer payout routes and the Xendit callback."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from eventpay.config import Settings
from eventpay.core.deps import get_app_settings, get_disbursement_gateway, get_notifier
from eventpay.db import get_db
from eventpay.models import DisbursementStatus, User, UserRole
from eventpay.schemas.disbursement import DisbursementRead, FeeEstimate, PayoutRequest
from eventpay.security import require_role
from eventpay.services import disbursements as disbursement_service
from eventpay.services.gateway import DisbursementGateway
from eventpay.services.notifications import NotificationDispatcher
from eventpay.services.webhook_events import mark_processed, record_webhook_event, xendit_event_key
from eventpay.utils.errors import GatewayError, UnauthorizedWebhook, ValidationError, success_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/disbursements", tags=["disbursements"])


def _disbursement(disbursement) -> dict[str, Any]:
    return DisbursementRead.model_validate(disbursement).model_dump(mode="json")


def _raise_if_rejected(disbursement) -> None:
    if disbursement.status == DisbursementStatus.FAILED:
        raise GatewayError(
            disbursement.failure_reason or "Disbursement rejected by the gateway",
            code="DISBURSEMENT_REJECTED",
            details={"disbursement_id": disbursement.id},
        )


@router.post("/webhook", status_code=status.HTTP_200_OK)
async def disbursement_webhook(
    request: Request,
    x_callback_token: str | None = Header(default=None, alias="x-callback-token"),
    db: Session = Depends(get_db),
    gateway: DisbursementGateway = Depends(get_disbursement_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise ValidationError("Webhook body must be JSON", code="INVALID_WEBHOOK_BODY") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object", code="INVALID_WEBHOOK_BODY")

    if not gateway.verify_webhook_signature(payload, x_callback_token):
        logger.warning("Disbursement callback token rejected", extra={"external_id": payload.get("external_id")})
        raise UnauthorizedWebhook("Invalid callback token")

    event = gateway.parse_webhook_event(payload)
    log_row, already_processed = record_webhook_event(
        db,
        provider=gateway.name,
        event_key=xendit_event_key(payload),
        reference=event.external_id or event.gateway_id,
        payload=payload,
    )
    if already_processed:
        db.commit()
        return success_response(message="Already processed")

    outcome, notifications = disbursement_service.apply_disbursement_event(db, event, notifier=notifier)
    mark_processed(db, log_row, outcome.value)
    db.commit()
    await run_in_threadpool(notifier.deliver, db, notifications)
    return success_response(message=f"Callback processed: {outcome.value}")


@router.post("/request", status_code=status.HTTP_201_CREATED)
def request_payout(
    payload: PayoutRequest,
    db: Session = Depends(get_db),
    organizer: User = Depends(require_role(UserRole.ORGANIZER)),
    gateway: DisbursementGateway = Depends(get_disbursement_gateway),
    settings: Settings = Depends(get_app_settings),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> dict[str, Any]:
    disbursement = disbursement_service.request_payout(
        db,
        organizer=organizer,
        payout_account_id=payload.payout_account_id,
        amount=payload.amount,
        gateway=gateway,
        settings=settings,
    )
    disbursement = disbursement_service.submit_disbursement(
        db, disbursement_id=disbursement.id, gateway=gateway, notifier=notifier
    )
    _raise_if_rejected(disbursement)
    return success_response(_disbursement(disbursement), "Payout requested")


@router.get("")
def list_disbursements(
    status_filter: DisbursementStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    organizer: User = Depends(require_role(UserRole.ORGANIZER)),
) -> dict[str, Any]:
    items = disbursement_service.list_disbursements(
        db, organizer=organizer, status=status_filter, limit=limit, offset=offset
    )
    return success_response([_disbursement(item) for item in items])


@router.get("/fee-estimate")
def fee_estimate(
    amount: Decimal = Query(gt=0),
    gateway: DisbursementGateway = Depends(get_disbursement_gateway),
    organizer: User = Depends(require_role(UserRole.ORGANIZER)),
) -> dict[str, Any]:
    fee = disbursement_service.estimate_fee(amount, gateway)
    return success_response(FeeEstimate.model_validate(fee).model_dump(mode="json"))


@router.get("/{disbursement_id}")
def get_disbursement(
    disbursement_id: int,
    db: Session = Depends(get_db),
    organizer: User = Depends(require_role(UserRole.ORGANIZER)),
) -> dict[str, Any]:
    disbursement = disbursement_service.get_disbursement(db, organizer=organizer, disbursement_id=disbursement_id)
    return success_response(_disbursement(disbursement))


@router.post("/{disbursement_id}/cancel")
def cancel_disbursement(
    disbursement_id: int,
    db: Session = Depends(get_db),
    organizer: User = Depends(require_role(UserRole.ORGANIZER)),
) -> dict[str, Any]:
    disbursement = disbursement_service.cancel_disbursement(
        db, organizer=organizer, disbursement_id=disbursement_id
    )
    return success_response(_disbursement(disbursement), "Payout cancelled")


@router.post("/{disbursement_id}/retry")
def retry_disbursement(
    disbursement_id: int,
    db: Session = Depends(get_db),
    organizer: User = Depends(require_role(UserRole.ORGANIZER)),
    gateway: DisbursementGateway = Depends(get_disbursement_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> dict[str, Any]:
    disbursement = disbursement_service.retry_disbursement(
        db, organizer=organizer, disbursement_id=disbursement_id, gateway=gateway, notifier=notifier
    )
    _raise_if_rejected(disbursement)
    return success_response(_disbursement(disbursement), "Payout resubmitted")


__all__ = ["router"]
