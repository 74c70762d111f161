"""Free registration and event cancellation routes."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from eventpay.config import Settings
from eventpay.core.deps import get_app_settings, get_notifier
from eventpay.db import get_db
from eventpay.models import User, UserRole
from eventpay.schemas.cancellation import EventCancellationRead, EventCancelRequest
from eventpay.schemas.payment import RegistrationRead
from eventpay.security import get_current_user, require_role
from eventpay.services import cancellation as cancellation_service
from eventpay.services.notifications import NotificationDispatcher
from eventpay.services.registrations import register_free_event
from eventpay.utils.errors import success_response

router = APIRouter(prefix="/events", tags=["events"])


@router.post("/{event_id}/register", status_code=status.HTTP_201_CREATED)
def register(
    event_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> dict[str, Any]:
    registration = register_free_event(db, user=user, event_id=event_id, notifier=notifier)
    return success_response(
        RegistrationRead.model_validate(registration).model_dump(mode="json"), "Registration confirmed"
    )


@router.post("/{event_id}/cancel")
def cancel_event(
    event_id: int,
    payload: EventCancelRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_role(UserRole.ORGANIZER)),
    settings: Settings = Depends(get_app_settings),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> dict[str, Any]:
    cancellation = cancellation_service.cancel_event(
        db, actor=user, event_id=event_id, reason=payload.reason, settings=settings, notifier=notifier
    )
    return success_response(
        EventCancellationRead.model_validate(cancellation).model_dump(mode="json"), "Event cancelled"
    )


@router.get("/{event_id}/cancellations")
def list_cancellations(
    event_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_role(UserRole.ORGANIZER)),
) -> dict[str, Any]:
    cancellations = cancellation_service.list_cancellations(db, actor=user, event_id=event_id)
    return success_response(
        [EventCancellationRead.model_validate(item).model_dump(mode="json") for item in cancellations]
    )


__all__ = ["router"]
