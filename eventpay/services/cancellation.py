"""Event cancellation and refund requests."""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from eventpay.config import Settings
from eventpay.models import (
    BalanceTransactionKind,
    Event,
    EventCancellation,
    EventStatus,
    Notification,
    Payment,
    PaymentStatus,
    RefundRequest,
    RefundStatus,
    Registration,
    RegistrationStatus,
    User,
    UserRole,
)
from eventpay.services import ledger
from eventpay.services.gateway import round_money
from eventpay.services.notifications import NotificationDispatcher
from eventpay.services.settlement import transition_payment
from eventpay.utils.audit import actor_for_user, log_audit
from eventpay.utils.errors import (
    InvalidTransition,
    NotFoundError,
    PermissionDenied,
    StateConflict,
    ValidationError,
)
from eventpay.utils.time import as_utc, utcnow

logger = logging.getLogger(__name__)

REFUND_TRANSITIONS: dict[RefundStatus, set[RefundStatus]] = {
    RefundStatus.PENDING: {RefundStatus.PROCESSING, RefundStatus.COMPLETED, RefundStatus.FAILED},
    RefundStatus.PROCESSING: {RefundStatus.COMPLETED, RefundStatus.FAILED},
    RefundStatus.FAILED: {RefundStatus.PROCESSING},
    RefundStatus.COMPLETED: set(),
}


def refund_percentage(time_until_event: timedelta, tiers: list[tuple[int, int]]) -> int:
    """Percent refunded for a cancellation ``time_until_event`` before the start.

    ``tiers`` is ``[(min_hours, percent), ...]`` sorted by ``min_hours``
    descending; a tier applies when the notice is at least ``min_hours``.
    """

    for hours, percent in tiers:
        if time_until_event >= timedelta(hours=hours):
            return percent
    return 0


def generate_refund_reference() -> str:
    return f"REF-{utcnow():%Y%m%d}-{secrets.token_hex(4).upper()}"


def _refund_payment(
    db: Session,
    *,
    event: Event,
    cancellation: EventCancellation,
    payment: Payment,
    registration: Registration | None,
    percent: int,
    settings: Settings,
) -> RefundRequest | None:
    refund_amount = round_money(payment.amount * Decimal(percent) / Decimal(100), settings.CURRENCY_EXPONENT)
    if refund_amount <= 0:
        return None

    refund = RefundRequest(
        cancellation_id=cancellation.id,
        registration_id=registration.id if registration else None,
        payment_id=payment.id,
        user_id=payment.user_id,
        amount=refund_amount,
        percentage=percent,
        reference=generate_refund_reference(),
        status=RefundStatus.PENDING,
    )
    db.add(refund)
    if payment.status == PaymentStatus.PAID:
        transition_payment(
            db,
            payment,
            from_statuses=[PaymentStatus.PAID],
            to_status=PaymentStatus.REFUNDED,
            source="event_cancellation",
            note=f"{percent}% refund {refund.reference}",
        )
    else:
        # Late success: captured after the payment closed, never credited to the organizer.
        payment.requires_manual_review = False
        logger.info(
            "Refund issued for late-success payment",
            extra={"payment_id": payment.id, "reference": refund.reference},
        )

    credited = ledger.credited_for_payment(db, payment.id)
    if credited > 0:
        clawback = round_money(credited * Decimal(percent) / Decimal(100), settings.CURRENCY_EXPONENT)
        ledger.record_entry(
            db,
            organizer_id=event.organizer_id,
            kind=BalanceTransactionKind.REFUND,
            amount=-clawback,
            reference_type="payment",
            reference_id=payment.id,
            idempotency_key=ledger.refund_key(payment.id),
            description=f"Refund {refund.reference} for cancelled event {event.title}",
            meta={"percentage": percent, "refund_amount": str(refund_amount)},
        )
    return refund


def cancel_event(
    db: Session,
    *,
    actor: User,
    event_id: int,
    reason: str,
    settings: Settings,
    notifier: NotificationDispatcher,
    now: datetime | None = None,
) -> EventCancellation:
    """Cancel a published event, its registrations and open payments, and issue refunds."""

    if not reason or not reason.strip():
        raise ValidationError("A cancellation reason is required", code="REASON_REQUIRED")
    event = db.get(Event, event_id)
    if event is None:
        raise NotFoundError("Event not found", code="EVENT_NOT_FOUND")
    if actor.role != UserRole.ADMIN and event.organizer_id != actor.id:
        raise PermissionDenied("Only the organizer or an admin can cancel this event")

    now = now or utcnow()
    starts_at = as_utc(event.starts_at)
    if starts_at <= now:
        raise ValidationError("Event has already started", code="EVENT_STARTED")

    db.flush()
    result = db.execute(
        update(Event)
        .where(Event.id == event.id, Event.status == EventStatus.PUBLISHED)
        .values(status=EventStatus.CANCELLED)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidTransition("Event is already cancelled", code="EVENT_ALREADY_CANCELLED")
    db.refresh(event)

    notice = starts_at - now
    percent = refund_percentage(notice, settings.REFUND_POLICY_TIERS)
    cancellation = EventCancellation(
        event_id=event.id,
        reason=reason.strip(),
        cancelled_by=actor.id,
        cancelled_at=now,
        hours_until_event=Decimal(str(round(notice.total_seconds() / 3600, 2))),
        refund_percentage=percent,
    )
    db.add(cancellation)
    db.flush()

    notifications: list[Notification] = []
    refunds: list[RefundRequest] = []
    registrations = db.scalars(
        select(Registration).where(
            Registration.event_id == event.id, Registration.status == RegistrationStatus.ACTIVE
        )
    ).all()
    for registration in registrations:
        registration.status = RegistrationStatus.CANCELLED
        registration.cancelled_at = now
        refund = None
        if registration.payment_id is not None:
            payment = db.get(Payment, registration.payment_id)
            if payment is not None and payment.status == PaymentStatus.PAID:
                refund = _refund_payment(
                    db,
                    event=event,
                    cancellation=cancellation,
                    payment=payment,
                    registration=registration,
                    percent=percent,
                    settings=settings,
                )
        if refund is not None:
            refunds.append(refund)
        notifications.append(_notify_participant(db, notifier, event, registration.user_id, refund, reason))

    # Captured but never registered (manual review or late success): refund in full.
    orphaned = db.scalars(
        select(Payment).where(
            Payment.event_id == event.id,
            Payment.requires_manual_review.is_(True),
            or_(
                Payment.status == PaymentStatus.PAID,
                and_(
                    Payment.status.in_([PaymentStatus.FAILED, PaymentStatus.EXPIRED, PaymentStatus.CANCELLED]),
                    Payment.review_reason == "LATE_SUCCESS",
                ),
            ),
            ~Payment.id.in_(select(Registration.payment_id).where(Registration.payment_id.is_not(None))),
        )
    ).all()
    for payment in orphaned:
        refund = _refund_payment(
            db,
            event=event,
            cancellation=cancellation,
            payment=payment,
            registration=None,
            percent=100,
            settings=settings,
        )
        if refund is not None:
            refunds.append(refund)
        notifications.append(_notify_participant(db, notifier, event, payment.user_id, refund, reason))

    pending = db.scalars(
        select(Payment).where(Payment.event_id == event.id, Payment.status == PaymentStatus.PENDING)
    ).all()
    for payment in pending:
        try:
            transition_payment(
                db,
                payment,
                from_statuses=[PaymentStatus.PENDING],
                to_status=PaymentStatus.CANCELLED,
                source="event_cancellation",
                failure_reason="Event cancelled",
            )
        except StateConflict:
            continue

    log_audit(
        db,
        actor=actor_for_user(actor),
        action="EVENT_CANCELLED",
        entity="Event",
        entity_id=event.id,
        data={
            "reason": cancellation.reason,
            "refund_percentage": percent,
            "registrations": len(registrations),
            "refunds": len(refunds),
        },
    )
    db.commit()
    notifier.deliver(db, notifications)
    logger.info(
        "Event cancelled",
        extra={"event_id": event.id, "refund_percentage": percent, "refunds": len(refunds)},
    )
    return cancellation


def _notify_participant(
    db: Session,
    notifier: NotificationDispatcher,
    event: Event,
    user_id: int,
    refund: RefundRequest | None,
    reason: str,
) -> Notification:
    user = db.get(User, user_id)
    if refund is not None:
        message = (
            f"{event.title} has been cancelled ({reason}). A refund of {refund.amount} "
            f"({refund.percentage}%) is being processed under reference {refund.reference}."
        )
    else:
        message = f"{event.title} has been cancelled ({reason})."
    return notifier.enqueue(
        db,
        user_id=user_id,
        kind="EVENT_CANCELLED",
        title="Event cancelled",
        message=message,
        data={"event_id": event.id, "refund_reference": refund.reference if refund else None},
        recipient_email=user.email if user else None,
    )


def list_cancellations(db: Session, *, actor: User, event_id: int) -> list[EventCancellation]:
    event = db.get(Event, event_id)
    if event is None:
        raise NotFoundError("Event not found", code="EVENT_NOT_FOUND")
    if actor.role != UserRole.ADMIN and event.organizer_id != actor.id:
        raise PermissionDenied("Only the organizer or an admin can see cancellations")
    stmt = select(EventCancellation).where(EventCancellation.event_id == event_id).order_by(EventCancellation.id)
    return list(db.scalars(stmt))


def get_refund(db: Session, *, user: User, reference: str) -> RefundRequest:
    refund = db.scalar(select(RefundRequest).where(RefundRequest.reference == reference))
    if refund is None:
        raise NotFoundError("Refund not found", code="REFUND_NOT_FOUND")
    if user.role != UserRole.ADMIN and refund.user_id != user.id:
        raise PermissionDenied("Not allowed to view this refund")
    return refund


def update_refund_status(
    db: Session,
    *,
    actor: User,
    reference: str,
    status: RefundStatus,
    notifier: NotificationDispatcher,
    failure_reason: str | None = None,
    gateway_response: dict[str, Any] | None = None,
) -> RefundRequest:
    """Move a refund along PENDING -> PROCESSING -> COMPLETED | FAILED.

    Setting the current status again is a no-op; FAILED may go back to
    PROCESSING for another attempt.
    """

    refund = get_refund(db, user=actor, reference=reference)
    current = refund.status
    if status == current:
        return refund
    if status not in REFUND_TRANSITIONS[current]:
        raise InvalidTransition(
            f"Refund cannot move from {current.value} to {status.value}", code="INVALID_REFUND_TRANSITION"
        )

    values: dict[str, Any] = {"status": status, "updated_at": utcnow()}
    if status == RefundStatus.FAILED:
        values["failure_reason"] = failure_reason or "Refund failed"
    if gateway_response is not None:
        values["gateway_response"] = gateway_response
    db.flush()
    result = db.execute(
        update(RefundRequest)
        .where(RefundRequest.id == refund.id, RefundRequest.status == current)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.refresh(refund)
    if result.rowcount != 1:
        raise InvalidTransition("Refund was updated concurrently", code="INVALID_REFUND_TRANSITION")

    notifications: list[Notification] = []
    if status == RefundStatus.COMPLETED:
        user = db.get(User, refund.user_id)
        notifications.append(
            notifier.enqueue(
                db,
                user_id=refund.user_id,
                kind="REFUND_COMPLETED",
                title="Refund completed",
                message=f"Your refund {refund.reference} of {refund.amount} has been completed.",
                data={"refund_reference": refund.reference},
                recipient_email=user.email if user else None,
            )
        )
    log_audit(
        db,
        actor=actor_for_user(actor),
        action="REFUND_STATUS_UPDATED",
        entity="RefundRequest",
        entity_id=refund.id,
        data={"from": current.value, "to": status.value},
    )
    db.commit()
    notifier.deliver(db, notifications)
    return refund


__all__ = [
    "REFUND_TRANSITIONS",
    "cancel_event",
    "generate_refund_reference",
    "get_refund",
    "list_cancellations",
    "refund_percentage",
    "update_refund_status",
]
