"""Payment settlement state machine.

PENDING -> {PAID, FAILED, EXPIRED, CANCELLED}; PAID -> REFUNDED only through
event cancellation. Every transition is a conditional
``UPDATE payments ... WHERE status IN (...)`` checked by rowcount, so
duplicate or concurrent webhook deliveries converge on one outcome.
"""
from __future__ import annotations

import enum
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from eventpay.config import Settings
from eventpay.models import (
    BalanceTransactionKind,
    Event,
    Notification,
    Payment,
    PaymentStatus,
    PaymentStatusHistory,
    Registration,
    User,
    UserRole,
)
from eventpay.services import ledger
from eventpay.services.gateway import NormalizedPaymentEvent, NormalizedPaymentStatus
from eventpay.services.notifications import NotificationDispatcher
from eventpay.services.registrations import create_registration
from eventpay.utils.audit import log_audit
from eventpay.utils.errors import (
    InsufficientCapacity,
    InvalidTransition,
    NotFoundError,
    PermissionDenied,
    ServiceError,
    StateConflict,
    ValidationError,
)
from eventpay.utils.time import utcnow

logger = logging.getLogger(__name__)


class SettlementOutcome(str, enum.Enum):
    PAID = "PAID"
    MANUAL_REVIEW = "MANUAL_REVIEW"
    LATE_SUCCESS = "LATE_SUCCESS"
    ALREADY_APPLIED = "ALREADY_APPLIED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    PENDING = "PENDING"
    IGNORED_UNKNOWN_STATUS = "IGNORED_UNKNOWN_STATUS"
    UNKNOWN_ORDER = "UNKNOWN_ORDER"


_TERMINAL_BY_EVENT = {
    NormalizedPaymentStatus.FAILED: (PaymentStatus.FAILED, SettlementOutcome.FAILED),
    NormalizedPaymentStatus.EXPIRED: (PaymentStatus.EXPIRED, SettlementOutcome.EXPIRED),
    NormalizedPaymentStatus.CANCELLED: (PaymentStatus.CANCELLED, SettlementOutcome.CANCELLED),
}

# Registration failures that leave a PAID payment waiting for an operator.
_REGISTRATION_ERRORS = (InsufficientCapacity, InvalidTransition, ValidationError)


@dataclass
class SettlementResult:
    outcome: SettlementOutcome
    payment: Payment | None = None
    registration: Registration | None = None
    error: ServiceError | None = None
    notifications: list[Notification] = field(default_factory=list)


def transition_payment(
    db: Session,
    payment: Payment,
    *,
    from_statuses: Iterable[PaymentStatus],
    to_status: PaymentStatus,
    source: str,
    note: str | None = None,
    **values,
) -> None:
    """Apply one guarded status change and append it to the history.

    Raises ``StateConflict`` when the row is no longer in ``from_statuses``.
    """

    allowed = list(from_statuses)
    previous = payment.status
    db.flush()
    result = db.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status.in_(allowed))
        .values(status=to_status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.refresh(payment)
        raise StateConflict(
            f"Payment {payment.id} is {payment.status.value}, expected one of {[s.value for s in allowed]}",
            details={"payment_id": payment.id, "status": payment.status.value},
        )
    db.add(
        PaymentStatusHistory(
            payment_id=payment.id,
            from_status=previous if previous in allowed else allowed[0],
            to_status=to_status,
            source=source,
            note=note,
        )
    )
    db.flush()
    db.refresh(payment)
    logger.info(
        "Payment status changed",
        extra={"payment_id": payment.id, "to_status": to_status.value, "source": source},
    )


def flag_for_review(db: Session, payment: Payment, reason: str, *, source: str) -> None:
    payment.requires_manual_review = True
    payment.review_reason = reason
    db.add(
        PaymentStatusHistory(
            payment_id=payment.id,
            from_status=payment.status,
            to_status=payment.status,
            source=source,
            note=f"flagged for manual review: {reason}",
        )
    )
    db.flush()
    logger.warning("Payment flagged for manual review", extra={"payment_id": payment.id, "reason": reason})


def _fee_percent(event: Event, settings: Settings):
    if event.platform_fee_percent is not None:
        return event.platform_fee_percent
    return settings.PLATFORM_FEE_PERCENT


def _complete_registration(
    db: Session,
    payment: Payment,
    *,
    settings: Settings,
    notifier: NotificationDispatcher,
    source: str,
) -> SettlementResult:
    """Create the registration and credit the organizer for a PAID payment."""

    event = db.get(Event, payment.event_id)
    user = db.get(User, payment.user_id)
    try:
        with db.begin_nested():
            registration = create_registration(
                db,
                user_id=payment.user_id,
                event=event,
                quantity=payment.quantity,
                amount_paid=payment.amount,
                ticket_type_id=payment.ticket_type_id,
                payment_id=payment.id,
            )
    except _REGISTRATION_ERRORS as exc:
        flag_for_review(db, payment, exc.code, source=source)
        notification = notifier.enqueue(
            db,
            user_id=payment.user_id,
            kind="PAYMENT_NEEDS_REVIEW",
            title="Payment received, registration pending",
            message=f"We received your payment for {event.title} but could not complete the registration "
            "automatically. Our team will follow up.",
            data={"payment_id": payment.id, "reason": exc.code},
            recipient_email=user.email if user else None,
        )
        log_audit(
            db,
            actor=source,
            action="PAYMENT_REGISTRATION_FAILED",
            entity="Payment",
            entity_id=payment.id,
            data={"reason": exc.code, "event_id": event.id},
        )
        return SettlementResult(
            SettlementOutcome.MANUAL_REVIEW, payment=payment, error=exc, notifications=[notification]
        )

    net = ledger.net_revenue(payment.amount, _fee_percent(event, settings), settings.CURRENCY_EXPONENT)
    ledger.record_entry(
        db,
        organizer_id=event.organizer_id,
        kind=BalanceTransactionKind.TICKET_SALE,
        amount=net,
        reference_type="payment",
        reference_id=payment.id,
        idempotency_key=ledger.sale_key(payment.id),
        description=f"Ticket sale for {event.title}",
        meta={"gross_amount": str(payment.amount), "fee_percent": str(_fee_percent(event, settings))},
    )
    payment.requires_manual_review = False
    payment.review_reason = None
    db.flush()

    notifications = [
        notifier.enqueue(
            db,
            user_id=payment.user_id,
            kind="PAYMENT_SUCCESS",
            title="Payment successful",
            message=f"Your registration for {event.title} is confirmed. Ticket code: {registration.ticket_code}",
            data={"payment_id": payment.id, "registration_id": registration.id},
            recipient_email=user.email if user else None,
        ),
        notifier.enqueue(
            db,
            user_id=event.organizer_id,
            kind="NEW_REGISTRATION",
            title="New registration",
            message=f"A participant registered for {event.title}.",
            data={"event_id": event.id, "registration_id": registration.id},
        ),
    ]
    log_audit(
        db,
        actor=source,
        action="PAYMENT_SETTLED",
        entity="Payment",
        entity_id=payment.id,
        data={"registration_id": registration.id, "net_credit": str(net)},
    )
    return SettlementResult(
        SettlementOutcome.PAID, payment=payment, registration=registration, notifications=notifications
    )


def _settle_success(
    db: Session,
    payment: Payment,
    event: NormalizedPaymentEvent,
    *,
    settings: Settings,
    notifier: NotificationDispatcher,
    source: str,
) -> SettlementResult:
    try:
        transition_payment(
            db,
            payment,
            from_statuses=[PaymentStatus.PENDING],
            to_status=PaymentStatus.PAID,
            source=source,
            paid_at=utcnow(),
            gateway_reference=event.gateway_reference or payment.gateway_reference,
            payment_type=event.payment_type or payment.payment_type,
        )
    except StateConflict:
        if payment.status in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
            logger.info("Duplicate success notification ignored", extra={"payment_id": payment.id})
            return SettlementResult(SettlementOutcome.ALREADY_APPLIED, payment=payment)
        if payment.review_reason != "LATE_SUCCESS":
            flag_for_review(db, payment, "LATE_SUCCESS", source=source)
            log_audit(
                db,
                actor=source,
                action="PAYMENT_LATE_SUCCESS",
                entity="Payment",
                entity_id=payment.id,
                data={"status": payment.status.value, "gateway_reference": event.gateway_reference},
            )
        return SettlementResult(SettlementOutcome.LATE_SUCCESS, payment=payment)

    if event.gross_amount is not None and event.gross_amount != payment.amount:
        # Captured, but not the amount we priced: no registration or credit until reviewed.
        flag_for_review(db, payment, "AMOUNT_MISMATCH", source=source)
        log_audit(
            db,
            actor=source,
            action="PAYMENT_AMOUNT_MISMATCH",
            entity="Payment",
            entity_id=payment.id,
            data={"expected": str(payment.amount), "received": str(event.gross_amount)},
        )
        return SettlementResult(SettlementOutcome.MANUAL_REVIEW, payment=payment)

    return _complete_registration(db, payment, settings=settings, notifier=notifier, source=source)


def _settle_failure(
    db: Session,
    payment: Payment,
    event: NormalizedPaymentEvent,
    *,
    notifier: NotificationDispatcher,
    source: str,
) -> SettlementResult:
    target, outcome = _TERMINAL_BY_EVENT[event.status]
    try:
        transition_payment(
            db,
            payment,
            from_statuses=[PaymentStatus.PENDING],
            to_status=target,
            source=source,
            failure_reason=event.failure_reason,
            gateway_reference=event.gateway_reference or payment.gateway_reference,
        )
    except StateConflict:
        logger.info(
            "Terminal notification for settled payment ignored",
            extra={"payment_id": payment.id, "status": payment.status.value, "incoming": target.value},
        )
        return SettlementResult(SettlementOutcome.ALREADY_APPLIED, payment=payment)

    user = db.get(User, payment.user_id)
    notification = notifier.enqueue(
        db,
        user_id=payment.user_id,
        kind=f"PAYMENT_{target.value}",
        title="Payment not completed",
        message=f"Your payment {payment.gateway_order_id} is {target.value.lower()}.",
        data={"payment_id": payment.id, "reason": event.failure_reason},
        recipient_email=user.email if user else None,
    )
    return SettlementResult(outcome, payment=payment, notifications=[notification])


def apply_payment_event(
    db: Session,
    event: NormalizedPaymentEvent,
    *,
    settings: Settings,
    notifier: NotificationDispatcher,
    source: str = "webhook",
) -> SettlementResult:
    """Apply a normalized gateway event to the matching payment (no commit)."""

    payment = db.scalar(select(Payment).where(Payment.gateway_order_id == event.gateway_order_id))
    if payment is None:
        logger.warning("Gateway event for unknown order", extra={"order_id": event.gateway_order_id})
        return SettlementResult(SettlementOutcome.UNKNOWN_ORDER)

    if event.status is NormalizedPaymentStatus.UNKNOWN:
        logger.warning(
            "Unrecognised gateway status ignored",
            extra={"payment_id": payment.id, "raw_status": event.raw_status},
        )
        return SettlementResult(SettlementOutcome.IGNORED_UNKNOWN_STATUS, payment=payment)

    if event.status is NormalizedPaymentStatus.PENDING:
        if payment.status == PaymentStatus.PENDING:
            payment.gateway_reference = event.gateway_reference or payment.gateway_reference
            payment.payment_type = event.payment_type or payment.payment_type
            db.flush()
        return SettlementResult(SettlementOutcome.PENDING, payment=payment)

    if event.status is NormalizedPaymentStatus.PAID:
        return _settle_success(db, payment, event, settings=settings, notifier=notifier, source=source)
    return _settle_failure(db, payment, event, notifier=notifier, source=source)


def trigger_registration_from_payment(
    db: Session,
    *,
    payment_id: int,
    actor: User,
    settings: Settings,
    notifier: NotificationDispatcher,
) -> SettlementResult:
    """Operator/owner retry of the registration step for a PAID payment without one."""

    payment = db.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found", code="PAYMENT_NOT_FOUND")
    if actor.role != UserRole.ADMIN and payment.user_id != actor.id:
        raise PermissionDenied("Not allowed to act on this payment")
    if payment.status != PaymentStatus.PAID:
        raise InvalidTransition(
            f"Payment is {payment.status.value}; only PAID payments can be registered",
            code="PAYMENT_NOT_PAID",
        )
    if payment.review_reason == "AMOUNT_MISMATCH" and actor.role != UserRole.ADMIN:
        raise PermissionDenied("An admin must review the paid amount first")
    existing = db.scalar(select(Registration.id).where(Registration.payment_id == payment.id))
    if existing is not None:
        raise InvalidTransition("Payment already has a registration", code="ALREADY_REGISTERED")

    db.flush()
    guard = db.execute(
        update(Payment)
        .where(
            Payment.id == payment.id,
            Payment.status == PaymentStatus.PAID,
            Payment.registration_attempts == payment.registration_attempts,
        )
        .values(registration_attempts=Payment.registration_attempts + 1)
        .execution_options(synchronize_session=False)
    )
    if guard.rowcount != 1:
        raise InvalidTransition("Registration is already being retried", code="TRIGGER_IN_PROGRESS")
    db.refresh(payment)

    result = _complete_registration(
        db, payment, settings=settings, notifier=notifier, source=f"user:{actor.id}"
    )
    log_audit(
        db,
        actor=f"user:{actor.id}",
        action="PAYMENT_REGISTRATION_TRIGGERED",
        entity="Payment",
        entity_id=payment.id,
        data={"outcome": result.outcome.value, "attempt": payment.registration_attempts},
    )
    return result


def expire_stale_payments(db: Session, *, older_than: datetime) -> int:
    """Expire PENDING payments created before ``older_than``; returns how many moved."""

    stale = db.scalars(
        select(Payment).where(Payment.status == PaymentStatus.PENDING, Payment.created_at < older_than)
    ).all()
    expired = 0
    for payment in stale:
        try:
            transition_payment(
                db,
                payment,
                from_statuses=[PaymentStatus.PENDING],
                to_status=PaymentStatus.EXPIRED,
                source="scheduler",
                failure_reason="Payment window elapsed",
            )
        except StateConflict:
            continue
        expired += 1
    if expired:
        logger.info("Expired stale payments", extra={"count": expired})
    return expired


__all__ = [
    "SettlementOutcome",
    "SettlementResult",
    "apply_payment_event",
    "expire_stale_payments",
    "flag_for_review",
    "transition_payment",
    "trigger_registration_from_payment",
]
