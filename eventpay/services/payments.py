"""Checkout, payment status and payment history."""
from __future__ import annotations

import logging
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from eventpay.config import Settings
from eventpay.models import (
    Event,
    EventStatus,
    Payment,
    PaymentStatus,
    PaymentStatusHistory,
    TicketType,
    User,
    UserRole,
)
from eventpay.services.gateway import OrderItem, PaymentGateway, PaymentOrderRequest
from eventpay.services.notifications import NotificationDispatcher
from eventpay.services.registrations import has_active_registration
from eventpay.services.settlement import (
    SettlementOutcome,
    SettlementResult,
    apply_payment_event,
    transition_payment,
)
from eventpay.utils.audit import actor_for_user, log_audit
from eventpay.utils.errors import (
    GatewayError,
    GatewayTimeout,
    InsufficientCapacity,
    InvalidTransition,
    NotFoundError,
    PermissionDenied,
    StateConflict,
    ValidationError,
)
from eventpay.utils.time import as_utc, utcnow

logger = logging.getLogger(__name__)


def _new_order_id(event_id: int) -> str:
    return f"EVT-{event_id}-{uuid4().hex[:12].upper()}"


def _load_checkout_event(db: Session, event_id: int) -> Event:
    event = db.get(Event, event_id)
    if event is None:
        raise NotFoundError("Event not found", code="EVENT_NOT_FOUND")
    if event.status != EventStatus.PUBLISHED:
        raise InvalidTransition("Event is not open for registration", code="EVENT_NOT_AVAILABLE")
    if as_utc(event.starts_at) <= utcnow():
        raise ValidationError("Event has already started", code="EVENT_STARTED")
    if event.is_free:
        raise ValidationError("Free events do not need a payment", code="EVENT_IS_FREE")
    return event


def _resolve_unit_price(
    db: Session, event: Event, ticket_type_id: int | None, quantity: int
) -> tuple[Decimal, TicketType | None]:
    if ticket_type_id is None:
        if event.price is None or event.price <= 0:
            raise ValidationError("Event has no price; choose a ticket type", code="TICKET_TYPE_REQUIRED")
        return event.price, None

    ticket_type = db.get(TicketType, ticket_type_id)
    if ticket_type is None or ticket_type.event_id != event.id or not ticket_type.is_active:
        raise NotFoundError("Ticket type not found for this event", code="TICKET_TYPE_NOT_FOUND")
    if ticket_type.max_per_order is not None and quantity > ticket_type.max_per_order:
        raise ValidationError(
            f"At most {ticket_type.max_per_order} tickets of this type per order",
            code="QUANTITY_ABOVE_LIMIT",
        )
    # Pre-check only; the binding capacity check happens at settlement.
    if ticket_type.sold_count + quantity > ticket_type.capacity:
        raise InsufficientCapacity("Ticket type is sold out", code="TICKET_TYPE_SOLD_OUT")
    return ticket_type.price, ticket_type


def _find_open_order(db: Session, user_id: int, event_id: int) -> Payment | None:
    return db.scalar(
        select(Payment)
        .where(
            Payment.user_id == user_id,
            Payment.event_id == event_id,
            Payment.status == PaymentStatus.PENDING,
        )
        .order_by(Payment.id.desc())
    )


def create_order(
    db: Session,
    *,
    user: User,
    event_id: int,
    quantity: int,
    ticket_type_id: int | None,
    gateway: PaymentGateway,
    settings: Settings,
) -> Payment:
    """Create a PENDING payment and the matching gateway order.

    The amount is always computed here from the ticket price. The payment
    row is committed before the gateway is called so no transaction stays
    open across the HTTP request.
    """

    if quantity < 1 or quantity > settings.MAX_TICKETS_PER_ORDER:
        raise ValidationError(
            f"Quantity must be between 1 and {settings.MAX_TICKETS_PER_ORDER}", code="INVALID_QUANTITY"
        )
    event = _load_checkout_event(db, event_id)
    if not event.allows_multiple_tickets:
        if quantity > 1:
            raise ValidationError("This event allows a single ticket per participant", code="INVALID_QUANTITY")
        if has_active_registration(db, user.id, event.id):
            raise ValidationError("You are already registered for this event", code="ALREADY_REGISTERED")
        open_order = _find_open_order(db, user.id, event.id)
        if open_order is not None and open_order.redirect_url and open_order.ticket_type_id == ticket_type_id:
            logger.info("Reusing open checkout", extra={"payment_id": open_order.id})
            return open_order
        if open_order is not None:
            raise ValidationError(
                "A payment for this event is already pending",
                code="PAYMENT_PENDING",
                details={"payment_id": open_order.id},
            )

    unit_price, ticket_type = _resolve_unit_price(db, event, ticket_type_id, quantity)
    if event.capacity is not None and event.registered_count + quantity > event.capacity:
        raise InsufficientCapacity("Event is full", code="EVENT_FULL")

    amount = unit_price * quantity
    payment = Payment(
        user_id=user.id,
        event_id=event.id,
        ticket_type_id=ticket_type.id if ticket_type else None,
        quantity=quantity,
        amount=amount,
        currency=event.currency or settings.CURRENCY,
        status=PaymentStatus.PENDING,
        gateway=gateway.name,
        gateway_order_id=_new_order_id(event.id),
        meta={"unit_price": str(unit_price)},
    )
    db.add(payment)
    db.flush()
    db.add(
        PaymentStatusHistory(
            payment_id=payment.id, from_status=None, to_status=PaymentStatus.PENDING, source="checkout"
        )
    )
    log_audit(
        db,
        actor=actor_for_user(user),
        action="PAYMENT_CREATED",
        entity="Payment",
        entity_id=payment.id,
        data={"event_id": event.id, "amount": str(amount), "quantity": quantity},
    )
    db.commit()

    request = PaymentOrderRequest(
        order_id=payment.gateway_order_id,
        amount=amount,
        currency=payment.currency,
        customer_name=user.full_name or user.username,
        customer_email=user.email,
        items=[
            OrderItem(
                id=str(ticket_type.id if ticket_type else event.id),
                name=ticket_type.name if ticket_type else event.title,
                price=unit_price,
                quantity=quantity,
            )
        ],
        finish_url=f"{settings.FRONTEND_URL}/payment/finish?order_id={payment.gateway_order_id}",
    )
    try:
        order = gateway.create_payment_order(request)
    except GatewayTimeout:
        # Outcome unknown: keep PENDING so the sync endpoint or the expiry sweep can resolve it.
        logger.warning("Gateway timed out creating order", extra={"payment_id": payment.id})
        raise
    except (GatewayError, ValidationError) as exc:
        try:
            transition_payment(
                db,
                payment,
                from_statuses=[PaymentStatus.PENDING],
                to_status=PaymentStatus.FAILED,
                source="checkout",
                failure_reason=exc.message,
            )
        except StateConflict:
            logger.info("Payment left checkout before failure was recorded", extra={"payment_id": payment.id})
        db.commit()
        raise

    payment.snap_token = order.token
    payment.redirect_url = order.redirect_url
    db.commit()
    logger.info("Checkout created", extra={"payment_id": payment.id, "order_id": payment.gateway_order_id})
    return payment


def _ensure_can_view(payment: Payment, user: User) -> None:
    if user.role == UserRole.ADMIN or payment.user_id == user.id:
        return
    raise PermissionDenied("Not allowed to view this payment")


def get_payment(db: Session, *, user: User, payment_id: int) -> Payment:
    payment = db.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found", code="PAYMENT_NOT_FOUND")
    _ensure_can_view(payment, user)
    return payment


def get_payment_by_order(db: Session, *, user: User, order_id: str) -> Payment:
    payment = db.scalar(select(Payment).where(Payment.gateway_order_id == order_id))
    if payment is None:
        raise NotFoundError("Payment not found", code="PAYMENT_NOT_FOUND")
    _ensure_can_view(payment, user)
    return payment


def list_history(db: Session, *, user: User, limit: int = 20, offset: int = 0) -> list[Payment]:
    stmt = (
        select(Payment)
        .where(Payment.user_id == user.id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(db.scalars(stmt))


def cancel_payment(db: Session, *, user: User, payment_id: int) -> Payment:
    payment = get_payment(db, user=user, payment_id=payment_id)
    if payment.user_id != user.id:
        raise PermissionDenied("Only the payer can cancel a payment")
    try:
        transition_payment(
            db,
            payment,
            from_statuses=[PaymentStatus.PENDING],
            to_status=PaymentStatus.CANCELLED,
            source="user",
            failure_reason="Cancelled by user",
        )
    except StateConflict as exc:
        if payment.status == PaymentStatus.CANCELLED:
            return payment
        raise InvalidTransition(
            f"Payment is {payment.status.value} and can no longer be cancelled", code="PAYMENT_NOT_PENDING"
        ) from exc
    log_audit(
        db,
        actor=actor_for_user(user),
        action="PAYMENT_CANCELLED",
        entity="Payment",
        entity_id=payment.id,
        data={"order_id": payment.gateway_order_id},
    )
    db.commit()
    return payment


def sync_payment(
    db: Session,
    *,
    user: User,
    order_id: str,
    gateway: PaymentGateway,
    settings: Settings,
    notifier: NotificationDispatcher,
) -> SettlementResult:
    """Poll the gateway for a PENDING payment and apply whatever it reports."""

    payment = get_payment_by_order(db, user=user, order_id=order_id)
    if payment.status != PaymentStatus.PENDING:
        return SettlementResult(SettlementOutcome.ALREADY_APPLIED, payment=payment)
    db.commit()

    event = gateway.get_transaction_status(order_id)
    result = apply_payment_event(db, event, settings=settings, notifier=notifier, source="sync")
    db.commit()
    notifier.deliver(db, result.notifications)
    return result


__all__ = [
    "cancel_payment",
    "create_order",
    "get_payment",
    "get_payment_by_order",
    "list_history",
    "sync_payment",
]
