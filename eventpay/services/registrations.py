"""Registration creation with capacity enforcement."""
from __future__ import annotations

import logging
import secrets
from decimal import Decimal

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from eventpay.models import Event, EventStatus, Registration, RegistrationStatus, TicketType, User
from eventpay.services.notifications import NotificationDispatcher
from eventpay.utils.audit import actor_for_user, log_audit
from eventpay.utils.errors import InsufficientCapacity, InvalidTransition, NotFoundError, ValidationError
from eventpay.utils.time import as_utc, utcnow

logger = logging.getLogger(__name__)


def generate_ticket_code() -> str:
    return f"TKT-{secrets.token_hex(5).upper()}"


def has_active_registration(db: Session, user_id: int, event_id: int) -> bool:
    stmt = select(Registration.id).where(
        Registration.user_id == user_id,
        Registration.event_id == event_id,
        Registration.status == RegistrationStatus.ACTIVE,
    )
    return db.scalar(stmt) is not None


def create_registration(
    db: Session,
    *,
    user_id: int,
    event: Event,
    quantity: int,
    amount_paid: Decimal,
    ticket_type_id: int | None = None,
    payment_id: int | None = None,
) -> Registration:
    """Claim capacity and insert the registration.

    Capacity is taken with conditional updates so two concurrent settlements
    can never oversell. Callers run this inside a savepoint: a failure after
    the ticket-type update must roll that update back too.
    """

    db.flush()
    if event.status != EventStatus.PUBLISHED:
        raise InvalidTransition("Event is cancelled", code="EVENT_CANCELLED")
    if not event.allows_multiple_tickets and has_active_registration(db, user_id, event.id):
        raise ValidationError("User is already registered for this event", code="ALREADY_REGISTERED")

    if ticket_type_id is not None:
        result = db.execute(
            update(TicketType)
            .where(
                TicketType.id == ticket_type_id,
                TicketType.event_id == event.id,
                TicketType.is_active.is_(True),
                TicketType.sold_count + quantity <= TicketType.capacity,
            )
            .values(sold_count=TicketType.sold_count + quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InsufficientCapacity("Ticket type is sold out", code="TICKET_TYPE_SOLD_OUT")

    result = db.execute(
        update(Event)
        .where(
            Event.id == event.id,
            Event.status == EventStatus.PUBLISHED,
            or_(Event.capacity.is_(None), Event.registered_count + quantity <= Event.capacity),
        )
        .values(registered_count=Event.registered_count + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.refresh(event)
        if event.status != EventStatus.PUBLISHED:
            raise InvalidTransition("Event is cancelled", code="EVENT_CANCELLED")
        raise InsufficientCapacity("Event is full", code="EVENT_FULL")

    registration = Registration(
        user_id=user_id,
        event_id=event.id,
        ticket_type_id=ticket_type_id,
        payment_id=payment_id,
        quantity=quantity,
        amount_paid=amount_paid,
        ticket_code=generate_ticket_code(),
        status=RegistrationStatus.ACTIVE,
    )
    db.add(registration)
    db.flush()
    db.refresh(event)
    logger.info(
        "Registration created",
        extra={"registration_id": registration.id, "event_id": event.id, "payment_id": payment_id},
    )
    return registration


def register_free_event(
    db: Session,
    *,
    user: User,
    event_id: int,
    notifier: NotificationDispatcher,
) -> Registration:
    """Direct registration for free events; no payment involved."""

    event = db.get(Event, event_id)
    if event is None:
        raise NotFoundError("Event not found", code="EVENT_NOT_FOUND")
    if not event.is_free:
        raise ValidationError("Paid events require a payment", code="EVENT_NOT_FREE")
    if as_utc(event.starts_at) <= utcnow():
        raise ValidationError("Event has already started", code="EVENT_STARTED")

    with db.begin_nested():
        registration = create_registration(
            db, user_id=user.id, event=event, quantity=1, amount_paid=Decimal("0")
        )
    notification = notifier.enqueue(
        db,
        user_id=user.id,
        kind="REGISTRATION_CONFIRMED",
        title="Registration confirmed",
        message=f"You are registered for {event.title}. Ticket code: {registration.ticket_code}",
        data={"event_id": event.id, "registration_id": registration.id},
        recipient_email=user.email,
    )
    log_audit(
        db,
        actor=actor_for_user(user),
        action="FREE_REGISTRATION_CREATED",
        entity="Registration",
        entity_id=registration.id,
        data={"event_id": event.id, "email": user.email},
    )
    db.commit()
    notifier.deliver(db, [notification])
    return registration


__all__ = ["create_registration", "generate_ticket_code", "has_active_registration", "register_free_event"]
