"""Event cancellation, the refund policy and refund status updates."""
from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from eventpay.models import (
    EventStatus,
    Payment,
    PaymentStatus,
    RefundRequest,
    RefundStatus,
    Registration,
    RegistrationStatus,
    UserRole,
)
from eventpay.services import ledger
from eventpay.services import payments as payments_service
from eventpay.services.cancellation import cancel_event, refund_percentage, update_refund_status
from eventpay.services.settlement import apply_payment_event
from eventpay.utils.errors import InvalidTransition, PermissionDenied, ValidationError
from eventpay.utils.time import as_utc

from .conftest import midtrans_notification

TIERS = [(168, 100), (72, 50), (0, 0)]


def _paid_checkout(db_session, factory, organizer, event, payment_gateway, settings, notifier) -> Payment:
    participant = factory.user()
    payment = payments_service.create_order(
        db_session,
        user=participant,
        event_id=event.id,
        quantity=1,
        ticket_type_id=None,
        gateway=payment_gateway,
        settings=settings,
    )
    payload = midtrans_notification(payment.gateway_order_id, f"{payment.amount:.2f}")
    apply_payment_event(db_session, payment_gateway.parse_webhook_event(payload), settings=settings, notifier=notifier)
    db_session.commit()
    return payment


def _cancel(db_session, organizer, event, settings, notifier, hours_before: float):
    now = as_utc(event.starts_at) - timedelta(hours=hours_before)
    return cancel_event(
        db_session,
        actor=organizer,
        event_id=event.id,
        reason="Venue unavailable",
        settings=settings,
        notifier=notifier,
        now=now,
    )


@pytest.mark.parametrize(
    ("notice", "expected"),
    [
        (timedelta(hours=200), 100),
        (timedelta(hours=168), 100),
        (timedelta(hours=167, minutes=59), 50),
        (timedelta(hours=72), 50),
        (timedelta(hours=71, minutes=59), 0),
        (timedelta(minutes=5), 0),
    ],
)
def test_refund_percentage_tiers(notice, expected):
    assert refund_percentage(notice, TIERS) == expected


def test_full_refund_with_a_week_of_notice(db_session, factory, payment_gateway, settings, notifier):
    organizer = factory.user(UserRole.ORGANIZER)
    event = factory.event(organizer, price="100000")
    payment = _paid_checkout(db_session, factory, organizer, event, payment_gateway, settings, notifier)
    assert ledger.get_balance(db_session, organizer.id) == Decimal("85000")

    cancellation = _cancel(db_session, organizer, event, settings, notifier, hours_before=200)

    assert cancellation.refund_percentage == 100
    db_session.refresh(event)
    db_session.refresh(payment)
    assert event.status == EventStatus.CANCELLED
    assert payment.status == PaymentStatus.REFUNDED
    refund = db_session.scalar(select(RefundRequest).where(RefundRequest.payment_id == payment.id))
    assert refund.amount == Decimal("100000")
    assert refund.status == RefundStatus.PENDING
    assert refund.reference.startswith("REF-")
    registration = db_session.scalar(select(Registration).where(Registration.payment_id == payment.id))
    assert registration.status == RegistrationStatus.CANCELLED
    assert ledger.get_balance(db_session, organizer.id) == Decimal("0")


def test_half_refund_claws_back_half_the_net_credit(db_session, factory, payment_gateway, settings, notifier):
    organizer = factory.user(UserRole.ORGANIZER)
    event = factory.event(organizer, price="100000")
    payment = _paid_checkout(db_session, factory, organizer, event, payment_gateway, settings, notifier)

    cancellation = _cancel(db_session, organizer, event, settings, notifier, hours_before=100)

    assert cancellation.refund_percentage == 50
    refund = db_session.scalar(select(RefundRequest).where(RefundRequest.payment_id == payment.id))
    assert refund.amount == Decimal("50000")
    assert refund.percentage == 50
    assert ledger.get_balance(db_session, organizer.id) == Decimal("42500")


def test_late_cancellation_refunds_nothing(db_session, factory, payment_gateway, settings, notifier):
    organizer = factory.user(UserRole.ORGANIZER)
    event = factory.event(organizer, price="100000")
    payment = _paid_checkout(db_session, factory, organizer, event, payment_gateway, settings, notifier)

    cancellation = _cancel(db_session, organizer, event, settings, notifier, hours_before=24)

    assert cancellation.refund_percentage == 0
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.PAID
    assert db_session.scalar(select(RefundRequest).where(RefundRequest.payment_id == payment.id)) is None
    assert ledger.get_balance(db_session, organizer.id) == Decimal("85000")


def test_cancellation_guards(db_session, factory, settings, notifier):
    organizer = factory.user(UserRole.ORGANIZER)
    other_organizer = factory.user(UserRole.ORGANIZER)
    event = factory.event(organizer)

    with pytest.raises(PermissionDenied):
        _cancel(db_session, other_organizer, event, settings, notifier, hours_before=200)
    with pytest.raises(ValidationError) as exc_info:
        cancel_event(
            db_session, actor=organizer, event_id=event.id, reason="  ", settings=settings, notifier=notifier
        )
    assert exc_info.value.code == "REASON_REQUIRED"

    _cancel(db_session, organizer, event, settings, notifier, hours_before=200)
    with pytest.raises(InvalidTransition) as exc_info:
        _cancel(db_session, organizer, event, settings, notifier, hours_before=199)
    assert exc_info.value.code == "EVENT_ALREADY_CANCELLED"


def test_admin_can_cancel_and_pending_payments_are_closed(db_session, factory, payment_gateway, settings, notifier):
    organizer = factory.user(UserRole.ORGANIZER)
    admin = factory.user(UserRole.ADMIN)
    participant = factory.user()
    event = factory.event(organizer)
    pending = payments_service.create_order(
        db_session,
        user=participant,
        event_id=event.id,
        quantity=1,
        ticket_type_id=None,
        gateway=payment_gateway,
        settings=settings,
    )

    _cancel(db_session, admin, event, settings, notifier, hours_before=200)

    db_session.refresh(pending)
    assert pending.status == PaymentStatus.CANCELLED
    assert pending.failure_reason == "Event cancelled"


def test_flagged_paid_payment_is_refunded_in_full(db_session, factory, payment_gateway, settings, notifier):
    organizer = factory.user(UserRole.ORGANIZER)
    event = factory.event(organizer, capacity=1)
    first_user, second_user = factory.user(), factory.user()
    orders = [
        payments_service.create_order(
            db_session,
            user=user,
            event_id=event.id,
            quantity=1,
            ticket_type_id=None,
            gateway=payment_gateway,
            settings=settings,
        )
        for user in (first_user, second_user)
    ]
    for payment in orders:
        payload = midtrans_notification(payment.gateway_order_id, f"{payment.amount:.2f}")
        apply_payment_event(
            db_session, payment_gateway.parse_webhook_event(payload), settings=settings, notifier=notifier
        )
        db_session.commit()
    flagged = orders[1]
    db_session.refresh(flagged)
    assert flagged.requires_manual_review is True

    # 24h notice: registered payers get nothing back, the flagged payer gets everything.
    _cancel(db_session, organizer, event, settings, notifier, hours_before=24)

    refund = db_session.scalar(select(RefundRequest).where(RefundRequest.payment_id == flagged.id))
    assert refund.amount == Decimal("100000")
    assert refund.percentage == 100
    assert refund.registration_id is None
    assert ledger.get_balance(db_session, organizer.id) == Decimal("85000")


def test_cancelling_with_three_registrations_refunds_each_in_full(
    db_session, factory, payment_gateway, settings, notifier
):
    organizer = factory.user(UserRole.ORGANIZER)
    event = factory.event(organizer, price="100000")
    payments = [
        _paid_checkout(db_session, factory, organizer, event, payment_gateway, settings, notifier) for _ in range(3)
    ]
    assert ledger.get_balance(db_session, organizer.id) == Decimal("255000")

    cancellation = _cancel(db_session, organizer, event, settings, notifier, hours_before=200)

    assert cancellation.refund_percentage == 100
    refunds = db_session.scalars(
        select(RefundRequest).where(RefundRequest.cancellation_id == cancellation.id).order_by(RefundRequest.payment_id)
    ).all()
    assert [refund.payment_id for refund in refunds] == [payment.id for payment in payments]
    assert all(refund.amount == Decimal("100000") and refund.percentage == 100 for refund in refunds)
    assert len({refund.reference for refund in refunds}) == 3
    statuses = db_session.scalars(select(Registration.status).where(Registration.event_id == event.id)).all()
    assert statuses == [RegistrationStatus.CANCELLED] * 3
    assert ledger.get_balance(db_session, organizer.id) == Decimal("0")


def test_late_success_payment_is_refunded_when_event_is_cancelled(
    db_session, factory, payment_gateway, settings, notifier
):
    organizer = factory.user(UserRole.ORGANIZER)
    participant = factory.user()
    event = factory.event(organizer, price="100000")
    payment = payments_service.create_order(
        db_session,
        user=participant,
        event_id=event.id,
        quantity=1,
        ticket_type_id=None,
        gateway=payment_gateway,
        settings=settings,
    )
    amount = f"{payment.amount:.2f}"
    for status, code in (("expire", "407"), ("settlement", "200")):
        payload = midtrans_notification(payment.gateway_order_id, amount, status, status_code=code)
        apply_payment_event(
            db_session, payment_gateway.parse_webhook_event(payload), settings=settings, notifier=notifier
        )
        db_session.commit()
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.EXPIRED
    assert payment.review_reason == "LATE_SUCCESS"

    # Even with no refund owed to registered payers, the captured late payment comes back in full.
    _cancel(db_session, organizer, event, settings, notifier, hours_before=24)

    refund = db_session.scalar(select(RefundRequest).where(RefundRequest.payment_id == payment.id))
    assert refund.amount == Decimal("100000")
    assert refund.percentage == 100
    assert refund.registration_id is None
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.EXPIRED
    assert payment.requires_manual_review is False
    assert ledger.get_balance(db_session, organizer.id) == Decimal("0")


def test_refund_status_transitions(db_session, factory, payment_gateway, settings, notifier):
    organizer = factory.user(UserRole.ORGANIZER)
    admin = factory.user(UserRole.ADMIN)
    event = factory.event(organizer)
    payment = _paid_checkout(db_session, factory, organizer, event, payment_gateway, settings, notifier)
    _cancel(db_session, organizer, event, settings, notifier, hours_before=200)
    reference = db_session.scalar(select(RefundRequest.reference).where(RefundRequest.payment_id == payment.id))

    def move(status, **kwargs):
        return update_refund_status(
            db_session, actor=admin, reference=reference, status=status, notifier=notifier, **kwargs
        )

    assert move(RefundStatus.PROCESSING).status == RefundStatus.PROCESSING
    assert move(RefundStatus.PROCESSING).status == RefundStatus.PROCESSING
    failed = move(RefundStatus.FAILED, failure_reason="Bank rejected")
    assert failed.failure_reason == "Bank rejected"
    assert move(RefundStatus.PROCESSING).status == RefundStatus.PROCESSING
    completed = move(RefundStatus.COMPLETED, gateway_response={"refund_key": "rf-1"})
    assert completed.gateway_response == {"refund_key": "rf-1"}

    with pytest.raises(InvalidTransition) as exc_info:
        move(RefundStatus.FAILED)
    assert exc_info.value.code == "INVALID_REFUND_TRANSITION"


def test_refund_is_private_to_its_payer(db_session, factory, payment_gateway, settings, notifier):
    organizer = factory.user(UserRole.ORGANIZER)
    stranger = factory.user()
    event = factory.event(organizer)
    payment = _paid_checkout(db_session, factory, organizer, event, payment_gateway, settings, notifier)
    _cancel(db_session, organizer, event, settings, notifier, hours_before=200)
    reference = db_session.scalar(select(RefundRequest.reference).where(RefundRequest.payment_id == payment.id))

    with pytest.raises(PermissionDenied):
        update_refund_status(
            db_session, actor=stranger, reference=reference, status=RefundStatus.PROCESSING, notifier=notifier
        )
