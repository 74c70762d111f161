"""Organizer ledger, payout requests and disbursement callbacks."""
from __future__ import annotations

import json
import threading
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import func, select

from eventpay.models import (
    BalanceTransaction,
    BalanceTransactionKind,
    BalanceTransactionType,
    Disbursement,
    DisbursementStatus,
    User,
    UserRole,
)
from eventpay.services import disbursements as disbursement_service
from eventpay.services import ledger
from eventpay.services.disbursements import DisbursementOutcome
from eventpay.utils.errors import GatewayTimeout, InsufficientBalance, InvalidTransition, ValidationError


def _request(db_session, organizer, account, amount, disbursement_gateway, settings) -> Disbursement:
    return disbursement_service.request_payout(
        db_session,
        organizer=organizer,
        payout_account_id=account.id,
        amount=Decimal(amount),
        gateway=disbursement_gateway,
        settings=settings,
    )


def _submit(db_session, disbursement, disbursement_gateway, notifier) -> Disbursement:
    return disbursement_service.submit_disbursement(
        db_session, disbursement_id=disbursement.id, gateway=disbursement_gateway, notifier=notifier
    )


def _callback(db_session, disbursement_gateway, notifier, disbursement, status, **extra):
    payload = {"id": disbursement.gateway_id, "external_id": disbursement.external_id, "status": status, **extra}
    outcome, _ = disbursement_service.apply_disbursement_event(
        db_session, disbursement_gateway.parse_webhook_event(payload), notifier=notifier
    )
    db_session.commit()
    db_session.refresh(disbursement)
    return outcome


def test_record_entry_is_idempotent_per_key(db_session, factory):
    organizer = factory.user(UserRole.ORGANIZER)

    first = ledger.record_entry(
        db_session,
        organizer_id=organizer.id,
        kind=BalanceTransactionKind.TICKET_SALE,
        amount=Decimal("85000"),
        reference_type="payment",
        reference_id=1,
        idempotency_key=ledger.sale_key(1),
    )
    replay = ledger.record_entry(
        db_session,
        organizer_id=organizer.id,
        kind=BalanceTransactionKind.TICKET_SALE,
        amount=Decimal("85000"),
        reference_type="payment",
        reference_id=1,
        idempotency_key=ledger.sale_key(1),
    )
    db_session.commit()

    assert replay.id == first.id
    assert first.type == BalanceTransactionType.CREDIT
    assert first.balance_after == Decimal("85000")
    assert ledger.get_balance(db_session, organizer.id) == Decimal("85000")


def test_ledger_sum_matches_latest_balance_after(db_session, factory):
    organizer = factory.user(UserRole.ORGANIZER)
    factory.credit(organizer, "85000")
    factory.credit(organizer, "42500")
    ledger.record_entry(
        db_session,
        organizer_id=organizer.id,
        kind=BalanceTransactionKind.REFUND,
        amount=Decimal("-42500"),
        reference_type="payment",
        reference_id=7,
        idempotency_key=ledger.refund_key(7),
    )
    db_session.commit()

    latest = db_session.scalar(
        select(BalanceTransaction)
        .where(BalanceTransaction.organizer_id == organizer.id)
        .order_by(BalanceTransaction.id.desc())
    )
    assert latest.type == BalanceTransactionType.DEBIT
    assert latest.balance_after == ledger.get_balance(db_session, organizer.id) == Decimal("85000")

    summary = ledger.balance_summary(db_session, organizer.id)
    assert summary["total_earned"] == Decimal("127500")
    assert summary["total_refunded"] == Decimal("42500")
    assert summary["pending_payouts"] == Decimal("0")


def test_platform_fee_arithmetic():
    assert ledger.platform_fee(Decimal("100000"), Decimal("15")) == Decimal("15000")
    assert ledger.net_revenue(Decimal("100000"), Decimal("15")) == Decimal("85000")
    assert ledger.net_revenue(Decimal("99999"), Decimal("15")) == Decimal("84999")


def test_payout_happy_path(db_session, factory, disbursement_gateway, settings, notifier, gateway_stub):
    organizer = factory.user(UserRole.ORGANIZER)
    account = factory.payout_account(organizer)
    factory.credit(organizer, "85000")

    disbursement = _request(db_session, organizer, account, "50000", disbursement_gateway, settings)
    assert disbursement.status == DisbursementStatus.REQUESTED
    assert disbursement.fee == Decimal("2775")
    assert disbursement.net_amount == Decimal("47225")
    assert disbursement.external_id == f"DISB-{disbursement.id}-1"
    assert ledger.get_balance(db_session, organizer.id) == Decimal("35000")

    disbursement = _submit(db_session, disbursement, disbursement_gateway, notifier)
    assert disbursement.status == DisbursementStatus.PROCESSING
    assert disbursement.gateway_id.startswith("disb-")
    (sent,) = gateway_stub.requests_to("/disbursements")
    assert sent.headers["X-IDEMPOTENCY-KEY"] == f"DISB-{disbursement.id}-1"
    body = json.loads(sent.content)
    assert body["amount"] == 47225
    assert body["account_number"] == "1234567890"

    assert _callback(db_session, disbursement_gateway, notifier, disbursement, "COMPLETED") is DisbursementOutcome.COMPLETED
    assert disbursement.status == DisbursementStatus.COMPLETED
    assert disbursement.completed_at is not None

    summary = ledger.balance_summary(db_session, organizer.id)
    assert summary["available_balance"] == Decimal("35000")
    assert summary["total_withdrawn"] == Decimal("50000")
    assert summary["pending_payouts"] == Decimal("0")

    # Replayed completion is a no-op.
    assert _callback(db_session, disbursement_gateway, notifier, disbursement, "COMPLETED") is DisbursementOutcome.ALREADY_APPLIED


def test_payout_rejections(db_session, factory, disbursement_gateway, settings):
    organizer = factory.user(UserRole.ORGANIZER)
    account = factory.payout_account(organizer)
    unverified = factory.payout_account(organizer, verified=False)
    factory.credit(organizer, "85000")

    with pytest.raises(InsufficientBalance) as exc_info:
        _request(db_session, organizer, account, "90000", disbursement_gateway, settings)
    assert Decimal(exc_info.value.details["available_balance"]) == Decimal("85000")

    with pytest.raises(ValidationError) as exc_info:
        _request(db_session, organizer, account, "5000", disbursement_gateway, settings)
    assert exc_info.value.code == "AMOUNT_BELOW_MINIMUM"

    with pytest.raises(ValidationError) as exc_info:
        _request(db_session, organizer, unverified, "50000", disbursement_gateway, settings)
    assert exc_info.value.code == "PAYOUT_ACCOUNT_NOT_VERIFIED"

    with pytest.raises(ValidationError) as exc_info:
        _request(db_session, organizer, account, "0", disbursement_gateway, settings)
    assert exc_info.value.code == "INVALID_AMOUNT"

    assert db_session.scalar(select(func.count(Disbursement.id))) == 0
    assert ledger.get_balance(db_session, organizer.id) == Decimal("85000")


def test_cancel_requested_payout_releases_reservation(db_session, factory, disbursement_gateway, settings):
    organizer = factory.user(UserRole.ORGANIZER)
    account = factory.payout_account(organizer)
    factory.credit(organizer, "85000")
    disbursement = _request(db_session, organizer, account, "50000", disbursement_gateway, settings)

    cancelled = disbursement_service.cancel_disbursement(
        db_session, organizer=organizer, disbursement_id=disbursement.id
    )

    assert cancelled.status == DisbursementStatus.CANCELLED
    assert ledger.get_balance(db_session, organizer.id) == Decimal("85000")
    with pytest.raises(InvalidTransition):
        disbursement_service.cancel_disbursement(db_session, organizer=organizer, disbursement_id=disbursement.id)


def test_gateway_rejection_fails_then_retry_uses_new_attempt(
    db_session, factory, disbursement_gateway, settings, notifier, gateway_stub
):
    organizer = factory.user(UserRole.ORGANIZER)
    account = factory.payout_account(organizer)
    factory.credit(organizer, "85000")
    gateway_stub.queue("/disbursements", httpx.Response(400, json={"error_code": "INVALID_DESTINATION"}))
    disbursement = _request(db_session, organizer, account, "50000", disbursement_gateway, settings)

    failed = _submit(db_session, disbursement, disbursement_gateway, notifier)

    assert failed.status == DisbursementStatus.FAILED
    assert failed.failure_reason
    assert ledger.get_balance(db_session, organizer.id) == Decimal("85000")

    retried = disbursement_service.retry_disbursement(
        db_session, organizer=organizer, disbursement_id=disbursement.id, gateway=disbursement_gateway, notifier=notifier
    )

    assert retried.status == DisbursementStatus.PROCESSING
    assert retried.attempt == 2
    assert retried.external_id == f"DISB-{disbursement.id}-2"
    assert gateway_stub.requests_to("/disbursements")[-1].headers["X-IDEMPOTENCY-KEY"] == f"DISB-{disbursement.id}-2"
    assert ledger.get_balance(db_session, organizer.id) == Decimal("35000")


def test_timeout_is_surfaced_and_retry_resends_same_external_id(
    db_session, factory, disbursement_gateway, settings, notifier, gateway_stub
):
    organizer = factory.user(UserRole.ORGANIZER)
    account = factory.payout_account(organizer)
    factory.credit(organizer, "50000")
    gateway_stub.queue("/disbursements", *[httpx.ConnectTimeout("unreachable")] * 3)
    disbursement = _request(db_session, organizer, account, "50000", disbursement_gateway, settings)

    with pytest.raises(GatewayTimeout) as exc_info:
        _submit(db_session, disbursement, disbursement_gateway, notifier)

    assert exc_info.value.status_code == 504
    assert exc_info.value.details == {"disbursement_id": disbursement.id, "status": "PROCESSING"}
    db_session.refresh(disbursement)
    assert disbursement.status == DisbursementStatus.PROCESSING
    assert disbursement.gateway_id is None
    assert disbursement.meta["note"] == "gateway timeout, outcome unknown"
    assert disbursement_service.is_unconfirmed(disbursement)
    assert ledger.get_balance(db_session, organizer.id) == Decimal("0")
    # The gateway may already hold it, so it cannot be cancelled and released.
    with pytest.raises(InvalidTransition):
        disbursement_service.cancel_disbursement(db_session, organizer=organizer, disbursement_id=disbursement.id)

    retried = disbursement_service.retry_disbursement(
        db_session, organizer=organizer, disbursement_id=disbursement.id, gateway=disbursement_gateway, notifier=notifier
    )

    assert retried.status == DisbursementStatus.PROCESSING
    assert retried.gateway_id.startswith("disb-")
    assert retried.attempt == 1
    assert "note" not in retried.meta
    keys = {r.headers["X-IDEMPOTENCY-KEY"] for r in gateway_stub.requests_to("/disbursements")}
    assert keys == {f"DISB-{disbursement.id}-1"}
    reserves = db_session.scalars(
        select(BalanceTransaction).where(BalanceTransaction.kind == BalanceTransactionKind.PAYOUT_RESERVE)
    ).all()
    assert len(reserves) == 1
    assert ledger.get_balance(db_session, organizer.id) == Decimal("0")
    # Confirmed payouts are no longer retryable.
    with pytest.raises(InvalidTransition):
        disbursement_service.retry_disbursement(
            db_session, organizer=organizer, disbursement_id=disbursement.id, gateway=disbursement_gateway, notifier=notifier
        )


def test_timed_out_payout_rejected_on_retry_releases_balance(
    db_session, factory, disbursement_gateway, settings, notifier, gateway_stub
):
    organizer = factory.user(UserRole.ORGANIZER)
    account = factory.payout_account(organizer)
    factory.credit(organizer, "85000")
    gateway_stub.queue(
        "/disbursements",
        *[httpx.ReadTimeout("slow")] * 3,
        httpx.Response(400, json={"error_code": "INVALID_DESTINATION"}),
    )
    disbursement = _request(db_session, organizer, account, "50000", disbursement_gateway, settings)
    with pytest.raises(GatewayTimeout):
        _submit(db_session, disbursement, disbursement_gateway, notifier)

    failed = disbursement_service.retry_disbursement(
        db_session, organizer=organizer, disbursement_id=disbursement.id, gateway=disbursement_gateway, notifier=notifier
    )

    assert failed.status == DisbursementStatus.FAILED
    assert ledger.get_balance(db_session, organizer.id) == Decimal("85000")


def test_timed_out_payout_is_settled_by_callback(
    db_session, factory, disbursement_gateway, settings, notifier, gateway_stub
):
    organizer = factory.user(UserRole.ORGANIZER)
    account = factory.payout_account(organizer)
    factory.credit(organizer, "85000")
    gateway_stub.queue("/disbursements", *[httpx.ReadTimeout("slow")] * 3)
    disbursement = _request(db_session, organizer, account, "50000", disbursement_gateway, settings)
    with pytest.raises(GatewayTimeout):
        _submit(db_session, disbursement, disbursement_gateway, notifier)
    db_session.refresh(disbursement)

    # The callback finds it by external id.
    assert _callback(db_session, disbursement_gateway, notifier, disbursement, "COMPLETED") is DisbursementOutcome.COMPLETED
    assert ledger.get_balance(db_session, organizer.id) == Decimal("35000")


def test_exact_balance_payout_then_one_more_is_refused(
    db_session, factory, disbursement_gateway, settings, notifier
):
    organizer = factory.user(UserRole.ORGANIZER)
    account = factory.payout_account(organizer)
    factory.credit(organizer, "50000")

    disbursement = _request(db_session, organizer, account, "50000", disbursement_gateway, settings)
    disbursement = _submit(db_session, disbursement, disbursement_gateway, notifier)
    assert disbursement.status == DisbursementStatus.PROCESSING
    assert ledger.get_balance(db_session, organizer.id) == Decimal("0")

    with pytest.raises(InsufficientBalance) as exc_info:
        _request(db_session, organizer, account, "1", disbursement_gateway, settings)
    assert Decimal(exc_info.value.details["available_balance"]) == Decimal("0")
    assert db_session.scalar(select(func.count(Disbursement.id))) == 1

    assert _callback(db_session, disbursement_gateway, notifier, disbursement, "COMPLETED") is DisbursementOutcome.COMPLETED
    assert ledger.get_balance(db_session, organizer.id) == Decimal("0")


def test_failed_callback_releases_once(db_session, factory, disbursement_gateway, settings, notifier):
    organizer = factory.user(UserRole.ORGANIZER)
    account = factory.payout_account(organizer)
    factory.credit(organizer, "85000")
    disbursement = _submit(
        db_session,
        _request(db_session, organizer, account, "50000", disbursement_gateway, settings),
        disbursement_gateway,
        notifier,
    )

    first = _callback(
        db_session, disbursement_gateway, notifier, disbursement, "FAILED", failure_code="INVALID_DESTINATION"
    )
    second = _callback(
        db_session, disbursement_gateway, notifier, disbursement, "FAILED", failure_code="INVALID_DESTINATION"
    )

    assert first is DisbursementOutcome.FAILED
    assert second is DisbursementOutcome.ALREADY_APPLIED
    assert disbursement.failure_reason == "INVALID_DESTINATION"
    assert ledger.get_balance(db_session, organizer.id) == Decimal("85000")
    releases = db_session.scalar(
        select(func.count(BalanceTransaction.id)).where(
            BalanceTransaction.kind == BalanceTransactionKind.PAYOUT_RELEASE
        )
    )
    assert releases == 1


def test_unknown_callback_is_reported(db_session, disbursement_gateway, notifier):
    event = disbursement_gateway.parse_webhook_event({"id": "disb-x", "external_id": "DISB-999-1", "status": "COMPLETED"})
    outcome, notifications = disbursement_service.apply_disbursement_event(db_session, event, notifier=notifier)
    assert outcome is DisbursementOutcome.UNKNOWN_DISBURSEMENT
    assert notifications == []


def test_concurrent_payouts_cannot_overdraw(database, db_session, factory, disbursement_gateway, settings):
    organizer = factory.user(UserRole.ORGANIZER)
    account = factory.payout_account(organizer)
    factory.credit(organizer, "85000")
    organizer_id, account_id = organizer.id, account.id
    db_session.close()

    barrier = threading.Barrier(2)
    outcomes: list[str] = []

    def worker() -> None:
        session = database.sessionmaker()
        try:
            user = session.get(User, organizer_id)
            session.commit()
            barrier.wait()
            disbursement_service.request_payout(
                session,
                organizer=user,
                payout_account_id=account_id,
                amount=Decimal("60000"),
                gateway=disbursement_gateway,
                settings=settings,
            )
            outcomes.append("ok")
        except InsufficientBalance:
            outcomes.append("insufficient")
        finally:
            session.close()

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["insufficient", "ok"]
    with database.session() as session:
        assert ledger.get_balance(session, organizer_id) == Decimal("25000")
        assert session.scalar(select(func.count(Disbursement.id))) == 1
