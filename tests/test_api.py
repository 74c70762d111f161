"""HTTP surface: envelopes, auth, webhooks and the main flows end to end."""
from __future__ import annotations

import threading
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select

from eventpay.models import RefundRequest, UserRole
from eventpay.services import ledger

from .conftest import CALLBACK_TOKEN, midtrans_notification


async def _paid_order(client, participant_headers, event) -> dict:
    response = await client.post(
        "/payments/create-order", json={"event_id": event.id, "quantity": 1}, headers=participant_headers
    )
    assert response.status_code == 201
    payment = response.json()["data"]
    notification = midtrans_notification(payment["gateway_order_id"], f"{Decimal(payment['amount']):.2f}")
    webhook = await client.post("/payments/webhook", json=notification)
    assert webhook.status_code == 200
    return payment


@pytest.mark.anyio
async def test_health_reports_configuration(client):
    response = await client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    data = body["data"]
    assert data["status"] == "ok"
    assert data["db_status"] == "ok"
    assert data["env"] == "test"
    assert data["gateways"]["midtrans_configured"] is True
    assert data["gateways"]["xendit_callback_configured"] is True
    assert len(data["gateways"]["midtrans_key_fingerprint"]) == 8
    assert data["scheduler_running"] is False
    assert data["scheduler_lock"]["status"] == "none"


@pytest.mark.anyio
async def test_requests_without_api_key_are_rejected(client):
    response = await client.post("/payments/create-order", json={"event_id": 1})

    assert response.status_code == 401
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == "NO_API_KEY"


@pytest.mark.anyio
async def test_checkout_webhook_and_balance(client, factory, database):
    organizer = factory.user(UserRole.ORGANIZER)
    participant = factory.user()
    event = factory.event(organizer, price="100000")
    participant_headers = factory.headers(participant)
    organizer_headers = factory.headers(organizer)

    response = await client.post(
        "/payments/create-order", json={"event_id": event.id, "quantity": 1}, headers=participant_headers
    )
    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    payment = body["data"]
    assert payment["status"] == "PENDING"
    assert Decimal(payment["amount"]) == Decimal("100000")
    assert payment["redirect_url"]

    notification = midtrans_notification(payment["gateway_order_id"], f"{Decimal(payment['amount']):.2f}")
    first = await client.post("/payments/webhook", json=notification)
    assert first.status_code == 200
    assert first.json()["message"] == "Notification processed: PAID"

    duplicate = await client.post("/payments/webhook", json=notification)
    assert duplicate.status_code == 200
    assert duplicate.json()["message"] == "Already processed"

    status = await client.get(f"/payments/status/{payment['id']}", headers=participant_headers)
    assert status.json()["data"]["status"] == "PAID"

    history = await client.get("/payments/history", headers=participant_headers)
    assert [item["id"] for item in history.json()["data"]] == [payment["id"]]

    balance = await client.get("/balance", headers=organizer_headers)
    assert balance.status_code == 200
    assert Decimal(balance.json()["data"]["available_balance"]) == Decimal("85000")

    with database.session() as session:
        assert ledger.get_balance(session, organizer.id) == Decimal("85000")


@pytest.mark.anyio
async def test_webhook_with_bad_signature_is_rejected(client, factory):
    organizer = factory.user(UserRole.ORGANIZER)
    participant = factory.user()
    event = factory.event(organizer)
    headers = factory.headers(participant)
    created = await client.post("/payments/create-order", json={"event_id": event.id}, headers=headers)
    order_id = created.json()["data"]["gateway_order_id"]

    forged = midtrans_notification(order_id, "100000.00", server_key="not-the-server-key")
    response = await client.post("/payments/webhook", json=forged)

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "WEBHOOK_SIGNATURE_INVALID"
    status = await client.get(f"/payments/order/{order_id}", headers=headers)
    assert status.json()["data"]["status"] == "PENDING"


@pytest.mark.anyio
async def test_webhook_delivers_notifications_off_the_event_loop(client, factory, notifier, monkeypatch):
    organizer = factory.user(UserRole.ORGANIZER)
    participant = factory.user()
    event = factory.event(organizer)
    delivered_on: list[int] = []

    def deliver(db, notifications):
        delivered_on.append(threading.get_ident())
        return 0

    monkeypatch.setattr(notifier, "deliver", deliver)

    await _paid_order(client, factory.headers(participant), event)

    assert delivered_on
    assert threading.get_ident() not in delivered_on


@pytest.mark.anyio
async def test_webhook_with_non_ascii_signature_is_rejected(client):
    notification = {**midtrans_notification("EVT-0-UNKNOWN", "5000.00"), "signature_key": "é"}

    response = await client.post("/payments/webhook", json=notification)

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "WEBHOOK_SIGNATURE_INVALID"


@pytest.mark.anyio
async def test_webhook_for_unknown_order_is_acknowledged(client):
    response = await client.post("/payments/webhook", json=midtrans_notification("EVT-0-UNKNOWN", "5000.00"))

    assert response.status_code == 200
    assert response.json()["message"] == "Notification processed: UNKNOWN_ORDER"


@pytest.mark.anyio
async def test_payment_of_another_user_is_forbidden(client, factory):
    organizer = factory.user(UserRole.ORGANIZER)
    owner, stranger = factory.user(), factory.user()
    event = factory.event(organizer)
    created = await client.post("/payments/create-order", json={"event_id": event.id}, headers=factory.headers(owner))

    response = await client.get(
        f"/payments/status/{created.json()['data']['id']}", headers=factory.headers(stranger)
    )

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "FORBIDDEN"


@pytest.mark.anyio
async def test_invalid_quantity_is_a_validation_error(client, factory):
    organizer = factory.user(UserRole.ORGANIZER)
    participant = factory.user()
    event = factory.event(organizer)

    response = await client.post(
        "/payments/create-order", json={"event_id": event.id, "quantity": 0}, headers=factory.headers(participant)
    )

    assert response.status_code == 400
    body = response.json()
    assert body["error"]["code"] == "VALIDATION_ERROR"
    assert body["error"]["details"]["errors"]


@pytest.mark.anyio
async def test_participant_cannot_read_organizer_balance(client, factory):
    participant = factory.user()

    response = await client.get("/balance", headers=factory.headers(participant))

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "INSUFFICIENT_ROLE"


@pytest.mark.anyio
async def test_payout_account_and_disbursement_flow(client, factory, database, gateway_stub):
    organizer = factory.user(UserRole.ORGANIZER)
    admin = factory.user(UserRole.ADMIN)
    organizer_headers = factory.headers(organizer)
    admin_headers = factory.headers(admin)
    factory.credit(organizer, "85000")

    created = await client.post(
        "/payout-accounts",
        json={
            "account_type": "BANK_ACCOUNT",
            "bank_code": "bca",
            "account_name": "Budi Santoso",
            "account_number": "1234567890",
        },
        headers=organizer_headers,
    )
    assert created.status_code == 201
    account = created.json()["data"]
    assert account["bank_code"] == "BCA"
    assert account["is_default"] is True
    assert account["is_verified"] is False

    not_admin = await client.post(f"/payout-accounts/{account['id']}/verify", headers=organizer_headers)
    assert not_admin.status_code == 403
    verified = await client.post(f"/payout-accounts/{account['id']}/verify", headers=admin_headers)
    assert verified.json()["data"]["is_verified"] is True

    estimate = await client.get("/disbursements/fee-estimate", params={"amount": "50000"}, headers=organizer_headers)
    assert estimate.status_code == 200
    assert Decimal(estimate.json()["data"]["total_fee"]) == Decimal("2775")
    assert Decimal(estimate.json()["data"]["net_amount"]) == Decimal("47225")

    requested = await client.post(
        "/disbursements/request",
        json={"payout_account_id": account["id"], "amount": "50000"},
        headers=organizer_headers,
    )
    assert requested.status_code == 201
    disbursement = requested.json()["data"]
    assert disbursement["status"] == "PROCESSING"
    assert disbursement["external_id"] == f"DISB-{disbursement['id']}-1"

    callback = {"id": disbursement["gateway_id"], "external_id": disbursement["external_id"], "status": "COMPLETED"}
    rejected = await client.post("/disbursements/webhook", json=callback, headers={"x-callback-token": "wrong"})
    assert rejected.status_code == 401

    accepted = await client.post("/disbursements/webhook", json=callback, headers={"x-callback-token": CALLBACK_TOKEN})
    assert accepted.status_code == 200
    assert accepted.json()["message"] == "Callback processed: COMPLETED"

    replay = await client.post("/disbursements/webhook", json=callback, headers={"x-callback-token": CALLBACK_TOKEN})
    assert replay.json()["message"] == "Already processed"

    balance = (await client.get("/balance", headers=organizer_headers)).json()["data"]
    assert Decimal(balance["available_balance"]) == Decimal("35000")
    assert Decimal(balance["total_withdrawn"]) == Decimal("50000")

    listed = await client.get("/disbursements", params={"status": "COMPLETED"}, headers=organizer_headers)
    assert [item["id"] for item in listed.json()["data"]] == [disbursement["id"]]

    entries = await client.get("/balance/transactions", headers=organizer_headers)
    assert [entry["kind"] for entry in entries.json()["data"]] == ["PAYOUT_RESERVE", "TICKET_SALE"]


@pytest.mark.anyio
async def test_payout_account_default_and_removal(client, factory):
    organizer = factory.user(UserRole.ORGANIZER)
    other_organizer = factory.user(UserRole.ORGANIZER)
    headers = factory.headers(organizer)

    first = await client.post(
        "/payout-accounts",
        json={"account_type": "BANK_ACCOUNT", "bank_code": "bni", "account_name": "Budi", "account_number": "11112222"},
        headers=headers,
    )
    second = await client.post(
        "/payout-accounts",
        json={"account_type": "E_WALLET", "ewallet_type": "ovo", "account_name": "Budi", "account_number": "08123456"},
        headers=headers,
    )
    first_id, second_id = first.json()["data"]["id"], second.json()["data"]["id"]
    assert second.json()["data"]["is_default"] is False

    promoted = await client.post(f"/payout-accounts/{second_id}/default", headers=headers)
    assert promoted.json()["data"]["is_default"] is True
    listed = (await client.get("/payout-accounts", headers=headers)).json()["data"]
    assert [(a["id"], a["is_default"]) for a in listed] == [(second_id, True), (first_id, False)]

    foreign = await client.delete(f"/payout-accounts/{first_id}", headers=factory.headers(other_organizer))
    assert foreign.status_code == 403

    removed = await client.delete(f"/payout-accounts/{second_id}", headers=headers)
    assert removed.json()["data"]["is_active"] is False
    listed = (await client.get("/payout-accounts", headers=headers)).json()["data"]
    assert [a["id"] for a in listed] == [first_id]

    missing = await client.delete(f"/payout-accounts/{second_id}", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "PAYOUT_ACCOUNT_NOT_FOUND"


@pytest.mark.anyio
async def test_rejected_payout_returns_bad_gateway_and_restores_balance(client, factory, database, gateway_stub):
    organizer = factory.user(UserRole.ORGANIZER)
    account = factory.payout_account(organizer)
    headers = factory.headers(organizer)
    factory.credit(organizer, "85000")
    gateway_stub.queue("/disbursements", httpx.Response(400, json={"error_code": "INVALID_DESTINATION"}))

    response = await client.post(
        "/disbursements/request", json={"payout_account_id": account.id, "amount": "50000"}, headers=headers
    )

    assert response.status_code == 502
    error = response.json()["error"]
    assert error["code"] == "DISBURSEMENT_REJECTED"
    disbursement_id = error["details"]["disbursement_id"]

    detail = await client.get(f"/disbursements/{disbursement_id}", headers=headers)
    assert detail.json()["data"]["status"] == "FAILED"
    with database.session() as session:
        assert ledger.get_balance(session, organizer.id) == Decimal("85000")

    retried = await client.post(f"/disbursements/{disbursement_id}/retry", headers=headers)
    assert retried.status_code == 200
    assert retried.json()["data"]["attempt"] == 2


@pytest.mark.anyio
async def test_timed_out_payout_returns_gateway_timeout_and_can_be_resent(client, factory, gateway_stub):
    organizer = factory.user(UserRole.ORGANIZER)
    account = factory.payout_account(organizer)
    headers = factory.headers(organizer)
    factory.credit(organizer, "50000")
    gateway_stub.queue("/disbursements", *[httpx.ConnectTimeout("unreachable")] * 3)

    response = await client.post(
        "/disbursements/request", json={"payout_account_id": account.id, "amount": "50000"}, headers=headers
    )

    assert response.status_code == 504
    error = response.json()["error"]
    assert error["code"] == "DISBURSEMENT_TIMEOUT"
    assert error["kind"] == "GATEWAY_TIMEOUT"
    disbursement_id = error["details"]["disbursement_id"]

    cancelled = await client.post(f"/disbursements/{disbursement_id}/cancel", headers=headers)
    assert cancelled.status_code == 409
    balance = (await client.get("/balance", headers=headers)).json()["data"]
    assert Decimal(balance["pending_payouts"]) == Decimal("50000")

    retried = await client.post(f"/disbursements/{disbursement_id}/retry", headers=headers)
    assert retried.status_code == 200
    data = retried.json()["data"]
    assert data["status"] == "PROCESSING"
    assert data["gateway_id"]
    assert data["external_id"] == f"DISB-{disbursement_id}-1"

    callback = {"id": data["gateway_id"], "external_id": data["external_id"], "status": "FAILED", "failure_code": "REJECTED"}
    settled = await client.post("/disbursements/webhook", json=callback, headers={"x-callback-token": CALLBACK_TOKEN})
    assert settled.json()["message"] == "Callback processed: FAILED"
    balance = (await client.get("/balance", headers=headers)).json()["data"]
    assert Decimal(balance["available_balance"]) == Decimal("50000")
    assert Decimal(balance["pending_payouts"]) == Decimal("0")


@pytest.mark.anyio
async def test_insufficient_balance_is_reported(client, factory):
    organizer = factory.user(UserRole.ORGANIZER)
    account = factory.payout_account(organizer)
    factory.credit(organizer, "20000")

    response = await client.post(
        "/disbursements/request",
        json={"payout_account_id": account.id, "amount": "50000"},
        headers=factory.headers(organizer),
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INSUFFICIENT_BALANCE"


@pytest.mark.anyio
async def test_event_cancellation_and_refund_updates(client, factory, database):
    organizer = factory.user(UserRole.ORGANIZER)
    admin = factory.user(UserRole.ADMIN)
    participant = factory.user()
    event = factory.event(organizer, price="100000")
    organizer_headers = factory.headers(organizer)
    participant_headers = factory.headers(participant)
    admin_headers = factory.headers(admin)
    payment = await _paid_order(client, participant_headers, event)

    cancelled = await client.post(
        f"/events/{event.id}/cancel", json={"reason": "Venue unavailable"}, headers=organizer_headers
    )
    assert cancelled.status_code == 200
    data = cancelled.json()["data"]
    assert data["refund_percentage"] == 100
    assert len(data["refunds"]) == 1

    again = await client.post(f"/events/{event.id}/cancel", json={"reason": "Again"}, headers=organizer_headers)
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "EVENT_ALREADY_CANCELLED"

    with database.session() as session:
        reference = session.scalar(select(RefundRequest.reference).where(RefundRequest.payment_id == payment["id"]))
        assert ledger.get_balance(session, organizer.id) == Decimal("0")

    refund = await client.get(f"/refunds/{reference}", headers=participant_headers)
    assert refund.status_code == 200
    assert Decimal(refund.json()["data"]["amount"]) == Decimal("100000")

    forbidden = await client.post(
        f"/refunds/{reference}/status", json={"status": "PROCESSING"}, headers=participant_headers
    )
    assert forbidden.status_code == 403

    updated = await client.post(f"/refunds/{reference}/status", json={"status": "PROCESSING"}, headers=admin_headers)
    assert updated.status_code == 200
    assert updated.json()["data"]["status"] == "PROCESSING"

    invalid = await client.post(f"/refunds/{reference}/status", json={"status": "PENDING"}, headers=admin_headers)
    assert invalid.status_code == 409

    history = await client.get(f"/events/{event.id}/cancellations", headers=organizer_headers)
    assert len(history.json()["data"]) == 1


@pytest.mark.anyio
async def test_free_event_registration(client, factory):
    organizer = factory.user(UserRole.ORGANIZER)
    participant = factory.user()
    event = factory.event(organizer, is_free=True)
    headers = factory.headers(participant)

    first = await client.post(f"/events/{event.id}/register", headers=headers)
    assert first.status_code == 201
    assert first.json()["data"]["ticket_code"].startswith("TKT-")

    second = await client.post(f"/events/{event.id}/register", headers=headers)
    assert second.status_code == 400
    assert second.json()["error"]["code"] == "ALREADY_REGISTERED"

    paid_checkout = await client.post("/payments/create-order", json={"event_id": event.id}, headers=headers)
    assert paid_checkout.status_code == 400
    assert paid_checkout.json()["error"]["code"] == "EVENT_IS_FREE"


def test_main_serves_the_app_with_configured_host_and_port(monkeypatch, settings):
    import uvicorn

    from eventpay import main as main_module

    calls = []
    configured = settings.model_copy(update={"HOST": "0.0.0.0", "PORT": 9100, "LOG_LEVEL": "WARNING"})
    monkeypatch.setattr(main_module, "get_settings", lambda: configured)
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))

    main_module.main()

    assert calls == [("eventpay.main:app", {"host": "0.0.0.0", "port": 9100, "log_level": "warning"})]
