"""Test configuration."""
from __future__ import annotations

import itertools
import json
from collections import defaultdict
from collections.abc import AsyncIterator, Iterator
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from eventpay.config import Settings
from eventpay.db import Database
from eventpay.main import create_app
from eventpay.models import (
    ApiKey,
    BalanceTransactionKind,
    Event,
    PayoutAccount,
    PayoutAccountType,
    TicketType,
    User,
    UserRole,
)
from eventpay.services import ledger
from eventpay.services.midtrans import MidtransGateway, compute_signature
from eventpay.services.notifications import NotificationDispatcher
from eventpay.services.xendit import XenditGateway
from eventpay.utils.apikey import gen_key
from eventpay.utils.time import utcnow

SERVER_KEY = "SB-Mid-server-test-key"
CALLBACK_TOKEN = "xendit-callback-token"


class GatewayStub:
    """Answers Midtrans and Xendit calls made through ``httpx.MockTransport``.

    ``queue(path_suffix, ...)`` pushes responses (or exceptions to raise) that
    are consumed before the default answers.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.statuses: dict[str, dict] = {}
        self._queued: dict[str, list] = defaultdict(list)
        self._ids = itertools.count(1)

    def queue(self, path_suffix: str, *items) -> None:
        self._queued[path_suffix].extend(items)

    def requests_to(self, path_suffix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(path_suffix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        for suffix, items in self._queued.items():
            if path.endswith(suffix) and items:
                item = items.pop(0)
                if isinstance(item, Exception):
                    raise item
                return item

        if path.endswith("/snap/v1/transactions"):
            token = f"snap-{next(self._ids)}"
            return httpx.Response(
                201,
                json={
                    "token": token,
                    "redirect_url": f"https://app.sandbox.midtrans.com/snap/v4/redirection/{token}",
                },
            )
        if path.endswith("/status"):
            order_id = path.split("/")[-2]
            body = self.statuses.get(
                order_id, {"status_code": "404", "status_message": "Transaction doesn't exist."}
            )
            return httpx.Response(200, json=body)
        if path == "/disbursements":
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "id": f"disb-{next(self._ids)}",
                    "external_id": body["external_id"],
                    "amount": body["amount"],
                    "status": "PENDING",
                },
            )
        return httpx.Response(404, json={"message": "not stubbed"})


def midtrans_notification(
    order_id: str,
    gross_amount: str,
    transaction_status: str = "settlement",
    *,
    status_code: str = "200",
    fraud_status: str = "accept",
    transaction_id: str | None = None,
    server_key: str = SERVER_KEY,
) -> dict:
    return {
        "order_id": order_id,
        "status_code": status_code,
        "gross_amount": gross_amount,
        "transaction_status": transaction_status,
        "fraud_status": fraud_status,
        "transaction_id": transaction_id or f"trx-{uuid4().hex[:10]}",
        "payment_type": "bank_transfer",
        "signature_key": compute_signature(order_id, status_code, gross_amount, server_key),
    }


class Factory:
    """Creates committed rows so API requests see them from their own sessions."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def _save(self, obj):
        self.session.add(obj)
        self.session.commit()
        return obj

    def user(self, role: UserRole = UserRole.PARTICIPANT, **overrides) -> User:
        suffix = uuid4().hex[:8]
        name = role.value.lower()
        values = {
            "username": f"{name}-{suffix}",
            "email": f"{name}-{suffix}@example.com",
            "full_name": f"{name.title()} {suffix}",
            "role": role,
        }
        values.update(overrides)
        return self._save(User(**values))

    def headers(self, user: User) -> dict[str, str]:
        raw, prefix, key_hash = gen_key()
        self._save(ApiKey(user_id=user.id, name=f"test-{prefix}", prefix=prefix, key_hash=key_hash))
        return {"Authorization": f"Bearer {raw}"}

    def event(
        self,
        organizer: User,
        *,
        price: str = "100000",
        capacity: int | None = 10,
        is_free: bool = False,
        starts_in: timedelta = timedelta(days=30),
        allows_multiple_tickets: bool = False,
        platform_fee_percent: str | None = None,
    ) -> Event:
        return self._save(
            Event(
                organizer_id=organizer.id,
                title=f"Event {uuid4().hex[:6]}",
                starts_at=utcnow() + starts_in,
                is_free=is_free,
                price=Decimal("0") if is_free else Decimal(price),
                currency="IDR",
                capacity=capacity,
                allows_multiple_tickets=allows_multiple_tickets,
                platform_fee_percent=Decimal(platform_fee_percent) if platform_fee_percent else None,
            )
        )

    def ticket_type(
        self, event: Event, *, price: str = "150000", capacity: int = 5, max_per_order: int | None = None
    ) -> TicketType:
        return self._save(
            TicketType(
                event_id=event.id,
                name="VIP",
                price=Decimal(price),
                capacity=capacity,
                max_per_order=max_per_order,
            )
        )

    def payout_account(self, organizer: User, *, verified: bool = True) -> PayoutAccount:
        return self._save(
            PayoutAccount(
                organizer_id=organizer.id,
                account_type=PayoutAccountType.BANK_ACCOUNT,
                bank_code="BCA",
                account_name="Budi Santoso",
                account_number="1234567890",
                is_default=True,
                is_verified=verified,
            )
        )

    def credit(self, organizer: User, amount: str) -> None:
        """Seed the organizer ledger as if a ticket sale had been settled."""

        ledger.record_entry(
            self.session,
            organizer_id=organizer.id,
            kind=BalanceTransactionKind.TICKET_SALE,
            amount=Decimal(amount),
            reference_type="seed",
            reference_id=0,
            idempotency_key=f"seed:{uuid4().hex}",
        )
        self.session.commit()


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        app_env="test",
        database_url=f"sqlite:///{tmp_path / 'eventpay_test.db'}",
        MIDTRANS_SERVER_KEY=SERVER_KEY,
        XENDIT_SECRET_KEY="xnd_development_test",
        XENDIT_CALLBACK_TOKEN=CALLBACK_TOKEN,
        GATEWAY_MAX_ATTEMPTS=3,
        GATEWAY_BACKOFF_SECONDS=0,
        SCHEDULER_ENABLED=False,
        NOTIFICATION_EMAIL_URL=None,
    )


@pytest.fixture
def database(settings: Settings) -> Iterator[Database]:
    # One SQLite file per test: every session gets its own connection, as in production.
    database = Database(settings.database_url)
    database.create_all()
    yield database
    database.close()


@pytest.fixture
def db_session(database: Database) -> Iterator[Session]:
    session = database.sessionmaker()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def factory(db_session: Session) -> Factory:
    return Factory(db_session)


@pytest.fixture
def gateway_stub() -> GatewayStub:
    return GatewayStub()


@pytest.fixture
def payment_gateway(settings: Settings, gateway_stub: GatewayStub) -> MidtransGateway:
    return MidtransGateway(settings, transport=httpx.MockTransport(gateway_stub.handler))


@pytest.fixture
def disbursement_gateway(settings: Settings, gateway_stub: GatewayStub) -> XenditGateway:
    return XenditGateway(settings, transport=httpx.MockTransport(gateway_stub.handler))


@pytest.fixture
def notifier() -> NotificationDispatcher:
    return NotificationDispatcher()


@pytest.fixture
def app(settings, database, payment_gateway, disbursement_gateway, notifier):
    return create_app(
        settings,
        database=database,
        payment_gateway=payment_gateway,
        disbursement_gateway=disbursement_gateway,
        notifier=notifier,
    )


@pytest.fixture
async def client(app) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client
