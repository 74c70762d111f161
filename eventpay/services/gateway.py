"""Gateway contracts shared by the payment and disbursement adapters.

The settlement and disbursement services only see the normalized value
objects defined here; provider wire formats stay inside ``midtrans.py`` and
``xendit.py``. Outbound HTTP goes through :class:`GatewayHTTPClient`, which
applies the bounded timeout and retries transient failures only.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping, Protocol

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from eventpay.utils.errors import GatewayError, GatewayTimeout

logger = logging.getLogger(__name__)


class NormalizedPaymentStatus(str, enum.Enum):
    PAID = "PAID"
    PENDING = "PENDING"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    UNKNOWN = "UNKNOWN"


class NormalizedDisbursementStatus(str, enum.Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    PROCESSING = "PROCESSING"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class OrderItem:
    id: str
    name: str
    price: Decimal
    quantity: int


@dataclass(frozen=True)
class PaymentOrderRequest:
    order_id: str
    amount: Decimal
    currency: str
    customer_name: str
    customer_email: str
    items: list[OrderItem] = field(default_factory=list)
    finish_url: str | None = None


@dataclass(frozen=True)
class PaymentOrder:
    gateway_order_id: str
    token: str
    redirect_url: str


@dataclass(frozen=True)
class NormalizedPaymentEvent:
    gateway_order_id: str
    status: NormalizedPaymentStatus
    raw_status: str | None = None
    failure_reason: str | None = None
    gateway_reference: str | None = None
    payment_type: str | None = None
    gross_amount: Decimal | None = None


@dataclass(frozen=True)
class DisbursementRequest:
    external_id: str
    amount: Decimal
    bank_code: str
    account_holder_name: str
    account_number: str
    description: str


@dataclass(frozen=True)
class DisbursementOrder:
    gateway_disbursement_id: str
    status: str


@dataclass(frozen=True)
class NormalizedDisbursementEvent:
    gateway_id: str | None
    external_id: str | None
    status: NormalizedDisbursementStatus
    raw_status: str | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class FeeBreakdown:
    amount: Decimal
    base_fee: Decimal
    percentage_fee: Decimal
    tax: Decimal
    total_fee: Decimal
    net_amount: Decimal


class PaymentGateway(Protocol):
    name: str

    def create_payment_order(self, request: PaymentOrderRequest) -> PaymentOrder: ...

    def verify_webhook_signature(self, payload: Mapping[str, Any], signature: str | None) -> bool: ...

    def parse_webhook_event(self, payload: Mapping[str, Any]) -> NormalizedPaymentEvent: ...

    def get_transaction_status(self, order_id: str) -> NormalizedPaymentEvent: ...


class DisbursementGateway(Protocol):
    name: str

    def request_disbursement(self, request: DisbursementRequest) -> DisbursementOrder: ...

    def verify_webhook_signature(self, payload: Mapping[str, Any], signature: str | None) -> bool: ...

    def parse_webhook_event(self, payload: Mapping[str, Any]) -> NormalizedDisbursementEvent: ...

    def calculate_fee(self, amount: Decimal) -> FeeBreakdown: ...


def minor_unit(exponent: int) -> Decimal:
    """Smallest representable amount for a currency exponent (0 -> 1, 2 -> 0.01)."""

    return Decimal(1).scaleb(-exponent)


def round_money(value: Decimal, exponent: int = 0) -> Decimal:
    return value.quantize(minor_unit(exponent), rounding=ROUND_HALF_UP)


def to_gateway_integer(amount: Decimal) -> int:
    """Amounts on the wire are positive integers in the smallest currency unit."""

    if amount <= 0 or amount != amount.to_integral_value():
        raise ValueError(f"amount must be a positive whole number, got {amount}")
    return int(amount)


class _TransientGatewayFailure(Exception):
    """Retryable failure: network error, timeout, 5xx or 429."""

    def __init__(self, message: str, *, timeout: bool = False, status: int | None = None) -> None:
        super().__init__(message)
        self.timeout = timeout
        self.status = status


class GatewayHTTPClient:
    """Thin ``httpx`` wrapper with bounded timeout and tenacity retries."""

    def __init__(
        self,
        *,
        provider: str,
        auth: httpx.Auth | None = None,
        base_url: str = "",
        timeout: float = 5.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.provider = provider
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._client = httpx.Client(
            base_url=base_url,
            auth=auth,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    def close(self) -> None:
        self._client.close()

    def _send(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise _TransientGatewayFailure(f"{self.provider} timed out", timeout=True) from exc
        except httpx.TransportError as exc:
            raise _TransientGatewayFailure(f"{self.provider} unreachable: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise _TransientGatewayFailure(
                f"{self.provider} answered HTTP {response.status_code}", status=response.status_code
            )
        if response.status_code >= 400:
            logger.warning(
                "Gateway rejected request",
                extra={"provider": self.provider, "status": response.status_code, "url": url},
            )
            raise GatewayError(
                f"{self.provider} rejected the request (HTTP {response.status_code})",
                code="GATEWAY_REJECTED",
                details={"provider": self.provider, "body": _safe_body(response)},
                status=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise GatewayError(
                f"{self.provider} returned a malformed body", code="GATEWAY_MALFORMED_RESPONSE"
            ) from exc
        if not isinstance(body, dict):
            raise GatewayError(f"{self.provider} returned a malformed body", code="GATEWAY_MALFORMED_RESPONSE")
        return body

    def request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        """Send a request, retrying transient failures with exponential backoff."""

        retrying = Retrying(
            retry=retry_if_exception_type(_TransientGatewayFailure),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=self.backoff_seconds * 8),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    return self._send(method, url, **kwargs)
        except _TransientGatewayFailure as exc:
            logger.error(
                "Gateway call failed after retries",
                extra={"provider": self.provider, "attempts": self.max_attempts, "timeout": exc.timeout},
            )
            if exc.timeout:
                raise GatewayTimeout(str(exc), details={"provider": self.provider}) from exc
            raise GatewayError(str(exc), details={"provider": self.provider}, status=exc.status) from exc
        raise AssertionError("unreachable")  # pragma: no cover

    def _log_retry(self, retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Retrying gateway call",
            extra={"provider": self.provider, "attempt": retry_state.attempt_number, "error": str(exc)},
        )


def _safe_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:500]


__all__ = [
    "DisbursementGateway",
    "DisbursementOrder",
    "DisbursementRequest",
    "FeeBreakdown",
    "GatewayHTTPClient",
    "NormalizedDisbursementEvent",
    "NormalizedDisbursementStatus",
    "NormalizedPaymentEvent",
    "NormalizedPaymentStatus",
    "OrderItem",
    "PaymentGateway",
    "PaymentOrder",
    "PaymentOrderRequest",
    "minor_unit",
    "round_money",
    "to_gateway_integer",
]
