"""Midtrans Snap payment gateway adapter."""
from __future__ import annotations

import hashlib
import hmac
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

import httpx

from eventpay.config import Settings
from eventpay.services.gateway import (
    GatewayHTTPClient,
    NormalizedPaymentEvent,
    NormalizedPaymentStatus,
    PaymentOrder,
    PaymentOrderRequest,
    to_gateway_integer,
)
from eventpay.utils.errors import GatewayError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

_FAILED = {"deny", "failure"}


def map_transaction_status(transaction_status: str | None, fraud_status: str | None) -> NormalizedPaymentStatus:
    """Translate Midtrans ``transaction_status``/``fraud_status`` into our status set."""

    status = (transaction_status or "").lower()
    fraud = (fraud_status or "").lower()
    if status == "capture":
        if fraud == "challenge":
            return NormalizedPaymentStatus.PENDING
        if fraud in ("", "accept"):
            return NormalizedPaymentStatus.PAID
        return NormalizedPaymentStatus.FAILED
    if status == "settlement":
        return NormalizedPaymentStatus.PAID
    if status == "pending":
        return NormalizedPaymentStatus.PENDING
    if status in _FAILED:
        return NormalizedPaymentStatus.FAILED
    if status == "cancel":
        return NormalizedPaymentStatus.CANCELLED
    if status == "expire":
        return NormalizedPaymentStatus.EXPIRED
    return NormalizedPaymentStatus.UNKNOWN


def compute_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    raw = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(raw.encode("utf-8")).hexdigest()


class MidtransGateway:
    name = "midtrans"

    def __init__(self, settings: Settings, *, transport: httpx.BaseTransport | None = None) -> None:
        self.settings = settings
        self.server_key = settings.MIDTRANS_SERVER_KEY
        self.http = GatewayHTTPClient(
            provider=self.name,
            auth=httpx.BasicAuth(self.server_key or "", ""),
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            max_attempts=settings.GATEWAY_MAX_ATTEMPTS,
            backoff_seconds=settings.GATEWAY_BACKOFF_SECONDS,
            transport=transport,
        )

    def create_payment_order(self, request: PaymentOrderRequest) -> PaymentOrder:
        try:
            gross_amount = to_gateway_integer(request.amount)
        except ValueError as exc:
            raise ValidationError(str(exc), code="INVALID_AMOUNT") from exc

        body: dict[str, Any] = {
            "transaction_details": {"order_id": request.order_id, "gross_amount": gross_amount},
            "customer_details": {
                "first_name": request.customer_name,
                "email": request.customer_email,
            },
            "item_details": [
                {
                    "id": item.id,
                    "name": item.name[:50],
                    "price": to_gateway_integer(item.price),
                    "quantity": item.quantity,
                }
                for item in request.items
            ],
        }
        if request.finish_url:
            body["callbacks"] = {"finish": request.finish_url}

        logger.info("Creating Midtrans order", extra={"order_id": request.order_id, "amount": gross_amount})
        data = self.http.request("POST", f"{self.settings.midtrans_snap_url}/transactions", json=body)
        token = data.get("token")
        redirect_url = data.get("redirect_url")
        if not token or not redirect_url:
            raise GatewayError("Midtrans response is missing token or redirect_url", code="GATEWAY_MALFORMED_RESPONSE")
        return PaymentOrder(gateway_order_id=request.order_id, token=token, redirect_url=redirect_url)

    def verify_webhook_signature(self, payload: Mapping[str, Any], signature: str | None = None) -> bool:
        """Check ``signature_key`` (or an explicit signature) against our server key."""

        signature = signature or payload.get("signature_key")
        if not self.server_key or not signature:
            return False
        expected = compute_signature(
            str(payload.get("order_id", "")),
            str(payload.get("status_code", "")),
            str(payload.get("gross_amount", "")),
            self.server_key,
        )
        return hmac.compare_digest(expected.encode(), str(signature).encode())

    def parse_webhook_event(self, payload: Mapping[str, Any]) -> NormalizedPaymentEvent:
        order_id = payload.get("order_id")
        if not order_id:
            raise ValidationError("Notification has no order_id", code="MISSING_ORDER_ID")

        transaction_status = payload.get("transaction_status")
        status = map_transaction_status(transaction_status, payload.get("fraud_status"))
        failure_reason = None
        if status in (
            NormalizedPaymentStatus.FAILED,
            NormalizedPaymentStatus.CANCELLED,
            NormalizedPaymentStatus.EXPIRED,
        ):
            failure_reason = payload.get("status_message") or f"Payment {transaction_status}"

        gross_amount = None
        if payload.get("gross_amount") not in (None, ""):
            try:
                gross_amount = Decimal(str(payload["gross_amount"]))
            except InvalidOperation:
                logger.warning("Unparseable gross_amount in notification", extra={"order_id": order_id})

        return NormalizedPaymentEvent(
            gateway_order_id=str(order_id),
            status=status,
            raw_status=transaction_status,
            failure_reason=failure_reason,
            gateway_reference=payload.get("transaction_id"),
            payment_type=payload.get("payment_type"),
            gross_amount=gross_amount,
        )

    def get_transaction_status(self, order_id: str) -> NormalizedPaymentEvent:
        data = self.http.request("GET", f"{self.settings.midtrans_api_url}/{order_id}/status")
        # The status API answers HTTP 200 with the real code in the body.
        if str(data.get("status_code")) == "404":
            raise NotFoundError(f"Midtrans has no transaction {order_id}", code="GATEWAY_ORDER_NOT_FOUND")
        return self.parse_webhook_event({"order_id": order_id, **data})


__all__ = ["MidtransGateway", "compute_signature", "map_transaction_status"]
