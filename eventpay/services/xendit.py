"""Xendit disbursement gateway adapter."""
from __future__ import annotations

import hmac
import logging
from decimal import Decimal
from typing import Any, Mapping

import httpx

from eventpay.config import Settings
from eventpay.services.gateway import (
    DisbursementOrder,
    DisbursementRequest,
    FeeBreakdown,
    GatewayHTTPClient,
    NormalizedDisbursementEvent,
    NormalizedDisbursementStatus,
    round_money,
    to_gateway_integer,
)
from eventpay.utils.errors import GatewayError, ValidationError

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "COMPLETED": NormalizedDisbursementStatus.COMPLETED,
    "FAILED": NormalizedDisbursementStatus.FAILED,
    "PENDING": NormalizedDisbursementStatus.PROCESSING,
}


def calculate_disbursement_fee(
    amount: Decimal,
    *,
    fixed_fee: Decimal,
    percent: Decimal,
    tax_rate: Decimal,
    exponent: int = 0,
) -> FeeBreakdown:
    """Fixed fee, then percentage of the amount, then tax on the fee.

    Each component is rounded half-up to the currency minor unit.
    """

    amount = Decimal(amount)
    base_fee = round_money(Decimal(fixed_fee), exponent)
    percentage_fee = round_money(amount * Decimal(percent) / Decimal(100), exponent)
    tax = round_money((base_fee + percentage_fee) * Decimal(tax_rate), exponent)
    total_fee = base_fee + percentage_fee + tax
    return FeeBreakdown(
        amount=amount,
        base_fee=base_fee,
        percentage_fee=percentage_fee,
        tax=tax,
        total_fee=total_fee,
        net_amount=amount - total_fee,
    )


class XenditGateway:
    name = "xendit"

    def __init__(self, settings: Settings, *, transport: httpx.BaseTransport | None = None) -> None:
        self.settings = settings
        self.callback_token = settings.XENDIT_CALLBACK_TOKEN
        self.http = GatewayHTTPClient(
            provider=self.name,
            auth=httpx.BasicAuth(settings.XENDIT_SECRET_KEY or "", ""),
            base_url=settings.XENDIT_BASE_URL,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            max_attempts=settings.GATEWAY_MAX_ATTEMPTS,
            backoff_seconds=settings.GATEWAY_BACKOFF_SECONDS,
            transport=transport,
        )

    def request_disbursement(self, request: DisbursementRequest) -> DisbursementOrder:
        try:
            amount = to_gateway_integer(request.amount)
        except ValueError as exc:
            raise ValidationError(str(exc), code="INVALID_AMOUNT") from exc

        logger.info(
            "Requesting Xendit disbursement",
            extra={"external_id": request.external_id, "amount": amount, "bank_code": request.bank_code},
        )
        data = self.http.request(
            "POST",
            "/disbursements",
            # Same key on every retry so Xendit never pays out twice.
            headers={"X-IDEMPOTENCY-KEY": request.external_id},
            json={
                "external_id": request.external_id,
                "amount": amount,
                "bank_code": request.bank_code,
                "account_holder_name": request.account_holder_name,
                "account_number": request.account_number,
                "description": request.description,
            },
        )
        gateway_id = data.get("id")
        if not gateway_id:
            raise GatewayError("Xendit response is missing the disbursement id", code="GATEWAY_MALFORMED_RESPONSE")
        return DisbursementOrder(gateway_disbursement_id=str(gateway_id), status=str(data.get("status", "PENDING")))

    def verify_webhook_signature(self, payload: Mapping[str, Any], signature: str | None) -> bool:
        if not self.callback_token or not signature:
            return False
        return hmac.compare_digest(self.callback_token.encode(), str(signature).encode())

    def parse_webhook_event(self, payload: Mapping[str, Any]) -> NormalizedDisbursementEvent:
        gateway_id = payload.get("id")
        external_id = payload.get("external_id")
        if not gateway_id and not external_id:
            raise ValidationError("Callback has neither id nor external_id", code="MISSING_DISBURSEMENT_ID")
        raw_status = str(payload.get("status") or "").upper()
        status = _STATUS_MAP.get(raw_status, NormalizedDisbursementStatus.UNKNOWN)
        failure_reason = None
        if status is NormalizedDisbursementStatus.FAILED:
            failure_reason = payload.get("failure_code") or "DISBURSEMENT_FAILED"
        return NormalizedDisbursementEvent(
            gateway_id=str(gateway_id) if gateway_id else None,
            external_id=str(external_id) if external_id else None,
            status=status,
            raw_status=raw_status or None,
            failure_reason=failure_reason,
        )

    def calculate_fee(self, amount: Decimal) -> FeeBreakdown:
        return calculate_disbursement_fee(
            amount,
            fixed_fee=self.settings.DISBURSEMENT_FIXED_FEE,
            percent=self.settings.DISBURSEMENT_FEE_PERCENT,
            tax_rate=self.settings.DISBURSEMENT_FEE_TAX_RATE,
            exponent=self.settings.CURRENCY_EXPONENT,
        )


__all__ = ["XenditGateway", "calculate_disbursement_fee"]
