"""Inbound gateway webhook log used for idempotent processing."""
from __future__ import annotations

import logging
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eventpay.models import GatewayWebhookEvent
from eventpay.utils.audit import sanitize_payload_for_audit
from eventpay.utils.time import utcnow

logger = logging.getLogger(__name__)


def midtrans_event_key(payload: Mapping[str, Any]) -> str:
    return ":".join(
        str(payload.get(part) or "-")
        for part in ("order_id", "transaction_status", "fraud_status", "status_code")
    )


def xendit_event_key(payload: Mapping[str, Any]) -> str:
    ident = payload.get("id") or payload.get("external_id") or "-"
    return f"{ident}:{str(payload.get('status') or '-').upper()}"


def record_webhook_event(
    db: Session,
    *,
    provider: str,
    event_key: str,
    reference: str | None,
    payload: Mapping[str, Any],
) -> tuple[GatewayWebhookEvent, bool]:
    """Store the raw delivery; returns ``(row, already_processed)``."""

    existing = db.scalar(
        select(GatewayWebhookEvent).where(
            GatewayWebhookEvent.provider == provider,
            GatewayWebhookEvent.event_key == event_key,
        )
    )
    if existing is not None:
        return existing, existing.processed_at is not None

    event = GatewayWebhookEvent(
        provider=provider,
        event_key=event_key,
        reference=reference,
        raw_json=sanitize_payload_for_audit(dict(payload)),
    )
    try:
        with db.begin_nested():
            db.add(event)
    except IntegrityError:
        # Concurrent delivery inserted the same key first.
        existing = db.scalar(
            select(GatewayWebhookEvent).where(
                GatewayWebhookEvent.provider == provider,
                GatewayWebhookEvent.event_key == event_key,
            )
        )
        return existing, existing is not None and existing.processed_at is not None
    return event, False


def mark_processed(db: Session, event: GatewayWebhookEvent, outcome: str) -> None:
    event.processed_at = utcnow()
    event.outcome = outcome
    db.flush()
    logger.info(
        "Gateway webhook processed",
        extra={"provider": event.provider, "event_key": event.event_key, "outcome": outcome},
    )


__all__ = ["mark_processed", "midtrans_event_key", "record_webhook_event", "xendit_event_key"]
