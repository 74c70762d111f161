"""Audit logging helper utilities."""
from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy.orm import Session

from eventpay.models.audit import AuditLog
from eventpay.utils.time import utcnow


SENSITIVE_KEYS = {
    "account_number",
    "account_name",
    "email",
    "recipient_email",
    "phone",
    "snap_token",
    "redirect_url",
    "gateway_reference",
    "signature_key",
}


def _mask_value(key: str, value: Any) -> Any:
    if value is None:
        return None

    if key == "account_number":
        stripped = str(value).replace(" ", "")
        if len(stripped) <= 4:
            return f"***{stripped}"
        return f"***{stripped[-4:]}"

    if key in {"email", "recipient_email"}:
        text = str(value)
        if "@" in text:
            _, domain = text.split("@", 1)
            return f"***@{domain}"
        return "***"

    if key == "phone":
        digits = "".join(ch for ch in str(value) if ch.isdigit())
        return f"***{digits[-2:]}" if digits else "***"

    if key == "account_name":
        text = str(value).strip()
        return f"{text[:1]}***" if text else "***"

    if key == "redirect_url":
        base = str(value).split("?", 1)[0]
        if "/" in base:
            return f"{base.rsplit('/', 1)[0]}/***"
        return "***"

    if key == "gateway_reference":
        text = str(value)
        if len(text) <= 6:
            return "***"
        return f"***{text[-4:]}"

    # tokens and signatures are never kept
    return "***"


def sanitize_payload_for_audit(data: Any) -> Any:
    """Return a copy of ``data`` with obvious PII fields masked."""

    if isinstance(data, Mapping):
        sanitized: dict[str, Any] = {}
        for key, value in data.items():
            masked_value = _mask_value(key, value) if key in SENSITIVE_KEYS else value
            sanitized[key] = sanitize_payload_for_audit(masked_value)
        return sanitized

    if isinstance(data, list):
        return [sanitize_payload_for_audit(item) for item in data]

    return data


def log_audit(
    db: Session,
    *,
    actor: str,
    action: str,
    entity: str,
    entity_id: int | None,
    data: dict | None = None,
) -> None:
    """Persist an audit entry in the shared AuditLog table."""

    db.add(
        AuditLog(
            actor=actor,
            action=action,
            entity=entity,
            entity_id=entity_id if entity_id is not None else 0,
            data_json=sanitize_payload_for_audit(data or {}),
            at=utcnow(),
        )
    )


def actor_for_user(user: Any, fallback: str = "system") -> str:
    """Return the canonical actor string for an authenticated user."""

    user_id = getattr(user, "id", None)
    if user_id is None:
        return fallback
    return f"user:{user_id}"


__all__ = ["SENSITIVE_KEYS", "sanitize_payload_for_audit", "log_audit", "actor_for_user"]
