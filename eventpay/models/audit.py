"""Audit trail for money-moving and privileged actions."""
from datetime import datetime

from sqlalchemy import DateTime, Index, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class AuditLog(Base):
    """One settlement, payout, refund or account action.

    ``actor`` is ``user:<id>`` for API callers, or the settlement source
    (``webhook``, ``sync``, ``scheduler``) for automated transitions.
    ``entity`` names the row touched (Payment, Disbursement, PayoutAccount,
    Event, RefundRequest, Registration); ``entity_id`` is 0 when the action
    happened before the row had an id. ``data_json`` is masked before it is
    stored.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_entity", "entity", "entity_id"),
        Index("ix_audit_logs_action_at", "action", "at"),
    )

    actor: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[int] = mapped_column(nullable=False)
    data_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
