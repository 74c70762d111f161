"""Inbound gateway webhook log."""
from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class GatewayWebhookEvent(Base):
    """Represents an incoming gateway webhook, keyed for idempotent processing."""

    __tablename__ = "gateway_webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "event_key", name="uq_gateway_webhook_events_provider_key"),
        Index("ix_gateway_webhook_events_processed", "processed_at"),
    )

    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    event_key: Mapped[str] = mapped_column(String(200), nullable=False)
    reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    raw_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(64), nullable=True)
