"""In-app notifications with best-effort e-mail delivery.

Rows are written inside the caller's transaction (``enqueue``); e-mail goes
out only after that transaction committed (``deliver``). Delivery failures
are logged and never reach the settlement path.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

import httpx
from sqlalchemy.orm import Session

from eventpay.models import Notification
from eventpay.utils.time import utcnow

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    def __init__(
        self,
        email_url: str | None = None,
        *,
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.email_url = email_url
        self._client = httpx.Client(timeout=timeout, transport=transport) if email_url else None

    def close(self) -> None:
        if self._client is not None:
            self._client.close()

    def enqueue(
        self,
        db: Session,
        *,
        user_id: int,
        kind: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
        recipient_email: str | None = None,
    ) -> Notification:
        notification = Notification(
            user_id=user_id,
            kind=kind,
            title=title,
            message=message,
            data=data,
            recipient_email=recipient_email,
        )
        db.add(notification)
        db.flush()
        return notification

    def deliver(self, db: Session, notifications: Iterable[Notification]) -> int:
        """Send e-mails for committed notifications; returns how many went out."""

        if self._client is None:
            return 0
        sent = 0
        for notification in notifications:
            if not notification.recipient_email or notification.delivered_at is not None:
                continue
            try:
                response = self._client.post(
                    self.email_url,
                    json={
                        "to": notification.recipient_email,
                        "subject": notification.title,
                        "text": notification.message,
                        "kind": notification.kind,
                        "data": notification.data or {},
                    },
                )
                response.raise_for_status()
            except httpx.HTTPError:
                logger.warning(
                    "Notification e-mail delivery failed",
                    extra={"notification_id": notification.id, "kind": notification.kind},
                    exc_info=True,
                )
                continue
            notification.delivered_at = utcnow()
            sent += 1
        if sent:
            db.commit()
        return sent


__all__ = ["NotificationDispatcher"]
