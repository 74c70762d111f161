"""Background jobs run by the APScheduler instance."""
from __future__ import annotations

import logging
from datetime import timedelta

from eventpay.config import Settings
from eventpay.db import Database
from eventpay.services.scheduler_lock import refresh_scheduler_lock
from eventpay.services.settlement import expire_stale_payments
from eventpay.utils.time import utcnow

logger = logging.getLogger(__name__)


def expire_stale_payments_once(database: Database, settings: Settings) -> int:
    """Expire PENDING payments older than the configured payment window."""

    cutoff = utcnow() - timedelta(minutes=settings.PAYMENT_EXPIRY_MINUTES)
    with database.session() as db:
        expired = expire_stale_payments(db, older_than=cutoff)
        db.commit()
    return expired


def heartbeat_scheduler_lock(database: Database) -> None:
    with database.session() as db:
        refresh_scheduler_lock(db)


__all__ = ["expire_stale_payments_once", "heartbeat_scheduler_lock"]
