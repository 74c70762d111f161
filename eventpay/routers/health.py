"""Health check endpoint."""
from __future__ import annotations

import hashlib
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from eventpay.config import AppInfo, Settings
from eventpay.core.deps import get_app_settings
from eventpay.db import Database, get_database
from eventpay.services.scheduler_lock import describe_scheduler_lock

router = APIRouter(prefix="/health", tags=["health"])
logger = logging.getLogger(__name__)


def _secret_fingerprint(value: str | None) -> str | None:
    if not value:
        return None
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:8]


def _db_status(database: Database) -> str:
    """Return 'ok' if the DB is reachable, 'error' otherwise."""

    try:
        with database.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return "ok"
    except SQLAlchemyError:
        logger.exception("DB health check failed")
        return "error"


@router.get("", summary="Health check")
def healthcheck(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    database: Database = Depends(get_database),
) -> dict[str, object]:
    db_status = _db_status(database)
    scheduler_lock: dict[str, object] = {"status": "unknown"}
    if db_status == "ok":
        with database.session() as session:
            scheduler_lock = describe_scheduler_lock(session)
    info = AppInfo()
    return {
        "success": db_status == "ok",
        "data": {
            "status": "ok" if db_status == "ok" else "degraded",
            "version": info.version,
            "env": settings.app_env,
            "db_status": db_status,
            "gateways": {
                "midtrans_configured": bool(settings.MIDTRANS_SERVER_KEY),
                "midtrans_production": settings.MIDTRANS_IS_PRODUCTION,
                "midtrans_key_fingerprint": _secret_fingerprint(settings.MIDTRANS_SERVER_KEY),
                "xendit_configured": bool(settings.XENDIT_SECRET_KEY),
                "xendit_callback_configured": bool(settings.XENDIT_CALLBACK_TOKEN),
            },
            "scheduler_config_enabled": settings.SCHEDULER_ENABLED,
            "scheduler_running": getattr(request.app.state, "scheduler", None) is not None,
            "scheduler_lock": scheduler_lock,
        },
    }


__all__ = ["router"]
