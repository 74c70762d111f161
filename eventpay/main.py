"""FastAPI application factory for the eventpay backend."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import eventpay.models  # noqa: F401  registers the tables on Base.metadata
from eventpay.config import AppInfo, Settings, get_settings
from eventpay.core.logging import get_logger, setup_logging
from eventpay.db import Database
from eventpay.routers import get_api_router
from eventpay.services.cron import expire_stale_payments_once, heartbeat_scheduler_lock
from eventpay.services.gateway import DisbursementGateway, PaymentGateway
from eventpay.services.midtrans import MidtransGateway
from eventpay.services.notifications import NotificationDispatcher
from eventpay.services.scheduler_lock import release_scheduler_lock, try_acquire_scheduler_lock
from eventpay.services.xendit import XenditGateway
from eventpay.utils.errors import ServiceError, error_response

logger = get_logger(__name__)
ALLOWED_CREATE_ENV = {"dev", "local", "test"}
RELAXED_SECRET_ENV = {"dev", "local", "test"}


def _configure_middlewares(fastapi_app: FastAPI, settings: Settings) -> None:
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOW_ORIGINS,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-API-Key"],
    )

    if settings.PROMETHEUS_ENABLED:
        from starlette_exporter import PrometheusMiddleware, handle_metrics

        fastapi_app.add_middleware(PrometheusMiddleware, app_name="eventpay")
        fastapi_app.add_route("/metrics", handle_metrics)

    if settings.SENTRY_DSN:
        import sentry_sdk

        sentry_sdk.init(dsn=settings.SENTRY_DSN, traces_sample_rate=0.2, environment=settings.app_env)


def _assert_gateway_secrets(settings: Settings) -> None:
    """Fail fast when gateway credentials are missing outside dev/test."""

    missing = [
        name
        for name in ("MIDTRANS_SERVER_KEY", "XENDIT_SECRET_KEY", "XENDIT_CALLBACK_TOKEN")
        if not getattr(settings, name)
    ]
    if not missing:
        return
    if settings.app_env.lower() not in RELAXED_SECRET_ENV:
        logger.error(
            "Gateway secrets are missing; configure them before startup.",
            extra={"env": settings.app_env, "missing": missing},
        )
        raise RuntimeError(f"Missing gateway secrets in {settings.app_env}: {', '.join(missing)}")
    logger.warning(
        "Gateway secrets are not configured; webhooks will be rejected.",
        extra={"env": settings.app_env, "missing": missing},
    )


def _start_scheduler(app: FastAPI, settings: Settings, database: Database) -> bool:
    """Start APScheduler when this process wins the scheduler lock."""

    with database.session() as session:
        acquired = try_acquire_scheduler_lock(session)
        session.commit()
    if not acquired:
        logger.warning(
            "Scheduler disabled because lock is already held by another instance.",
            extra={"env": settings.app_env},
        )
        return False

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        expire_stale_payments_once,
        "interval",
        minutes=15,
        args=[database, settings],
        id="expire-stale-payments",
        replace_existing=True,
    )
    scheduler.add_job(
        heartbeat_scheduler_lock,
        "interval",
        seconds=60,
        args=[database],
        id="scheduler-lock-heartbeat",
        replace_existing=True,
    )
    scheduler.start()
    app.state.scheduler = scheduler
    if settings.app_env.lower() != "dev":
        logger.warning(
            "APScheduler enabled with DB lock; ensure only one runner has SCHEDULER_ENABLED=1 in production.",
            extra={"env": settings.app_env},
        )
    return True


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    database: Database = app.state.database
    setup_logging(settings.LOG_LEVEL, app_env=settings.app_env)
    logger.info("Application startup", extra={"env": settings.app_env})
    _assert_gateway_secrets(settings)

    database.open()
    if settings.ALLOW_DB_CREATE_ALL and settings.app_env.lower() in ALLOWED_CREATE_ENV:
        logger.warning(
            "Running Base.metadata.create_all() because APP_ENV=%s and ALLOW_DB_CREATE_ALL=True",
            settings.app_env,
        )
        database.create_all()
    else:
        logger.info(
            "Skipping create_all(); use Alembic migrations. APP_ENV=%s, ALLOW_DB_CREATE_ALL=%s",
            settings.app_env,
            settings.ALLOW_DB_CREATE_ALL,
        )

    lock_acquired = False
    if settings.SCHEDULER_ENABLED:
        lock_acquired = _start_scheduler(app, settings, database)
    try:
        yield
    finally:
        scheduler = app.state.scheduler
        if scheduler is not None:
            scheduler.shutdown(wait=False)
            app.state.scheduler = None
        if lock_acquired:
            with database.session() as session:
                release_scheduler_lock(session)
                session.commit()
        app.state.notifier.close()
        database.close()
        logger.info("Application shutdown", extra={"env": settings.app_env})


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "Service error",
            extra={"code": exc.code, "kind": exc.kind.value, "path": request.url.path},
        )
    payload = error_response(exc.code, exc.message, exc.details, kind=exc.kind)
    return JSONResponse(status_code=exc.status_code, content=payload)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    payload = error_response("VALIDATION_ERROR", "Request validation failed", {"errors": errors})
    return JSONResponse(status_code=400, content=payload)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        content: dict[str, Any] = detail
    else:
        content = error_response("HTTP_ERROR", str(detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception", exc_info=exc)
    payload = error_response("INTERNAL_SERVER_ERROR", "An unexpected error occurred.")
    return JSONResponse(status_code=500, content=payload)


def create_app(
    settings: Settings | None = None,
    *,
    database: Database | None = None,
    payment_gateway: PaymentGateway | None = None,
    disbursement_gateway: DisbursementGateway | None = None,
    notifier: NotificationDispatcher | None = None,
) -> FastAPI:
    """Build the application with every collaborator explicitly wired.

    Tests pass their own database and gateways; production relies on the
    defaults built from ``Settings``.
    """

    settings = settings or get_settings()
    info = AppInfo()
    app = FastAPI(title=info.name, version=info.version, lifespan=lifespan)

    app.state.settings = settings
    app.state.database = database or Database(settings.database_url)
    app.state.payment_gateway = payment_gateway or MidtransGateway(settings)
    app.state.disbursement_gateway = disbursement_gateway or XenditGateway(settings)
    app.state.notifier = notifier or NotificationDispatcher(
        settings.NOTIFICATION_EMAIL_URL, timeout=settings.GATEWAY_TIMEOUT_SECONDS
    )
    app.state.scheduler = None

    _configure_middlewares(app, settings)
    app.include_router(get_api_router())

    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
    return app


app = create_app()


def main() -> None:
    """Serve the API with uvicorn using HOST, PORT and LOG_LEVEL from the environment."""

    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "eventpay.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


__all__ = ["app", "create_app", "main"]


if __name__ == "__main__":
    main()
