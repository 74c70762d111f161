"""JSON logging for the eventpay API, webhooks and scheduler."""
from __future__ import annotations

import logging
from typing import IO, Optional

from pythonjsonlogger import jsonlogger

# Per-request httpx lines and APScheduler run notices drown out settlement logs.
NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler.executors.default")


def setup_logging(level: str = "INFO", *, app_env: Optional[str] = None, stream: Optional[IO[str]] = None) -> None:
    """Configure root logging with a JSON formatter.

    Every record carries ``service`` and, when given, ``env`` so gateway and
    payout logs from several deployments can share one sink. Context such as
    ``payment_id`` or ``disbursement_id`` is passed through ``extra=``.
    """

    root_logger = logging.getLogger()
    # Remove existing handlers to avoid duplicate logs when reloading.
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    root_logger.setLevel(level.upper())

    static_fields = {"service": "eventpay"}
    if app_env:
        static_fields["env"] = app_env
    handler = logging.StreamHandler(stream)
    formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        static_fields=static_fields,
    )
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Return a logger configured with the shared root settings."""

    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level.upper())
    return logger


__all__ = ["NOISY_LOGGERS", "setup_logging", "get_logger"]
