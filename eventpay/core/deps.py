"""FastAPI dependencies exposing the objects ``create_app`` placed on ``app.state``."""
from __future__ import annotations

from fastapi import Request

from eventpay.config import Settings
from eventpay.services.gateway import DisbursementGateway, PaymentGateway
from eventpay.services.notifications import NotificationDispatcher


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway


def get_disbursement_gateway(request: Request) -> DisbursementGateway:
    return request.app.state.disbursement_gateway


def get_notifier(request: Request) -> NotificationDispatcher:
    return request.app.state.notifier


__all__ = ["get_app_settings", "get_disbursement_gateway", "get_notifier", "get_payment_gateway"]
