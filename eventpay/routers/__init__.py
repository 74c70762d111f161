"""API routers for the eventpay backend."""
from fastapi import APIRouter

from . import balance, disbursements, events, health, payments, payout_accounts, refunds


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    api_router.include_router(payments.router)
    api_router.include_router(events.router)
    api_router.include_router(refunds.router)
    api_router.include_router(disbursements.router)
    api_router.include_router(balance.router)
    api_router.include_router(payout_accounts.router)
    return api_router
