"""Organizer payout account routes."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from eventpay.db import get_db
from eventpay.models import User, UserRole
from eventpay.schemas.disbursement import PayoutAccountCreate, PayoutAccountRead
from eventpay.security import require_role
from eventpay.services import payout_accounts as accounts_service
from eventpay.utils.errors import success_response

router = APIRouter(prefix="/payout-accounts", tags=["payout-accounts"])


def _account(account) -> dict[str, Any]:
    return PayoutAccountRead.model_validate(account).model_dump(mode="json")


@router.post("", status_code=status.HTTP_201_CREATED)
def create_account(
    payload: PayoutAccountCreate,
    db: Session = Depends(get_db),
    organizer: User = Depends(require_role(UserRole.ORGANIZER)),
) -> dict[str, Any]:
    account = accounts_service.create_account(db, organizer=organizer, **payload.model_dump())
    return success_response(_account(account), "Payout account created")


@router.get("")
def list_accounts(
    db: Session = Depends(get_db),
    organizer: User = Depends(require_role(UserRole.ORGANIZER)),
) -> dict[str, Any]:
    return success_response([_account(a) for a in accounts_service.list_accounts(db, organizer=organizer)])


@router.post("/{account_id}/default")
def set_default(
    account_id: int,
    db: Session = Depends(get_db),
    organizer: User = Depends(require_role(UserRole.ORGANIZER)),
) -> dict[str, Any]:
    return success_response(_account(accounts_service.set_default(db, organizer=organizer, account_id=account_id)))


@router.post("/{account_id}/verify")
def verify_account(
    account_id: int,
    db: Session = Depends(get_db),
    admin: User = Depends(require_role(UserRole.ADMIN)),
) -> dict[str, Any]:
    return success_response(_account(accounts_service.verify_account(db, admin=admin, account_id=account_id)))


@router.delete("/{account_id}")
def deactivate_account(
    account_id: int,
    db: Session = Depends(get_db),
    organizer: User = Depends(require_role(UserRole.ORGANIZER)),
) -> dict[str, Any]:
    account = accounts_service.deactivate_account(db, organizer=organizer, account_id=account_id)
    return success_response(_account(account), "Payout account removed")


__all__ = ["router"]
