"""Organizer balance read routes."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from eventpay.db import get_db
from eventpay.models import BalanceTransactionKind, User, UserRole
from eventpay.schemas.disbursement import BalanceSummary, BalanceTransactionRead
from eventpay.security import require_role
from eventpay.services import ledger
from eventpay.utils.errors import success_response

router = APIRouter(prefix="/balance", tags=["balance"])


@router.get("")
def get_balance(
    db: Session = Depends(get_db),
    organizer: User = Depends(require_role(UserRole.ORGANIZER)),
) -> dict[str, Any]:
    summary = BalanceSummary(**ledger.balance_summary(db, organizer.id))
    return success_response(summary.model_dump(mode="json"))


@router.get("/transactions")
def list_balance_transactions(
    kind: BalanceTransactionKind | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    organizer: User = Depends(require_role(UserRole.ORGANIZER)),
) -> dict[str, Any]:
    entries = ledger.list_transactions(db, organizer.id, kind=kind, limit=limit, offset=offset)
    return success_response([BalanceTransactionRead.model_validate(e).model_dump(mode="json") for e in entries])


__all__ = ["router"]
