"""Organizer balance ledger.

The balance is never stored: it is the sum of the organizer's signed
``BalanceTransaction`` rows. Every write first bumps ``users.ledger_version``
for the organizer, which takes a row lock (or the SQLite write lock) and so
serializes concurrent writers before the balance is re-read.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from eventpay.models import (
    BalanceTransaction,
    BalanceTransactionKind,
    BalanceTransactionType,
    Disbursement,
    DisbursementStatus,
    User,
)
from eventpay.services.gateway import round_money
from eventpay.utils.errors import NotFoundError

logger = logging.getLogger(__name__)


def _to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def lock_organizer_ledger(db: Session, organizer_id: int) -> None:
    """Serialize ledger writers for one organizer for the rest of the transaction."""

    db.flush()
    result = db.execute(
        update(User)
        .where(User.id == organizer_id)
        .values(ledger_version=User.ledger_version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFoundError(f"Organizer {organizer_id} not found", code="ORGANIZER_NOT_FOUND")


def get_balance(db: Session, organizer_id: int) -> Decimal:
    """Return the available balance: the sum of every ledger entry."""

    stmt = select(func.coalesce(func.sum(BalanceTransaction.amount), 0)).where(
        BalanceTransaction.organizer_id == organizer_id
    )
    return _to_decimal(db.scalar(stmt))


def find_entry(db: Session, idempotency_key: str) -> BalanceTransaction | None:
    return db.scalar(select(BalanceTransaction).where(BalanceTransaction.idempotency_key == idempotency_key))


def record_entry(
    db: Session,
    *,
    organizer_id: int,
    kind: BalanceTransactionKind,
    amount: Decimal,
    reference_type: str,
    reference_id: int,
    idempotency_key: str,
    description: str | None = None,
    meta: dict | None = None,
    locked: bool = False,
) -> BalanceTransaction:
    """Append a signed entry; replays of the same ``idempotency_key`` return the original row."""

    if not locked:
        lock_organizer_ledger(db, organizer_id)
    existing = find_entry(db, idempotency_key)
    if existing is not None:
        logger.info("Ledger entry already recorded", extra={"idempotency_key": idempotency_key})
        return existing

    amount = _to_decimal(amount)
    balance_after = get_balance(db, organizer_id) + amount
    entry = BalanceTransaction(
        organizer_id=organizer_id,
        type=BalanceTransactionType.CREDIT if amount >= 0 else BalanceTransactionType.DEBIT,
        kind=kind,
        amount=amount,
        balance_after=balance_after,
        reference_type=reference_type,
        reference_id=reference_id,
        idempotency_key=idempotency_key,
        description=description,
        meta=meta,
    )
    db.add(entry)
    db.flush()
    logger.info(
        "Ledger entry recorded",
        extra={
            "organizer_id": organizer_id,
            "kind": kind.value,
            "amount": str(amount),
            "balance_after": str(balance_after),
        },
    )
    return entry


def platform_fee(amount: Decimal, percent: Decimal, exponent: int = 0) -> Decimal:
    return round_money(_to_decimal(amount) * _to_decimal(percent) / Decimal(100), exponent)


def net_revenue(amount: Decimal, percent: Decimal, exponent: int = 0) -> Decimal:
    """Ticket revenue credited to the organizer after the platform fee."""

    amount = _to_decimal(amount)
    return amount - platform_fee(amount, percent, exponent)


def sale_key(payment_id: int) -> str:
    return f"payment:{payment_id}:sale"


def refund_key(payment_id: int) -> str:
    return f"payment:{payment_id}:refund"


def reserve_key(disbursement_id: int, attempt: int) -> str:
    return f"disbursement:{disbursement_id}:reserve:{attempt}"


def release_key(disbursement_id: int, attempt: int) -> str:
    return f"disbursement:{disbursement_id}:release:{attempt}"


def credited_for_payment(db: Session, payment_id: int) -> Decimal:
    entry = find_entry(db, sale_key(payment_id))
    return entry.amount if entry is not None else Decimal("0")


def _sum_disbursements(db: Session, organizer_id: int, statuses: list[DisbursementStatus]) -> Decimal:
    stmt = select(func.coalesce(func.sum(Disbursement.amount), 0)).where(
        Disbursement.organizer_id == organizer_id, Disbursement.status.in_(statuses)
    )
    return _to_decimal(db.scalar(stmt))


def _sum_kind(db: Session, organizer_id: int, kind: BalanceTransactionKind) -> Decimal:
    stmt = select(func.coalesce(func.sum(BalanceTransaction.amount), 0)).where(
        BalanceTransaction.organizer_id == organizer_id, BalanceTransaction.kind == kind
    )
    return _to_decimal(db.scalar(stmt))


def balance_summary(db: Session, organizer_id: int) -> dict[str, Decimal]:
    return {
        "available_balance": get_balance(db, organizer_id),
        "total_earned": _sum_kind(db, organizer_id, BalanceTransactionKind.TICKET_SALE),
        "total_refunded": -_sum_kind(db, organizer_id, BalanceTransactionKind.REFUND),
        "pending_payouts": _sum_disbursements(
            db, organizer_id, [DisbursementStatus.REQUESTED, DisbursementStatus.PROCESSING]
        ),
        "total_withdrawn": _sum_disbursements(db, organizer_id, [DisbursementStatus.COMPLETED]),
    }


def list_transactions(
    db: Session,
    organizer_id: int,
    *,
    kind: BalanceTransactionKind | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[BalanceTransaction]:
    stmt = select(BalanceTransaction).where(BalanceTransaction.organizer_id == organizer_id)
    if kind is not None:
        stmt = stmt.where(BalanceTransaction.kind == kind)
    stmt = stmt.order_by(BalanceTransaction.id.desc()).limit(limit).offset(offset)
    return list(db.scalars(stmt))


__all__ = [
    "balance_summary",
    "credited_for_payment",
    "get_balance",
    "list_transactions",
    "lock_organizer_ledger",
    "net_revenue",
    "platform_fee",
    "record_entry",
    "refund_key",
    "release_key",
    "reserve_key",
    "sale_key",
]
