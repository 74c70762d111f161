"""Organizer payout accounts."""
from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from eventpay.models import PayoutAccount, PayoutAccountType, User, UserRole
from eventpay.utils.audit import actor_for_user, log_audit
from eventpay.utils.errors import NotFoundError, PermissionDenied, ValidationError

logger = logging.getLogger(__name__)


def _get_owned(db: Session, organizer: User, account_id: int) -> PayoutAccount:
    account = db.get(PayoutAccount, account_id)
    if account is None or not account.is_active:
        raise NotFoundError("Payout account not found", code="PAYOUT_ACCOUNT_NOT_FOUND")
    if account.organizer_id != organizer.id and organizer.role != UserRole.ADMIN:
        raise PermissionDenied("Payout account belongs to another organizer")
    return account


def create_account(
    db: Session,
    *,
    organizer: User,
    account_type: PayoutAccountType,
    account_name: str,
    account_number: str,
    bank_code: str | None = None,
    ewallet_type: str | None = None,
    is_default: bool = False,
) -> PayoutAccount:
    if account_type == PayoutAccountType.BANK_ACCOUNT and not bank_code:
        raise ValidationError("bank_code is required for bank accounts", code="BANK_CODE_REQUIRED")
    if account_type == PayoutAccountType.E_WALLET and not ewallet_type:
        raise ValidationError("ewallet_type is required for e-wallets", code="EWALLET_TYPE_REQUIRED")

    has_default = db.scalar(
        select(PayoutAccount.id).where(
            PayoutAccount.organizer_id == organizer.id,
            PayoutAccount.is_default.is_(True),
            PayoutAccount.is_active.is_(True),
        )
    )
    make_default = is_default or has_default is None
    if make_default:
        _clear_default(db, organizer.id)

    account = PayoutAccount(
        organizer_id=organizer.id,
        account_type=account_type,
        bank_code=bank_code.upper() if bank_code else None,
        ewallet_type=ewallet_type.upper() if ewallet_type else None,
        account_name=account_name.strip(),
        account_number=account_number.strip(),
        is_default=make_default,
        is_verified=False,
    )
    db.add(account)
    db.flush()
    log_audit(
        db,
        actor=actor_for_user(organizer),
        action="PAYOUT_ACCOUNT_CREATED",
        entity="PayoutAccount",
        entity_id=account.id,
        data={"account_type": account_type.value, "account_number": account.account_number},
    )
    db.commit()
    return account


def _clear_default(db: Session, organizer_id: int) -> None:
    db.flush()
    db.execute(
        update(PayoutAccount)
        .where(PayoutAccount.organizer_id == organizer_id, PayoutAccount.is_default.is_(True))
        .values(is_default=False)
    )


def list_accounts(db: Session, *, organizer: User) -> list[PayoutAccount]:
    stmt = (
        select(PayoutAccount)
        .where(PayoutAccount.organizer_id == organizer.id, PayoutAccount.is_active.is_(True))
        .order_by(PayoutAccount.is_default.desc(), PayoutAccount.id)
    )
    return list(db.scalars(stmt))


def set_default(db: Session, *, organizer: User, account_id: int) -> PayoutAccount:
    account = _get_owned(db, organizer, account_id)
    _clear_default(db, account.organizer_id)
    account.is_default = True
    db.commit()
    return account


def verify_account(db: Session, *, admin: User, account_id: int) -> PayoutAccount:
    account = db.get(PayoutAccount, account_id)
    if account is None or not account.is_active:
        raise NotFoundError("Payout account not found", code="PAYOUT_ACCOUNT_NOT_FOUND")
    account.is_verified = True
    log_audit(
        db,
        actor=actor_for_user(admin),
        action="PAYOUT_ACCOUNT_VERIFIED",
        entity="PayoutAccount",
        entity_id=account.id,
        data={"organizer_id": account.organizer_id},
    )
    db.commit()
    return account


def deactivate_account(db: Session, *, organizer: User, account_id: int) -> PayoutAccount:
    account = _get_owned(db, organizer, account_id)
    account.is_active = False
    account.is_default = False
    log_audit(
        db,
        actor=actor_for_user(organizer),
        action="PAYOUT_ACCOUNT_DEACTIVATED",
        entity="PayoutAccount",
        entity_id=account.id,
        data={},
    )
    db.commit()
    return account


__all__ = ["create_account", "deactivate_account", "list_accounts", "set_default", "verify_account"]
