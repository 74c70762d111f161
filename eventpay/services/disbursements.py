"""Organizer payouts: reserve, submit, settle, cancel and retry.

A payout reserves its amount with a PAYOUT_RESERVE debit in the same
transaction that creates the disbursement, under the organizer ledger lock.
FAILED and CANCELLED write the matching PAYOUT_RELEASE credit; COMPLETED
keeps the reservation as the final debit.
"""
from __future__ import annotations

import enum
import logging
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from eventpay.config import Settings
from eventpay.models import (
    BalanceTransactionKind,
    Disbursement,
    DisbursementStatus,
    PayoutAccount,
    PayoutAccountType,
    User,
    UserRole,
)
from eventpay.services import ledger
from eventpay.services.gateway import (
    DisbursementGateway,
    DisbursementRequest,
    FeeBreakdown,
    NormalizedDisbursementEvent,
    NormalizedDisbursementStatus,
)
from eventpay.services.notifications import NotificationDispatcher
from eventpay.utils.audit import actor_for_user, log_audit
from eventpay.utils.errors import (
    GatewayError,
    GatewayTimeout,
    InsufficientBalance,
    InvalidTransition,
    NotFoundError,
    PermissionDenied,
    StateConflict,
    ValidationError,
)
from eventpay.utils.time import utcnow

logger = logging.getLogger(__name__)


class DisbursementOutcome(str, enum.Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    PROCESSING = "PROCESSING"
    ALREADY_APPLIED = "ALREADY_APPLIED"
    IGNORED_UNKNOWN_STATUS = "IGNORED_UNKNOWN_STATUS"
    UNKNOWN_DISBURSEMENT = "UNKNOWN_DISBURSEMENT"


def external_id_for(disbursement_id: int, attempt: int) -> str:
    return f"DISB-{disbursement_id}-{attempt}"


def _transition(
    db: Session,
    disbursement: Disbursement,
    *,
    from_statuses: list[DisbursementStatus],
    to_status: DisbursementStatus,
    **values,
) -> None:
    db.flush()
    result = db.execute(
        update(Disbursement)
        .where(Disbursement.id == disbursement.id, Disbursement.status.in_(from_statuses))
        .values(status=to_status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    db.refresh(disbursement)
    if result.rowcount != 1:
        raise StateConflict(
            f"Disbursement {disbursement.id} is {disbursement.status.value}",
            details={"disbursement_id": disbursement.id, "status": disbursement.status.value},
        )
    logger.info(
        "Disbursement status changed",
        extra={"disbursement_id": disbursement.id, "to_status": to_status.value},
    )


def _release(db: Session, disbursement: Disbursement, reason: str) -> None:
    ledger.record_entry(
        db,
        organizer_id=disbursement.organizer_id,
        kind=BalanceTransactionKind.PAYOUT_RELEASE,
        amount=disbursement.amount,
        reference_type="disbursement",
        reference_id=disbursement.id,
        idempotency_key=ledger.release_key(disbursement.id, disbursement.attempt),
        description=f"Payout released: {reason}",
    )


def _reserve(db: Session, disbursement: Disbursement) -> None:
    ledger.record_entry(
        db,
        organizer_id=disbursement.organizer_id,
        kind=BalanceTransactionKind.PAYOUT_RESERVE,
        amount=-disbursement.amount,
        reference_type="disbursement",
        reference_id=disbursement.id,
        idempotency_key=ledger.reserve_key(disbursement.id, disbursement.attempt),
        description="Payout reserved",
        locked=True,
    )


def _get_owned(db: Session, organizer: User, disbursement_id: int) -> Disbursement:
    disbursement = db.get(Disbursement, disbursement_id)
    if disbursement is None:
        raise NotFoundError("Disbursement not found", code="DISBURSEMENT_NOT_FOUND")
    if disbursement.organizer_id != organizer.id and organizer.role != UserRole.ADMIN:
        raise PermissionDenied("Disbursement belongs to another organizer")
    return disbursement


def estimate_fee(amount: Decimal, gateway: DisbursementGateway) -> FeeBreakdown:
    if amount <= 0:
        raise ValidationError("Amount must be positive", code="INVALID_AMOUNT")
    return gateway.calculate_fee(amount)


def request_payout(
    db: Session,
    *,
    organizer: User,
    payout_account_id: int,
    amount: Decimal,
    gateway: DisbursementGateway,
    settings: Settings,
) -> Disbursement:
    """Reserve ``amount`` and create a REQUESTED disbursement (committed)."""

    amount = Decimal(amount)
    if amount <= 0:
        raise ValidationError("Amount must be positive", code="INVALID_AMOUNT")

    account = db.get(PayoutAccount, payout_account_id)
    if account is None or account.organizer_id != organizer.id:
        raise NotFoundError("Payout account not found", code="PAYOUT_ACCOUNT_NOT_FOUND")
    if not account.is_active:
        raise ValidationError("Payout account is inactive", code="PAYOUT_ACCOUNT_INACTIVE")
    if not account.is_verified:
        raise ValidationError("Payout account is not verified", code="PAYOUT_ACCOUNT_NOT_VERIFIED")

    ledger.lock_organizer_ledger(db, organizer.id)
    balance = ledger.get_balance(db, organizer.id)
    if amount > balance:
        db.rollback()
        raise InsufficientBalance(
            "Requested amount exceeds the available balance",
            details={"available_balance": str(balance), "requested": str(amount)},
        )
    if amount < settings.PAYOUT_MIN_AMOUNT:
        db.rollback()
        raise ValidationError(
            f"Minimum payout is {settings.PAYOUT_MIN_AMOUNT}",
            code="AMOUNT_BELOW_MINIMUM",
            details={"minimum": str(settings.PAYOUT_MIN_AMOUNT)},
        )
    fee = gateway.calculate_fee(amount)
    if fee.net_amount <= 0:
        db.rollback()
        raise ValidationError(
            "Amount does not cover the disbursement fee",
            code="AMOUNT_BELOW_FEE",
            details={"fee": str(fee.total_fee)},
        )

    now = utcnow()
    disbursement = Disbursement(
        organizer_id=organizer.id,
        payout_account_id=account.id,
        amount=amount,
        fee=fee.total_fee,
        net_amount=fee.net_amount,
        currency=settings.CURRENCY,
        status=DisbursementStatus.REQUESTED,
        external_id=f"pending-{uuid4().hex}",
        attempt=1,
        requested_at=now,
        meta={"fee": {"base": str(fee.base_fee), "percentage": str(fee.percentage_fee), "tax": str(fee.tax)}},
    )
    db.add(disbursement)
    db.flush()
    disbursement.external_id = external_id_for(disbursement.id, disbursement.attempt)
    _reserve(db, disbursement)
    log_audit(
        db,
        actor=actor_for_user(organizer),
        action="PAYOUT_REQUESTED",
        entity="Disbursement",
        entity_id=disbursement.id,
        data={"amount": str(amount), "fee": str(fee.total_fee), "account_number": account.account_number},
    )
    db.commit()
    return disbursement


def _destination(account: PayoutAccount) -> str:
    if account.account_type == PayoutAccountType.E_WALLET:
        return account.ewallet_type or ""
    return account.bank_code or ""


def is_unconfirmed(disbursement: Disbursement) -> bool:
    """PROCESSING without a gateway id: the last submission timed out."""

    return disbursement.status == DisbursementStatus.PROCESSING and disbursement.gateway_id is None


def submit_disbursement(
    db: Session,
    *,
    disbursement_id: int,
    gateway: DisbursementGateway,
    notifier: NotificationDispatcher,
) -> Disbursement:
    """Send a REQUESTED or unconfirmed disbursement to the gateway.

    No transaction is open during the call. A rejection fails the payout and
    releases the reservation. A timeout marks it PROCESSING with no gateway
    id and raises ``GatewayTimeout``; the reservation stays in place because
    the gateway may have accepted it. Re-submitting reuses the external id,
    which Xendit treats as the idempotency key.
    """

    disbursement = db.get(Disbursement, disbursement_id)
    if disbursement is None:
        raise NotFoundError("Disbursement not found", code="DISBURSEMENT_NOT_FOUND")
    if disbursement.status != DisbursementStatus.REQUESTED and not is_unconfirmed(disbursement):
        raise InvalidTransition(
            f"Disbursement is {disbursement.status.value}", code="DISBURSEMENT_NOT_REQUESTED"
        )
    open_statuses = [DisbursementStatus.REQUESTED, DisbursementStatus.PROCESSING]
    account = db.get(PayoutAccount, disbursement.payout_account_id)
    request = DisbursementRequest(
        external_id=disbursement.external_id,
        amount=disbursement.net_amount,
        bank_code=_destination(account),
        account_holder_name=account.account_name,
        account_number=account.account_number,
        description=f"Payout #{disbursement.id}",
    )
    db.commit()

    try:
        order = gateway.request_disbursement(request)
    except GatewayTimeout as exc:
        logger.warning("Disbursement outcome unknown after timeout", extra={"disbursement_id": disbursement.id})
        try:
            _transition(
                db,
                disbursement,
                from_statuses=open_statuses,
                to_status=DisbursementStatus.PROCESSING,
                processed_at=utcnow(),
            )
            disbursement.meta = {**(disbursement.meta or {}), "note": "gateway timeout, outcome unknown"}
        except StateConflict:
            logger.error("Disbursement changed while submission was in flight", extra={"disbursement_id": disbursement.id})
        details = {"disbursement_id": disbursement.id, "status": disbursement.status.value}
        db.commit()
        raise GatewayTimeout(
            "Payout submission timed out; retry it or wait for the gateway callback",
            code="DISBURSEMENT_TIMEOUT",
            details=details,
        ) from exc
    except (GatewayError, ValidationError) as exc:
        try:
            _transition(
                db,
                disbursement,
                from_statuses=open_statuses,
                to_status=DisbursementStatus.FAILED,
                failure_reason=exc.message,
            )
            _release(db, disbursement, "gateway rejected the payout")
        except StateConflict:
            logger.error("Disbursement changed while submission was in flight", extra={"disbursement_id": disbursement.id})
        notification = notifier.enqueue(
            db,
            user_id=disbursement.organizer_id,
            kind="PAYOUT_FAILED",
            title="Payout failed",
            message=f"Payout #{disbursement.id} was rejected: {exc.message}",
            data={"disbursement_id": disbursement.id},
        )
        db.commit()
        notifier.deliver(db, [notification])
        return disbursement

    try:
        _transition(
            db,
            disbursement,
            from_statuses=open_statuses,
            to_status=DisbursementStatus.PROCESSING,
            gateway_id=order.gateway_disbursement_id,
            processed_at=utcnow(),
        )
        if disbursement.meta and "note" in disbursement.meta:
            disbursement.meta = {k: v for k, v in disbursement.meta.items() if k != "note"}
    except StateConflict:
        disbursement.gateway_id = disbursement.gateway_id or order.gateway_disbursement_id
        if disbursement.status != DisbursementStatus.COMPLETED:
            # Cancelled or failed while the gateway call was in flight: money may still move.
            logger.error(
                "Disbursement accepted by gateway after leaving REQUESTED",
                extra={"disbursement_id": disbursement.id, "status": disbursement.status.value},
            )
            disbursement.meta = {**(disbursement.meta or {}), "review": "SUBMITTED_AFTER_STATUS_CHANGE"}
    db.commit()
    return disbursement


def cancel_disbursement(db: Session, *, organizer: User, disbursement_id: int) -> Disbursement:
    disbursement = _get_owned(db, organizer, disbursement_id)
    try:
        _transition(
            db,
            disbursement,
            from_statuses=[DisbursementStatus.REQUESTED],
            to_status=DisbursementStatus.CANCELLED,
        )
        _release(db, disbursement, "cancelled by organizer")
    except StateConflict:
        try:
            # FAILED payouts were already released when they failed.
            _transition(
                db,
                disbursement,
                from_statuses=[DisbursementStatus.FAILED],
                to_status=DisbursementStatus.CANCELLED,
            )
        except StateConflict as exc:
            raise InvalidTransition(
                f"Disbursement is {disbursement.status.value} and cannot be cancelled",
                code="DISBURSEMENT_NOT_CANCELLABLE",
            ) from exc
    log_audit(
        db,
        actor=actor_for_user(organizer),
        action="PAYOUT_CANCELLED",
        entity="Disbursement",
        entity_id=disbursement.id,
        data={"amount": str(disbursement.amount)},
    )
    db.commit()
    return disbursement


def retry_disbursement(
    db: Session,
    *,
    organizer: User,
    disbursement_id: int,
    gateway: DisbursementGateway,
    notifier: NotificationDispatcher,
) -> Disbursement:
    """Submit a payout again.

    A FAILED payout is re-reserved under a new attempt and external id. An
    unconfirmed one (timed out, no gateway id) keeps its reservation and is
    re-sent under the same external id so the gateway can deduplicate it.
    """

    disbursement = _get_owned(db, organizer, disbursement_id)
    if is_unconfirmed(disbursement):
        log_audit(
            db,
            actor=actor_for_user(organizer),
            action="PAYOUT_RESUBMITTED",
            entity="Disbursement",
            entity_id=disbursement.id,
            data={"attempt": disbursement.attempt, "external_id": disbursement.external_id},
        )
        db.commit()
        return submit_disbursement(db, disbursement_id=disbursement.id, gateway=gateway, notifier=notifier)
    if disbursement.status != DisbursementStatus.FAILED:
        raise InvalidTransition(
            f"Only FAILED payouts can be retried (status {disbursement.status.value})",
            code="DISBURSEMENT_NOT_RETRYABLE",
        )

    ledger.lock_organizer_ledger(db, disbursement.organizer_id)
    balance = ledger.get_balance(db, disbursement.organizer_id)
    if disbursement.amount > balance:
        db.rollback()
        raise InsufficientBalance(
            "Available balance no longer covers this payout",
            details={"available_balance": str(balance), "requested": str(disbursement.amount)},
        )
    next_attempt = disbursement.attempt + 1
    try:
        _transition(
            db,
            disbursement,
            from_statuses=[DisbursementStatus.FAILED],
            to_status=DisbursementStatus.REQUESTED,
            attempt=next_attempt,
            external_id=external_id_for(disbursement.id, next_attempt),
            failure_reason=None,
            gateway_id=None,
            processed_at=None,
            requested_at=utcnow(),
        )
    except StateConflict as exc:
        db.rollback()
        raise InvalidTransition("Disbursement changed concurrently", code="DISBURSEMENT_NOT_RETRYABLE") from exc
    _reserve(db, disbursement)
    log_audit(
        db,
        actor=actor_for_user(organizer),
        action="PAYOUT_RETRIED",
        entity="Disbursement",
        entity_id=disbursement.id,
        data={"attempt": next_attempt},
    )
    db.commit()
    return submit_disbursement(db, disbursement_id=disbursement.id, gateway=gateway, notifier=notifier)


def _find_for_event(db: Session, event: NormalizedDisbursementEvent) -> Disbursement | None:
    if event.external_id:
        found = db.scalar(select(Disbursement).where(Disbursement.external_id == event.external_id))
        if found is not None:
            return found
    if event.gateway_id:
        return db.scalar(select(Disbursement).where(Disbursement.gateway_id == event.gateway_id))
    return None


def apply_disbursement_event(
    db: Session,
    event: NormalizedDisbursementEvent,
    *,
    notifier: NotificationDispatcher,
) -> tuple[DisbursementOutcome, list]:
    """Apply a normalized disbursement callback (no commit)."""

    disbursement = _find_for_event(db, event)
    if disbursement is None:
        logger.warning(
            "Callback for unknown disbursement",
            extra={"external_id": event.external_id, "gateway_id": event.gateway_id},
        )
        return DisbursementOutcome.UNKNOWN_DISBURSEMENT, []

    if event.status is NormalizedDisbursementStatus.UNKNOWN:
        logger.warning(
            "Unrecognised disbursement status ignored",
            extra={"disbursement_id": disbursement.id, "raw_status": event.raw_status},
        )
        return DisbursementOutcome.IGNORED_UNKNOWN_STATUS, []

    if event.status is NormalizedDisbursementStatus.PROCESSING:
        try:
            _transition(
                db,
                disbursement,
                from_statuses=[DisbursementStatus.REQUESTED],
                to_status=DisbursementStatus.PROCESSING,
                gateway_id=event.gateway_id or disbursement.gateway_id,
                processed_at=utcnow(),
            )
        except StateConflict:
            return DisbursementOutcome.ALREADY_APPLIED, []
        return DisbursementOutcome.PROCESSING, []

    open_statuses = [DisbursementStatus.REQUESTED, DisbursementStatus.PROCESSING]
    if event.status is NormalizedDisbursementStatus.COMPLETED:
        try:
            _transition(
                db,
                disbursement,
                from_statuses=open_statuses,
                to_status=DisbursementStatus.COMPLETED,
                gateway_id=event.gateway_id or disbursement.gateway_id,
                completed_at=utcnow(),
            )
        except StateConflict:
            if disbursement.status != DisbursementStatus.COMPLETED:
                logger.error(
                    "Completion received for a payout already closed",
                    extra={"disbursement_id": disbursement.id, "status": disbursement.status.value},
                )
            return DisbursementOutcome.ALREADY_APPLIED, []
        notification = notifier.enqueue(
            db,
            user_id=disbursement.organizer_id,
            kind="PAYOUT_COMPLETED",
            title="Payout completed",
            message=f"Payout #{disbursement.id} of {disbursement.net_amount} {disbursement.currency} was sent.",
            data={"disbursement_id": disbursement.id},
        )
        return DisbursementOutcome.COMPLETED, [notification]

    try:
        _transition(
            db,
            disbursement,
            from_statuses=open_statuses,
            to_status=DisbursementStatus.FAILED,
            failure_reason=event.failure_reason,
        )
    except StateConflict:
        return DisbursementOutcome.ALREADY_APPLIED, []
    _release(db, disbursement, event.failure_reason or "gateway reported failure")
    notification = notifier.enqueue(
        db,
        user_id=disbursement.organizer_id,
        kind="PAYOUT_FAILED",
        title="Payout failed",
        message=f"Payout #{disbursement.id} failed: {event.failure_reason}. The amount is back in your balance.",
        data={"disbursement_id": disbursement.id},
    )
    return DisbursementOutcome.FAILED, [notification]


def list_disbursements(
    db: Session,
    *,
    organizer: User,
    status: DisbursementStatus | None = None,
    limit: int = 20,
    offset: int = 0,
) -> list[Disbursement]:
    stmt = select(Disbursement).where(Disbursement.organizer_id == organizer.id)
    if status is not None:
        stmt = stmt.where(Disbursement.status == status)
    stmt = stmt.order_by(Disbursement.id.desc()).limit(limit).offset(offset)
    return list(db.scalars(stmt))


def get_disbursement(db: Session, *, organizer: User, disbursement_id: int) -> Disbursement:
    return _get_owned(db, organizer, disbursement_id)


__all__ = [
    "DisbursementOutcome",
    "apply_disbursement_event",
    "cancel_disbursement",
    "estimate_fee",
    "external_id_for",
    "get_disbursement",
    "is_unconfirmed",
    "list_disbursements",
    "request_payout",
    "retry_disbursement",
    "submit_disbursement",
]
