"""Simple DB-backed lock to ensure only one scheduler runs."""
from __future__ import annotations

import os
import socket
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eventpay.models.scheduler_lock import SchedulerLock
from eventpay.utils.time import as_utc


LOCK_NAME = "reconciliation"
LOCK_TTL_SECONDS = 300


def _owner_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _begin(session: Session):
    return session.begin_nested() if session.in_transaction() else session.begin()


def _get_lock(session: Session, name: str) -> SchedulerLock | None:
    return session.execute(
        select(SchedulerLock).where(SchedulerLock.name == name).with_for_update()
    ).scalar_one_or_none()


def try_acquire_scheduler_lock(
    session: Session,
    name: str = LOCK_NAME,
    *,
    ttl_seconds: int = LOCK_TTL_SECONDS,
) -> bool:
    """Take the lock if it is free, expired, or already ours."""

    owner = _owner_id()
    now = datetime.now(timezone.utc)
    expires = now + timedelta(seconds=ttl_seconds)

    try:
        with _begin(session):
            lock = _get_lock(session, name)
            if lock is None:
                session.add(SchedulerLock(name=name, owner=owner, acquired_at=now, expires_at=expires))
                return True

            expires_at = as_utc(lock.expires_at)
            if expires_at is None or expires_at <= now:
                lock.owner = owner
                lock.acquired_at = now
                lock.expires_at = expires
                return True

            if lock.owner == owner:
                lock.expires_at = expires
                return True

            return False
    except IntegrityError:
        return False


def refresh_scheduler_lock(
    session: Session, name: str = LOCK_NAME, *, ttl_seconds: int = LOCK_TTL_SECONDS
) -> None:
    """Extend the TTL while this process still owns the lock."""

    with _begin(session):
        lock = _get_lock(session, name)
        if lock and lock.owner == _owner_id():
            lock.expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)


def release_scheduler_lock(session: Session, name: str = LOCK_NAME) -> None:
    with _begin(session):
        lock = _get_lock(session, name)
        if lock and lock.owner == _owner_id():
            session.delete(lock)


def describe_scheduler_lock(session: Session, name: str = LOCK_NAME) -> dict[str, object]:
    """Return a lightweight description of the current scheduler lock state."""

    lock = session.execute(select(SchedulerLock).where(SchedulerLock.name == name)).scalar_one_or_none()
    if lock is None:
        return {"status": "none", "owner": None, "present": False}

    now = datetime.now(timezone.utc)
    acquired_at = as_utc(lock.acquired_at)
    expires_at = as_utc(lock.expires_at)
    expires_in = (expires_at - now).total_seconds() if expires_at else None
    return {
        "status": "owned_by_self" if lock.owner == _owner_id() else "owned_by_other",
        "owner": lock.owner,
        "present": True,
        "age_seconds": (now - acquired_at).total_seconds() if acquired_at else None,
        "expires_in_seconds": expires_in,
        "stale": expires_in is not None and expires_in < -60,
    }


__all__ = [
    "LOCK_NAME",
    "describe_scheduler_lock",
    "refresh_scheduler_lock",
    "release_scheduler_lock",
    "try_acquire_scheduler_lock",
]
