"""Security dependencies for API key authentication and role checks."""
from __future__ import annotations

from typing import Callable

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from eventpay.db import get_db
from eventpay.models.user import User, UserRole
from eventpay.utils.apikey import find_valid_key
from eventpay.utils.errors import PermissionDenied, Unauthorized
from eventpay.utils.time import utcnow


def _extract_key(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> str | None:
    """Read the key from ``Authorization: Bearer ...`` or ``X-API-Key``."""
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


def get_current_user(
    db: Session = Depends(get_db),
    token: str | None = Depends(_extract_key),
) -> User:
    """Resolve the API key to its active user."""
    if not token:
        raise Unauthorized("API key required.", code="NO_API_KEY")

    key = find_valid_key(db, token)
    if key is None:
        raise Unauthorized("Invalid or expired API key", code="INVALID_API_KEY")
    user = db.get(User, key.user_id)
    if user is None or not user.is_active:
        raise Unauthorized("API key owner is inactive", code="INACTIVE_USER")

    key.last_used_at = utcnow()
    db.commit()
    return user


def require_role(*roles: UserRole) -> Callable:
    """Allow only users with one of ``roles``; admins are always allowed."""

    if not roles:
        raise RuntimeError("require_role needs at least one UserRole")
    allowed = set(roles)

    def _dep(user: User = Depends(get_current_user)) -> User:
        if user.role == UserRole.ADMIN or user.role in allowed:
            return user
        raise PermissionDenied(
            f"Requires one of: {sorted(role.value for role in allowed)}",
            code="INSUFFICIENT_ROLE",
        )

    return _dep


__all__ = ["get_current_user", "require_role"]
