"""Typed service errors and the standardized response envelope.

Services raise one of the classes below; the HTTP layer maps the error
``kind`` to a status code in a single place (``STATUS_BY_KIND``).
"""
from __future__ import annotations

import enum
from typing import Any


class ErrorKind(str, enum.Enum):
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    UNAUTHORIZED = "UNAUTHORIZED"
    UNAUTHORIZED_WEBHOOK = "UNAUTHORIZED_WEBHOOK"
    GATEWAY_ERROR = "GATEWAY_ERROR"
    GATEWAY_TIMEOUT = "GATEWAY_TIMEOUT"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    INSUFFICIENT_CAPACITY = "INSUFFICIENT_CAPACITY"
    INVALID_STATE = "INVALID_STATE"
    STATE_CONFLICT = "STATE_CONFLICT"


STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.UNAUTHORIZED_WEBHOOK: 401,
    ErrorKind.GATEWAY_ERROR: 502,
    ErrorKind.GATEWAY_TIMEOUT: 504,
    ErrorKind.INSUFFICIENT_BALANCE: 400,
    ErrorKind.INSUFFICIENT_CAPACITY: 400,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.STATE_CONFLICT: 200,
}


class ServiceError(Exception):
    """Base class for every business or integration failure."""

    kind: ErrorKind = ErrorKind.VALIDATION
    default_code: str = "ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]


class ValidationError(ServiceError):
    kind = ErrorKind.VALIDATION
    default_code = "VALIDATION_ERROR"


class NotFoundError(ServiceError):
    kind = ErrorKind.NOT_FOUND
    default_code = "NOT_FOUND"


class PermissionDenied(ServiceError):
    kind = ErrorKind.FORBIDDEN
    default_code = "FORBIDDEN"


class Unauthorized(ServiceError):
    kind = ErrorKind.UNAUTHORIZED
    default_code = "UNAUTHORIZED"


class UnauthorizedWebhook(ServiceError):
    kind = ErrorKind.UNAUTHORIZED_WEBHOOK
    default_code = "WEBHOOK_SIGNATURE_INVALID"


class GatewayError(ServiceError):
    """Upstream failure: non-2xx answer, malformed body or exhausted retries."""

    kind = ErrorKind.GATEWAY_ERROR
    default_code = "GATEWAY_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.upstream_status = status


class GatewayTimeout(GatewayError):
    kind = ErrorKind.GATEWAY_TIMEOUT
    default_code = "GATEWAY_TIMEOUT"


class InsufficientBalance(ServiceError):
    kind = ErrorKind.INSUFFICIENT_BALANCE
    default_code = "INSUFFICIENT_BALANCE"


class InsufficientCapacity(ServiceError):
    kind = ErrorKind.INSUFFICIENT_CAPACITY
    default_code = "INSUFFICIENT_CAPACITY"


class InvalidTransition(ServiceError):
    """Operation not allowed from the entity's current status."""

    kind = ErrorKind.INVALID_STATE
    default_code = "INVALID_STATE"


class StateConflict(ServiceError):
    """Transition already applied by a previous or concurrent call.

    Callers treat this as success; it only exists so that the settlement
    code can short-circuit without mutating anything.
    """

    kind = ErrorKind.STATE_CONFLICT
    default_code = "ALREADY_APPLIED"


def error_response(
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    *,
    kind: ErrorKind | None = None,
) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {
        "success": False,
        "message": message,
        "error": {"code": code, "message": message},
    }
    if kind is not None:
        payload["error"]["kind"] = kind.value
    if details:
        payload["error"]["details"] = details
    return payload


def success_response(data: Any = None, message: str | None = None) -> dict[str, Any]:
    """Return the ``{success, data?, message?}`` envelope used by every route."""

    payload: dict[str, Any] = {"success": True}
    if data is not None:
        payload["data"] = data
    if message:
        payload["message"] = message
    return payload


__all__ = [
    "ErrorKind",
    "STATUS_BY_KIND",
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "PermissionDenied",
    "Unauthorized",
    "UnauthorizedWebhook",
    "GatewayError",
    "GatewayTimeout",
    "InsufficientBalance",
    "InsufficientCapacity",
    "InvalidTransition",
    "StateConflict",
    "error_response",
    "success_response",
]
