"""ORM models package."""
from .api_key import ApiKey
from .audit import AuditLog
from .base import Base
from .cancellation import EventCancellation, RefundRequest, RefundStatus
from .disbursement import Disbursement, DisbursementStatus
from .event import Event, EventStatus, TicketType
from .gateway_webhook import GatewayWebhookEvent
from .ledger import BalanceTransaction, BalanceTransactionKind, BalanceTransactionType
from .notification import Notification
from .payment import TERMINAL_PAYMENT_STATUSES, Payment, PaymentStatus, PaymentStatusHistory
from .payout_account import PayoutAccount, PayoutAccountType
from .registration import Registration, RegistrationStatus
from .scheduler_lock import SchedulerLock
from .user import User, UserRole

__all__ = [
    "ApiKey",
    "AuditLog",
    "Base",
    "BalanceTransaction",
    "BalanceTransactionKind",
    "BalanceTransactionType",
    "Disbursement",
    "DisbursementStatus",
    "Event",
    "EventCancellation",
    "EventStatus",
    "GatewayWebhookEvent",
    "Notification",
    "Payment",
    "PaymentStatus",
    "PaymentStatusHistory",
    "PayoutAccount",
    "PayoutAccountType",
    "RefundRequest",
    "RefundStatus",
    "Registration",
    "RegistrationStatus",
    "SchedulerLock",
    "TERMINAL_PAYMENT_STATUSES",
    "TicketType",
    "User",
    "UserRole",
]
