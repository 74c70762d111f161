"""initial eventpay schema

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_initial"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(18, 2)

USER_ROLE = sa.Enum("PARTICIPANT", "ORGANIZER", "ADMIN", name="userrole")
EVENT_STATUS = sa.Enum("PUBLISHED", "CANCELLED", name="eventstatus")
PAYMENT_STATUS = sa.Enum("PENDING", "PAID", "FAILED", "CANCELLED", "EXPIRED", "REFUNDED", name="paymentstatus")
REGISTRATION_STATUS = sa.Enum("ACTIVE", "CANCELLED", name="registrationstatus")
DISBURSEMENT_STATUS = sa.Enum(
    "REQUESTED", "PROCESSING", "COMPLETED", "FAILED", "CANCELLED", name="disbursementstatus"
)
PAYOUT_ACCOUNT_TYPE = sa.Enum("BANK_ACCOUNT", "E_WALLET", name="payoutaccounttype")
BALANCE_TX_TYPE = sa.Enum("CREDIT", "DEBIT", name="balancetransactiontype")
BALANCE_TX_KIND = sa.Enum("TICKET_SALE", "PAYOUT_RESERVE", "PAYOUT_RELEASE", "REFUND", name="balancetransactionkind")
REFUND_STATUS = sa.Enum("PENDING", "PROCESSING", "COMPLETED", "FAILED", name="refundstatus")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("username", sa.String(length=100), nullable=False, unique=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("full_name", sa.String(length=200), nullable=True),
        sa.Column("role", USER_ROLE, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("ledger_version", sa.Integer, nullable=False, server_default="0"),
        *_timestamps(),
    )

    op.create_table(
        "api_keys",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("prefix", sa.String(length=32), nullable=False),
        sa.Column("key_hash", sa.String(length=128), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_api_keys_user_id", "api_keys", ["user_id"])
    op.create_index("ix_api_keys_prefix", "api_keys", ["prefix"])

    op.create_table(
        "events",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("organizer_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_free", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("price", MONEY, nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="IDR"),
        sa.Column("capacity", sa.Integer, nullable=True),
        sa.Column("registered_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("allows_multiple_tickets", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("platform_fee_percent", sa.Numeric(5, 2), nullable=True),
        sa.Column("status", EVENT_STATUS, nullable=False),
        *_timestamps(),
        sa.CheckConstraint("registered_count >= 0", name="ck_events_registered_non_negative"),
        sa.CheckConstraint("capacity IS NULL OR registered_count <= capacity", name="ck_events_capacity"),
    )
    op.create_index("ix_events_organizer_id", "events", ["organizer_id"])

    op.create_table(
        "ticket_types",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("event_id", sa.Integer, sa.ForeignKey("events.id"), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("price", MONEY, nullable=False),
        sa.Column("capacity", sa.Integer, nullable=False),
        sa.Column("sold_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_per_order", sa.Integer, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("sold_count >= 0", name="ck_ticket_types_sold_non_negative"),
        sa.CheckConstraint("sold_count <= capacity", name="ck_ticket_types_capacity"),
    )
    op.create_index("ix_ticket_types_event_id", "ticket_types", ["event_id"])

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("event_id", sa.Integer, sa.ForeignKey("events.id"), nullable=False),
        sa.Column("ticket_type_id", sa.Integer, sa.ForeignKey("ticket_types.id"), nullable=True),
        sa.Column("quantity", sa.Integer, nullable=False, server_default="1"),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="IDR"),
        sa.Column("status", PAYMENT_STATUS, nullable=False),
        sa.Column("gateway", sa.String(length=32), nullable=False, server_default="midtrans"),
        sa.Column("gateway_order_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("gateway_reference", sa.String(length=128), nullable=True),
        sa.Column("payment_type", sa.String(length=64), nullable=True),
        sa.Column("redirect_url", sa.String(length=512), nullable=True),
        sa.Column("snap_token", sa.String(length=256), nullable=True),
        sa.Column("failure_reason", sa.Text, nullable=True),
        sa.Column("requires_manual_review", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("review_reason", sa.String(length=64), nullable=True),
        sa.Column("registration_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
        sa.CheckConstraint("quantity > 0", name="ck_payment_positive_quantity"),
    )
    op.create_index("ix_payments_user_id", "payments", ["user_id"])
    op.create_index("ix_payments_event_id", "payments", ["event_id"])
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("ix_payments_user_event", "payments", ["user_id", "event_id"])
    op.create_index("ix_payments_status_created", "payments", ["status", "created_at"])

    op.create_table(
        "payment_status_history",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("payment_id", sa.Integer, sa.ForeignKey("payments.id"), nullable=False),
        sa.Column("from_status", PAYMENT_STATUS, nullable=True),
        sa.Column("to_status", PAYMENT_STATUS, nullable=False),
        sa.Column("source", sa.String(length=32), nullable=False),
        sa.Column("note", sa.Text, nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_payment_status_history_payment_id", "payment_status_history", ["payment_id"])

    op.create_table(
        "registrations",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("event_id", sa.Integer, sa.ForeignKey("events.id"), nullable=False),
        sa.Column("ticket_type_id", sa.Integer, sa.ForeignKey("ticket_types.id"), nullable=True),
        sa.Column("payment_id", sa.Integer, sa.ForeignKey("payments.id"), nullable=True, unique=True),
        sa.Column("quantity", sa.Integer, nullable=False, server_default="1"),
        sa.Column("amount_paid", MONEY, nullable=False, server_default="0"),
        sa.Column("ticket_code", sa.String(length=32), nullable=False, unique=True),
        sa.Column("status", REGISTRATION_STATUS, nullable=False),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_registrations_user_id", "registrations", ["user_id"])
    op.create_index("ix_registrations_event_id", "registrations", ["event_id"])
    op.create_index("ix_registrations_user_event_status", "registrations", ["user_id", "event_id", "status"])

    op.create_table(
        "payout_accounts",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("organizer_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("account_type", PAYOUT_ACCOUNT_TYPE, nullable=False),
        sa.Column("bank_code", sa.String(length=32), nullable=True),
        sa.Column("ewallet_type", sa.String(length=32), nullable=True),
        sa.Column("account_name", sa.String(length=200), nullable=False),
        sa.Column("account_number", sa.String(length=64), nullable=False),
        sa.Column("is_default", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_payout_accounts_organizer_id", "payout_accounts", ["organizer_id"])

    op.create_table(
        "disbursements",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("organizer_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("payout_account_id", sa.Integer, sa.ForeignKey("payout_accounts.id"), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("fee", MONEY, nullable=False),
        sa.Column("net_amount", MONEY, nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="IDR"),
        sa.Column("status", DISBURSEMENT_STATUS, nullable=False),
        sa.Column("gateway_id", sa.String(length=128), nullable=True),
        sa.Column("external_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("attempt", sa.Integer, nullable=False, server_default="1"),
        sa.Column("failure_reason", sa.Text, nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_disbursement_positive_amount"),
    )
    op.create_index("ix_disbursements_organizer_id", "disbursements", ["organizer_id"])
    op.create_index("ix_disbursements_gateway_id", "disbursements", ["gateway_id"])
    op.create_index("ix_disbursements_organizer_status", "disbursements", ["organizer_id", "status"])

    op.create_table(
        "balance_transactions",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("organizer_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("type", BALANCE_TX_TYPE, nullable=False),
        sa.Column("kind", BALANCE_TX_KIND, nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("balance_after", MONEY, nullable=False),
        sa.Column("reference_type", sa.String(length=32), nullable=False),
        sa.Column("reference_id", sa.Integer, nullable=False),
        sa.Column("idempotency_key", sa.String(length=128), nullable=False, unique=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_balance_transactions_organizer_id", "balance_transactions", ["organizer_id"])
    op.create_index(
        "ix_balance_transactions_organizer_created", "balance_transactions", ["organizer_id", "created_at"]
    )
    op.create_index(
        "ix_balance_transactions_reference", "balance_transactions", ["reference_type", "reference_id"]
    )

    op.create_table(
        "event_cancellations",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("event_id", sa.Integer, sa.ForeignKey("events.id"), nullable=False),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("cancelled_by", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("hours_until_event", sa.Numeric(10, 2), nullable=False),
        sa.Column("refund_percentage", sa.Integer, nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_event_cancellations_event_id", "event_cancellations", ["event_id"])

    op.create_table(
        "refund_requests",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("cancellation_id", sa.Integer, sa.ForeignKey("event_cancellations.id"), nullable=False),
        sa.Column("registration_id", sa.Integer, sa.ForeignKey("registrations.id"), nullable=True),
        sa.Column("payment_id", sa.Integer, sa.ForeignKey("payments.id"), nullable=False),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("percentage", sa.Integer, nullable=False),
        sa.Column("reference", sa.String(length=64), nullable=False, unique=True),
        sa.Column("status", REFUND_STATUS, nullable=False),
        sa.Column("gateway_response", sa.JSON, nullable=True),
        sa.Column("failure_reason", sa.Text, nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_refund_requests_cancellation_id", "refund_requests", ["cancellation_id"])
    op.create_index("ix_refund_requests_payment_id", "refund_requests", ["payment_id"])
    op.create_index("ix_refund_requests_user_id", "refund_requests", ["user_id"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("kind", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("data", sa.JSON, nullable=True),
        sa.Column("recipient_email", sa.String(length=255), nullable=True),
        sa.Column("is_read", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])

    op.create_table(
        "gateway_webhook_events",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("event_key", sa.String(length=200), nullable=False),
        sa.Column("reference", sa.String(length=128), nullable=True),
        sa.Column("raw_json", sa.JSON, nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("outcome", sa.String(length=64), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("provider", "event_key", name="uq_gateway_webhook_events_provider_key"),
    )
    op.create_index("ix_gateway_webhook_events_processed", "gateway_webhook_events", ["processed_at"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.Integer, nullable=False),
        sa.Column("data_json", sa.JSON, nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity", "entity_id"])
    op.create_index("ix_audit_logs_action_at", "audit_logs", ["action", "at"])

    op.create_table(
        "scheduler_locks",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(length=64), nullable=False, unique=True),
        sa.Column("owner", sa.String(length=64), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )


def downgrade() -> None:
    for table in (
        "scheduler_locks",
        "audit_logs",
        "gateway_webhook_events",
        "notifications",
        "refund_requests",
        "event_cancellations",
        "balance_transactions",
        "disbursements",
        "payout_accounts",
        "registrations",
        "payment_status_history",
        "payments",
        "ticket_types",
        "events",
        "api_keys",
        "users",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for enum_type in (
        REFUND_STATUS,
        BALANCE_TX_KIND,
        BALANCE_TX_TYPE,
        PAYOUT_ACCOUNT_TYPE,
        DISBURSEMENT_STATUS,
        REGISTRATION_STATUS,
        PAYMENT_STATUS,
        EVENT_STATUS,
        USER_ROLE,
    ):
        enum_type.drop(bind, checkfirst=True)
