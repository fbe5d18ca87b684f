"""Create billing, subscription, entitlement and webhook tables.

Revision ID: a1c0e7b2d9f4
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "a1c0e7b2d9f4"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps(updated: bool = True) -> list[sa.Column]:
    columns = [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        )
    ]
    if updated:
        columns.append(
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.text("now()"),
            )
        )
    return columns


def upgrade() -> None:
    product_type = sa.Enum("subscription", "job_post", "course", name="producttype")
    plan_cycle = sa.Enum("monthly", "quarterly", "yearly", name="plancycle")
    payment_status = sa.Enum(
        "pending", "paid", "failed", "refunded", "refunded_partial", name="paymentstatus"
    )
    invoice_type = sa.Enum("sale", "refund", name="invoicetype")
    invoice_status = sa.Enum("paid", "void", "refunded", name="invoicestatus")
    subscription_status = sa.Enum(
        "active", "renewing", "canceled", "expired", name="subscriptionstatus"
    )
    entitlement_key = sa.Enum("can_publish_profile", "job_post_credit", name="entitlementkey")
    webhook_log_status = sa.Enum(
        "received", "handled", "invalid", "failed", name="webhooklogstatus"
    )
    event_status = sa.Enum("pending", "processing", "completed", "failed", name="eventstatus")

    # Catalog
    op.create_table(
        "products",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(160), nullable=False),
        sa.Column("type", product_type, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_table(
        "plans",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "product_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("products.id"),
            nullable=False,
        ),
        sa.Column("code", sa.String(80), nullable=False, unique=True),
        sa.Column("name", sa.String(160), nullable=False),
        sa.Column("cycle", plan_cycle, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_table(
        "prices",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "product_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("products.id"),
            nullable=False,
        ),
        sa.Column("plan_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("plans.id"), nullable=True),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="IRR"),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_table(
        "checkout_sessions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "price_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("prices.id"),
            nullable=False,
        ),
        sa.Column("provider", sa.String(40), nullable=False),
        sa.Column("provider_payload", postgresql.JSONB, nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_checkout_sessions_user_id", "checkout_sessions", ["user_id"])

    # Ledger
    op.create_table(
        "payments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "checkout_session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("checkout_sessions.id"),
            nullable=True,
        ),
        sa.Column("provider", sa.String(40), nullable=False),
        sa.Column("provider_ref", sa.String(191), nullable=False),
        sa.Column("status", payment_status, nullable=False, server_default="pending"),
        sa.Column("amount", sa.BigInteger, nullable=False),
        sa.Column("refunded_amount", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="IRR"),
        *_timestamps(),
        sa.Column("version_id", sa.Integer, nullable=False, server_default="1"),
        sa.UniqueConstraint("provider", "provider_ref", name="uq_payments_provider_ref"),
    )
    op.create_index("ix_payments_user_id", "payments", ["user_id"])

    op.create_table(
        "invoices",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "payment_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("payments.id"),
            nullable=True,
            unique=True,
        ),
        sa.Column(
            "related_invoice_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("invoices.id"),
            nullable=True,
        ),
        sa.Column("number", sa.String(40), nullable=True, unique=True),
        sa.Column("type", invoice_type, nullable=False, server_default="sale"),
        sa.Column("status", invoice_status, nullable=False, server_default="paid"),
        sa.Column("total", sa.BigInteger, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="IRR"),
        sa.Column(
            "issued_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("provider_ref", sa.String(191), nullable=True),
        sa.Column("plan_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("plans.id"), nullable=True),
        sa.Column("plan_name", sa.String(160), nullable=True),
        sa.Column("plan_cycle", sa.String(20), nullable=True),
        sa.Column("unit_amount", sa.BigInteger, nullable=True),
        sa.Column("quantity", sa.Integer, nullable=False, server_default="1"),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        *_timestamps(),
        sa.Column("version_id", sa.Integer, nullable=False, server_default="1"),
    )
    op.create_index("ix_invoices_user_id", "invoices", ["user_id"])

    op.create_table(
        "invoice_sequences",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("day", sa.Date, nullable=False),
        sa.Column("counter", sa.Integer, nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("day", name="uq_invoice_sequences_day"),
    )

    # Subscriptions and entitlements
    op.create_table(
        "subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("plan_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("plans.id"), nullable=False),
        sa.Column("status", subscription_status, nullable=False, server_default="active"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("renewal_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "cancel_at_period_end", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column("provider_ref", sa.String(191), nullable=True),
        *_timestamps(),
        sa.Column("version_id", sa.Integer, nullable=False, server_default="1"),
        sa.UniqueConstraint("user_id", name="uq_subscriptions_user_id"),
        sa.CheckConstraint("ends_at >= started_at", name="ck_subscriptions_period_order"),
    )

    op.create_table(
        "user_entitlements",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("key", entitlement_key, nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("remaining_credits", sa.Integer, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "key", name="uq_user_entitlements_user_key"),
    )
    op.create_index("ix_user_entitlements_user_id", "user_entitlements", ["user_id"])

    op.create_table(
        "job_credit_grants",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "payment_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("payments.id"),
            nullable=False,
        ),
        sa.Column("credits", sa.Integer, nullable=False),
        sa.Column("reason", sa.String(120), nullable=True),
        *_timestamps(updated=False),
        sa.UniqueConstraint("payment_id", name="uq_job_credit_grants_payment_id"),
    )
    op.create_index("ix_job_credit_grants_user_id", "job_credit_grants", ["user_id"])

    # Audit, webhooks and events
    op.create_table(
        "audit_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("actor_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("actor_email", sa.String(255), nullable=True),
        sa.Column("resource_type", sa.String(60), nullable=False),
        sa.Column("resource_id", sa.String(120), nullable=False),
        sa.Column("action", sa.String(80), nullable=False),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("before", postgresql.JSONB, nullable=True),
        sa.Column("after", postgresql.JSONB, nullable=True),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        sa.Column("idempotency_key", sa.String(191), nullable=True, unique=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"])
    op.create_index("ix_audit_logs_resource_id", "audit_logs", ["resource_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])

    op.create_table(
        "webhook_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("provider", sa.String(40), nullable=False),
        sa.Column("external_id", sa.String(191), nullable=False),
        sa.Column("event_type", sa.String(120), nullable=True),
        sa.Column("signature", sa.String(512), nullable=True),
        sa.Column("payload", postgresql.JSONB, nullable=True),
        sa.Column("status", webhook_log_status, nullable=False, server_default="received"),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column(
            "payment_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("payments.id"),
            nullable=True,
        ),
        sa.Column("handled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
        sa.UniqueConstraint(
            "provider", "external_id", name="uq_webhook_logs_provider_external_id"
        ),
    )

    op.create_table(
        "billing_event_store",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_id", postgresql.UUID(as_uuid=True), nullable=False, unique=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("status", event_status, nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actor", sa.String(255), nullable=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("plan_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("payment_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("invoice_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("failed_handlers", postgresql.JSONB, nullable=True),
        *_timestamps(),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_billing_event_store_event_id", "billing_event_store", ["event_id"])
    op.create_index("ix_billing_event_store_event_type", "billing_event_store", ["event_type"])
    op.create_index("ix_billing_event_store_status", "billing_event_store", ["status"])
    op.create_index("ix_billing_event_store_user_id", "billing_event_store", ["user_id"])


def downgrade() -> None:
    op.drop_table("billing_event_store")
    op.drop_table("webhook_logs")
    op.drop_table("audit_logs")
    op.drop_table("job_credit_grants")
    op.drop_table("user_entitlements")
    op.drop_table("subscriptions")
    op.drop_table("invoice_sequences")
    op.drop_table("invoices")
    op.drop_table("payments")
    op.drop_table("checkout_sessions")
    op.drop_table("prices")
    op.drop_table("plans")
    op.drop_table("products")

    bind = op.get_bind()
    for enum_name in (
        "eventstatus",
        "webhooklogstatus",
        "entitlementkey",
        "subscriptionstatus",
        "invoicestatus",
        "invoicetype",
        "paymentstatus",
        "plancycle",
        "producttype",
    ):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
