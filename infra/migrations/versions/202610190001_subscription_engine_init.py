"""subscription engine tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610190001"
down_revision = None
branch_labels = None
depends_on = None

OPEN_INVOICE_PREDICATE = "status IN ('PENDING', 'SUBMITTED')"


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_events_event_type", "events", ["event_type"])
    op.create_index("ix_events_tenant_id", "events", ["tenant_id"])
    op.create_index("ix_events_ts", "events", ["ts"])
    op.create_index("ix_events_actor_id", "events", ["actor_id"])
    op.create_index("ix_events_correlation_id", "events", ["correlation_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("resource", sa.String(), nullable=False),
        sa.Column("method", sa.String(), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("detail", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_tenant_id", "audit_logs", ["tenant_id"])
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"])
    op.create_index("ix_audit_logs_ts", "audit_logs", ["ts"])

    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("country", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )
    op.create_index("ix_tenants_name", "tenants", ["name"])
    op.create_index("ix_tenants_country", "tenants", ["country"])
    op.create_index("ix_tenants_created_at", "tenants", ["created_at"])

    op.create_table(
        "permissions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )
    op.create_index("ix_permissions_name", "permissions", ["name"])
    op.create_index("ix_permissions_created_at", "permissions", ["created_at"])

    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("password_hash", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "username", name="uq_users_tenant_username"),
        sa.UniqueConstraint("tenant_id", "id", name="uq_users_tenant_id_id"),
    )
    op.create_index("ix_users_tenant_id", "users", ["tenant_id"])
    op.create_index("ix_users_username", "users", ["username"])
    op.create_index("ix_users_created_at", "users", ["created_at"])

    op.create_table(
        "roles",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "name", name="uq_roles_tenant_name"),
        sa.UniqueConstraint("tenant_id", "id", name="uq_roles_tenant_id_id"),
    )
    op.create_index("ix_roles_tenant_id", "roles", ["tenant_id"])
    op.create_index("ix_roles_name", "roles", ["name"])
    op.create_index("ix_roles_created_at", "roles", ["created_at"])

    op.create_table(
        "user_roles",
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("role_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["tenant_id", "user_id"],
            ["users.tenant_id", "users.id"],
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["tenant_id", "role_id"],
            ["roles.tenant_id", "roles.id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("tenant_id", "user_id", "role_id"),
    )
    op.create_index("ix_user_roles_tenant_user", "user_roles", ["tenant_id", "user_id"])
    op.create_index("ix_user_roles_tenant_role", "user_roles", ["tenant_id", "role_id"])
    op.create_index("ix_user_roles_created_at", "user_roles", ["created_at"])

    op.create_table(
        "role_permissions",
        sa.Column("role_id", sa.String(), nullable=False),
        sa.Column("permission_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["permission_id"], ["permissions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("role_id", "permission_id"),
    )
    op.create_index("ix_role_permissions_created_at", "role_permissions", ["created_at"])

    op.create_table(
        "subscription_tiers",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("country", sa.String(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("monthly_price_cents", sa.Integer(), nullable=False),
        sa.Column("trial_days", sa.Integer(), nullable=False),
        sa.Column("overdue_grace_days", sa.Integer(), nullable=False),
        sa.Column("product_limit", sa.Integer(), nullable=False),
        sa.Column("order_limit_per_month", sa.Integer(), nullable=False),
        sa.Column("storage_limit_mb", sa.Integer(), nullable=False),
        sa.Column("tier_order", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("country", "name", name="uq_subscription_tiers_country_name"),
    )
    op.create_index("ix_subscription_tiers_name", "subscription_tiers", ["name"])
    op.create_index("ix_subscription_tiers_country", "subscription_tiers", ["country"])
    op.create_index("ix_subscription_tiers_tier_order", "subscription_tiers", ["tier_order"])
    op.create_index("ix_subscription_tiers_is_active", "subscription_tiers", ["is_active"])
    op.create_index("ix_subscription_tiers_created_at", "subscription_tiers", ["created_at"])
    op.create_index("ix_subscription_tiers_updated_at", "subscription_tiers", ["updated_at"])
    op.create_index("ix_subscription_tiers_country_active", "subscription_tiers", ["country", "is_active"])

    op.create_table(
        "tenant_subscriptions",
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("current_tier_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("overdue_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_payment_overdue", sa.Boolean(), nullable=False),
        sa.Column("suspended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.String(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["current_tier_id"], ["subscription_tiers.id"]),
        sa.PrimaryKeyConstraint("tenant_id"),
    )
    op.create_index("ix_tenant_subscriptions_current_tier_id", "tenant_subscriptions", ["current_tier_id"])
    op.create_index("ix_tenant_subscriptions_status", "tenant_subscriptions", ["status"])
    op.create_index("ix_tenant_subscriptions_overdue_since", "tenant_subscriptions", ["overdue_since"])
    op.create_index("ix_tenant_subscriptions_created_at", "tenant_subscriptions", ["created_at"])
    op.create_index("ix_tenant_subscriptions_updated_at", "tenant_subscriptions", ["updated_at"])
    op.create_index(
        "ix_tenant_subscriptions_status_trial_ends",
        "tenant_subscriptions",
        ["status", "trial_ends_at"],
    )
    op.create_index(
        "ix_tenant_subscriptions_status_ends",
        "tenant_subscriptions",
        ["status", "subscription_ends_at"],
    )

    op.create_table(
        "subscription_invoices",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("tier_id", sa.String(), nullable=False),
        sa.Column("previous_tier_id", sa.String(), nullable=True),
        sa.Column("invoice_number", sa.String(), nullable=False),
        sa.Column("invoice_type", sa.String(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("billing_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("billing_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("receipt_ref", sa.String(), nullable=True),
        sa.Column("reviewer_notes", sa.String(), nullable=True),
        sa.Column("reviewed_by", sa.String(), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["tier_id"], ["subscription_tiers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("invoice_number"),
    )
    op.create_index("ix_subscription_invoices_tenant_id", "subscription_invoices", ["tenant_id"])
    op.create_index("ix_subscription_invoices_tier_id", "subscription_invoices", ["tier_id"])
    op.create_index("ix_subscription_invoices_invoice_number", "subscription_invoices", ["invoice_number"])
    op.create_index("ix_subscription_invoices_invoice_type", "subscription_invoices", ["invoice_type"])
    op.create_index("ix_subscription_invoices_status", "subscription_invoices", ["status"])
    op.create_index(
        "ix_subscription_invoices_billing_period_start",
        "subscription_invoices",
        ["billing_period_start"],
    )
    op.create_index("ix_subscription_invoices_created_at", "subscription_invoices", ["created_at"])
    op.create_index("ix_subscription_invoices_updated_at", "subscription_invoices", ["updated_at"])
    op.create_index("ix_subscription_invoices_tenant_status", "subscription_invoices", ["tenant_id", "status"])
    op.create_index(
        "uq_subscription_invoices_open_period",
        "subscription_invoices",
        ["tenant_id", "invoice_type", "billing_period_start"],
        unique=True,
        postgresql_where=sa.text(OPEN_INVOICE_PREDICATE),
        sqlite_where=sa.text(OPEN_INVOICE_PREDICATE),
    )

    op.create_table(
        "invoice_number_sequences",
        sa.Column("period", sa.String(), nullable=False),
        sa.Column("last_value", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("period"),
    )


def downgrade() -> None:
    op.drop_table("invoice_number_sequences")

    op.drop_index("uq_subscription_invoices_open_period", table_name="subscription_invoices")
    op.drop_index("ix_subscription_invoices_tenant_status", table_name="subscription_invoices")
    op.drop_index("ix_subscription_invoices_updated_at", table_name="subscription_invoices")
    op.drop_index("ix_subscription_invoices_created_at", table_name="subscription_invoices")
    op.drop_index("ix_subscription_invoices_billing_period_start", table_name="subscription_invoices")
    op.drop_index("ix_subscription_invoices_status", table_name="subscription_invoices")
    op.drop_index("ix_subscription_invoices_invoice_type", table_name="subscription_invoices")
    op.drop_index("ix_subscription_invoices_invoice_number", table_name="subscription_invoices")
    op.drop_index("ix_subscription_invoices_tier_id", table_name="subscription_invoices")
    op.drop_index("ix_subscription_invoices_tenant_id", table_name="subscription_invoices")
    op.drop_table("subscription_invoices")

    op.drop_index("ix_tenant_subscriptions_status_ends", table_name="tenant_subscriptions")
    op.drop_index("ix_tenant_subscriptions_status_trial_ends", table_name="tenant_subscriptions")
    op.drop_index("ix_tenant_subscriptions_updated_at", table_name="tenant_subscriptions")
    op.drop_index("ix_tenant_subscriptions_created_at", table_name="tenant_subscriptions")
    op.drop_index("ix_tenant_subscriptions_overdue_since", table_name="tenant_subscriptions")
    op.drop_index("ix_tenant_subscriptions_status", table_name="tenant_subscriptions")
    op.drop_index("ix_tenant_subscriptions_current_tier_id", table_name="tenant_subscriptions")
    op.drop_table("tenant_subscriptions")

    op.drop_index("ix_subscription_tiers_country_active", table_name="subscription_tiers")
    op.drop_index("ix_subscription_tiers_updated_at", table_name="subscription_tiers")
    op.drop_index("ix_subscription_tiers_created_at", table_name="subscription_tiers")
    op.drop_index("ix_subscription_tiers_is_active", table_name="subscription_tiers")
    op.drop_index("ix_subscription_tiers_tier_order", table_name="subscription_tiers")
    op.drop_index("ix_subscription_tiers_country", table_name="subscription_tiers")
    op.drop_index("ix_subscription_tiers_name", table_name="subscription_tiers")
    op.drop_table("subscription_tiers")

    op.drop_index("ix_role_permissions_created_at", table_name="role_permissions")
    op.drop_table("role_permissions")

    op.drop_index("ix_user_roles_created_at", table_name="user_roles")
    op.drop_index("ix_user_roles_tenant_role", table_name="user_roles")
    op.drop_index("ix_user_roles_tenant_user", table_name="user_roles")
    op.drop_table("user_roles")

    op.drop_index("ix_roles_created_at", table_name="roles")
    op.drop_index("ix_roles_name", table_name="roles")
    op.drop_index("ix_roles_tenant_id", table_name="roles")
    op.drop_table("roles")

    op.drop_index("ix_users_created_at", table_name="users")
    op.drop_index("ix_users_username", table_name="users")
    op.drop_index("ix_users_tenant_id", table_name="users")
    op.drop_table("users")

    op.drop_index("ix_permissions_created_at", table_name="permissions")
    op.drop_index("ix_permissions_name", table_name="permissions")
    op.drop_table("permissions")

    op.drop_index("ix_tenants_created_at", table_name="tenants")
    op.drop_index("ix_tenants_country", table_name="tenants")
    op.drop_index("ix_tenants_name", table_name="tenants")
    op.drop_table("tenants")

    op.drop_index("ix_audit_logs_ts", table_name="audit_logs")
    op.drop_index("ix_audit_logs_actor_id", table_name="audit_logs")
    op.drop_index("ix_audit_logs_tenant_id", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("ix_events_correlation_id", table_name="events")
    op.drop_index("ix_events_actor_id", table_name="events")
    op.drop_index("ix_events_ts", table_name="events")
    op.drop_index("ix_events_tenant_id", table_name="events")
    op.drop_index("ix_events_event_type", table_name="events")
    op.drop_table("events")
