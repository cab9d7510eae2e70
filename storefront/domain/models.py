from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, ForeignKeyConstraint, Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel

from storefront.domain.state_machine import (
    InvoiceStatus,
    InvoiceType,
    SubscriptionStatus,
    SubscriptionTrigger,
)


def now_utc() -> datetime:
    return datetime.now(UTC)


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    tenant_id: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(index=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Tenant(SQLModel, table=True):
    __tablename__ = "tenants"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    country: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class User(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("tenant_id", "username", name="uq_users_tenant_username"),
        UniqueConstraint("tenant_id", "id", name="uq_users_tenant_id_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    username: str = Field(index=True)
    password_hash: str
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Role(SQLModel, table=True):
    __tablename__ = "roles"
    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_roles_tenant_name"),
        UniqueConstraint("tenant_id", "id", name="uq_roles_tenant_id_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    name: str = Field(index=True)
    description: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Permission(SQLModel, table=True):
    __tablename__ = "permissions"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    description: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class UserRole(SQLModel, table=True):
    __tablename__ = "user_roles"
    __table_args__ = (
        ForeignKeyConstraint(
            ["tenant_id", "user_id"],
            ["users.tenant_id", "users.id"],
            ondelete="CASCADE",
        ),
        ForeignKeyConstraint(
            ["tenant_id", "role_id"],
            ["roles.tenant_id", "roles.id"],
            ondelete="CASCADE",
        ),
        Index("ix_user_roles_tenant_user", "tenant_id", "user_id"),
        Index("ix_user_roles_tenant_role", "tenant_id", "role_id"),
    )

    tenant_id: str = Field(primary_key=True)
    user_id: str = Field(primary_key=True)
    role_id: str = Field(primary_key=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class RolePermission(SQLModel, table=True):
    __tablename__ = "role_permissions"

    role_id: str = Field(foreign_key="roles.id", primary_key=True)
    permission_id: str = Field(foreign_key="permissions.id", primary_key=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class SubscriptionTier(SQLModel, table=True):
    __tablename__ = "subscription_tiers"
    __table_args__ = (
        UniqueConstraint("country", "name", name="uq_subscription_tiers_country_name"),
        Index("ix_subscription_tiers_country_active", "country", "is_active"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True)
    country: str = Field(index=True)
    currency: str
    monthly_price_cents: int
    trial_days: int = Field(default=15)
    overdue_grace_days: int = Field(default=2)
    product_limit: int = Field(default=-1)
    order_limit_per_month: int = Field(default=-1)
    storage_limit_mb: int = Field(default=-1)
    tier_order: int = Field(default=0, index=True)
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class TenantSubscription(SQLModel, table=True):
    __tablename__ = "tenant_subscriptions"
    __table_args__ = (
        Index("ix_tenant_subscriptions_status_trial_ends", "status", "trial_ends_at"),
        Index("ix_tenant_subscriptions_status_ends", "status", "subscription_ends_at"),
    )

    tenant_id: str = Field(foreign_key="tenants.id", primary_key=True)
    current_tier_id: str = Field(foreign_key="subscription_tiers.id", index=True)
    status: SubscriptionStatus = Field(default=SubscriptionStatus.TRIAL, index=True)
    trial_ends_at: datetime | None = Field(default=None)
    subscription_starts_at: datetime | None = Field(default=None)
    subscription_ends_at: datetime | None = Field(default=None)
    overdue_since: datetime | None = Field(default=None, index=True)
    is_payment_overdue: bool = Field(default=False)
    suspended_at: datetime | None = None
    paused_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    version: int = Field(default=1)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class SubscriptionInvoice(SQLModel, table=True):
    __tablename__ = "subscription_invoices"
    __table_args__ = (
        Index("ix_subscription_invoices_tenant_status", "tenant_id", "status"),
        Index(
            "uq_subscription_invoices_open_period",
            "tenant_id",
            "invoice_type",
            "billing_period_start",
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'SUBMITTED')"),
            sqlite_where=text("status IN ('PENDING', 'SUBMITTED')"),
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    tier_id: str = Field(foreign_key="subscription_tiers.id", index=True)
    previous_tier_id: str | None = Field(default=None)
    invoice_number: str = Field(index=True, unique=True)
    invoice_type: InvoiceType = Field(index=True)
    amount_cents: int
    currency: str
    status: InvoiceStatus = Field(default=InvoiceStatus.PENDING, index=True)
    due_date: datetime
    billing_period_start: datetime = Field(index=True)
    billing_period_end: datetime
    receipt_ref: str | None = None
    reviewer_notes: str | None = None
    reviewed_by: str | None = None
    submitted_at: datetime | None = None
    reviewed_at: datetime | None = None
    created_by: str = Field(default="system")
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class InvoiceNumberSequence(SQLModel, table=True):
    __tablename__ = "invoice_number_sequences"

    period: str = Field(primary_key=True)
    last_value: int = Field(default=0)
    updated_at: datetime = Field(default_factory=now_utc)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    tenant_id: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class TenantCreate(BaseModel):
    name: str
    country: str
    tier_id: str | None = None


class TenantRead(ORMReadModel):
    id: str
    name: str
    country: str | None = None
    created_at: datetime


class UserRead(ORMReadModel):
    id: str
    tenant_id: str
    username: str
    is_active: bool
    created_at: datetime


class DevLoginRequest(BaseModel):
    tenant_id: str
    username: str
    password: str


class BootstrapAdminRequest(BaseModel):
    tenant_id: str
    username: str
    password: str


class PlatformOperatorBootstrapRequest(BaseModel):
    bootstrap_secret: str
    username: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    permissions: list[str]


class SubscriptionTierCreate(BaseModel):
    name: str
    country: str
    currency: str
    monthly_price_cents: int = PydanticField(ge=0)
    trial_days: int = PydanticField(default=15, ge=0)
    overdue_grace_days: int = PydanticField(default=2, ge=0)
    product_limit: int = PydanticField(default=-1, ge=-1)
    order_limit_per_month: int = PydanticField(default=-1, ge=-1)
    storage_limit_mb: int = PydanticField(default=-1, ge=-1)
    tier_order: int = 0
    is_active: bool = True


class SubscriptionTierUpdate(BaseModel):
    is_active: bool


class SubscriptionTierRead(ORMReadModel):
    id: str
    name: str
    country: str
    currency: str
    monthly_price_cents: int
    trial_days: int
    overdue_grace_days: int
    product_limit: int
    order_limit_per_month: int
    storage_limit_mb: int
    tier_order: int
    is_active: bool
    created_at: datetime
    updated_at: datetime


class TenantSubscriptionRead(ORMReadModel):
    tenant_id: str
    current_tier_id: str
    status: SubscriptionStatus
    trial_ends_at: datetime | None = None
    subscription_starts_at: datetime | None = None
    subscription_ends_at: datetime | None = None
    overdue_since: datetime | None = None
    is_payment_overdue: bool
    suspended_at: datetime | None = None
    paused_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    version: int
    created_at: datetime
    updated_at: datetime


class SubscriptionInvoiceRead(ORMReadModel):
    id: str
    tenant_id: str
    tier_id: str
    previous_tier_id: str | None = None
    invoice_number: str
    invoice_type: InvoiceType
    amount_cents: int
    currency: str
    status: InvoiceStatus
    due_date: datetime
    billing_period_start: datetime
    billing_period_end: datetime
    receipt_ref: str | None = None
    reviewer_notes: str | None = None
    reviewed_by: str | None = None
    submitted_at: datetime | None = None
    reviewed_at: datetime | None = None
    created_by: str
    created_at: datetime
    updated_at: datetime


class InvoiceSubmitRequest(BaseModel):
    receipt_ref: str


class InvoiceApproveRequest(BaseModel):
    reviewer_notes: str | None = None


class InvoiceRejectRequest(BaseModel):
    reviewer_notes: str


class InvoiceDecisionRead(BaseModel):
    invoice: SubscriptionInvoiceRead
    subscription: TenantSubscriptionRead


class TierChangeRequest(BaseModel):
    new_tier_id: str


class SubscriptionCancelRequest(BaseModel):
    reason: str | None = None


class TierLimitKey(StrEnum):
    PRODUCTS = "products"
    ORDERS_PER_MONTH = "orders_per_month"
    STORAGE_MB = "storage_mb"


class TierLimitCheckRequest(BaseModel):
    limit_key: TierLimitKey
    current_usage: int = PydanticField(ge=0)
    requested: int = PydanticField(default=1, ge=0)


class TierLimitCheckRead(BaseModel):
    tenant_id: str
    tier_id: str
    limit_key: TierLimitKey
    limit: int
    current_usage: int
    requested: int
    unlimited: bool
    allowed: bool
    remaining: int | None = None


class AutomationRunRequest(BaseModel):
    trial_lookahead_days: int | None = PydanticField(default=None, ge=0)
    renewal_lookahead_days: int | None = PydanticField(default=None, ge=0)


class AutomationErrorRead(BaseModel):
    tenant_id: str
    stage: str
    message: str


class AutomationRunRead(BaseModel):
    as_of: datetime
    invoices_created: dict[InvoiceType, int] = PydanticField(default_factory=dict)
    transitions: dict[SubscriptionTrigger, int] = PydanticField(default_factory=dict)
    skipped_duplicates: int = 0
    skipped_concurrent: int = 0
    errors: list[AutomationErrorRead] = PydanticField(default_factory=list)
