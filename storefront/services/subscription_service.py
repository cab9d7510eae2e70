from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import sqlalchemy as sa
from sqlmodel import Session, col

from storefront.domain.models import (
    EventEnvelope,
    SubscriptionInvoice,
    SubscriptionTier,
    TenantSubscription,
)
from storefront.domain.state_machine import (
    SubscriptionStatus,
    SubscriptionTrigger,
    next_status,
)
from storefront.infra.clock import as_utc
from storefront.infra.db import get_engine
from storefront.infra.events import SUBSCRIPTION_TRANSITIONED, event_bus
from storefront.services.errors import ConflictError, InvalidStateError, NotFoundError
from storefront.services.invoice_service import BILLING_PERIOD_DAYS


class SubscriptionService:
    """Applies state-machine transitions to tenant subscription records.

    Every write is a compare-and-set on ``(status, version)``; a record that
    moved underneath the caller raises ConflictError instead of being
    overwritten.
    """

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @staticmethod
    def get_record_in_session(session: Session, tenant_id: str) -> TenantSubscription:
        row = session.get(TenantSubscription, tenant_id)
        if row is None:
            raise NotFoundError("tenant subscription not found")
        return row

    def get_subscription(self, tenant_id: str) -> TenantSubscription:
        with self._session() as session:
            return self.get_record_in_session(session, tenant_id)

    @staticmethod
    def start_trial(session: Session, tenant_id: str, tier: SubscriptionTier, now: datetime) -> TenantSubscription:
        record = TenantSubscription(
            tenant_id=tenant_id,
            current_tier_id=tier.id,
            status=SubscriptionStatus.TRIAL,
            trial_ends_at=now + timedelta(days=tier.trial_days),
            created_at=now,
            updated_at=now,
        )
        session.add(record)
        return record

    @staticmethod
    def approval_changes(invoice: SubscriptionInvoice, now: datetime) -> dict[str, Any]:
        return {
            "current_tier_id": invoice.tier_id,
            "subscription_starts_at": now,
            "subscription_ends_at": now + timedelta(days=BILLING_PERIOD_DAYS),
        }

    @staticmethod
    def _state_fields(target: SubscriptionStatus, now: datetime) -> dict[str, Any]:
        if target == SubscriptionStatus.OVERDUE:
            return {"overdue_since": now, "is_payment_overdue": True}
        fields: dict[str, Any] = {"overdue_since": None}
        if target == SubscriptionStatus.SUSPENDED:
            fields.update(is_payment_overdue=True, suspended_at=now)
        elif target == SubscriptionStatus.PAUSED:
            fields.update(paused_at=now)
        elif target == SubscriptionStatus.CANCELLED:
            fields.update(cancelled_at=now)
        elif target == SubscriptionStatus.ACTIVE:
            fields.update(is_payment_overdue=False, suspended_at=None, paused_at=None)
        return fields

    def apply_transition(
        self,
        session: Session,
        record: TenantSubscription,
        trigger: SubscriptionTrigger,
        now: datetime,
        *,
        actor_id: str | None = None,
        changes: dict[str, Any] | None = None,
    ) -> EventEnvelope:
        source = record.status
        target = next_status(source, trigger)
        if target is None:
            raise InvalidStateError(f"{trigger.value} is not allowed from {source.value}")

        values = self._state_fields(target, now)
        if changes:
            values.update(changes)
        values.update(status=target, version=record.version + 1, updated_at=now)

        result = session.execute(
            sa.update(TenantSubscription)
            .where(col(TenantSubscription.tenant_id) == record.tenant_id)
            .where(col(TenantSubscription.status) == source)
            .where(col(TenantSubscription.version) == record.version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if getattr(result, "rowcount", None) != 1:
            raise ConflictError("tenant subscription changed concurrently")
        session.refresh(record)

        event = event_bus.build(
            SUBSCRIPTION_TRANSITIONED,
            record.tenant_id,
            {
                "from": source.value,
                "to": target.value,
                "trigger": trigger.value,
                "version": record.version,
            },
            actor_id=actor_id,
            ts=now,
        )
        return event_bus.record(session, event)

    @staticmethod
    def touch(session: Session, record: TenantSubscription, now: datetime) -> None:
        """Bump the version so concurrent writers of the same record conflict."""
        result = session.execute(
            sa.update(TenantSubscription)
            .where(col(TenantSubscription.tenant_id) == record.tenant_id)
            .where(col(TenantSubscription.status) == record.status)
            .where(col(TenantSubscription.version) == record.version)
            .values(version=record.version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if getattr(result, "rowcount", None) != 1:
            raise ConflictError("tenant subscription changed concurrently")
        session.refresh(record)

    @staticmethod
    def is_expired(record: TenantSubscription, now: datetime) -> bool:
        if record.status == SubscriptionStatus.TRIAL:
            return record.trial_ends_at is not None and as_utc(record.trial_ends_at) < now
        return record.subscription_ends_at is None or as_utc(record.subscription_ends_at) < now
