from __future__ import annotations

import os
from datetime import datetime, timedelta

from sqlmodel import Session

from storefront.domain.models import (
    EventEnvelope,
    SubscriptionCancelRequest,
    SubscriptionInvoice,
    TenantSubscription,
    TierChangeRequest,
)
from storefront.domain.state_machine import (
    InvoiceType,
    SubscriptionStatus,
    SubscriptionTrigger,
)
from storefront.infra.clock import Clock, as_utc, system_clock
from storefront.infra.db import get_engine
from storefront.infra.events import INVOICE_ISSUED, event_bus
from storefront.services.errors import (
    DuplicateInvoiceError,
    ExpiredSubscriptionError,
    InvalidStateError,
    ValidationError,
)
from storefront.services.invoice_service import InvoiceDraft, InvoiceService
from storefront.services.subscription_service import SubscriptionService
from storefront.services.tier_service import TierService

TIER_CHANGE_DUE_DAYS = int(os.getenv("SUBSCRIPTION_TIER_CHANGE_DUE_DAYS", "7"))

TIER_CHANGE_TYPES = (InvoiceType.UPGRADE, InvoiceType.DOWNGRADE)
RENEWABLE_STATUSES = {
    SubscriptionStatus.TRIAL,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.OVERDUE,
    SubscriptionStatus.SUSPENDED,
    SubscriptionStatus.PAUSED,
}


def issued_event(invoice: SubscriptionInvoice, actor_id: str | None, now: datetime) -> EventEnvelope:
    return event_bus.build(
        INVOICE_ISSUED,
        invoice.tenant_id,
        {
            "invoice_id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "invoice_type": invoice.invoice_type.value,
            "amount_cents": invoice.amount_cents,
            "currency": invoice.currency,
        },
        actor_id=actor_id,
        ts=now,
    )


class OwnerActionService:
    """Self-service actions a tenant owner can take on their own subscription."""

    def __init__(
        self,
        clock: Clock = system_clock,
        invoices: InvoiceService | None = None,
        subscriptions: SubscriptionService | None = None,
    ) -> None:
        self._clock = clock
        self._invoices = invoices or InvoiceService()
        self._subscriptions = subscriptions or SubscriptionService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def request_tier_change(
        self,
        tenant_id: str,
        actor_id: str,
        payload: TierChangeRequest,
    ) -> SubscriptionInvoice:
        with self._session() as session:
            now = self._clock()
            record = self._subscriptions.get_record_in_session(session, tenant_id)
            if record.status not in {SubscriptionStatus.ACTIVE, SubscriptionStatus.OVERDUE}:
                raise InvalidStateError(f"tier change is not allowed from {record.status.value}")

            current_tier = TierService.get_tier_in_session(session, record.current_tier_id)
            new_tier = TierService.get_tier_in_session(session, payload.new_tier_id)
            if new_tier.id == current_tier.id:
                raise ValidationError("tenant is already on this tier")
            if not new_tier.is_active:
                raise ValidationError("requested tier is not available")
            if new_tier.country != current_tier.country:
                raise ValidationError("requested tier belongs to another country")
            if new_tier.monthly_price_cents == current_tier.monthly_price_cents:
                raise ValidationError("requested tier has the same price as the current tier")
            if new_tier.monthly_price_cents > current_tier.monthly_price_cents:
                invoice_type = InvoiceType.UPGRADE
            else:
                invoice_type = InvoiceType.DOWNGRADE

            existing = self._invoices.find_open_invoice(session, tenant_id, TIER_CHANGE_TYPES)
            if existing is not None:
                raise DuplicateInvoiceError(
                    f"tier change invoice {existing.invoice_number} is still {existing.status.value}"
                )

            invoice = self._invoices.issue_invoice(
                session,
                InvoiceDraft(
                    tenant_id=tenant_id,
                    tier=new_tier,
                    invoice_type=invoice_type,
                    period_start=now,
                    due_date=now + timedelta(days=TIER_CHANGE_DUE_DAYS),
                    previous_tier_id=current_tier.id,
                    created_by=actor_id,
                ),
                now,
            )
            self._subscriptions.touch(session, record, now)
            event = event_bus.record(session, issued_event(invoice, actor_id, now))
            session.commit()
        event_bus.dispatch([event])
        return invoice

    def _renewal_draft(self, session: Session, record: TenantSubscription, actor_id: str, now: datetime) -> InvoiceDraft:
        tier = TierService.get_tier_in_session(session, record.current_tier_id)
        if record.status == SubscriptionStatus.TRIAL and record.trial_ends_at is not None:
            trial_ends_at = as_utc(record.trial_ends_at)
            start = max(trial_ends_at, now)
            return InvoiceDraft(
                tenant_id=record.tenant_id,
                tier=tier,
                invoice_type=InvoiceType.TRIAL_CONVERSION,
                period_start=start,
                due_date=start,
                created_by=actor_id,
            )

        if record.status == SubscriptionStatus.ACTIVE and record.subscription_ends_at is not None:
            ends_at = as_utc(record.subscription_ends_at)
            if ends_at > now:
                return InvoiceDraft(
                    tenant_id=record.tenant_id,
                    tier=tier,
                    invoice_type=InvoiceType.RENEWAL,
                    period_start=ends_at,
                    due_date=ends_at,
                    created_by=actor_id,
                )
        return InvoiceDraft(
            tenant_id=record.tenant_id,
            tier=tier,
            invoice_type=InvoiceType.RENEWAL,
            period_start=now,
            due_date=now + timedelta(days=TIER_CHANGE_DUE_DAYS),
            created_by=actor_id,
        )

    def request_renewal(self, tenant_id: str, actor_id: str) -> SubscriptionInvoice:
        with self._session() as session:
            now = self._clock()
            record = self._subscriptions.get_record_in_session(session, tenant_id)
            if record.status not in RENEWABLE_STATUSES:
                raise InvalidStateError(f"renewal is not allowed from {record.status.value}")

            draft = self._renewal_draft(session, record, actor_id, now)
            period_start_from = None
            if record.status == SubscriptionStatus.ACTIVE and record.subscription_ends_at is not None:
                period_start_from = as_utc(record.subscription_ends_at)
            existing = self._invoices.find_open_invoice(
                session,
                tenant_id,
                (InvoiceType.TRIAL_CONVERSION, InvoiceType.RENEWAL),
                period_start_from=period_start_from,
            )
            if existing is not None:
                raise DuplicateInvoiceError(
                    f"payment invoice {existing.invoice_number} is still {existing.status.value}"
                )

            invoice = self._invoices.issue_invoice(session, draft, now)
            self._subscriptions.touch(session, record, now)
            event = event_bus.record(session, issued_event(invoice, actor_id, now))
            session.commit()
        event_bus.dispatch([event])
        return invoice

    def pause(self, tenant_id: str, actor_id: str) -> TenantSubscription:
        with self._session() as session:
            now = self._clock()
            record = self._subscriptions.get_record_in_session(session, tenant_id)
            if record.status != SubscriptionStatus.ACTIVE:
                raise InvalidStateError(f"pause is not allowed from {record.status.value}")
            if self._subscriptions.is_expired(record, now):
                raise InvalidStateError("Cannot pause - subscription already expired")
            event = self._subscriptions.apply_transition(
                session,
                record,
                SubscriptionTrigger.PAUSE_REQUESTED,
                now,
                actor_id=actor_id,
            )
            session.commit()
        event_bus.dispatch([event])
        return record

    def resume(self, tenant_id: str, actor_id: str) -> TenantSubscription:
        with self._session() as session:
            now = self._clock()
            record = self._subscriptions.get_record_in_session(session, tenant_id)
            if record.status != SubscriptionStatus.PAUSED:
                raise InvalidStateError(f"resume is not allowed from {record.status.value}")
            if self._subscriptions.is_expired(record, now):
                raise ExpiredSubscriptionError("Cannot resume - subscription expired, please renew")
            event = self._subscriptions.apply_transition(
                session,
                record,
                SubscriptionTrigger.RESUME_REQUESTED,
                now,
                actor_id=actor_id,
            )
            session.commit()
        event_bus.dispatch([event])
        return record

    def cancel(self, tenant_id: str, actor_id: str, payload: SubscriptionCancelRequest) -> TenantSubscription:
        reason = payload.reason.strip() if payload.reason else None
        with self._session() as session:
            now = self._clock()
            record = self._subscriptions.get_record_in_session(session, tenant_id)
            event = self._subscriptions.apply_transition(
                session,
                record,
                SubscriptionTrigger.CANCEL_REQUESTED,
                now,
                actor_id=actor_id,
                changes={"cancellation_reason": reason},
            )
            session.commit()
        event_bus.dispatch([event])
        return record
