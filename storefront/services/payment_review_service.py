from __future__ import annotations

import logging
from datetime import datetime

from sqlmodel import Session

from storefront.domain.models import (
    EventEnvelope,
    InvoiceApproveRequest,
    InvoiceRejectRequest,
    InvoiceSubmitRequest,
    SubscriptionInvoice,
    TenantSubscription,
)
from storefront.domain.state_machine import APPROVAL_TRIGGERS, InvoiceStatus
from storefront.infra.clock import Clock, system_clock
from storefront.infra.db import get_engine
from storefront.infra.events import (
    INVOICE_APPROVED,
    INVOICE_REJECTED,
    INVOICE_SUBMITTED,
    event_bus,
)
from storefront.services.errors import NotFoundError, ValidationError
from storefront.services.invoice_service import InvoiceService
from storefront.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


class PaymentReviewService:
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

    def _load_invoice(self, session: Session, invoice_id: str, tenant_id: str | None) -> SubscriptionInvoice:
        invoice = self._invoices.get_invoice_in_session(session, invoice_id)
        if tenant_id is not None and invoice.tenant_id != tenant_id:
            raise NotFoundError("subscription invoice not found")
        return invoice

    @staticmethod
    def _invoice_event(event_type: str, invoice: SubscriptionInvoice, actor_id: str, now: datetime) -> EventEnvelope:
        return event_bus.build(
            event_type,
            invoice.tenant_id,
            {
                "invoice_id": invoice.id,
                "invoice_number": invoice.invoice_number,
                "invoice_type": invoice.invoice_type.value,
                "status": invoice.status.value,
            },
            actor_id=actor_id,
            ts=now,
        )

    def submit_invoice(
        self,
        invoice_id: str,
        actor_id: str,
        payload: InvoiceSubmitRequest,
        *,
        tenant_id: str | None = None,
    ) -> SubscriptionInvoice:
        receipt_ref = payload.receipt_ref.strip()
        if not receipt_ref:
            raise ValidationError("receipt_ref cannot be empty")

        with self._session() as session:
            now = self._clock()
            invoice = self._load_invoice(session, invoice_id, tenant_id)
            self._invoices.transition_invoice(
                session,
                invoice,
                InvoiceStatus.SUBMITTED,
                now,
                receipt_ref=receipt_ref,
                submitted_at=now,
            )
            event = event_bus.record(session, self._invoice_event(INVOICE_SUBMITTED, invoice, actor_id, now))
            session.commit()
        event_bus.dispatch([event])
        return invoice

    def approve_invoice(
        self,
        invoice_id: str,
        reviewer_id: str,
        payload: InvoiceApproveRequest,
    ) -> tuple[SubscriptionInvoice, TenantSubscription]:
        with self._session() as session:
            now = self._clock()
            invoice = self._load_invoice(session, invoice_id, None)
            record = self._subscriptions.get_record_in_session(session, invoice.tenant_id)
            notes = payload.reviewer_notes.strip() if payload.reviewer_notes else None

            self._invoices.transition_invoice(
                session,
                invoice,
                InvoiceStatus.APPROVED,
                now,
                reviewed_by=reviewer_id,
                reviewed_at=now,
                reviewer_notes=notes,
            )
            transition = self._subscriptions.apply_transition(
                session,
                record,
                APPROVAL_TRIGGERS[invoice.invoice_type],
                now,
                actor_id=reviewer_id,
                changes=self._subscriptions.approval_changes(invoice, now),
            )
            approved = event_bus.record(session, self._invoice_event(INVOICE_APPROVED, invoice, reviewer_id, now))
            session.commit()

        logger.info(
            "invoice %s approved for tenant=%s, subscription ends at %s",
            invoice.invoice_number,
            record.tenant_id,
            record.subscription_ends_at,
        )
        event_bus.dispatch([approved, transition])
        return invoice, record

    def reject_invoice(
        self,
        invoice_id: str,
        reviewer_id: str,
        payload: InvoiceRejectRequest,
    ) -> SubscriptionInvoice:
        notes = payload.reviewer_notes.strip()
        if not notes:
            raise ValidationError("reviewer_notes are required to reject an invoice")

        with self._session() as session:
            now = self._clock()
            invoice = self._load_invoice(session, invoice_id, None)
            self._invoices.transition_invoice(
                session,
                invoice,
                InvoiceStatus.REJECTED,
                now,
                reviewed_by=reviewer_id,
                reviewed_at=now,
                reviewer_notes=notes,
            )
            event = event_bus.record(session, self._invoice_event(INVOICE_REJECTED, invoice, reviewer_id, now))
            session.commit()

        logger.info("invoice %s rejected for tenant=%s", invoice.invoice_number, invoice.tenant_id)
        event_bus.dispatch([event])
        return invoice
