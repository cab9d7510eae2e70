from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from storefront.domain.models import (
    InvoiceNumberSequence,
    SubscriptionInvoice,
    SubscriptionTier,
)
from storefront.domain.state_machine import (
    OPEN_INVOICE_STATUSES,
    InvoiceStatus,
    InvoiceType,
    can_invoice_transition,
)
from storefront.infra.clock import as_utc
from storefront.infra.db import get_engine
from storefront.services.errors import (
    ConflictError,
    DuplicateInvoiceError,
    InvalidStateError,
    NotFoundError,
)

BILLING_PERIOD_DAYS = 30


@dataclass(frozen=True)
class InvoiceDraft:
    tenant_id: str
    tier: SubscriptionTier
    invoice_type: InvoiceType
    period_start: datetime
    due_date: datetime
    previous_tier_id: str | None = None
    created_by: str = "system"


def format_invoice_number(period: str, value: int) -> str:
    return f"INV-{period}-{value:06d}"


class InvoiceService:
    """Invoice ledger: numbering, minting, status changes and read views."""

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @staticmethod
    def _upsert_sequence(session: Session, period: str, now: datetime) -> Any:
        bind = session.get_bind()
        dialect_name = getattr(getattr(bind, "dialect", None), "name", "")
        values = {"period": period, "last_value": 1, "updated_at": now}
        next_value = col(InvoiceNumberSequence.last_value) + 1

        stmt: Any
        if "postgresql" in str(dialect_name):
            from sqlalchemy.dialects.postgresql import insert as _pg_insert

            stmt = _pg_insert(InvoiceNumberSequence).values(**values)
        else:
            from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

            stmt = _sqlite_insert(InvoiceNumberSequence).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["period"],
            set_={"last_value": next_value, "updated_at": now},
        )
        return session.execute(stmt)

    def allocate_invoice_number(self, session: Session, now: datetime) -> str:
        """Reserve the next number for the month of ``now`` inside the caller's transaction."""
        period = as_utc(now).strftime("%Y%m")
        self._upsert_sequence(session, period, now)
        value = session.exec(
            select(InvoiceNumberSequence.last_value).where(InvoiceNumberSequence.period == period)
        ).one()
        return format_invoice_number(period, int(value))

    @staticmethod
    def find_open_invoice(
        session: Session,
        tenant_id: str,
        invoice_types: tuple[InvoiceType, ...],
        *,
        period_start: datetime | None = None,
        period_start_from: datetime | None = None,
    ) -> SubscriptionInvoice | None:
        statement = (
            select(SubscriptionInvoice)
            .where(SubscriptionInvoice.tenant_id == tenant_id)
            .where(col(SubscriptionInvoice.invoice_type).in_(invoice_types))
            .where(col(SubscriptionInvoice.status).in_(OPEN_INVOICE_STATUSES))
        )
        if period_start is not None:
            statement = statement.where(SubscriptionInvoice.billing_period_start == period_start)
        if period_start_from is not None:
            statement = statement.where(SubscriptionInvoice.billing_period_start >= period_start_from)
        return session.exec(statement.order_by(col(SubscriptionInvoice.created_at).desc())).first()

    def issue_invoice(self, session: Session, draft: InvoiceDraft, now: datetime) -> SubscriptionInvoice:
        """Insert a PENDING invoice and flush it.

        A clash on the open-period index surfaces as DuplicateInvoiceError, any
        other integrity failure as ConflictError. Either way the session has been
        rolled back.
        """
        period_start = as_utc(draft.period_start)
        invoice = SubscriptionInvoice(
            tenant_id=draft.tenant_id,
            tier_id=draft.tier.id,
            previous_tier_id=draft.previous_tier_id,
            invoice_number=self.allocate_invoice_number(session, now),
            invoice_type=draft.invoice_type,
            amount_cents=draft.tier.monthly_price_cents,
            currency=draft.tier.currency,
            status=InvoiceStatus.PENDING,
            due_date=as_utc(draft.due_date),
            billing_period_start=period_start,
            billing_period_end=period_start + timedelta(days=BILLING_PERIOD_DAYS),
            created_by=draft.created_by,
            created_at=now,
            updated_at=now,
        )
        session.add(invoice)
        try:
            session.flush()
        except IntegrityError as exc:
            session.rollback()
            duplicate = self.find_open_invoice(
                session,
                draft.tenant_id,
                (draft.invoice_type,),
                period_start=period_start,
            )
            if duplicate is not None:
                raise DuplicateInvoiceError(
                    f"open {draft.invoice_type.value} invoice already exists: {duplicate.invoice_number}"
                ) from exc
            raise ConflictError("failed to issue subscription invoice") from exc
        return invoice

    @staticmethod
    def transition_invoice(
        session: Session,
        invoice: SubscriptionInvoice,
        target: InvoiceStatus,
        now: datetime,
        **changes: Any,
    ) -> SubscriptionInvoice:
        source = invoice.status
        if not can_invoice_transition(source, target):
            raise InvalidStateError(f"invoice cannot move from {source.value} to {target.value}")
        result = session.execute(
            sa.update(SubscriptionInvoice)
            .where(col(SubscriptionInvoice.id) == invoice.id)
            .where(col(SubscriptionInvoice.status) == source)
            .values(status=target, updated_at=now, **changes)
            .execution_options(synchronize_session=False)
        )
        if getattr(result, "rowcount", None) != 1:
            raise InvalidStateError(f"invoice is no longer {source.value}")
        session.refresh(invoice)
        return invoice

    @staticmethod
    def get_invoice_in_session(session: Session, invoice_id: str) -> SubscriptionInvoice:
        row = session.get(SubscriptionInvoice, invoice_id)
        if row is None:
            raise NotFoundError("subscription invoice not found")
        return row

    def get_invoice(self, invoice_id: str, *, tenant_id: str | None = None) -> SubscriptionInvoice:
        with self._session() as session:
            row = self.get_invoice_in_session(session, invoice_id)
            if tenant_id is not None and row.tenant_id != tenant_id:
                raise NotFoundError("subscription invoice not found")
            return row

    def list_invoices(
        self,
        *,
        tenant_id: str | None = None,
        status: InvoiceStatus | None = None,
        invoice_type: InvoiceType | None = None,
    ) -> list[SubscriptionInvoice]:
        with self._session() as session:
            statement = select(SubscriptionInvoice)
            if tenant_id is not None:
                statement = statement.where(SubscriptionInvoice.tenant_id == tenant_id)
            if status is not None:
                statement = statement.where(SubscriptionInvoice.status == status)
            if invoice_type is not None:
                statement = statement.where(SubscriptionInvoice.invoice_type == invoice_type)
            rows = list(session.exec(statement).all())
            return sorted(rows, key=lambda item: item.invoice_number, reverse=True)
