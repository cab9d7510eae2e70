"""Periodic subscription automation.

One pass walks four cohorts in order: upcoming trial conversions, upcoming
renewals, the expiry sweep and the suspension sweep. Each tenant is handled in
its own transaction and re-validated against a freshly loaded record, so
overlapping passes and concurrent owner or reviewer actions never double-mint
an invoice or double-apply a transition.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from storefront.domain.models import (
    AutomationErrorRead,
    AutomationRunRead,
    AutomationRunRequest,
    EventEnvelope,
    SubscriptionTier,
    TenantSubscription,
)
from storefront.domain.state_machine import (
    InvoiceType,
    SubscriptionStatus,
    SubscriptionTrigger,
)
from storefront.infra import redis_state
from storefront.infra.clock import Clock, as_utc, system_clock
from storefront.infra.db import get_engine
from storefront.infra.events import INVOICE_ISSUED, SUBSCRIPTION_TRANSITIONED, event_bus
from storefront.services.errors import ConflictError, DuplicateInvoiceError, SubscriptionError
from storefront.services.invoice_service import InvoiceDraft, InvoiceService
from storefront.services.owner_action_service import issued_event
from storefront.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

TRIAL_LOOKAHEAD_DAYS = int(os.getenv("SUBSCRIPTION_TRIAL_LOOKAHEAD_DAYS", "3"))
RENEWAL_LOOKAHEAD_DAYS = int(os.getenv("SUBSCRIPTION_RENEWAL_LOOKAHEAD_DAYS", "5"))
DEFAULT_GRACE_DAYS = int(os.getenv("SUBSCRIPTION_DEFAULT_GRACE_DAYS", "2"))

STAGE_TRIAL_CONVERSION = "trial_conversion"
STAGE_RENEWAL = "renewal"
STAGE_EXPIRY = "expiry_sweep"
STAGE_SUSPENSION = "suspension_sweep"

TenantStep = Callable[[Session, TenantSubscription, datetime], list[EventEnvelope]]


class _Outcome:
    def __init__(self, as_of: datetime) -> None:
        self.result = AutomationRunRead(as_of=as_of)

    def committed(self, events: list[EventEnvelope]) -> None:
        for event in events:
            if event.event_type == INVOICE_ISSUED:
                invoice_type = InvoiceType(event.payload["invoice_type"])
                created = self.result.invoices_created
                created[invoice_type] = created.get(invoice_type, 0) + 1
            elif event.event_type == SUBSCRIPTION_TRANSITIONED:
                trigger = SubscriptionTrigger(event.payload["trigger"])
                transitions = self.result.transitions
                transitions[trigger] = transitions.get(trigger, 0) + 1

    def failed(self, tenant_id: str, stage: str, message: str) -> None:
        self.result.errors.append(AutomationErrorRead(tenant_id=tenant_id, stage=stage, message=message))


class AutomationService:
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

    def _candidate_ids(
        self,
        status: SubscriptionStatus,
        column: Any,
        cutoff: datetime,
        *,
        inclusive: bool = True,
    ) -> list[str]:
        with self._session() as session:
            statement = select(TenantSubscription.tenant_id).where(TenantSubscription.status == status)
            statement = statement.where(col(column) <= cutoff if inclusive else col(column) < cutoff)
            return list(session.exec(statement.order_by(col(TenantSubscription.tenant_id))).all())

    def _run_for_tenant(self, tenant_id: str, stage: str, step: TenantStep, outcome: _Outcome) -> None:
        now = outcome.result.as_of
        seen_status: SubscriptionStatus | None = None
        for attempt in range(2):
            try:
                with self._session() as session:
                    record = session.get(TenantSubscription, tenant_id)
                    if record is None:
                        return
                    if seen_status is not None and record.status != seen_status:
                        # another pass or a reviewer moved the record first
                        outcome.result.skipped_concurrent += 1
                        logger.info(
                            "tenant=%s stage=%s already moved %s -> %s",
                            tenant_id,
                            stage,
                            seen_status,
                            record.status,
                        )
                        return
                    seen_status = record.status
                    events = step(session, record, now)
                    if not events:
                        return
                    session.commit()
            except DuplicateInvoiceError as exc:
                outcome.result.skipped_duplicates += 1
                logger.info("skipped duplicate invoice for tenant=%s stage=%s: %s", tenant_id, stage, exc)
                return
            except ConflictError as exc:
                if attempt == 0:
                    logger.info("retrying tenant=%s stage=%s after concurrent change: %s", tenant_id, stage, exc)
                    continue
                outcome.failed(tenant_id, stage, str(exc))
                logger.warning("subscription automation failed for tenant=%s stage=%s: %s", tenant_id, stage, exc)
                return
            except (SubscriptionError, SQLAlchemyError) as exc:
                outcome.failed(tenant_id, stage, str(exc))
                logger.warning("subscription automation failed for tenant=%s stage=%s: %s", tenant_id, stage, exc)
                return
            outcome.committed(events)
            event_bus.dispatch(events)
            return

    def _mint(self, session: Session, draft: InvoiceDraft, now: datetime) -> list[EventEnvelope]:
        invoice = self._invoices.issue_invoice(session, draft, now)
        return [event_bus.record(session, issued_event(invoice, None, now))]

    def _trial_conversion_step(self, horizon: datetime, outcome: _Outcome) -> TenantStep:
        def step(session: Session, record: TenantSubscription, now: datetime) -> list[EventEnvelope]:
            if record.status != SubscriptionStatus.TRIAL or record.trial_ends_at is None:
                return []
            trial_ends_at = as_utc(record.trial_ends_at)
            if trial_ends_at > horizon:
                return []
            existing = self._invoices.find_open_invoice(
                session,
                record.tenant_id,
                (InvoiceType.TRIAL_CONVERSION,),
            )
            if existing is not None:
                outcome.result.skipped_duplicates += 1
                return []
            tier = session.get(SubscriptionTier, record.current_tier_id)
            if tier is None:
                raise SubscriptionError("current tier not found")
            draft = InvoiceDraft(
                tenant_id=record.tenant_id,
                tier=tier,
                invoice_type=InvoiceType.TRIAL_CONVERSION,
                period_start=trial_ends_at,
                due_date=trial_ends_at,
            )
            return self._mint(session, draft, now)

        return step

    def _renewal_step(self, horizon: datetime, outcome: _Outcome) -> TenantStep:
        def step(session: Session, record: TenantSubscription, now: datetime) -> list[EventEnvelope]:
            if record.status != SubscriptionStatus.ACTIVE or record.subscription_ends_at is None:
                return []
            ends_at = as_utc(record.subscription_ends_at)
            if ends_at > horizon:
                return []
            existing = self._invoices.find_open_invoice(
                session,
                record.tenant_id,
                (InvoiceType.RENEWAL,),
                period_start_from=ends_at,
            )
            if existing is not None:
                outcome.result.skipped_duplicates += 1
                return []
            tier = session.get(SubscriptionTier, record.current_tier_id)
            if tier is None:
                raise SubscriptionError("current tier not found")
            draft = InvoiceDraft(
                tenant_id=record.tenant_id,
                tier=tier,
                invoice_type=InvoiceType.RENEWAL,
                period_start=ends_at,
                due_date=ends_at,
            )
            return self._mint(session, draft, now)

        return step

    def _expire(self, session: Session, record: TenantSubscription, now: datetime) -> list[EventEnvelope]:
        if record.status == SubscriptionStatus.TRIAL:
            trigger = SubscriptionTrigger.TRIAL_EXPIRED
        elif record.status == SubscriptionStatus.ACTIVE:
            trigger = SubscriptionTrigger.SUBSCRIPTION_EXPIRED
        else:
            return []
        if not self._subscriptions.is_expired(record, now):
            return []
        return [self._subscriptions.apply_transition(session, record, trigger, now)]

    def _suspend(self, session: Session, record: TenantSubscription, now: datetime) -> list[EventEnvelope]:
        if record.status != SubscriptionStatus.OVERDUE or record.overdue_since is None:
            return []
        tier = session.get(SubscriptionTier, record.current_tier_id)
        grace_days = tier.overdue_grace_days if tier is not None else DEFAULT_GRACE_DAYS
        if now < as_utc(record.overdue_since) + timedelta(days=grace_days):
            return []
        return [self._subscriptions.apply_transition(session, record, SubscriptionTrigger.GRACE_ELAPSED, now)]

    def run(self, payload: AutomationRunRequest | None = None) -> AutomationRunRead:
        as_of = as_utc(self._clock())
        trial_lookahead = TRIAL_LOOKAHEAD_DAYS
        renewal_lookahead = RENEWAL_LOOKAHEAD_DAYS
        if payload is not None and payload.trial_lookahead_days is not None:
            trial_lookahead = payload.trial_lookahead_days
        if payload is not None and payload.renewal_lookahead_days is not None:
            renewal_lookahead = payload.renewal_lookahead_days

        outcome = _Outcome(as_of)
        trial_horizon = as_of + timedelta(days=trial_lookahead)
        renewal_horizon = as_of + timedelta(days=renewal_lookahead)

        cohorts: list[tuple[str, list[str], TenantStep]] = [
            (
                STAGE_TRIAL_CONVERSION,
                self._candidate_ids(SubscriptionStatus.TRIAL, TenantSubscription.trial_ends_at, trial_horizon),
                self._trial_conversion_step(trial_horizon, outcome),
            ),
            (
                STAGE_RENEWAL,
                self._candidate_ids(
                    SubscriptionStatus.ACTIVE,
                    TenantSubscription.subscription_ends_at,
                    renewal_horizon,
                ),
                self._renewal_step(renewal_horizon, outcome),
            ),
        ]
        for stage, tenant_ids, step in cohorts:
            for tenant_id in tenant_ids:
                self._run_for_tenant(tenant_id, stage, step, outcome)

        for tenant_id in [
            *self._candidate_ids(
                SubscriptionStatus.TRIAL, TenantSubscription.trial_ends_at, as_of, inclusive=False
            ),
            *self._candidate_ids(
                SubscriptionStatus.ACTIVE, TenantSubscription.subscription_ends_at, as_of, inclusive=False
            ),
        ]:
            self._run_for_tenant(tenant_id, STAGE_EXPIRY, self._expire, outcome)

        for tenant_id in self._candidate_ids(SubscriptionStatus.OVERDUE, TenantSubscription.overdue_since, as_of):
            self._run_for_tenant(tenant_id, STAGE_SUSPENSION, self._suspend, outcome)

        result = outcome.result
        logger.info(
            "subscription automation as_of=%s invoices=%s transitions=%s skipped=%d concurrent=%d errors=%d",
            as_of.isoformat(),
            {key.value: value for key, value in result.invoices_created.items()},
            {key.value: value for key, value in result.transitions.items()},
            result.skipped_duplicates,
            result.skipped_concurrent,
            len(result.errors),
        )
        self._store_last_run(result)
        return result

    @staticmethod
    def _store_last_run(result: AutomationRunRead) -> None:
        try:
            redis_state.store_automation_run(result.model_dump_json())
        except Exception as exc:
            logger.warning("could not cache subscription automation result: %s", exc)

    @staticmethod
    def get_last_run() -> AutomationRunRead | None:
        raw = redis_state.load_automation_run()
        if raw is None:
            return None
        return AutomationRunRead.model_validate_json(raw)
