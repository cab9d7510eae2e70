from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request, status

from storefront.api.deps import (
    ensure_tenant_scope,
    get_clock,
    get_current_claims,
    handle_subscription_error,
    require_perm,
)
from storefront.domain.models import (
    InvoiceSubmitRequest,
    SubscriptionCancelRequest,
    SubscriptionInvoiceRead,
    TenantSubscriptionRead,
    TierChangeRequest,
    TierLimitCheckRead,
    TierLimitCheckRequest,
)
from storefront.domain.permissions import PERM_SUBSCRIPTION_READ, PERM_SUBSCRIPTION_WRITE
from storefront.domain.state_machine import InvoiceStatus
from storefront.infra.audit import set_audit_context
from storefront.infra.clock import Clock
from storefront.services.errors import SubscriptionError
from storefront.services.invoice_service import InvoiceService
from storefront.services.owner_action_service import OwnerActionService
from storefront.services.payment_review_service import PaymentReviewService
from storefront.services.subscription_service import SubscriptionService
from storefront.services.tier_service import TierService

router = APIRouter()


def get_owner_action_service(clock: Annotated[Clock, Depends(get_clock)]) -> OwnerActionService:
    return OwnerActionService(clock=clock)


def get_payment_review_service(clock: Annotated[Clock, Depends(get_clock)]) -> PaymentReviewService:
    return PaymentReviewService(clock=clock)


def get_tier_service(clock: Annotated[Clock, Depends(get_clock)]) -> TierService:
    return TierService(clock=clock)


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Actions = Annotated[OwnerActionService, Depends(get_owner_action_service)]
Reviews = Annotated[PaymentReviewService, Depends(get_payment_review_service)]
Tiers = Annotated[TierService, Depends(get_tier_service)]


def _audit_subscription(request: Request, tenant_id: str, action: str, record: Any) -> None:
    set_audit_context(
        request,
        action=f"subscription.{action}",
        resource=f"/api/subscriptions/tenants/{tenant_id}",
        tenant_id=tenant_id,
        detail={"what": {"status": record.status.value, "version": record.version}},
    )


def _audit_invoice(request: Request, tenant_id: str, action: str, invoice: Any) -> None:
    set_audit_context(
        request,
        action=f"subscription.invoice.{action}",
        resource=f"/api/subscriptions/tenants/{tenant_id}/invoices/{invoice.id}",
        tenant_id=tenant_id,
        detail={
            "what": {
                "invoice_number": invoice.invoice_number,
                "invoice_type": invoice.invoice_type.value,
                "status": invoice.status.value,
            }
        },
    )


@router.get(
    "/tenants/{tenant_id}",
    response_model=TenantSubscriptionRead,
    dependencies=[Depends(require_perm(PERM_SUBSCRIPTION_READ))],
)
def get_subscription(tenant_id: str, claims: Claims) -> TenantSubscriptionRead:
    ensure_tenant_scope(tenant_id, claims)
    try:
        return TenantSubscriptionRead.model_validate(SubscriptionService().get_subscription(tenant_id))
    except SubscriptionError as exc:
        handle_subscription_error(exc)
        raise


@router.get(
    "/tenants/{tenant_id}/invoices",
    response_model=list[SubscriptionInvoiceRead],
    dependencies=[Depends(require_perm(PERM_SUBSCRIPTION_READ))],
)
def list_tenant_invoices(
    tenant_id: str,
    claims: Claims,
    status: InvoiceStatus | None = None,
) -> list[SubscriptionInvoiceRead]:
    ensure_tenant_scope(tenant_id, claims)
    rows = InvoiceService().list_invoices(tenant_id=tenant_id, status=status)
    return [SubscriptionInvoiceRead.model_validate(item) for item in rows]


@router.post(
    "/tenants/{tenant_id}/invoices/{invoice_id}:submit",
    response_model=SubscriptionInvoiceRead,
    dependencies=[Depends(require_perm(PERM_SUBSCRIPTION_WRITE))],
)
def submit_tenant_invoice(
    tenant_id: str,
    invoice_id: str,
    payload: InvoiceSubmitRequest,
    request: Request,
    claims: Claims,
    reviews: Reviews,
) -> SubscriptionInvoiceRead:
    ensure_tenant_scope(tenant_id, claims)
    try:
        invoice = reviews.submit_invoice(invoice_id, claims["sub"], payload, tenant_id=tenant_id)
        _audit_invoice(request, tenant_id, "submit", invoice)
        return SubscriptionInvoiceRead.model_validate(invoice)
    except SubscriptionError as exc:
        handle_subscription_error(exc)
        raise


@router.post(
    "/tenants/{tenant_id}:change-tier",
    response_model=SubscriptionInvoiceRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_SUBSCRIPTION_WRITE))],
)
def request_tier_change(
    tenant_id: str,
    payload: TierChangeRequest,
    request: Request,
    claims: Claims,
    actions: Actions,
) -> SubscriptionInvoiceRead:
    ensure_tenant_scope(tenant_id, claims)
    try:
        invoice = actions.request_tier_change(tenant_id, claims["sub"], payload)
        _audit_invoice(request, tenant_id, "tier_change", invoice)
        return SubscriptionInvoiceRead.model_validate(invoice)
    except SubscriptionError as exc:
        handle_subscription_error(exc)
        raise


@router.post(
    "/tenants/{tenant_id}:renew",
    response_model=SubscriptionInvoiceRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_SUBSCRIPTION_WRITE))],
)
def request_renewal(
    tenant_id: str,
    request: Request,
    claims: Claims,
    actions: Actions,
) -> SubscriptionInvoiceRead:
    ensure_tenant_scope(tenant_id, claims)
    try:
        invoice = actions.request_renewal(tenant_id, claims["sub"])
        _audit_invoice(request, tenant_id, "renew", invoice)
        return SubscriptionInvoiceRead.model_validate(invoice)
    except SubscriptionError as exc:
        handle_subscription_error(exc)
        raise


@router.post(
    "/tenants/{tenant_id}:pause",
    response_model=TenantSubscriptionRead,
    dependencies=[Depends(require_perm(PERM_SUBSCRIPTION_WRITE))],
)
def pause_subscription(tenant_id: str, request: Request, claims: Claims, actions: Actions) -> TenantSubscriptionRead:
    ensure_tenant_scope(tenant_id, claims)
    try:
        record = actions.pause(tenant_id, claims["sub"])
        _audit_subscription(request, tenant_id, "pause", record)
        return TenantSubscriptionRead.model_validate(record)
    except SubscriptionError as exc:
        handle_subscription_error(exc)
        raise


@router.post(
    "/tenants/{tenant_id}:resume",
    response_model=TenantSubscriptionRead,
    dependencies=[Depends(require_perm(PERM_SUBSCRIPTION_WRITE))],
)
def resume_subscription(tenant_id: str, request: Request, claims: Claims, actions: Actions) -> TenantSubscriptionRead:
    ensure_tenant_scope(tenant_id, claims)
    try:
        record = actions.resume(tenant_id, claims["sub"])
        _audit_subscription(request, tenant_id, "resume", record)
        return TenantSubscriptionRead.model_validate(record)
    except SubscriptionError as exc:
        handle_subscription_error(exc)
        raise


@router.post(
    "/tenants/{tenant_id}:cancel",
    response_model=TenantSubscriptionRead,
    dependencies=[Depends(require_perm(PERM_SUBSCRIPTION_WRITE))],
)
def cancel_subscription(
    tenant_id: str,
    payload: SubscriptionCancelRequest,
    request: Request,
    claims: Claims,
    actions: Actions,
) -> TenantSubscriptionRead:
    ensure_tenant_scope(tenant_id, claims)
    try:
        record = actions.cancel(tenant_id, claims["sub"], payload)
        _audit_subscription(request, tenant_id, "cancel", record)
        return TenantSubscriptionRead.model_validate(record)
    except SubscriptionError as exc:
        handle_subscription_error(exc)
        raise


@router.post(
    "/tenants/{tenant_id}/limits:check",
    response_model=TierLimitCheckRead,
    dependencies=[Depends(require_perm(PERM_SUBSCRIPTION_READ))],
)
def check_tier_limit(
    tenant_id: str,
    payload: TierLimitCheckRequest,
    claims: Claims,
    tiers: Tiers,
) -> TierLimitCheckRead:
    ensure_tenant_scope(tenant_id, claims)
    try:
        return tiers.check_limit(tenant_id, payload)
    except SubscriptionError as exc:
        handle_subscription_error(exc)
        raise
