from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request

from storefront.api.deps import get_clock, get_current_claims, handle_subscription_error, require_perm
from storefront.domain.models import (
    InvoiceApproveRequest,
    InvoiceDecisionRead,
    InvoiceRejectRequest,
    InvoiceSubmitRequest,
    SubscriptionInvoice,
    SubscriptionInvoiceRead,
    TenantSubscriptionRead,
)
from storefront.domain.permissions import PERM_INVOICE_REVIEW
from storefront.domain.state_machine import InvoiceStatus, InvoiceType
from storefront.infra.audit import set_audit_context
from storefront.infra.clock import Clock
from storefront.services.errors import SubscriptionError
from storefront.services.invoice_service import InvoiceService
from storefront.services.payment_review_service import PaymentReviewService

router = APIRouter()


def get_payment_review_service(clock: Annotated[Clock, Depends(get_clock)]) -> PaymentReviewService:
    return PaymentReviewService(clock=clock)


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[PaymentReviewService, Depends(get_payment_review_service)]


def _audit_review(request: Request, action: str, invoice: SubscriptionInvoice) -> None:
    set_audit_context(
        request,
        action=f"subscription.invoice.{action}",
        resource=f"/api/payment-reviews/invoices/{invoice.id}",
        tenant_id=invoice.tenant_id,
        detail={
            "what": {
                "tenant_id": invoice.tenant_id,
                "invoice_number": invoice.invoice_number,
                "status": invoice.status.value,
            }
        },
    )


@router.get(
    "/invoices",
    response_model=list[SubscriptionInvoiceRead],
    dependencies=[Depends(require_perm(PERM_INVOICE_REVIEW))],
)
def list_invoices(
    status: InvoiceStatus | None = None,
    tenant_id: str | None = None,
    invoice_type: InvoiceType | None = None,
) -> list[SubscriptionInvoiceRead]:
    rows = InvoiceService().list_invoices(tenant_id=tenant_id, status=status, invoice_type=invoice_type)
    return [SubscriptionInvoiceRead.model_validate(item) for item in rows]


@router.get(
    "/invoices/{invoice_id}",
    response_model=SubscriptionInvoiceRead,
    dependencies=[Depends(require_perm(PERM_INVOICE_REVIEW))],
)
def get_invoice(invoice_id: str) -> SubscriptionInvoiceRead:
    try:
        return SubscriptionInvoiceRead.model_validate(InvoiceService().get_invoice(invoice_id))
    except SubscriptionError as exc:
        handle_subscription_error(exc)
        raise


@router.post(
    "/invoices/{invoice_id}:submit",
    response_model=SubscriptionInvoiceRead,
    dependencies=[Depends(require_perm(PERM_INVOICE_REVIEW))],
)
def submit_invoice(
    invoice_id: str,
    payload: InvoiceSubmitRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> SubscriptionInvoiceRead:
    try:
        invoice = service.submit_invoice(invoice_id, claims["sub"], payload)
        _audit_review(request, "submit", invoice)
        return SubscriptionInvoiceRead.model_validate(invoice)
    except SubscriptionError as exc:
        handle_subscription_error(exc)
        raise


@router.post(
    "/invoices/{invoice_id}:approve",
    response_model=InvoiceDecisionRead,
    dependencies=[Depends(require_perm(PERM_INVOICE_REVIEW))],
)
def approve_invoice(
    invoice_id: str,
    payload: InvoiceApproveRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> InvoiceDecisionRead:
    try:
        invoice, record = service.approve_invoice(invoice_id, claims["sub"], payload)
        _audit_review(request, "approve", invoice)
        set_audit_context(
            request,
            detail={"what": {"subscription_status": record.status.value, "version": record.version}},
        )
        return InvoiceDecisionRead(
            invoice=SubscriptionInvoiceRead.model_validate(invoice),
            subscription=TenantSubscriptionRead.model_validate(record),
        )
    except SubscriptionError as exc:
        handle_subscription_error(exc)
        raise


@router.post(
    "/invoices/{invoice_id}:reject",
    response_model=SubscriptionInvoiceRead,
    dependencies=[Depends(require_perm(PERM_INVOICE_REVIEW))],
)
def reject_invoice(
    invoice_id: str,
    payload: InvoiceRejectRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> SubscriptionInvoiceRead:
    try:
        invoice = service.reject_invoice(invoice_id, claims["sub"], payload)
        _audit_review(request, "reject", invoice)
        return SubscriptionInvoiceRead.model_validate(invoice)
    except SubscriptionError as exc:
        handle_subscription_error(exc)
        raise
