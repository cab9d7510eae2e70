from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, status

from storefront.api.deps import get_clock, handle_subscription_error, require_perm
from storefront.domain.models import (
    SubscriptionTierCreate,
    SubscriptionTierRead,
    SubscriptionTierUpdate,
)
from storefront.domain.permissions import PERM_TIER_READ, PERM_TIER_WRITE
from storefront.infra.audit import set_audit_context
from storefront.infra.clock import Clock
from storefront.services.errors import SubscriptionError
from storefront.services.tier_service import TierService

router = APIRouter()


def get_tier_service(clock: Annotated[Clock, Depends(get_clock)]) -> TierService:
    return TierService(clock=clock)


Service = Annotated[TierService, Depends(get_tier_service)]


@router.post(
    "",
    response_model=SubscriptionTierRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_TIER_WRITE))],
)
def create_tier(payload: SubscriptionTierCreate, request: Request, service: Service) -> SubscriptionTierRead:
    try:
        tier = service.create_tier(payload)
        set_audit_context(
            request,
            action="subscription.tier.create",
            resource="/api/tiers",
            detail={"what": {"tier_id": tier.id, "country": tier.country, "name": tier.name}},
        )
        return SubscriptionTierRead.model_validate(tier)
    except SubscriptionError as exc:
        handle_subscription_error(exc)
        raise


@router.get(
    "",
    response_model=list[SubscriptionTierRead],
    dependencies=[Depends(require_perm(PERM_TIER_READ))],
)
def list_tiers(
    service: Service,
    country: str | None = None,
    is_active: bool | None = None,
) -> list[SubscriptionTierRead]:
    rows = service.list_tiers(country=country, is_active=is_active)
    return [SubscriptionTierRead.model_validate(item) for item in rows]


@router.get(
    "/{tier_id}",
    response_model=SubscriptionTierRead,
    dependencies=[Depends(require_perm(PERM_TIER_READ))],
)
def get_tier(tier_id: str, service: Service) -> SubscriptionTierRead:
    try:
        return SubscriptionTierRead.model_validate(service.get_tier(tier_id))
    except SubscriptionError as exc:
        handle_subscription_error(exc)
        raise


@router.patch(
    "/{tier_id}",
    response_model=SubscriptionTierRead,
    dependencies=[Depends(require_perm(PERM_TIER_WRITE))],
)
def update_tier(
    tier_id: str,
    payload: SubscriptionTierUpdate,
    request: Request,
    service: Service,
) -> SubscriptionTierRead:
    try:
        tier = service.set_tier_active(tier_id, payload.is_active)
        set_audit_context(
            request,
            action="subscription.tier.update",
            resource=f"/api/tiers/{tier_id}",
            detail={"what": {"tier_id": tier.id, "is_active": tier.is_active}},
        )
        return SubscriptionTierRead.model_validate(tier)
    except SubscriptionError as exc:
        handle_subscription_error(exc)
        raise
