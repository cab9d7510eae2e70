from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, status

from storefront.api.deps import (
    ensure_tenant_scope,
    get_clock,
    get_current_claims,
    handle_subscription_error,
    require_perm,
)
from storefront.domain.models import (
    BootstrapAdminRequest,
    DevLoginRequest,
    PlatformOperatorBootstrapRequest,
    TenantCreate,
    TenantRead,
    TokenResponse,
    UserRead,
)
from storefront.domain.permissions import PERM_SUBSCRIPTION_READ
from storefront.infra.auth import create_access_token
from storefront.infra.clock import Clock
from storefront.services.errors import SubscriptionError
from storefront.services.identity_service import IdentityService

router = APIRouter()


def get_identity_service(clock: Annotated[Clock, Depends(get_clock)]) -> IdentityService:
    return IdentityService(clock=clock)


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[IdentityService, Depends(get_identity_service)]


@router.post("/tenants", response_model=TenantRead, status_code=status.HTTP_201_CREATED)
def create_tenant(payload: TenantCreate, service: Service) -> TenantRead:
    try:
        tenant, _ = service.create_tenant(payload)
        return TenantRead.model_validate(tenant)
    except SubscriptionError as exc:
        handle_subscription_error(exc)
        raise


@router.get(
    "/tenants/{tenant_id}",
    response_model=TenantRead,
    dependencies=[Depends(require_perm(PERM_SUBSCRIPTION_READ))],
)
def get_tenant(tenant_id: str, claims: Claims, service: Service) -> TenantRead:
    ensure_tenant_scope(tenant_id, claims)
    try:
        tenant = service.get_tenant(tenant_id)
        return TenantRead.model_validate(tenant)
    except SubscriptionError as exc:
        handle_subscription_error(exc)
        raise


@router.post("/bootstrap-admin", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def bootstrap_admin(payload: BootstrapAdminRequest, service: Service) -> UserRead:
    try:
        user = service.bootstrap_admin(payload)
        return UserRead.model_validate(user)
    except SubscriptionError as exc:
        handle_subscription_error(exc)
        raise


@router.post("/platform-operators", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def bootstrap_platform_operator(payload: PlatformOperatorBootstrapRequest, service: Service) -> UserRead:
    try:
        user = service.bootstrap_platform_operator(payload)
        return UserRead.model_validate(user)
    except SubscriptionError as exc:
        handle_subscription_error(exc)
        raise


@router.post("/dev-login", response_model=TokenResponse)
def dev_login(payload: DevLoginRequest, service: Service) -> TokenResponse:
    try:
        user, permissions = service.dev_login(payload.tenant_id, payload.username, payload.password)
    except SubscriptionError as exc:
        handle_subscription_error(exc)
        raise
    token = create_access_token(
        user_id=user.id,
        tenant_id=user.tenant_id,
        permissions=permissions,
        is_platform_operator=service.is_platform_tenant(user.tenant_id),
    )
    return TokenResponse(access_token=token, permissions=permissions)
