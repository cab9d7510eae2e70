from __future__ import annotations

import hashlib
import hmac
import os
import secrets

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from storefront.domain.models import (
    BootstrapAdminRequest,
    Permission,
    PlatformOperatorBootstrapRequest,
    Role,
    RolePermission,
    SubscriptionTier,
    Tenant,
    TenantCreate,
    TenantSubscription,
    User,
    UserRole,
)
from storefront.domain.permissions import (
    DEFAULT_PERMISSION_NAMES,
    OPERATOR_PERMISSION_NAMES,
    OWNER_PERMISSION_NAMES,
)
from storefront.infra.clock import Clock, system_clock
from storefront.infra.db import get_engine
from storefront.services.errors import AuthError, ConflictError, NotFoundError, ValidationError
from storefront.services.subscription_service import SubscriptionService
from storefront.services.tier_service import TierService

PLATFORM_TENANT_NAME = os.getenv("PLATFORM_TENANT_NAME", "storefront-platform")
PLATFORM_BOOTSTRAP_SECRET = os.getenv("PLATFORM_BOOTSTRAP_SECRET", "dev-platform-secret")
PASSWORD_HASH_ITERATIONS = int(os.getenv("PASSWORD_HASH_ITERATIONS", "100000"))


def hash_password(raw_password: str, salt: str | None = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", raw_password.encode(), salt.encode(), PASSWORD_HASH_ITERATIONS)
    return f"pbkdf2_sha256${salt}${digest.hex()}"


def verify_password(raw_password: str, stored: str) -> bool:
    scheme, _, rest = stored.partition("$")
    salt, _, _ = rest.partition("$")
    if scheme != "pbkdf2_sha256" or not salt:
        return False
    return hmac.compare_digest(hash_password(raw_password, salt), stored)


class IdentityService:
    def __init__(self, clock: Clock = system_clock) -> None:
        self._clock = clock

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _ensure_default_permissions(self, session: Session) -> dict[str, Permission]:
        existing = session.exec(select(Permission)).all()
        by_name = {item.name: item for item in existing}
        for name in DEFAULT_PERMISSION_NAMES:
            if name in by_name:
                continue
            permission = Permission(name=name, description=f"default permission {name}")
            session.add(permission)
            by_name[name] = permission
        session.flush()
        return by_name

    def _create_user_with_role(
        self,
        session: Session,
        *,
        tenant_id: str,
        username: str,
        password: str,
        role_name: str,
        permission_names: list[str],
    ) -> User:
        permissions = self._ensure_default_permissions(session)
        role = Role(tenant_id=tenant_id, name=role_name, description=f"bootstrap {role_name} role")
        session.add(role)
        session.flush()
        for name in permission_names:
            session.add(RolePermission(role_id=role.id, permission_id=permissions[name].id))

        user = User(
            tenant_id=tenant_id,
            username=username,
            password_hash=hash_password(password),
            is_active=True,
        )
        session.add(user)
        session.flush()
        session.add(UserRole(tenant_id=tenant_id, user_id=user.id, role_id=role.id))
        return user

    def create_tenant(self, payload: TenantCreate) -> tuple[Tenant, TenantSubscription]:
        name = payload.name.strip()
        country = payload.country.strip().upper()
        if not name or not country:
            raise ValidationError("tenant name and country are required")
        if name == PLATFORM_TENANT_NAME:
            raise ConflictError("tenant name already exists")

        with self._session() as session:
            now = self._clock()
            if payload.tier_id is not None:
                tier = session.get(SubscriptionTier, payload.tier_id)
                if tier is None:
                    raise NotFoundError("subscription tier not found")
                if not tier.is_active or tier.country != country:
                    raise ValidationError("subscription tier is not available for signup in this country")
            else:
                tier = TierService.default_signup_tier(session, country)
                if tier is None:
                    raise ValidationError(f"no active subscription tier for country {country}")

            tenant = Tenant(name=name, country=country, created_at=now)
            session.add(tenant)
            try:
                session.flush()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("tenant name already exists") from exc
            record = SubscriptionService.start_trial(session, tenant.id, tier, now)
            session.commit()
            session.refresh(tenant)
            session.refresh(record)
            return tenant, record

    def get_tenant(self, tenant_id: str) -> Tenant:
        with self._session() as session:
            tenant = session.get(Tenant, tenant_id)
            if tenant is None:
                raise NotFoundError("tenant not found")
            return tenant

    def bootstrap_admin(self, payload: BootstrapAdminRequest) -> User:
        with self._session() as session:
            tenant = session.get(Tenant, payload.tenant_id)
            if tenant is None or tenant.name == PLATFORM_TENANT_NAME:
                raise NotFoundError("tenant not found")
            tenant_users = session.exec(select(User).where(User.tenant_id == payload.tenant_id)).all()
            if tenant_users:
                raise ConflictError("tenant already initialized")
            try:
                user = self._create_user_with_role(
                    session,
                    tenant_id=payload.tenant_id,
                    username=payload.username,
                    password=payload.password,
                    role_name="owner",
                    permission_names=OWNER_PERMISSION_NAMES,
                )
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("tenant already initialized") from exc
            session.refresh(user)
            return user

    def bootstrap_platform_operator(self, payload: PlatformOperatorBootstrapRequest) -> User:
        if not hmac.compare_digest(payload.bootstrap_secret, PLATFORM_BOOTSTRAP_SECRET):
            raise AuthError("invalid bootstrap secret")

        with self._session() as session:
            tenant = session.exec(select(Tenant).where(Tenant.name == PLATFORM_TENANT_NAME)).first()
            if tenant is None:
                tenant = Tenant(name=PLATFORM_TENANT_NAME, created_at=self._clock())
                session.add(tenant)
                session.flush()
            try:
                user = self._create_user_with_role(
                    session,
                    tenant_id=tenant.id,
                    username=payload.username,
                    password=payload.password,
                    role_name=f"platform-operator-{payload.username}",
                    permission_names=OPERATOR_PERMISSION_NAMES,
                )
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("platform operator already exists") from exc
            session.refresh(user)
            return user

    def is_platform_tenant(self, tenant_id: str) -> bool:
        with self._session() as session:
            tenant = session.get(Tenant, tenant_id)
            return tenant is not None and tenant.name == PLATFORM_TENANT_NAME

    def collect_user_permissions(self, tenant_id: str, user_id: str) -> list[str]:
        statement = (
            select(Permission.name)
            .join(RolePermission, col(RolePermission.permission_id) == col(Permission.id))
            .join(UserRole, col(UserRole.role_id) == col(RolePermission.role_id))
            .where(UserRole.tenant_id == tenant_id)
            .where(UserRole.user_id == user_id)
        )
        with self._session() as session:
            return sorted(set(session.exec(statement).all()))

    def dev_login(self, tenant_id: str, username: str, password: str) -> tuple[User, list[str]]:
        with self._session() as session:
            statement = select(User).where(User.tenant_id == tenant_id).where(User.username == username)
            user = session.exec(statement).first()
            if user is None:
                raise AuthError("invalid credentials")
            if not user.is_active:
                raise AuthError("user disabled")
            if not verify_password(password, user.password_hash):
                raise AuthError("invalid credentials")
        return user, self.collect_user_permissions(tenant_id, user.id)
