from __future__ import annotations

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from storefront.domain.models import (
    SubscriptionTier,
    SubscriptionTierCreate,
    TenantSubscription,
    TierLimitCheckRead,
    TierLimitCheckRequest,
    TierLimitKey,
)
from storefront.infra.clock import Clock, system_clock
from storefront.infra.db import get_engine
from storefront.services.errors import ConflictError, NotFoundError, ValidationError

UNLIMITED = -1


class TierService:
    def __init__(self, clock: Clock = system_clock) -> None:
        self._clock = clock

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @staticmethod
    def _normalize_non_empty(value: str, field_name: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValidationError(f"{field_name} cannot be empty")
        return normalized

    @staticmethod
    def get_tier_in_session(session: Session, tier_id: str) -> SubscriptionTier:
        row = session.get(SubscriptionTier, tier_id)
        if row is None:
            raise NotFoundError("subscription tier not found")
        return row

    @staticmethod
    def default_signup_tier(session: Session, country: str) -> SubscriptionTier | None:
        return session.exec(
            select(SubscriptionTier)
            .where(SubscriptionTier.country == country)
            .where(col(SubscriptionTier.is_active).is_(True))
            .order_by(col(SubscriptionTier.tier_order), col(SubscriptionTier.monthly_price_cents))
        ).first()

    def create_tier(self, payload: SubscriptionTierCreate) -> SubscriptionTier:
        name = self._normalize_non_empty(payload.name, "name")
        country = self._normalize_non_empty(payload.country, "country").upper()
        currency = self._normalize_non_empty(payload.currency, "currency").upper()

        with self._session() as session:
            now = self._clock()
            tier = SubscriptionTier(
                name=name,
                country=country,
                currency=currency,
                monthly_price_cents=payload.monthly_price_cents,
                trial_days=payload.trial_days,
                overdue_grace_days=payload.overdue_grace_days,
                product_limit=payload.product_limit,
                order_limit_per_month=payload.order_limit_per_month,
                storage_limit_mb=payload.storage_limit_mb,
                tier_order=payload.tier_order,
                is_active=payload.is_active,
                created_at=now,
                updated_at=now,
            )
            session.add(tier)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("subscription tier already exists for country") from exc
            session.refresh(tier)
            return tier

    def list_tiers(
        self,
        *,
        country: str | None = None,
        is_active: bool | None = None,
    ) -> list[SubscriptionTier]:
        with self._session() as session:
            statement = select(SubscriptionTier)
            if country is not None:
                statement = statement.where(SubscriptionTier.country == country.strip().upper())
            if is_active is not None:
                statement = statement.where(SubscriptionTier.is_active == is_active)
            rows = list(session.exec(statement).all())
            return sorted(rows, key=lambda item: (item.country, item.tier_order, item.monthly_price_cents))

    def get_tier(self, tier_id: str) -> SubscriptionTier:
        with self._session() as session:
            return self.get_tier_in_session(session, tier_id)

    def set_tier_active(self, tier_id: str, is_active: bool) -> SubscriptionTier:
        with self._session() as session:
            tier = self.get_tier_in_session(session, tier_id)
            tier.is_active = is_active
            tier.updated_at = self._clock()
            session.add(tier)
            session.commit()
            session.refresh(tier)
            return tier

    @staticmethod
    def limit_for(tier: SubscriptionTier, limit_key: TierLimitKey) -> int:
        if limit_key == TierLimitKey.PRODUCTS:
            return tier.product_limit
        if limit_key == TierLimitKey.ORDERS_PER_MONTH:
            return tier.order_limit_per_month
        return tier.storage_limit_mb

    def check_limit(self, tenant_id: str, payload: TierLimitCheckRequest) -> TierLimitCheckRead:
        with self._session() as session:
            record = session.get(TenantSubscription, tenant_id)
            if record is None:
                raise NotFoundError("tenant subscription not found")
            tier = self.get_tier_in_session(session, record.current_tier_id)

        limit = self.limit_for(tier, payload.limit_key)
        if limit == UNLIMITED:
            return TierLimitCheckRead(
                tenant_id=tenant_id,
                tier_id=tier.id,
                limit_key=payload.limit_key,
                limit=limit,
                current_usage=payload.current_usage,
                requested=payload.requested,
                unlimited=True,
                allowed=True,
            )
        projected = payload.current_usage + payload.requested
        return TierLimitCheckRead(
            tenant_id=tenant_id,
            tier_id=tier.id,
            limit_key=payload.limit_key,
            limit=limit,
            current_usage=payload.current_usage,
            requested=payload.requested,
            unlimited=False,
            allowed=projected <= limit,
            remaining=max(limit - payload.current_usage, 0),
        )
