from __future__ import annotations

from typing import Any

PERM_WILDCARD = "*"
PERM_SUBSCRIPTION_READ = "subscription.read"
PERM_SUBSCRIPTION_WRITE = "subscription.write"
PERM_TIER_READ = "tier.read"
PERM_TIER_WRITE = "tier.write"
PERM_INVOICE_REVIEW = "invoice.review"
PERM_AUTOMATION_RUN = "automation.run"

DEFAULT_PERMISSION_NAMES = [
    PERM_WILDCARD,
    PERM_SUBSCRIPTION_READ,
    PERM_SUBSCRIPTION_WRITE,
    PERM_TIER_READ,
    PERM_TIER_WRITE,
    PERM_INVOICE_REVIEW,
    PERM_AUTOMATION_RUN,
]

OWNER_PERMISSION_NAMES = [
    PERM_SUBSCRIPTION_READ,
    PERM_SUBSCRIPTION_WRITE,
    PERM_TIER_READ,
]

OPERATOR_PERMISSION_NAMES = [
    PERM_SUBSCRIPTION_READ,
    PERM_TIER_READ,
    PERM_TIER_WRITE,
    PERM_INVOICE_REVIEW,
    PERM_AUTOMATION_RUN,
]


def has_permission(claims: dict[str, Any], permission: str) -> bool:
    permissions = claims.get("permissions", [])
    if not isinstance(permissions, list):
        return False
    return permission in permissions or PERM_WILDCARD in permissions
