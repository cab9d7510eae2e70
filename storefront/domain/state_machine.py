from __future__ import annotations

from enum import StrEnum


class SubscriptionStatus(StrEnum):
    TRIAL = "TRIAL"
    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    SUSPENDED = "SUSPENDED"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"


class SubscriptionTrigger(StrEnum):
    TRIAL_CONVERSION_APPROVED = "TRIAL_CONVERSION_APPROVED"
    RENEWAL_APPROVED = "RENEWAL_APPROVED"
    UPGRADE_APPROVED = "UPGRADE_APPROVED"
    DOWNGRADE_APPROVED = "DOWNGRADE_APPROVED"
    TRIAL_EXPIRED = "TRIAL_EXPIRED"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    GRACE_ELAPSED = "GRACE_ELAPSED"
    PAUSE_REQUESTED = "PAUSE_REQUESTED"
    RESUME_REQUESTED = "RESUME_REQUESTED"
    CANCEL_REQUESTED = "CANCEL_REQUESTED"


class InvoiceType(StrEnum):
    TRIAL_CONVERSION = "TRIAL_CONVERSION"
    RENEWAL = "RENEWAL"
    UPGRADE = "UPGRADE"
    DOWNGRADE = "DOWNGRADE"


class InvoiceStatus(StrEnum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


_ALL_APPROVALS = {
    SubscriptionTrigger.TRIAL_CONVERSION_APPROVED: SubscriptionStatus.ACTIVE,
    SubscriptionTrigger.RENEWAL_APPROVED: SubscriptionStatus.ACTIVE,
    SubscriptionTrigger.UPGRADE_APPROVED: SubscriptionStatus.ACTIVE,
    SubscriptionTrigger.DOWNGRADE_APPROVED: SubscriptionStatus.ACTIVE,
}

SUBSCRIPTION_TRANSITIONS: dict[SubscriptionStatus, dict[SubscriptionTrigger, SubscriptionStatus]] = {
    SubscriptionStatus.TRIAL: {
        SubscriptionTrigger.TRIAL_CONVERSION_APPROVED: SubscriptionStatus.ACTIVE,
        SubscriptionTrigger.TRIAL_EXPIRED: SubscriptionStatus.OVERDUE,
    },
    SubscriptionStatus.ACTIVE: {
        SubscriptionTrigger.SUBSCRIPTION_EXPIRED: SubscriptionStatus.OVERDUE,
        SubscriptionTrigger.PAUSE_REQUESTED: SubscriptionStatus.PAUSED,
        SubscriptionTrigger.CANCEL_REQUESTED: SubscriptionStatus.CANCELLED,
        SubscriptionTrigger.RENEWAL_APPROVED: SubscriptionStatus.ACTIVE,
        SubscriptionTrigger.UPGRADE_APPROVED: SubscriptionStatus.ACTIVE,
        SubscriptionTrigger.DOWNGRADE_APPROVED: SubscriptionStatus.ACTIVE,
    },
    SubscriptionStatus.OVERDUE: {
        **_ALL_APPROVALS,
        SubscriptionTrigger.GRACE_ELAPSED: SubscriptionStatus.SUSPENDED,
        SubscriptionTrigger.CANCEL_REQUESTED: SubscriptionStatus.CANCELLED,
    },
    SubscriptionStatus.PAUSED: {
        SubscriptionTrigger.RESUME_REQUESTED: SubscriptionStatus.ACTIVE,
        SubscriptionTrigger.CANCEL_REQUESTED: SubscriptionStatus.CANCELLED,
        SubscriptionTrigger.RENEWAL_APPROVED: SubscriptionStatus.ACTIVE,
    },
    SubscriptionStatus.SUSPENDED: dict(_ALL_APPROVALS),
    SubscriptionStatus.CANCELLED: {},
}

APPROVAL_TRIGGERS: dict[InvoiceType, SubscriptionTrigger] = {
    InvoiceType.TRIAL_CONVERSION: SubscriptionTrigger.TRIAL_CONVERSION_APPROVED,
    InvoiceType.RENEWAL: SubscriptionTrigger.RENEWAL_APPROVED,
    InvoiceType.UPGRADE: SubscriptionTrigger.UPGRADE_APPROVED,
    InvoiceType.DOWNGRADE: SubscriptionTrigger.DOWNGRADE_APPROVED,
}

INVOICE_TRANSITIONS: dict[InvoiceStatus, set[InvoiceStatus]] = {
    InvoiceStatus.PENDING: {InvoiceStatus.SUBMITTED},
    InvoiceStatus.SUBMITTED: {InvoiceStatus.APPROVED, InvoiceStatus.REJECTED},
    InvoiceStatus.APPROVED: set(),
    InvoiceStatus.REJECTED: set(),
}

OPEN_INVOICE_STATUSES = (InvoiceStatus.PENDING, InvoiceStatus.SUBMITTED)


def next_status(source: SubscriptionStatus, trigger: SubscriptionTrigger) -> SubscriptionStatus | None:
    return SUBSCRIPTION_TRANSITIONS.get(source, {}).get(trigger)


def can_transition(source: SubscriptionStatus, trigger: SubscriptionTrigger) -> bool:
    return next_status(source, trigger) is not None


def can_invoice_transition(source: InvoiceStatus, target: InvoiceStatus) -> bool:
    return target in INVOICE_TRANSITIONS.get(source, set())
