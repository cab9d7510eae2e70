from __future__ import annotations


class SubscriptionError(Exception):
    pass


class NotFoundError(SubscriptionError):
    pass


class ConflictError(SubscriptionError):
    pass


class InvalidStateError(SubscriptionError):
    pass


class ExpiredSubscriptionError(InvalidStateError):
    pass


class DuplicateInvoiceError(SubscriptionError):
    pass


class ValidationError(SubscriptionError):
    pass


class AuthError(SubscriptionError):
    pass
