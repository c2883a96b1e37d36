"""Entitlement computation for trial and subscription access."""

from .engine import (
    ACTIVE_LIKE_STATUSES,
    DEFAULT_GRACE_POLICY,
    EntitlementEngine,
    GracePolicy,
    has_access,
    is_payment_failure,
    subscription_access_ends_at,
)
from .models import Account, AccountRole, EntitlementDecision, SessionUser, SubscriptionSnapshot
from .service import AccountRepository, EntitlementService, SubscriptionReader

__all__ = [
    "ACTIVE_LIKE_STATUSES",
    "DEFAULT_GRACE_POLICY",
    "Account",
    "AccountRepository",
    "AccountRole",
    "EntitlementDecision",
    "EntitlementEngine",
    "EntitlementService",
    "GracePolicy",
    "SessionUser",
    "SubscriptionReader",
    "SubscriptionSnapshot",
    "has_access",
    "is_payment_failure",
    "subscription_access_ends_at",
]
