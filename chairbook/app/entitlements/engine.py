"""Pure access computation from trial and subscription state.

Every function here is side-effect free and total: absent or malformed input
evaluates to "no access" instead of raising. Callers pass the same ``now`` to
every check made while serving one request so that session refresh, route
guards and banners never disagree.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from .models import EntitlementDecision

PENDING_STATUS = "pending"
ACTIVE_LIKE_STATUSES = frozenset({"authorized", "paused"})


@dataclass(frozen=True)
class GracePolicy:
    """Grace windows applied on top of persisted timestamps."""

    billing_grace: timedelta = timedelta(days=2)
    payment_retry_grace: timedelta = timedelta(days=3)


DEFAULT_GRACE_POLICY = GracePolicy()


def _coerce_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _field(subscription: Any, name: str, alias: str) -> Any:
    if subscription is None:
        return None
    if isinstance(subscription, Mapping):
        return subscription.get(name, subscription.get(alias))
    return getattr(subscription, name, None)


def _status(subscription: Any) -> Optional[str]:
    raw = _field(subscription, "status", "status")
    if raw is None:
        return None
    value = getattr(raw, "value", raw)
    if not isinstance(value, str):
        return None
    return value.strip().lower() or None


def _in_trial(trial_ends_at: Any, now: datetime) -> bool:
    trial_end = _coerce_datetime(trial_ends_at)
    return trial_end is not None and now < trial_end


def subscription_access_ends_at(
    subscription: Any,
    *,
    policy: GracePolicy = DEFAULT_GRACE_POLICY,
) -> Optional[datetime]:
    """Return the instant subscription-based access lapses, if any."""

    status = _status(subscription)
    period_end = _coerce_datetime(_field(subscription, "current_period_end", "currentPeriodEnd"))
    if status is None or period_end is None:
        return None

    if status == PENDING_STATUS:
        pending_since = _coerce_datetime(_field(subscription, "pending_since", "pendingSince"))
        if pending_since is None:
            return None
        return pending_since + policy.payment_retry_grace

    if status in ACTIVE_LIKE_STATUSES:
        return period_end + policy.billing_grace

    return None


def has_access(
    trial_ends_at: Any,
    subscription: Any,
    now: datetime,
    *,
    policy: GracePolicy = DEFAULT_GRACE_POLICY,
) -> bool:
    """Return ``True`` when the account may use paid features at ``now``."""

    current = _coerce_datetime(now)
    if current is None:
        return False
    if _in_trial(trial_ends_at, current):
        return True
    access_ends_at = subscription_access_ends_at(subscription, policy=policy)
    return access_ends_at is not None and current < access_ends_at


def is_payment_failure(
    subscription: Any,
    now: datetime,
    *,
    policy: GracePolicy = DEFAULT_GRACE_POLICY,
) -> bool:
    """Return ``True`` once a pending subscription has exhausted its retry window."""

    current = _coerce_datetime(now)
    if current is None or _status(subscription) != PENDING_STATUS:
        return False
    pending_since = _coerce_datetime(_field(subscription, "pending_since", "pendingSince"))
    if pending_since is None:
        return False
    return current >= pending_since + policy.payment_retry_grace


class EntitlementEngine:
    """Binds a :class:`GracePolicy` to the access functions."""

    def __init__(self, policy: GracePolicy = DEFAULT_GRACE_POLICY) -> None:
        self._policy = policy

    @property
    def policy(self) -> GracePolicy:
        return self._policy

    def has_access(self, trial_ends_at: Any, subscription: Any, now: datetime) -> bool:
        return has_access(trial_ends_at, subscription, now, policy=self._policy)

    def is_payment_failure(self, subscription: Any, now: datetime) -> bool:
        return is_payment_failure(subscription, now, policy=self._policy)

    def evaluate(self, trial_ends_at: Any, subscription: Any, now: datetime) -> EntitlementDecision:
        trial_end = _coerce_datetime(trial_ends_at)
        subscription_end = subscription_access_ends_at(subscription, policy=self._policy)
        candidates = [value for value in (trial_end, subscription_end) if value is not None]
        return EntitlementDecision(
            has_access=self.has_access(trial_ends_at, subscription, now),
            is_payment_failure=self.is_payment_failure(subscription, now),
            evaluated_at=now,
            trial_ends_at=trial_end,
            subscription_status=_status(subscription),
            access_expires_at=max(candidates) if candidates else None,
        )


__all__ = [
    "ACTIVE_LIKE_STATUSES",
    "DEFAULT_GRACE_POLICY",
    "EntitlementEngine",
    "GracePolicy",
    "has_access",
    "is_payment_failure",
    "subscription_access_ends_at",
]
