"""Route guards enforcing an active trial or subscription."""
from __future__ import annotations

from fastapi import Depends

from ..entitlements.models import EntitlementDecision, SessionUser
from ..entitlements.service import EntitlementService
from ..services.auth import get_session_user
from ..services.entitlements import get_entitlement_service
from .exceptions import FeatureGateError


def ensure_access(decision: EntitlementDecision) -> EntitlementDecision:
    """Raise :class:`FeatureGateError` unless ``decision`` grants access.

    A lapsed retry window is reported with its own code so clients can send
    the user to update their payment method instead of to checkout.
    """

    if decision.has_access:
        return decision
    if decision.is_payment_failure:
        raise FeatureGateError(
            code="payment_failed",
            message="Your last payment failed. Update your payment method to restore access.",
            detail={"subscriptionStatus": decision.subscription_status},
        )
    raise FeatureGateError(
        code="subscription_inactive",
        message="An active subscription is required.",
        detail={"subscriptionStatus": decision.subscription_status},
    )


def require_active_subscription(
    current_user: SessionUser = Depends(get_session_user),
    service: EntitlementService = Depends(get_entitlement_service),
) -> EntitlementDecision:
    try:
        return ensure_access(service.evaluate(current_user.user_id))
    except FeatureGateError as exc:
        raise exc.to_http_exception() from exc
