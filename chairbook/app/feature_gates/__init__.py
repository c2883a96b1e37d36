"""Feature gating utilities coordinating entitlement enforcement."""
from .enforcement import ensure_access, require_active_subscription
from .exceptions import FeatureGateError

__all__ = [
    "FeatureGateError",
    "ensure_access",
    "require_active_subscription",
]
