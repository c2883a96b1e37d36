"""API schemas for the session entitlement snapshot."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..entitlements import EntitlementDecision


class EntitlementResponse(BaseModel):
    has_access: bool = Field(alias="hasAccess")
    is_payment_failure: bool = Field(alias="isPaymentFailure")
    trial_ends_at: Optional[datetime] = Field(default=None, alias="trialEndsAt")
    subscription_status: Optional[str] = Field(default=None, alias="subscriptionStatus")
    access_expires_at: Optional[datetime] = Field(default=None, alias="accessExpiresAt")
    evaluated_at: datetime = Field(alias="evaluatedAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_decision(cls, decision: EntitlementDecision) -> "EntitlementResponse":
        return cls(
            has_access=decision.has_access,
            is_payment_failure=decision.is_payment_failure,
            trial_ends_at=decision.trial_ends_at,
            subscription_status=decision.subscription_status,
            access_expires_at=decision.access_expires_at,
            evaluated_at=decision.evaluated_at,
        )
