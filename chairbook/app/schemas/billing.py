"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import CheckoutSession, DiscountExpirySummary, ReconciliationResult


class WebhookResourceData(BaseModel):
    id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)


class WebhookNotification(BaseModel):
    """Body of a processor callback; only the topic and resource id matter."""

    type: Optional[str] = None
    topic: Optional[str] = None
    action: Optional[str] = None
    data: Optional[WebhookResourceData] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @property
    def resolved_topic(self) -> Optional[str]:
        return self.type or self.topic

    @property
    def resource_id(self) -> Optional[str]:
        return self.data.id if self.data else None


class WebhookAck(BaseModel):
    success: bool = True
    outcome: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: ReconciliationResult) -> "WebhookAck":
        return cls(success=True, outcome=result.outcome.value)


class CheckoutRequest(BaseModel):
    payer_email: str = Field(alias="payerEmail", min_length=3)
    discount_code: Optional[str] = Field(default=None, alias="discountCode")

    model_config = ConfigDict(populate_by_name=True)


class CheckoutResponse(BaseModel):
    checkout_url: str = Field(alias="checkoutUrl")
    price: int
    discount_code: Optional[str] = Field(default=None, alias="discountCode")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_checkout(cls, session: CheckoutSession) -> "CheckoutResponse":
        return cls(
            checkout_url=session.checkout_url,
            price=session.price,
            discount_code=session.intent.discount_code,
        )


class CleanupResponse(BaseModel):
    success: bool = True
    cleaned_up: int = Field(alias="cleanedUp")
    timestamp: datetime

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionUpdateResponse(BaseModel):
    success: bool = True
    updated_count: int = Field(alias="updatedCount")
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    timestamp: datetime

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_summary(cls, summary: DiscountExpirySummary, timestamp: datetime) -> "SubscriptionUpdateResponse":
        return cls(
            updated_count=summary.updated_count,
            errors=list(summary.errors),
            timestamp=timestamp,
        )
