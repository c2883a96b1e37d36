"""Domain models for the billing system."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..entitlements.models import SubscriptionSnapshot


class SubscriptionStatus(str, Enum):
    """Local subscription lifecycle status."""

    TRIAL = "trial"
    AUTHORIZED = "authorized"
    PENDING = "pending"
    PAUSED = "paused"
    CANCELLED = "cancelled"

    @classmethod
    def from_processor(cls, value: object) -> Optional["SubscriptionStatus"]:
        """Map a processor-reported status, returning ``None`` when unknown."""

        normalized = str(value or "").strip().lower()
        if normalized == "canceled":
            normalized = cls.CANCELLED.value
        try:
            status = cls(normalized)
        except ValueError:
            return None
        # Trial is a local-only state; the processor never reports it.
        return None if status == cls.TRIAL else status


ACTIVE_LIKE_STATUSES = frozenset({SubscriptionStatus.AUTHORIZED, SubscriptionStatus.PAUSED})


class WebhookTopic(str, Enum):
    """Webhook topics that the application reacts to."""

    SUBSCRIPTION = "subscription_preapproval"
    PAYMENT = "payment"


class PurchaseIntentStatus(str, Enum):
    """Lifecycle status for a checkout purchase intent."""

    PENDING = "pending"
    COMPLETED = "completed"
    CANCELED = "canceled"


class ReconciliationOutcome(str, Enum):
    """What a processed webhook delivery did to local state."""

    APPLIED = "applied"
    CREATED = "created"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    REJECTED_TRANSITION = "rejected_transition"
    UNLINKED = "unlinked"
    BOOKING_CONFIRMED = "booking_confirmed"


class Subscription(BaseModel):
    """Subscription state owned by one paying account."""

    subscription_id: str
    owner_id: str
    external_id: Optional[str] = None
    status: SubscriptionStatus
    current_period_end: Optional[datetime] = None
    pending_since: Optional[datetime] = None
    discount_code: Optional[str] = None
    discounted_until: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="after")
    def _check_invariants(self) -> "Subscription":
        if (self.status == SubscriptionStatus.PENDING) != (self.pending_since is not None):
            raise ValueError("pending_since must be set exactly when status is pending")
        if self.status in ACTIVE_LIKE_STATUSES and self.current_period_end is None:
            raise ValueError("current_period_end is required for authorized or paused subscriptions")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status == SubscriptionStatus.CANCELLED

    def snapshot(self) -> SubscriptionSnapshot:
        return SubscriptionSnapshot(
            status=self.status.value,
            current_period_end=self.current_period_end,
            pending_since=self.pending_since,
        )


class WebhookDelivery(BaseModel):
    """One verified webhook callback, identified by the processor request id."""

    delivery_id: str
    topic: str
    resource_id: str
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProcessorSubscription(BaseModel):
    """Recurring subscription as reported by the payment processor."""

    subscription_id: str
    status: str
    external_reference: Optional[str] = None
    next_payment_date: Optional[datetime] = None
    payer_email: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProcessorPayment(BaseModel):
    """Single payment as reported by the payment processor."""

    payment_id: str
    status: str
    external_reference: Optional[str] = None
    payer_email: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def booking_id(self) -> Optional[str]:
        """Booking identifier when this payment is a booking deposit."""

        if self.metadata.get("type") != "deposit":
            return None
        return self.metadata.get("booking_id") or self.external_reference

    @property
    def is_approved(self) -> bool:
        return self.status.lower() == "approved"


class ProcessorCheckout(BaseModel):
    """Processor response to a recurring subscription creation request."""

    subscription_id: str
    checkout_url: str

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PurchaseIntent(BaseModel):
    """Checkout awaiting its first authorization, carrying an optional discount code."""

    intent_id: str
    owner_id: str
    external_id: str
    discount_code: Optional[str] = None
    status: PurchaseIntentStatus = PurchaseIntentStatus.PENDING
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CheckoutSession(BaseModel):
    """Return value of a checkout creation request."""

    intent: PurchaseIntent
    checkout_url: str
    price: int

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ReconciliationResult(BaseModel):
    """Outcome of processing one webhook delivery."""

    outcome: ReconciliationOutcome
    delivery_id: Optional[str] = None
    subscription: Optional[Subscription] = None
    detail: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProcessorCredentials(BaseModel):
    """Encrypted OAuth credentials linking a shop to its processor account."""

    shop_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    processor_user_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class OAuthTokens(BaseModel):
    """Token response of the processor OAuth endpoint."""

    access_token: str
    refresh_token: str
    expires_in: int = Field(ge=0)
    user_id: Optional[str] = None
    public_key: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class DiscountExpirySummary(BaseModel):
    """Result of one discount expiry sweep."""

    updated_count: int = 0
    errors: List[Dict[str, str]] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing subsystem."""

    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RECOVERED = "payment_recovered"
    DISCOUNT_REDEEMED = "discount_redeemed"
    DISCOUNT_EXPIRED = "discount_expired"
    PROCESSOR_LINKED = "processor_linked"


class BillingAuditEvent(BaseModel):
    """Structured audit event for analytics and notifications."""

    event_type: BillingAuditEventType
    subscription_id: Optional[str] = None
    actor_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)
