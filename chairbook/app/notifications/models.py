"""Models describing push endpoints and realtime events."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class BroadcastEvent(str, Enum):
    """Realtime events delivered to a user's open sessions and devices."""

    NEW_NOTIFICATION = "new-notification"
    TEAM_JOINED = "team-joined"
    TEAM_REMOVED = "team-removed"
    BOOKING_CREATED = "booking-created"
    BOOKING_UPDATED = "booking-updated"
    BOOKING_PAID = "booking-paid"
    PAYMENT_FAILED = "payment-failed"


class PushSubscription(BaseModel):
    """Web push endpoint registered by one browser or device."""

    user_id: str
    endpoint: str
    p256dh: str
    auth: str

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def subscription_info(self) -> Dict[str, Any]:
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}


class PushPayload(BaseModel):
    title: str
    body: str
    url: Optional[str] = None
    tag: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class FanoutSummary(BaseModel):
    """Per-call delivery counts, for logging and tests."""

    delivered: int = 0
    pruned: int = 0
    failed: int = 0
    broadcast: bool = False
    errors: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class PendingNotification(BaseModel):
    """A notification recorded during a unit of work and delivered after it."""

    user_id: str
    event: BroadcastEvent
    payload: PushPayload
    data: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)
