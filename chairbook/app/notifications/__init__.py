"""Push and realtime notification delivery."""

from .fanout import (
    GONE_STATUS_CODE,
    HttpRealtimeBroadcaster,
    NotificationFanout,
    NotificationOutbox,
    PushDeliveryError,
    PushSubscriptionStore,
    PushTransport,
    RealtimeBroadcaster,
    WebPushTransport,
)
from .models import BroadcastEvent, FanoutSummary, PendingNotification, PushPayload, PushSubscription

__all__ = [
    "BroadcastEvent",
    "FanoutSummary",
    "GONE_STATUS_CODE",
    "HttpRealtimeBroadcaster",
    "NotificationFanout",
    "NotificationOutbox",
    "PendingNotification",
    "PushDeliveryError",
    "PushPayload",
    "PushSubscription",
    "PushSubscriptionStore",
    "PushTransport",
    "RealtimeBroadcaster",
    "WebPushTransport",
]
