"""Application wiring for push and realtime delivery."""
from __future__ import annotations

import logging
from functools import lru_cache

from fastapi import BackgroundTasks

from ... import app_context
from ..notifications import HttpRealtimeBroadcaster, NotificationFanout, NotificationOutbox, WebPushTransport
from ..notifications.repository import PostgresPushSubscriptionRepository

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_notification_fanout() -> NotificationFanout:
    config = app_context.get_config()

    transport = None
    if config.vapid_private_key:
        transport = WebPushTransport(
            vapid_private_key=config.vapid_private_key,
            vapid_subject=config.vapid_subject,
            timeout=config.push_timeout_seconds,
        )
    else:
        logger.warning("VAPID keys not configured; web push disabled")

    broadcaster = None
    if config.realtime_url and config.realtime_service_key:
        broadcaster = HttpRealtimeBroadcaster(
            base_url=config.realtime_url,
            service_key=config.realtime_service_key,
            timeout=config.push_timeout_seconds,
        )

    return NotificationFanout(PostgresPushSubscriptionRepository(), transport, broadcaster)


def schedule_notifications(
    background_tasks: BackgroundTasks,
    outbox: NotificationOutbox,
    fanout: NotificationFanout,
) -> int:
    """Queue everything recorded in ``outbox`` for delivery after the response."""

    pending = outbox.drain()
    for notification in pending:
        background_tasks.add_task(
            fanout.notify,
            notification.user_id,
            notification.event,
            notification.payload,
            notification.data,
        )
    return len(pending)


__all__ = ["get_notification_fanout", "schedule_notifications"]
