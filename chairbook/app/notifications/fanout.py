"""Best-effort delivery of push notifications and realtime events.

Nothing in this module raises to its caller: delivery problems are logged and
counted, and endpoints the push service reports as gone are pruned.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence
from urllib import error as urllib_error, request as urllib_request

from pywebpush import WebPushException, webpush

from .models import BroadcastEvent, FanoutSummary, PendingNotification, PushPayload, PushSubscription

logger = logging.getLogger(__name__)

GONE_STATUS_CODE = 410


class PushDeliveryError(RuntimeError):
    """Raised by a transport when one endpoint could not be reached."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PushSubscriptionStore(Protocol):
    def list_for_user(self, user_id: str) -> Sequence[PushSubscription]:
        ...

    def delete_endpoint(self, endpoint: str) -> bool:
        ...


class PushTransport(Protocol):
    def send(self, subscription: PushSubscription, payload: PushPayload) -> None:
        """Deliver ``payload`` or raise :class:`PushDeliveryError`."""


class RealtimeBroadcaster(Protocol):
    def publish(self, user_id: str, event: BroadcastEvent, payload: Mapping[str, Any]) -> None:
        ...


class WebPushTransport:
    """Web push transport signing requests with the configured VAPID key."""

    def __init__(
        self,
        *,
        vapid_private_key: str,
        vapid_subject: str,
        ttl: int = 60,
        timeout: float = 10.0,
    ) -> None:
        self._vapid_private_key = vapid_private_key
        self._vapid_claims = {"sub": vapid_subject}
        self._ttl = ttl
        self._timeout = timeout

    def send(self, subscription: PushSubscription, payload: PushPayload) -> None:
        try:
            webpush(
                subscription_info=subscription.subscription_info(),
                data=payload.model_dump_json(exclude_none=True),
                vapid_private_key=self._vapid_private_key,
                vapid_claims=dict(self._vapid_claims),
                ttl=self._ttl,
                timeout=self._timeout,
            )
        except WebPushException as exc:
            response = getattr(exc, "response", None)
            status_code = getattr(response, "status_code", None)
            raise PushDeliveryError(str(exc), status_code=status_code) from exc


class HttpRealtimeBroadcaster:
    """Publishes events on the per-user realtime channel ``user:<id>``."""

    def __init__(self, *, base_url: str, service_key: str, timeout: float = 5.0) -> None:
        self._endpoint = f"{base_url.rstrip('/')}/realtime/v1/api/broadcast"
        self._service_key = service_key
        self._timeout = timeout

    def publish(self, user_id: str, event: BroadcastEvent, payload: Mapping[str, Any]) -> None:
        body = json.dumps(
            {"messages": [{"topic": f"user:{user_id}", "event": event.value, "payload": dict(payload)}]},
            default=str,
        ).encode("utf-8")
        request = urllib_request.Request(
            self._endpoint,
            data=body,
            method="POST",
            headers={
                "apikey": self._service_key,
                "Authorization": f"Bearer {self._service_key}",
                "Content-Type": "application/json",
            },
        )
        with urllib_request.urlopen(request, timeout=self._timeout) as response:
            response.read()


class NotificationFanout:
    """Fans events out to a user's push endpoints and realtime channel."""

    def __init__(
        self,
        store: PushSubscriptionStore,
        transport: Optional[PushTransport] = None,
        broadcaster: Optional[RealtimeBroadcaster] = None,
    ) -> None:
        self._store = store
        self._transport = transport
        self._broadcaster = broadcaster

    def send_push(self, user_id: str, payload: PushPayload) -> FanoutSummary:
        summary = FanoutSummary()
        if self._transport is None:
            logger.debug("Push transport not configured; skipping push", extra={"user_id": user_id})
            return summary

        try:
            subscriptions = list(self._store.list_for_user(user_id))
        except Exception:
            logger.exception("Failed to load push subscriptions", extra={"user_id": user_id})
            summary.failed += 1
            return summary

        if not subscriptions:
            logger.info("No push subscriptions for user", extra={"user_id": user_id})
            return summary

        for subscription in subscriptions:
            try:
                self._transport.send(subscription, payload)
            except PushDeliveryError as exc:
                if exc.status_code == GONE_STATUS_CODE:
                    self._prune(subscription, summary)
                    continue
                logger.warning(
                    "Push delivery failed",
                    extra={"user_id": user_id, "push_endpoint": subscription.endpoint, "status_code": exc.status_code},
                )
                summary.failed += 1
                summary.errors[subscription.endpoint] = str(exc)
            except Exception as exc:
                logger.exception(
                    "Unexpected push delivery error",
                    extra={"user_id": user_id, "push_endpoint": subscription.endpoint},
                )
                summary.failed += 1
                summary.errors[subscription.endpoint] = str(exc)
            else:
                summary.delivered += 1
        return summary

    def _prune(self, subscription: PushSubscription, summary: FanoutSummary) -> None:
        logger.info("Pruning expired push endpoint", extra={"push_endpoint": subscription.endpoint})
        try:
            self._store.delete_endpoint(subscription.endpoint)
        except Exception:
            logger.exception("Failed to prune push endpoint", extra={"push_endpoint": subscription.endpoint})
            summary.failed += 1
            return
        summary.pruned += 1

    def broadcast(
        self,
        user_id: str,
        event: BroadcastEvent,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        if self._broadcaster is None:
            return False
        try:
            self._broadcaster.publish(user_id, event, payload or {})
        except (urllib_error.URLError, OSError, ValueError):
            logger.warning("Realtime broadcast failed", extra={"user_id": user_id, "event": event.value})
            return False
        except Exception:
            logger.exception("Unexpected realtime broadcast error", extra={"user_id": user_id, "event": event.value})
            return False
        return True

    def notify(
        self,
        user_id: str,
        event: BroadcastEvent,
        payload: PushPayload,
        data: Optional[Dict[str, Any]] = None,
    ) -> FanoutSummary:
        """Broadcast ``event`` and push ``payload`` to every endpoint of ``user_id``."""

        summary = self.send_push(user_id, payload)
        summary.broadcast = self.broadcast(user_id, event, data or payload.model_dump(exclude_none=True))
        return summary


class NotificationOutbox:
    """Collects notifications while a request does its work.

    Services accept it wherever they accept a notifier. Nothing is delivered
    until the caller drains it, normally into FastAPI background tasks once
    the response is on its way.
    """

    def __init__(self) -> None:
        self._pending: List[PendingNotification] = []

    def notify(
        self,
        user_id: str,
        event: BroadcastEvent,
        payload: PushPayload,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._pending.append(PendingNotification(user_id=user_id, event=event, payload=payload, data=data))

    @property
    def pending(self) -> List[PendingNotification]:
        return list(self._pending)

    def drain(self) -> List[PendingNotification]:
        pending, self._pending = self._pending, []
        return pending


__all__ = [
    "GONE_STATUS_CODE",
    "HttpRealtimeBroadcaster",
    "NotificationFanout",
    "NotificationOutbox",
    "PushDeliveryError",
    "PushSubscriptionStore",
    "PushTransport",
    "RealtimeBroadcaster",
    "WebPushTransport",
]
