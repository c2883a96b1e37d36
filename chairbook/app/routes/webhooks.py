"""Inbound payment processor callbacks."""
from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from ..billing import SubscriptionReconciler, WebhookAuthenticationError
from ..notifications import NotificationFanout, NotificationOutbox
from ..schemas.billing import WebhookAck, WebhookNotification
from ..services.billing import get_subscription_reconciler
from ..services.notifications import get_notification_fanout, schedule_notifications

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _parse_notification(payload: Any) -> WebhookNotification:
    if not isinstance(payload, dict):
        return WebhookNotification()
    try:
        return WebhookNotification.model_validate(payload)
    except ValidationError:
        return WebhookNotification()


@router.post("/mercadopago", response_model=WebhookAck)
async def receive_processor_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_signature: Optional[str] = Header(default=None),
    x_request_id: Optional[str] = Header(default=None),
    reconciler: SubscriptionReconciler = Depends(get_subscription_reconciler),
    fanout: NotificationFanout = Depends(get_notification_fanout),
) -> WebhookAck:
    """Verify and apply one processor callback.

    Signature failures answer 401 with a generic body. Anything the
    processor should retry answers 500; everything else, including unknown
    topics, duplicate deliveries and resources the processor no longer
    serves, is acknowledged with 200. Notifications go out after the
    response.
    """

    try:
        payload = await request.json()
    except ValueError:
        payload = None
    notification = _parse_notification(payload)

    params = request.query_params
    topic = notification.resolved_topic or params.get("type") or params.get("topic")
    resource_id = notification.resource_id or params.get("data.id") or params.get("id")

    outbox = NotificationOutbox()
    try:
        result = await run_in_threadpool(
            reconciler.process_webhook,
            x_signature,
            x_request_id,
            topic,
            resource_id,
            outbox,
        )
    except WebhookAuthenticationError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized") from None
    except Exception as exc:
        logger.exception("Webhook handling failed", extra={"request_id": x_request_id})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal Server Error",
        ) from exc

    schedule_notifications(background_tasks, outbox, fanout)
    return WebhookAck.from_result(result)
