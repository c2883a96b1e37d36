"""Scheduled maintenance endpoints triggered by an external scheduler."""
from __future__ import annotations

import hmac
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, status

from ... import app_context
from ...config import CoreConfig
from ..billing import SubscriptionReconciler
from ..bookings import PendingBookingReaper
from ..notifications import NotificationFanout, NotificationOutbox
from ..schemas.billing import CleanupResponse, SubscriptionUpdateResponse
from ..services.billing import get_subscription_reconciler
from ..services.bookings import get_pending_booking_reaper
from ..services.notifications import get_notification_fanout, schedule_notifications

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"])


def require_cron_secret(
    authorization: Optional[str] = Header(default=None),
    config: CoreConfig = Depends(app_context.get_config),
) -> None:
    if not config.cron_secret:
        logger.error("CRON_SECRET not configured; refusing to run scheduled job")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Cron not configured")

    expected = f"Bearer {config.cron_secret}".encode("utf-8")
    if not hmac.compare_digest((authorization or "").encode("utf-8"), expected):
        logger.warning("Unauthorized cron request")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.get(
    "/cleanup-pending-bookings",
    response_model=CleanupResponse,
    dependencies=[Depends(require_cron_secret)],
)
def cleanup_pending_bookings(
    background_tasks: BackgroundTasks,
    reaper: PendingBookingReaper = Depends(get_pending_booking_reaper),
    fanout: NotificationFanout = Depends(get_notification_fanout),
) -> CleanupResponse:
    outbox = NotificationOutbox()
    try:
        summary = reaper.run(notifier=outbox)
    except Exception as exc:
        logger.exception("Error cleaning up pending bookings")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error",
        ) from exc
    schedule_notifications(background_tasks, outbox, fanout)
    return CleanupResponse(cleaned_up=summary.cancelled, timestamp=summary.ran_at)


@router.get(
    "/update-subscriptions",
    response_model=SubscriptionUpdateResponse,
    dependencies=[Depends(require_cron_secret)],
)
def update_subscriptions(
    reconciler: SubscriptionReconciler = Depends(get_subscription_reconciler),
) -> SubscriptionUpdateResponse:
    now = datetime.now(timezone.utc)
    try:
        summary = reconciler.expire_discounts(now)
    except Exception as exc:
        logger.exception("Error restoring standard subscription prices")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error",
        ) from exc
    return SubscriptionUpdateResponse.from_summary(summary, now)
