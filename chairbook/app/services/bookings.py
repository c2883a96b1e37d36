"""Application wiring for booking payment services.

Notifications are not wired here: routes hand each call an outbox and
deliver it in the background.
"""
from __future__ import annotations

from functools import lru_cache

from ... import app_context
from ..bookings import BookingPaymentService, PendingBookingReaper
from ..bookings.repository import PostgresBookingRepository


@lru_cache(maxsize=1)
def get_pending_booking_reaper() -> PendingBookingReaper:
    config = app_context.get_config()
    return PendingBookingReaper(PostgresBookingRepository(), ttl=config.pending_booking_ttl)


@lru_cache(maxsize=1)
def get_booking_payment_service() -> BookingPaymentService:
    return BookingPaymentService(PostgresBookingRepository())


__all__ = ["get_booking_payment_service", "get_pending_booking_reaper"]
