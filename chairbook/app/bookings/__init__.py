"""Booking payment state: deposit confirmation and stale booking cleanup."""

from .models import (
    Booking,
    BookingStatus,
    PaymentConfirmation,
    PaymentConfirmationOutcome,
    PaymentStatus,
    ReapSummary,
)
from .service import (
    DEFAULT_PENDING_TTL,
    BookingNotifier,
    BookingPaymentService,
    BookingRepository,
    PendingBookingReaper,
)

__all__ = [
    "Booking",
    "BookingNotifier",
    "BookingPaymentService",
    "BookingRepository",
    "BookingStatus",
    "DEFAULT_PENDING_TTL",
    "PaymentConfirmation",
    "PaymentConfirmationOutcome",
    "PaymentStatus",
    "PendingBookingReaper",
    "ReapSummary",
]
