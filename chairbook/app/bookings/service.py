"""Pending booking reaping and deposit payment confirmation."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from ..notifications.models import BroadcastEvent, PushPayload
from .models import (
    Booking,
    BookingStatus,
    PaymentConfirmation,
    PaymentConfirmationOutcome,
    PaymentStatus,
    ReapSummary,
)

logger = logging.getLogger(__name__)

DEFAULT_PENDING_TTL = timedelta(minutes=10)


class BookingRepository(Protocol):
    """Persistence operations required by the booking services."""

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        ...

    def cancel_stale_pending(self, cutoff: datetime, *, now: datetime) -> List[Booking]:
        """Cancel unpaid bookings created before ``cutoff`` in one conditional statement."""

    def confirm_payment(self, booking_id: str, *, now: datetime) -> Optional[Booking]:
        """Confirm a still-pending booking in one conditional statement."""


class BookingNotifier(Protocol):
    def notify(
        self,
        user_id: str,
        event: BroadcastEvent,
        payload: PushPayload,
        data: Optional[Dict[str, Any]] = None,
    ) -> Any:
        ...


def _notify_barber(
    notifier: Optional[BookingNotifier],
    booking: Booking,
    event: BroadcastEvent,
    payload: PushPayload,
) -> None:
    if notifier is None or not booking.barber_id:
        return
    try:
        notifier.notify(
            booking.barber_id,
            event,
            payload,
            {"bookingId": booking.booking_id, "status": booking.status.value},
        )
    except Exception:
        logger.exception("Booking notification failed", extra={"booking_id": booking.booking_id})


class PendingBookingReaper:
    """Cancels bookings whose deposit was never paid.

    Safe to run repeatedly and concurrently: the repository applies the
    cancellation as one guarded statement, so rows already confirmed or
    cancelled never match a second time.
    """

    def __init__(
        self,
        repository: BookingRepository,
        *,
        ttl: timedelta = DEFAULT_PENDING_TTL,
        notifier: Optional[BookingNotifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")
        self._repository = repository
        self._ttl = ttl
        self._notifier = notifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def run(self, now: Optional[datetime] = None, *, notifier: Optional[BookingNotifier] = None) -> ReapSummary:
        """Cancel stale bookings, then tell each barber through ``notifier`` or the configured one."""

        current = now or self._clock()
        active_notifier = notifier if notifier is not None else self._notifier
        cutoff = current - self._ttl
        cancelled = self._repository.cancel_stale_pending(cutoff, now=current)
        logger.info(
            "Cleaned up expired pending bookings",
            extra={"cancelled_count": len(cancelled), "cutoff": cutoff.isoformat()},
        )
        for booking in cancelled:
            _notify_barber(
                active_notifier,
                booking,
                BroadcastEvent.BOOKING_UPDATED,
                PushPayload(
                    title="Booking cancelled",
                    body="A booking was cancelled because its deposit was not paid in time.",
                    url="/dashboard",
                ),
            )
        return ReapSummary(cancelled=len(cancelled), cutoff=cutoff, ran_at=current)


class BookingPaymentService:
    """Applies an approved deposit payment to its booking."""

    def __init__(
        self,
        repository: BookingRepository,
        *,
        notifier: Optional[BookingNotifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._notifier = notifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def confirm_booking_payment(
        self,
        booking_id: str,
        *,
        notifier: Optional[BookingNotifier] = None,
    ) -> PaymentConfirmation:
        booking = self._repository.confirm_payment(booking_id, now=self._clock())
        if booking is not None:
            logger.info("Booking deposit confirmed", extra={"booking_id": booking_id})
            _notify_barber(
                notifier if notifier is not None else self._notifier,
                booking,
                BroadcastEvent.BOOKING_PAID,
                PushPayload(
                    title="Deposit received",
                    body="A client paid the deposit for their booking.",
                    url="/dashboard",
                ),
            )
            return PaymentConfirmation(outcome=PaymentConfirmationOutcome.CONFIRMED, booking=booking)

        current = self._repository.get_booking(booking_id)
        if current is None:
            logger.warning("Deposit payment for unknown booking", extra={"booking_id": booking_id})
            return PaymentConfirmation(outcome=PaymentConfirmationOutcome.NOT_FOUND)
        if current.payment_status == PaymentStatus.PAID:
            return PaymentConfirmation(outcome=PaymentConfirmationOutcome.ALREADY_PAID, booking=current)
        if current.status == BookingStatus.CANCELLED:
            logger.warning(
                "Deposit paid for a booking that was already cancelled",
                extra={"booking_id": booking_id},
            )
            return PaymentConfirmation(outcome=PaymentConfirmationOutcome.CANCELLED, booking=current)
        return PaymentConfirmation(outcome=PaymentConfirmationOutcome.NOT_PENDING, booking=current)


__all__ = [
    "BookingNotifier",
    "BookingPaymentService",
    "BookingRepository",
    "DEFAULT_PENDING_TTL",
    "PendingBookingReaper",
]
