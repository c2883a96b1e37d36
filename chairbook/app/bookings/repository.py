"""Persistence for booking payment state."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from ..persistence import PostgresRepository
from .models import Booking, BookingStatus, PaymentStatus


def _row_to_booking(row: dict) -> Booking:
    payment_status = row.get("payment_status")
    return Booking(
        booking_id=str(row["id"]),
        shop_id=str(row["shop_id"]),
        barber_id=str(row["barber_id"]) if row.get("barber_id") is not None else None,
        client_id=str(row["client_id"]) if row.get("client_id") is not None else None,
        status=BookingStatus(row["status"]),
        payment_status=PaymentStatus(payment_status) if payment_status else None,
        start_time=row.get("start_time"),
        created_at=row["created_at"],
        updated_at=row.get("updated_at"),
    )


class PostgresBookingRepository(PostgresRepository):
    """Booking writes expressed as single conditional statements."""

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM bookings WHERE id = %s LIMIT 1", (booking_id,))
            row = cursor.fetchone()
            return _row_to_booking(row) if row else None

    def cancel_stale_pending(self, cutoff: datetime, *, now: datetime) -> List[Booking]:
        """Cancel every unpaid booking created before ``cutoff`` and return them.

        The guard is evaluated per row at write time, so a booking confirmed
        concurrently no longer matches and is left untouched.
        """

        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE bookings
                SET status = 'CANCELLED',
                    payment_status = NULL,
                    updated_at = %(now)s
                WHERE payment_status = 'PENDING'
                  AND status NOT IN ('CONFIRMED', 'CANCELLED')
                  AND created_at < %(cutoff)s
                RETURNING *
                """,
                {"cutoff": cutoff, "now": now},
            )
            rows = cursor.fetchall() or []
            return [_row_to_booking(row) for row in rows]

    def confirm_payment(self, booking_id: str, *, now: datetime) -> Optional[Booking]:
        """Mark a still-pending booking paid; ``None`` when the guard did not match."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE bookings
                SET status = 'CONFIRMED',
                    payment_status = 'PAID',
                    updated_at = %(now)s
                WHERE id = %(booking_id)s
                  AND payment_status = 'PENDING'
                  AND status <> 'CANCELLED'
                RETURNING *
                """,
                {"booking_id": booking_id, "now": now},
            )
            row = cursor.fetchone()
            return _row_to_booking(row) if row else None


__all__ = ["PostgresBookingRepository"]
