"""Booking records as seen by the payment core."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"


class Booking(BaseModel):
    """Appointment whose deposit may still be awaiting payment."""

    booking_id: str
    shop_id: str
    barber_id: Optional[str] = None
    client_id: Optional[str] = None
    status: BookingStatus
    payment_status: Optional[PaymentStatus] = None
    start_time: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ReapSummary(BaseModel):
    """Result of one pending booking sweep."""

    cancelled: int
    cutoff: datetime
    ran_at: datetime

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PaymentConfirmationOutcome(str, Enum):
    CONFIRMED = "confirmed"
    ALREADY_PAID = "already_paid"
    CANCELLED = "cancelled"
    NOT_PENDING = "not_pending"
    NOT_FOUND = "not_found"


class PaymentConfirmation(BaseModel):
    outcome: PaymentConfirmationOutcome
    booking: Optional[Booking] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def confirmed(self) -> bool:
        return self.outcome == PaymentConfirmationOutcome.CONFIRMED
