from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from chairbook.app.billing import (
    BillingAuditEvent,
    DiscountCode,
    DiscountCodeLedger,
    ProcessorCredentials,
    ProcessorError,
    ProcessorPayment,
    ProcessorSubscription,
    PurchaseIntent,
    PurchaseIntentStatus,
    SignatureVerifier,
    Subscription,
    SubscriptionReconciler,
    SubscriptionStatus,
    WebhookDelivery,
)
from chairbook.app.billing.models import OAuthTokens, ProcessorCheckout
from chairbook.app.billing.signature import build_manifest, compute_signature
from chairbook.app.bookings import Booking, BookingStatus, PaymentStatus
from chairbook.app.entitlements import Account

WEBHOOK_SECRET = "whsec_test_secret"
BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = BASE_TIME) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def sign_delivery(resource_id: str, request_id: str, *, ts: str = "1709294400", secret: str = WEBHOOK_SECRET) -> str:
    digest = compute_signature(build_manifest(resource_id, request_id, ts), secret)
    return f"ts={ts},v1={digest}"


class InMemoryBillingRepository:
    """Dictionary backed repository mirroring the guarded SQL statements."""

    def __init__(self) -> None:
        self.subscriptions: Dict[str, Subscription] = {}
        self.intents: Dict[str, PurchaseIntent] = {}
        self.deliveries: Dict[str, Dict[str, Any]] = {}
        self.before_transition: Optional[Callable[[str], None]] = None
        self.transition_attempts = 0

    def get_subscription_for_owner(self, owner_id: str) -> Optional[Subscription]:
        return self.subscriptions.get(owner_id)

    def insert_subscription(self, subscription: Subscription) -> Optional[Subscription]:
        if subscription.owner_id in self.subscriptions:
            return None
        self.subscriptions[subscription.owner_id] = subscription
        return subscription

    def start_trial_subscription(self, subscription: Subscription) -> Optional[Subscription]:
        existing = self.subscriptions.get(subscription.owner_id)
        if existing is not None and existing.status not in {SubscriptionStatus.TRIAL, SubscriptionStatus.CANCELLED}:
            return None
        stored = Subscription(
            subscription_id=subscription.subscription_id,
            owner_id=subscription.owner_id,
            external_id=subscription.external_id,
            status=SubscriptionStatus.TRIAL,
            created_at=existing.created_at if existing else subscription.created_at,
            updated_at=subscription.updated_at,
        )
        self.subscriptions[subscription.owner_id] = stored
        return stored

    def transition_subscription(
        self,
        owner_id: str,
        *,
        expected_status: SubscriptionStatus,
        status: SubscriptionStatus,
        current_period_end: Optional[datetime],
        external_id: Optional[str],
        now: datetime,
    ) -> Optional[Subscription]:
        self.transition_attempts += 1
        if self.before_transition is not None:
            self.before_transition(owner_id)
        current = self.subscriptions.get(owner_id)
        if current is None or current.status != expected_status or current.status == SubscriptionStatus.CANCELLED:
            return None
        updated = Subscription(
            subscription_id=current.subscription_id,
            owner_id=owner_id,
            external_id=current.external_id or external_id,
            status=status,
            current_period_end=current_period_end if current_period_end is not None else current.current_period_end,
            pending_since=(current.pending_since or now) if status == SubscriptionStatus.PENDING else None,
            discount_code=current.discount_code,
            discounted_until=current.discounted_until,
            created_at=current.created_at,
            updated_at=now,
        )
        self.subscriptions[owner_id] = updated
        return updated

    def record_discount(
        self,
        owner_id: str,
        *,
        discount_code: Optional[str],
        discounted_until: datetime,
    ) -> Optional[Subscription]:
        current = self.subscriptions.get(owner_id)
        if current is None:
            return None
        updated = current.model_copy(update={"discount_code": discount_code, "discounted_until": discounted_until})
        self.subscriptions[owner_id] = updated
        return updated

    def list_expired_discounts(self, now: datetime) -> List[Subscription]:
        return sorted(
            (
                sub
                for sub in self.subscriptions.values()
                if sub.status == SubscriptionStatus.AUTHORIZED
                and sub.discounted_until is not None
                and sub.discounted_until <= now
            ),
            key=lambda sub: sub.discounted_until,
        )

    def clear_discount(self, subscription_id: str, *, discounted_until: datetime) -> bool:
        for owner_id, sub in self.subscriptions.items():
            if sub.subscription_id == subscription_id and sub.discounted_until == discounted_until:
                self.subscriptions[owner_id] = sub.model_copy(update={"discounted_until": None})
                return True
        return False

    def save_purchase_intent(self, intent: PurchaseIntent) -> PurchaseIntent:
        self.intents[intent.intent_id] = intent
        return intent

    def complete_purchase_intent(self, external_id: str) -> Optional[PurchaseIntent]:
        for intent_id, intent in self.intents.items():
            if intent.external_id == external_id and intent.status == PurchaseIntentStatus.PENDING:
                completed = intent.model_copy(update={"status": PurchaseIntentStatus.COMPLETED})
                self.intents[intent_id] = completed
                return completed
        return None

    def claim_webhook_delivery(
        self,
        delivery: WebhookDelivery,
        *,
        now: datetime,
        stale_before: datetime,
    ) -> bool:
        existing = self.deliveries.get(delivery.delivery_id)
        if existing is None:
            self.deliveries[delivery.delivery_id] = {"claimed_at": now, "processed_at": None}
            return True
        if existing["processed_at"] is None and existing["claimed_at"] < stale_before:
            existing["claimed_at"] = now
            return True
        return False

    def complete_webhook_delivery(self, delivery_id: str, *, now: datetime) -> None:
        self.deliveries[delivery_id]["processed_at"] = now

    def release_webhook_delivery(self, delivery_id: str) -> None:
        existing = self.deliveries.get(delivery_id)
        if existing is not None and existing["processed_at"] is None:
            del self.deliveries[delivery_id]


class InMemoryDiscountCodeRepository:
    """Serializes the guarded increment the way a row lock would."""

    def __init__(self, *codes: DiscountCode) -> None:
        self.codes: Dict[str, DiscountCode] = {code.code: code for code in codes}
        self._lock = threading.Lock()

    def get_discount_code(self, code: str) -> Optional[DiscountCode]:
        return self.codes.get(code)

    def increment_discount_code_usage(self, code: str, now: datetime) -> Optional[DiscountCode]:
        with self._lock:
            current = self.codes.get(code)
            if (
                current is None
                or not (current.valid_from <= now <= current.valid_until)
                or current.times_used >= current.max_uses
            ):
                return None
            updated = current.model_copy(update={"times_used": current.times_used + 1})
            self.codes[code] = updated
            return updated


class FakeProcessor:
    def __init__(self) -> None:
        self.subscriptions: Dict[str, ProcessorSubscription] = {}
        self.payments: Dict[str, ProcessorPayment] = {}
        self.created: List[Dict[str, Any]] = []
        self.amount_updates: List[Tuple[str, int]] = []
        self.failing_updates: set[str] = set()
        self.unavailable: set[str] = set()
        self.fetches = 0

    def put_subscription(
        self,
        subscription_id: str,
        status: str,
        *,
        owner_id: Optional[str] = "owner-1",
        next_payment_date: Optional[datetime] = None,
        payer_email: Optional[str] = None,
    ) -> ProcessorSubscription:
        snapshot = ProcessorSubscription(
            subscription_id=subscription_id,
            status=status,
            external_reference=owner_id,
            next_payment_date=next_payment_date,
            payer_email=payer_email,
        )
        self.subscriptions[subscription_id] = snapshot
        return snapshot

    def get_subscription(self, subscription_id: str) -> ProcessorSubscription:
        self.fetches += 1
        if subscription_id in self.unavailable:
            raise ProcessorError("processor unavailable", status_code=503)
        try:
            return self.subscriptions[subscription_id]
        except KeyError:
            raise ProcessorError("not found", status_code=404) from None

    def get_payment(self, payment_id: str) -> ProcessorPayment:
        if payment_id in self.unavailable:
            raise ProcessorError("processor unavailable", status_code=503)
        try:
            return self.payments[payment_id]
        except KeyError:
            raise ProcessorError("not found", status_code=404) from None

    def create_subscription(
        self,
        *,
        owner_id: str,
        payer_email: str,
        amount: int,
        reason: str,
        back_url: str,
    ) -> ProcessorCheckout:
        subscription_id = f"preapproval-{len(self.created) + 1}"
        self.created.append(
            {"owner_id": owner_id, "payer_email": payer_email, "amount": amount, "subscription_id": subscription_id}
        )
        return ProcessorCheckout(
            subscription_id=subscription_id,
            checkout_url=f"https://checkout.example/{subscription_id}",
        )

    def update_subscription_amount(self, subscription_id: str, amount: int) -> None:
        if subscription_id in self.failing_updates:
            raise ProcessorError("processor unavailable", status_code=503)
        self.amount_updates.append((subscription_id, amount))


class RecordingEventLogger:
    def __init__(self) -> None:
        self.events: List[BillingAuditEvent] = []

    def log(self, event: BillingAuditEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> List[str]:
        return [event.event_type.value for event in self.events]


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: List[Tuple[str, Any, Any, Any]] = []

    def notify(self, user_id, event, payload, data=None):
        self.calls.append((user_id, event, payload, data))


class FakeOwnerDirectory:
    def __init__(self, emails: Optional[Dict[str, str]] = None) -> None:
        self.emails = dict(emails or {})

    def find_user_id_by_email(self, email: str) -> Optional[str]:
        return self.emails.get(email.lower())


class InMemoryBookingRepository:
    def __init__(self, *bookings: Booking) -> None:
        self.bookings: Dict[str, Booking] = {booking.booking_id: booking for booking in bookings}
        self._lock = threading.Lock()

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        return self.bookings.get(booking_id)

    def cancel_stale_pending(self, cutoff: datetime, *, now: datetime) -> List[Booking]:
        cancelled = []
        with self._lock:
            for booking_id, booking in list(self.bookings.items()):
                if (
                    booking.payment_status == PaymentStatus.PENDING
                    and booking.status not in {BookingStatus.CONFIRMED, BookingStatus.CANCELLED}
                    and booking.created_at < cutoff
                ):
                    updated = booking.model_copy(
                        update={"status": BookingStatus.CANCELLED, "payment_status": None, "updated_at": now}
                    )
                    self.bookings[booking_id] = updated
                    cancelled.append(updated)
        return cancelled

    def confirm_payment(self, booking_id: str, *, now: datetime) -> Optional[Booking]:
        with self._lock:
            booking = self.bookings.get(booking_id)
            if (
                booking is None
                or booking.payment_status != PaymentStatus.PENDING
                or booking.status == BookingStatus.CANCELLED
            ):
                return None
            updated = booking.model_copy(
                update={"status": BookingStatus.CONFIRMED, "payment_status": PaymentStatus.PAID, "updated_at": now}
            )
            self.bookings[booking_id] = updated
            return updated


class InMemoryAccountRepository:
    def __init__(self, *accounts: Account, shop_owners: Optional[Dict[str, str]] = None) -> None:
        self.accounts: Dict[str, Account] = {account.user_id: account for account in accounts}
        self.shop_owners = dict(shop_owners or {})

    def get_account(self, user_id: str) -> Optional[Account]:
        return self.accounts.get(user_id)

    def get_shop_owner_id(self, shop_id: str) -> Optional[str]:
        return self.shop_owners.get(shop_id)


class InMemoryLinkRepository:
    def __init__(self, *, owners: Optional[Dict[str, str]] = None) -> None:
        self.owners = dict(owners or {})
        self.credentials: Dict[str, ProcessorCredentials] = {}
        self.upserts = 0

    def find_shop_id_for_owner(self, owner_id: str) -> Optional[str]:
        return self.owners.get(owner_id)

    def shop_exists(self, shop_id: str) -> bool:
        return shop_id in self.owners.values()

    def get_credentials(self, shop_id: str) -> Optional[ProcessorCredentials]:
        return self.credentials.get(shop_id)

    def upsert_credentials(self, credentials: ProcessorCredentials) -> ProcessorCredentials:
        self.upserts += 1
        self.credentials[credentials.shop_id] = credentials
        return credentials


class FakeOAuthClient:
    def __init__(self) -> None:
        self.exchanged: List[str] = []
        self.refreshed: List[str] = []
        self.fail_exchange = False
        self.fail_refresh = False

    def authorization_url(self, state: str) -> str:
        return f"https://auth.example/authorization?state={state}"

    def exchange_code(self, code: str) -> OAuthTokens:
        if self.fail_exchange:
            raise ProcessorError("invalid_grant", status_code=400)
        self.exchanged.append(code)
        return OAuthTokens(access_token=f"access-{code}", refresh_token=f"refresh-{code}", expires_in=3600, user_id="mp-77")

    def refresh(self, refresh_token: str) -> OAuthTokens:
        if self.fail_refresh:
            raise ProcessorError("invalid_grant", status_code=400)
        self.refreshed.append(refresh_token)
        return OAuthTokens(access_token="access-refreshed", refresh_token="refresh-rotated", expires_in=7200)


def make_discount(code: str = "LAUNCH50", **overrides: Any) -> DiscountCode:
    values: Dict[str, Any] = {
        "code": code,
        "override_price": 4950,
        "duration_months": 3,
        "valid_from": BASE_TIME - timedelta(days=30),
        "valid_until": BASE_TIME + timedelta(days=30),
        "max_uses": 10,
        "times_used": 0,
    }
    values.update(overrides)
    return DiscountCode(**values)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def billing_repository() -> InMemoryBillingRepository:
    return InMemoryBillingRepository()


@pytest.fixture
def discount_repository() -> InMemoryDiscountCodeRepository:
    return InMemoryDiscountCodeRepository(make_discount())


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def event_logger() -> RecordingEventLogger:
    return RecordingEventLogger()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def booking_repository() -> InMemoryBookingRepository:
    return InMemoryBookingRepository()


@pytest.fixture
def reconciler(
    billing_repository,
    discount_repository,
    processor,
    event_logger,
    notifier,
    clock,
) -> SubscriptionReconciler:
    return SubscriptionReconciler(
        repository=billing_repository,
        processor=processor,
        verifier=SignatureVerifier(WEBHOOK_SECRET),
        ledger=DiscountCodeLedger(discount_repository, clock=clock),
        event_logger=event_logger,
        owner_directory=FakeOwnerDirectory({"owner@example.com": "owner-1"}),
        notifier=notifier,
        standard_price=9900,
        clock=clock,
    )
