"""Reconciliation of processor-reported subscription state into local state."""
from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Protocol
from uuid import uuid4

from ..notifications.models import BroadcastEvent, PushPayload
from .discounts import DiscountCodeError, DiscountCodeLedger
from .models import (
    ACTIVE_LIKE_STATUSES,
    BillingAuditEvent,
    BillingAuditEventType,
    CheckoutSession,
    DiscountExpirySummary,
    ProcessorSubscription,
    PurchaseIntent,
    ReconciliationOutcome,
    ReconciliationResult,
    Subscription,
    SubscriptionStatus,
    WebhookDelivery,
    WebhookTopic,
)
from .processor import ProcessorClient, ProcessorError
from .signature import SignatureVerifier

logger = logging.getLogger(__name__)

MAX_TRANSITION_ATTEMPTS = 3

ALLOWED_TRANSITIONS: Mapping[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    SubscriptionStatus.TRIAL: frozenset({SubscriptionStatus.AUTHORIZED, SubscriptionStatus.CANCELLED}),
    SubscriptionStatus.AUTHORIZED: frozenset(
        {SubscriptionStatus.PENDING, SubscriptionStatus.PAUSED, SubscriptionStatus.CANCELLED}
    ),
    SubscriptionStatus.PENDING: frozenset(
        {SubscriptionStatus.AUTHORIZED, SubscriptionStatus.PAUSED, SubscriptionStatus.CANCELLED}
    ),
    SubscriptionStatus.PAUSED: frozenset({SubscriptionStatus.AUTHORIZED, SubscriptionStatus.CANCELLED}),
    SubscriptionStatus.CANCELLED: frozenset(),
}


def is_transition_allowed(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    """Re-applying the current status is a refresh and allowed, except once cancelled."""

    if current == SubscriptionStatus.CANCELLED:
        return False
    return target == current or target in ALLOWED_TRANSITIONS[current]


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class WebhookAuthenticationError(Exception):
    """Raised when a webhook delivery fails signature verification."""


class BillingRepository(Protocol):
    """Persistence operations required by the reconciler."""

    def get_subscription_for_owner(self, owner_id: str) -> Optional[Subscription]:
        ...

    def insert_subscription(self, subscription: Subscription) -> Optional[Subscription]:
        """Insert unless the owner already has a subscription; ``None`` on conflict."""

    def start_trial_subscription(self, subscription: Subscription) -> Optional[Subscription]:
        """Store a checkout in ``trial``, replacing only a trial or cancelled record."""

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
        """Conditionally apply a status change; ``None`` when ``expected_status`` is stale."""

    def record_discount(
        self,
        owner_id: str,
        *,
        discount_code: Optional[str],
        discounted_until: datetime,
    ) -> Optional[Subscription]:
        ...

    def list_expired_discounts(self, now: datetime) -> List[Subscription]:
        ...

    def clear_discount(self, subscription_id: str, *, discounted_until: datetime) -> bool:
        ...

    def save_purchase_intent(self, intent: PurchaseIntent) -> PurchaseIntent:
        ...

    def complete_purchase_intent(self, external_id: str) -> Optional[PurchaseIntent]:
        """Complete the pending intent in one conditional write; ``None`` if none was pending."""

    def claim_webhook_delivery(
        self,
        delivery: WebhookDelivery,
        *,
        now: datetime,
        stale_before: datetime,
    ) -> bool:
        ...

    def complete_webhook_delivery(self, delivery_id: str, *, now: datetime) -> None:
        ...

    def release_webhook_delivery(self, delivery_id: str) -> None:
        ...


class OwnerDirectory(Protocol):
    def find_user_id_by_email(self, email: str) -> Optional[str]:
        ...


class BookingPaymentHandler(Protocol):
    def confirm_booking_payment(self, booking_id: str, *, notifier: Optional[BillingNotifier] = None) -> Any:
        ...


class BillingNotifier(Protocol):
    def notify(
        self,
        user_id: str,
        event: BroadcastEvent,
        payload: PushPayload,
        data: Optional[Dict[str, Any]] = None,
    ) -> Any:
        ...


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SubscriptionReconciler:
    """Turns verified processor callbacks into local subscription state.

    Every delivery is claimed by its request id before any mutation, so a
    retried delivery is acknowledged without being applied twice. Status
    changes are conditional on the status that was read, and the discount
    code attached to a checkout is redeemed only by the caller that completes
    its purchase intent.
    """

    repository: BillingRepository
    processor: ProcessorClient
    verifier: SignatureVerifier
    ledger: DiscountCodeLedger
    event_logger: BillingEventLogger
    owner_directory: Optional[OwnerDirectory] = None
    booking_payments: Optional[BookingPaymentHandler] = None
    notifier: Optional[BillingNotifier] = None
    standard_price: int = 9900
    claim_lease: timedelta = timedelta(minutes=5)
    checkout_back_url: str = "http://localhost:3000/dashboard/billing"
    clock: Callable[[], datetime] = field(default=_utcnow)

    def _now(self) -> datetime:
        return self.clock()

    def process_webhook(
        self,
        signature_header: Optional[str],
        request_id: Optional[str],
        topic: Optional[str],
        resource_id: Optional[str],
        notifier: Optional[BillingNotifier] = None,
    ) -> ReconciliationResult:
        """Apply one verified delivery.

        ``notifier`` replaces the configured notifier for this delivery only;
        routes pass an outbox so that fanout happens after the response.
        Raises for failures worth a retry and releases the claim first.
        Resources the processor will never serve are acknowledged as ignored.
        """

        if not self.verifier.verify(signature_header, request_id, resource_id):
            raise WebhookAuthenticationError("Invalid webhook signature")

        try:
            webhook_topic = WebhookTopic(topic or "")
        except ValueError:
            logger.info("Ignoring webhook topic", extra={"topic": topic, "request_id": request_id})
            return ReconciliationResult(
                outcome=ReconciliationOutcome.IGNORED,
                delivery_id=request_id,
                detail="unhandled topic",
            )

        now = self._now()
        delivery = WebhookDelivery(
            delivery_id=str(request_id),
            topic=webhook_topic.value,
            resource_id=str(resource_id),
            received_at=now,
        )
        if not self.repository.claim_webhook_delivery(
            delivery, now=now, stale_before=now - self.claim_lease
        ):
            logger.info("Duplicate webhook delivery", extra={"request_id": delivery.delivery_id})
            return ReconciliationResult(
                outcome=ReconciliationOutcome.DUPLICATE,
                delivery_id=delivery.delivery_id,
            )

        try:
            if webhook_topic == WebhookTopic.SUBSCRIPTION:
                result = self.sync_subscription(
                    self.processor.get_subscription(delivery.resource_id),
                    notifier=notifier,
                )
            else:
                result = self._handle_payment(delivery.resource_id, notifier)
        except ProcessorError as exc:
            if exc.is_retryable:
                logger.exception(
                    "Webhook processing failed",
                    extra={"request_id": delivery.delivery_id, "topic": delivery.topic},
                )
                self._release(delivery.delivery_id)
                raise
            logger.warning(
                "Processor cannot serve webhook resource; acknowledging delivery",
                extra={
                    "request_id": delivery.delivery_id,
                    "topic": delivery.topic,
                    "resource_id": delivery.resource_id,
                    "status_code": exc.status_code,
                },
            )
            result = ReconciliationResult(
                outcome=ReconciliationOutcome.IGNORED,
                detail=f"processor error {exc.status_code}" if exc.status_code else "unusable processor resource",
            )
        except Exception:
            logger.exception(
                "Webhook processing failed",
                extra={"request_id": delivery.delivery_id, "topic": delivery.topic},
            )
            self._release(delivery.delivery_id)
            raise

        self.repository.complete_webhook_delivery(delivery.delivery_id, now=self._now())
        return result.model_copy(update={"delivery_id": delivery.delivery_id})

    def _release(self, delivery_id: str) -> None:
        try:
            self.repository.release_webhook_delivery(delivery_id)
        except Exception:
            logger.exception("Failed to release webhook claim", extra={"request_id": delivery_id})

    def _resolve_owner(self, external_reference: Optional[str], payer_email: Optional[str]) -> Optional[str]:
        if external_reference:
            return external_reference
        if payer_email and self.owner_directory is not None:
            return self.owner_directory.find_user_id_by_email(payer_email)
        return None

    def _handle_payment(self, payment_id: str, notifier: Optional[BillingNotifier]) -> ReconciliationResult:
        payment = self.processor.get_payment(payment_id)

        booking_id = payment.booking_id
        if booking_id:
            if not payment.is_approved or self.booking_payments is None:
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.IGNORED,
                    detail=f"deposit payment {payment.status}",
                )
            confirmation = self.booking_payments.confirm_booking_payment(booking_id, notifier=notifier)
            outcome = getattr(confirmation, "outcome", None)
            if getattr(confirmation, "confirmed", False):
                return ReconciliationResult(outcome=ReconciliationOutcome.BOOKING_CONFIRMED)
            return ReconciliationResult(
                outcome=ReconciliationOutcome.IGNORED,
                detail=f"booking {getattr(outcome, 'value', outcome)}",
            )

        owner_id = self._resolve_owner(payment.external_reference, payment.payer_email)
        if not owner_id:
            logger.warning("Payment not linked to any account", extra={"payment_id": payment_id})
            return ReconciliationResult(outcome=ReconciliationOutcome.UNLINKED)

        current = self.repository.get_subscription_for_owner(owner_id)
        if current is None or not current.external_id:
            return ReconciliationResult(
                outcome=ReconciliationOutcome.UNLINKED,
                detail="owner has no processor subscription",
            )
        # A payment only tells us something changed; the subscription resource is authoritative.
        return self.sync_subscription(self.processor.get_subscription(current.external_id), notifier=notifier)

    def sync_subscription(
        self,
        snapshot: ProcessorSubscription,
        notifier: Optional[BillingNotifier] = None,
    ) -> ReconciliationResult:
        active_notifier = notifier if notifier is not None else self.notifier
        target = SubscriptionStatus.from_processor(snapshot.status)
        if target is None:
            logger.warning(
                "Unknown processor subscription status",
                extra={"processor_subscription_id": snapshot.subscription_id, "status": snapshot.status},
            )
            return ReconciliationResult(outcome=ReconciliationOutcome.IGNORED, detail="unknown status")

        owner_id = self._resolve_owner(snapshot.external_reference, snapshot.payer_email)
        if not owner_id:
            logger.warning(
                "Processor subscription not linked to any account",
                extra={"processor_subscription_id": snapshot.subscription_id},
            )
            return ReconciliationResult(outcome=ReconciliationOutcome.UNLINKED)

        for _ in range(MAX_TRANSITION_ATTEMPTS):
            now = self._now()
            current = self.repository.get_subscription_for_owner(owner_id)

            if current is None:
                created = self.repository.insert_subscription(
                    Subscription(
                        subscription_id=f"sub_{uuid4().hex}",
                        owner_id=owner_id,
                        external_id=snapshot.subscription_id,
                        status=target,
                        current_period_end=(
                            snapshot.next_payment_date or now
                            if target in ACTIVE_LIKE_STATUSES
                            else snapshot.next_payment_date
                        ),
                        pending_since=now if target == SubscriptionStatus.PENDING else None,
                        created_at=now,
                        updated_at=now,
                    )
                )
                if created is None:
                    continue
                self._after_transition(None, created, now, active_notifier)
                return ReconciliationResult(outcome=ReconciliationOutcome.CREATED, subscription=created)

            if current.external_id and current.external_id != snapshot.subscription_id:
                logger.info(
                    "Ignoring snapshot of a superseded processor subscription",
                    extra={"owner_id": owner_id, "processor_subscription_id": snapshot.subscription_id},
                )
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.IGNORED,
                    subscription=current,
                    detail="superseded processor subscription",
                )

            if current.is_terminal and target == SubscriptionStatus.CANCELLED:
                return ReconciliationResult(outcome=ReconciliationOutcome.IGNORED, subscription=current)

            if not is_transition_allowed(current.status, target):
                logger.warning(
                    "Rejected subscription transition",
                    extra={"owner_id": owner_id, "from_status": current.status.value, "to_status": target.value},
                )
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.REJECTED_TRANSITION,
                    subscription=current,
                    detail=f"{current.status.value} -> {target.value}",
                )

            period_end = snapshot.next_payment_date
            if target in ACTIVE_LIKE_STATUSES and period_end is None:
                period_end = current.current_period_end or now

            updated = self.repository.transition_subscription(
                owner_id,
                expected_status=current.status,
                status=target,
                current_period_end=period_end,
                external_id=snapshot.subscription_id,
                now=now,
            )
            if updated is None:
                continue
            self._after_transition(current, updated, now, active_notifier)
            return ReconciliationResult(outcome=ReconciliationOutcome.APPLIED, subscription=updated)

        raise RuntimeError(f"Subscription for owner {owner_id} kept changing; giving up for this delivery")

    def _after_transition(
        self,
        previous: Optional[Subscription],
        updated: Subscription,
        now: datetime,
        notifier: Optional[BillingNotifier],
    ) -> None:
        previous_status = previous.status if previous is not None else None
        if previous_status == updated.status:
            event_type = BillingAuditEventType.SUBSCRIPTION_UPDATED
        elif updated.status == SubscriptionStatus.AUTHORIZED:
            event_type = (
                BillingAuditEventType.PAYMENT_RECOVERED
                if previous_status == SubscriptionStatus.PENDING
                else BillingAuditEventType.SUBSCRIPTION_ACTIVATED
            )
        elif updated.status == SubscriptionStatus.PENDING:
            event_type = BillingAuditEventType.PAYMENT_FAILED
        elif updated.status == SubscriptionStatus.CANCELLED:
            event_type = BillingAuditEventType.SUBSCRIPTION_CANCELED
        else:
            event_type = BillingAuditEventType.SUBSCRIPTION_UPDATED

        self.event_logger.log(
            BillingAuditEvent(
                event_type=event_type,
                subscription_id=updated.subscription_id,
                actor_id=updated.owner_id,
                metadata={"status": updated.status.value},
                occurred_at=now,
            )
        )

        if updated.status == SubscriptionStatus.AUTHORIZED and previous_status != SubscriptionStatus.AUTHORIZED:
            self._apply_purchase_intent(updated, now)
        if event_type == BillingAuditEventType.PAYMENT_FAILED:
            self._notify_payment_failure(updated, notifier)

    def _apply_purchase_intent(self, subscription: Subscription, now: datetime) -> None:
        if not subscription.external_id:
            return
        intent = self.repository.complete_purchase_intent(subscription.external_id)
        if intent is None or not intent.discount_code:
            return

        result = self.ledger.redeem(intent.discount_code, now)
        if result.ok and result.duration_months:
            self.repository.record_discount(
                subscription.owner_id,
                discount_code=result.code,
                discounted_until=add_months(now, result.duration_months),
            )
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.DISCOUNT_REDEEMED,
                    subscription_id=subscription.subscription_id,
                    actor_id=subscription.owner_id,
                    metadata={"discount_code": result.code or ""},
                    occurred_at=now,
                )
            )
            return

        # The processor already bills the override price; expiring now restores it.
        logger.warning(
            "Discount code could not be redeemed at activation",
            extra={
                "owner_id": subscription.owner_id,
                "discount_code": intent.discount_code,
                "reason": result.reason.value if result.reason else None,
            },
        )
        self.repository.record_discount(subscription.owner_id, discount_code=None, discounted_until=now)

    def _notify_payment_failure(self, subscription: Subscription, notifier: Optional[BillingNotifier]) -> None:
        if notifier is None:
            return
        try:
            notifier.notify(
                subscription.owner_id,
                BroadcastEvent.PAYMENT_FAILED,
                PushPayload(
                    title="Payment failed",
                    body="We could not charge your subscription. Update your payment method to keep access.",
                    url="/dashboard/billing",
                ),
            )
        except Exception:
            logger.exception("Payment failure notification failed", extra={"owner_id": subscription.owner_id})

    def start_checkout(
        self,
        owner_id: str,
        payer_email: str,
        discount_code: Optional[str] = None,
    ) -> CheckoutSession:
        """Create a processor checkout, optionally at a discounted price.

        The code is only validated here; it is consumed when the subscription
        is first authorized.
        """

        price = self.standard_price
        code: Optional[str] = None
        if discount_code and discount_code.strip():
            check = self.ledger.check(discount_code, self._now())
            if not check.ok:
                raise DiscountCodeError(check.reason)
            price = check.effective_price if check.effective_price is not None else price
            code = check.code

        existing = self.repository.get_subscription_for_owner(owner_id)
        if existing is not None and existing.status not in {SubscriptionStatus.TRIAL, SubscriptionStatus.CANCELLED}:
            raise ValueError("Owner already has an active subscription")

        checkout = self.processor.create_subscription(
            owner_id=owner_id,
            payer_email=payer_email,
            amount=price,
            reason="Chairbook monthly subscription",
            back_url=self.checkout_back_url,
        )

        now = self._now()
        stored = self.repository.start_trial_subscription(
            Subscription(
                subscription_id=f"sub_{uuid4().hex}",
                owner_id=owner_id,
                external_id=checkout.subscription_id,
                status=SubscriptionStatus.TRIAL,
                created_at=now,
                updated_at=now,
            )
        )
        if stored is None:
            raise ValueError("Owner already has an active subscription")

        intent = self.repository.save_purchase_intent(
            PurchaseIntent(
                intent_id=f"pi_{uuid4().hex}",
                owner_id=owner_id,
                external_id=checkout.subscription_id,
                discount_code=code,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info(
            "Checkout started",
            extra={"owner_id": owner_id, "price": price, "discount_code": code},
        )
        return CheckoutSession(intent=intent, checkout_url=checkout.checkout_url, price=price)

    def expire_discounts(self, now: Optional[datetime] = None) -> DiscountExpirySummary:
        """Restore the standard price on subscriptions whose discount ran out."""

        current = now or self._now()
        updated = 0
        errors: List[Dict[str, str]] = []
        for subscription in self.repository.list_expired_discounts(current):
            try:
                if not subscription.external_id:
                    raise LookupError("subscription has no processor id")
                self.processor.update_subscription_amount(subscription.external_id, self.standard_price)
                if subscription.discounted_until is not None:
                    self.repository.clear_discount(
                        subscription.subscription_id,
                        discounted_until=subscription.discounted_until,
                    )
            except Exception as exc:
                logger.exception(
                    "Failed to restore standard price",
                    extra={"subscription_id": subscription.subscription_id},
                )
                errors.append({"subscriptionId": subscription.subscription_id, "error": str(exc)})
                continue

            updated += 1
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.DISCOUNT_EXPIRED,
                    subscription_id=subscription.subscription_id,
                    actor_id=subscription.owner_id,
                    occurred_at=current,
                )
            )
        logger.info("Discount expiry sweep finished", extra={"updated_count": updated, "error_count": len(errors)})
        return DiscountExpirySummary(updated_count=updated, errors=errors)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "BillingEventLogger",
    "BillingNotifier",
    "BillingRepository",
    "BookingPaymentHandler",
    "OwnerDirectory",
    "SubscriptionReconciler",
    "WebhookAuthenticationError",
    "add_months",
    "is_transition_allowed",
]
