"""Persistence layer for billing domain objects."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from ..persistence import PostgresRepository
from .discounts import DiscountCode
from .models import (
    ProcessorCredentials,
    PurchaseIntent,
    PurchaseIntentStatus,
    Subscription,
    SubscriptionStatus,
    WebhookDelivery,
)


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        subscription_id=row["subscription_id"],
        owner_id=str(row["owner_id"]),
        external_id=row.get("external_id"),
        status=SubscriptionStatus(row["status"]),
        current_period_end=row.get("current_period_end"),
        pending_since=row.get("pending_since"),
        discount_code=row.get("discount_code"),
        discounted_until=row.get("discounted_until"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_purchase_intent(row: dict) -> PurchaseIntent:
    return PurchaseIntent(
        intent_id=row["intent_id"],
        owner_id=str(row["owner_id"]),
        external_id=row["external_id"],
        discount_code=row.get("discount_code"),
        status=PurchaseIntentStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_discount_code(row: dict) -> DiscountCode:
    return DiscountCode(
        code=row["code"],
        override_price=int(row["override_price"]),
        duration_months=int(row["duration_months"]),
        valid_from=row["valid_from"],
        valid_until=row["valid_until"],
        max_uses=int(row["max_uses"]),
        times_used=int(row["times_used"]),
    )


def _row_to_credentials(row: dict) -> ProcessorCredentials:
    return ProcessorCredentials(
        shop_id=str(row["shop_id"]),
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        expires_at=row["expires_at"],
        processor_user_id=row.get("processor_user_id"),
        updated_at=row["updated_at"],
    )


class PostgresBillingRepository(PostgresRepository):
    """Concrete repository persisting subscriptions, intents and deliveries in PostgreSQL."""

    def get_subscription_for_owner(self, owner_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE owner_id = %s
                LIMIT 1
                """,
                (owner_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def insert_subscription(self, subscription: Subscription) -> Optional[Subscription]:
        """Create the owner's subscription; ``None`` when one already exists."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_subscriptions (
                    subscription_id,
                    owner_id,
                    external_id,
                    status,
                    current_period_end,
                    pending_since
                )
                VALUES (%(subscription_id)s, %(owner_id)s, %(external_id)s, %(status)s,
                        %(current_period_end)s, %(pending_since)s)
                ON CONFLICT (owner_id) DO NOTHING
                RETURNING *
                """,
                {
                    "subscription_id": subscription.subscription_id,
                    "owner_id": subscription.owner_id,
                    "external_id": subscription.external_id,
                    "status": subscription.status.value,
                    "current_period_end": subscription.current_period_end,
                    "pending_since": subscription.pending_since,
                },
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def start_trial_subscription(self, subscription: Subscription) -> Optional[Subscription]:
        """Store a fresh checkout, replacing only a trial or cancelled record."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_subscriptions (
                    subscription_id,
                    owner_id,
                    external_id,
                    status
                )
                VALUES (%(subscription_id)s, %(owner_id)s, %(external_id)s, 'trial')
                ON CONFLICT (owner_id) DO UPDATE SET
                    subscription_id = EXCLUDED.subscription_id,
                    external_id = EXCLUDED.external_id,
                    status = 'trial',
                    current_period_end = NULL,
                    pending_since = NULL,
                    discount_code = NULL,
                    discounted_until = NULL,
                    updated_at = NOW()
                WHERE billing_subscriptions.status IN ('trial', 'cancelled')
                RETURNING *
                """,
                {
                    "subscription_id": subscription.subscription_id,
                    "owner_id": subscription.owner_id,
                    "external_id": subscription.external_id,
                },
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

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
        """Apply a status change in one guarded statement.

        ``pending_since`` keeps its original value while the subscription stays
        pending and is cleared on every other status. Returns ``None`` when the
        stored status no longer equals ``expected_status``.
        """

        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_subscriptions
                SET status = %(status)s,
                    external_id = COALESCE(external_id, %(external_id)s),
                    current_period_end = COALESCE(%(current_period_end)s::timestamptz, current_period_end),
                    pending_since = CASE
                        WHEN %(status)s::text = 'pending' THEN COALESCE(pending_since, %(now)s::timestamptz)
                        ELSE NULL
                    END,
                    updated_at = %(now)s
                WHERE owner_id = %(owner_id)s
                  AND status = %(expected_status)s
                  AND status <> 'cancelled'
                RETURNING *
                """,
                {
                    "owner_id": owner_id,
                    "expected_status": expected_status.value,
                    "status": status.value,
                    "current_period_end": current_period_end,
                    "external_id": external_id,
                    "now": now,
                },
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def record_discount(
        self,
        owner_id: str,
        *,
        discount_code: Optional[str],
        discounted_until: datetime,
    ) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_subscriptions
                SET discount_code = %s,
                    discounted_until = %s,
                    updated_at = NOW()
                WHERE owner_id = %s
                RETURNING *
                """,
                (discount_code, discounted_until, owner_id),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def list_expired_discounts(self, now: datetime) -> List[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE status = 'authorized'
                  AND discounted_until IS NOT NULL
                  AND discounted_until <= %s
                ORDER BY discounted_until
                """,
                (now,),
            )
            rows = cursor.fetchall() or []
            return [_row_to_subscription(row) for row in rows]

    def clear_discount(self, subscription_id: str, *, discounted_until: datetime) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_subscriptions
                SET discounted_until = NULL,
                    updated_at = NOW()
                WHERE subscription_id = %s
                  AND discounted_until = %s
                """,
                (subscription_id, discounted_until),
            )
            return cursor.rowcount > 0

    def save_purchase_intent(self, intent: PurchaseIntent) -> PurchaseIntent:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_purchase_intents (
                    intent_id,
                    owner_id,
                    external_id,
                    discount_code,
                    status
                )
                VALUES (%(intent_id)s, %(owner_id)s, %(external_id)s, %(discount_code)s, %(status)s)
                ON CONFLICT (intent_id) DO UPDATE SET
                    discount_code = EXCLUDED.discount_code,
                    status = EXCLUDED.status,
                    updated_at = NOW()
                RETURNING *
                """,
                {
                    "intent_id": intent.intent_id,
                    "owner_id": intent.owner_id,
                    "external_id": intent.external_id,
                    "discount_code": intent.discount_code,
                    "status": intent.status.value,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist purchase intent")
            return _row_to_purchase_intent(row)

    def complete_purchase_intent(self, external_id: str) -> Optional[PurchaseIntent]:
        """Mark the pending intent for ``external_id`` completed; only one caller wins."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_purchase_intents
                SET status = %s, updated_at = NOW()
                WHERE external_id = %s AND status = %s
                RETURNING *
                """,
                (
                    PurchaseIntentStatus.COMPLETED.value,
                    external_id,
                    PurchaseIntentStatus.PENDING.value,
                ),
            )
            row = cursor.fetchone()
            return _row_to_purchase_intent(row) if row else None

    def claim_webhook_delivery(
        self,
        delivery: WebhookDelivery,
        *,
        now: datetime,
        stale_before: datetime,
    ) -> bool:
        """Claim a delivery for processing.

        A delivery already processed, or claimed by a handler whose lease has
        not expired, cannot be claimed again.
        """

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_webhook_deliveries (
                    delivery_id,
                    topic,
                    resource_id,
                    received_at,
                    claimed_at,
                    processed_at
                )
                VALUES (%(delivery_id)s, %(topic)s, %(resource_id)s, %(received_at)s, %(now)s, NULL)
                ON CONFLICT (delivery_id) DO UPDATE SET
                    claimed_at = EXCLUDED.claimed_at
                WHERE billing_webhook_deliveries.processed_at IS NULL
                  AND billing_webhook_deliveries.claimed_at < %(stale_before)s
                RETURNING delivery_id
                """,
                {
                    "delivery_id": delivery.delivery_id,
                    "topic": delivery.topic,
                    "resource_id": delivery.resource_id,
                    "received_at": delivery.received_at,
                    "now": now,
                    "stale_before": stale_before,
                },
            )
            return cursor.fetchone() is not None

    def complete_webhook_delivery(self, delivery_id: str, *, now: datetime) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_webhook_deliveries
                SET processed_at = %s
                WHERE delivery_id = %s
                """,
                (now, delivery_id),
            )

    def release_webhook_delivery(self, delivery_id: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                DELETE FROM billing_webhook_deliveries
                WHERE delivery_id = %s AND processed_at IS NULL
                """,
                (delivery_id,),
            )


class PostgresDiscountCodeRepository(PostgresRepository):
    """Discount codes with a single-statement guarded usage increment."""

    def get_discount_code(self, code: str) -> Optional[DiscountCode]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM discount_codes
                WHERE code = %s
                LIMIT 1
                """,
                (code,),
            )
            row = cursor.fetchone()
            return _row_to_discount_code(row) if row else None

    def increment_discount_code_usage(self, code: str, now: datetime) -> Optional[DiscountCode]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE discount_codes
                SET times_used = times_used + 1
                WHERE code = %(code)s
                  AND valid_from <= %(now)s
                  AND valid_until >= %(now)s
                  AND times_used < max_uses
                RETURNING *
                """,
                {"code": code, "now": now},
            )
            row = cursor.fetchone()
            return _row_to_discount_code(row) if row else None


class PostgresProcessorLinkRepository(PostgresRepository):
    """Shop lookups and encrypted processor credentials."""

    def find_shop_id_for_owner(self, owner_id: str) -> Optional[str]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT id FROM shops WHERE owner_id = %s LIMIT 1",
                (owner_id,),
            )
            row = cursor.fetchone()
            return str(row["id"]) if row else None

    def shop_exists(self, shop_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute("SELECT 1 FROM shops WHERE id = %s LIMIT 1", (shop_id,))
            return cursor.fetchone() is not None

    def get_credentials(self, shop_id: str) -> Optional[ProcessorCredentials]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM processor_credentials
                WHERE shop_id = %s
                LIMIT 1
                """,
                (shop_id,),
            )
            row = cursor.fetchone()
            return _row_to_credentials(row) if row else None

    def upsert_credentials(self, credentials: ProcessorCredentials) -> ProcessorCredentials:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO processor_credentials (
                    shop_id,
                    access_token,
                    refresh_token,
                    expires_at,
                    processor_user_id
                )
                VALUES (%(shop_id)s, %(access_token)s, %(refresh_token)s, %(expires_at)s,
                        %(processor_user_id)s)
                ON CONFLICT (shop_id) DO UPDATE SET
                    access_token = EXCLUDED.access_token,
                    refresh_token = EXCLUDED.refresh_token,
                    expires_at = EXCLUDED.expires_at,
                    processor_user_id = COALESCE(EXCLUDED.processor_user_id,
                                                 processor_credentials.processor_user_id),
                    updated_at = NOW()
                RETURNING *
                """,
                {
                    "shop_id": credentials.shop_id,
                    "access_token": credentials.access_token,
                    "refresh_token": credentials.refresh_token,
                    "expires_at": credentials.expires_at,
                    "processor_user_id": credentials.processor_user_id,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist processor credentials")
            return _row_to_credentials(row)


__all__ = [
    "PostgresBillingRepository",
    "PostgresDiscountCodeRepository",
    "PostgresProcessorLinkRepository",
]
