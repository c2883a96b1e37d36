from __future__ import annotations

from datetime import timedelta

import pytest

from chairbook import app_context
from chairbook.app.billing import Subscription, SubscriptionStatus, WebhookDelivery
from chairbook.app.billing.repository import (
    PostgresBillingRepository,
    PostgresDiscountCodeRepository,
    PostgresProcessorLinkRepository,
)
from chairbook.app.bookings.repository import PostgresBookingRepository
from chairbook.app.entitlements.repository import PostgresAccountRepository
from chairbook.app.notifications.repository import PostgresPushSubscriptionRepository
from chairbook.config import CoreConfig

from conftest import BASE_TIME


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = list(rows or [])
        self.rowcount = rowcount
        self.executed = []
        self.closed = False

    def execute(self, query, params=None):
        self.executed.append((" ".join(query.split()), params))

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)

    def close(self):
        self.closed = True


class FakeConnection:
    def __init__(self, cursor):
        self._cursor = cursor
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def cursor(self, cursor_factory=None):
        return self._cursor

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = True


def _subscription_row(**overrides):
    row = {
        "subscription_id": "sub-1",
        "owner_id": "owner-1",
        "external_id": "pre-1",
        "status": "pending",
        "current_period_end": BASE_TIME,
        "pending_since": BASE_TIME,
        "discount_code": None,
        "discounted_until": None,
        "created_at": BASE_TIME,
        "updated_at": BASE_TIME,
    }
    row.update(overrides)
    return row


def test_transition_is_guarded_by_expected_status():
    cursor = FakeCursor([_subscription_row()])
    repository = PostgresBillingRepository(conn=FakeConnection(cursor))

    updated = repository.transition_subscription(
        "owner-1",
        expected_status=SubscriptionStatus.AUTHORIZED,
        status=SubscriptionStatus.PENDING,
        current_period_end=None,
        external_id="pre-1",
        now=BASE_TIME,
    )

    assert updated.status == SubscriptionStatus.PENDING
    assert len(cursor.executed) == 1
    query, params = cursor.executed[0]
    assert "AND status = %(expected_status)s" in query
    assert "AND status <> 'cancelled'" in query
    assert "COALESCE(pending_since, %(now)s::timestamptz)" in query
    assert params["expected_status"] == "authorized"
    assert params["status"] == "pending"
    assert cursor.closed


def test_transition_returns_none_when_guard_fails():
    repository = PostgresBillingRepository(conn=FakeConnection(FakeCursor()))

    assert (
        repository.transition_subscription(
            "owner-1",
            expected_status=SubscriptionStatus.AUTHORIZED,
            status=SubscriptionStatus.PAUSED,
            current_period_end=BASE_TIME,
            external_id="pre-1",
            now=BASE_TIME,
        )
        is None
    )


def test_insert_subscription_does_nothing_on_conflict():
    cursor = FakeCursor()
    repository = PostgresBillingRepository(conn=FakeConnection(cursor))

    created = repository.insert_subscription(
        Subscription(subscription_id="sub-1", owner_id="owner-1", status=SubscriptionStatus.CANCELLED)
    )

    assert created is None
    assert "ON CONFLICT (owner_id) DO NOTHING" in cursor.executed[0][0]


def test_start_trial_only_replaces_trial_or_cancelled():
    cursor = FakeCursor([_subscription_row(status="trial", pending_since=None, current_period_end=None)])
    repository = PostgresBillingRepository(conn=FakeConnection(cursor))

    stored = repository.start_trial_subscription(
        Subscription(subscription_id="sub-2", owner_id="owner-1", external_id="pre-2", status=SubscriptionStatus.TRIAL)
    )

    assert stored.status == SubscriptionStatus.TRIAL
    assert "WHERE billing_subscriptions.status IN ('trial', 'cancelled')" in cursor.executed[0][0]


def test_webhook_claim_respects_processed_and_lease():
    cursor = FakeCursor([{"delivery_id": "req-1"}])
    repository = PostgresBillingRepository(conn=FakeConnection(cursor))
    delivery = WebhookDelivery(delivery_id="req-1", topic="payment", resource_id="pay-1", received_at=BASE_TIME)

    claimed = repository.claim_webhook_delivery(
        delivery, now=BASE_TIME, stale_before=BASE_TIME - timedelta(minutes=5)
    )

    assert claimed is True
    query, params = cursor.executed[0]
    assert "billing_webhook_deliveries.processed_at IS NULL" in query
    assert "billing_webhook_deliveries.claimed_at < %(stale_before)s" in query
    assert params["stale_before"] == BASE_TIME - timedelta(minutes=5)


def test_webhook_claim_fails_when_no_row_returned():
    repository = PostgresBillingRepository(conn=FakeConnection(FakeCursor()))
    delivery = WebhookDelivery(delivery_id="req-1", topic="payment", resource_id="pay-1", received_at=BASE_TIME)

    assert repository.claim_webhook_delivery(delivery, now=BASE_TIME, stale_before=BASE_TIME) is False


def test_release_only_deletes_unprocessed_claims():
    cursor = FakeCursor()
    PostgresBillingRepository(conn=FakeConnection(cursor)).release_webhook_delivery("req-1")

    assert "processed_at IS NULL" in cursor.executed[0][0]


def test_purchase_intent_completion_is_conditional():
    cursor = FakeCursor()
    repository = PostgresBillingRepository(conn=FakeConnection(cursor))

    assert repository.complete_purchase_intent("pre-1") is None
    query, params = cursor.executed[0]
    assert "WHERE external_id = %s AND status = %s" in query
    assert params == ("completed", "pre-1", "pending")


def test_clear_discount_matches_the_expiry_it_read():
    cursor = FakeCursor(rowcount=1)
    repository = PostgresBillingRepository(conn=FakeConnection(cursor))

    assert repository.clear_discount("sub-1", discounted_until=BASE_TIME) is True
    assert "AND discounted_until = %s" in cursor.executed[0][0]


def test_discount_increment_is_a_single_guarded_update():
    cursor = FakeCursor()
    repository = PostgresDiscountCodeRepository(conn=FakeConnection(cursor))

    assert repository.increment_discount_code_usage("LAUNCH50", BASE_TIME) is None
    assert len(cursor.executed) == 1
    query, params = cursor.executed[0]
    assert query.startswith("UPDATE discount_codes SET times_used = times_used + 1")
    assert "AND times_used < max_uses" in query
    assert params == {"code": "LAUNCH50", "now": BASE_TIME}


def test_credentials_row_mapping():
    row = {
        "shop_id": "shop-1",
        "access_token": "enc-access",
        "refresh_token": "enc-refresh",
        "expires_at": BASE_TIME,
        "processor_user_id": "mp-77",
        "updated_at": BASE_TIME,
    }
    cursor = FakeCursor([row])
    repository = PostgresProcessorLinkRepository(conn=FakeConnection(cursor))

    stored = repository.get_credentials("shop-1")

    assert stored.processor_user_id == "mp-77"
    assert stored.access_token == "enc-access"


def test_reaper_update_excludes_settled_bookings():
    cursor = FakeCursor(
        [
            {
                "id": 7,
                "shop_id": 3,
                "barber_id": 11,
                "client_id": None,
                "status": "CANCELLED",
                "payment_status": None,
                "created_at": BASE_TIME,
                "updated_at": BASE_TIME,
            }
        ]
    )
    repository = PostgresBookingRepository(conn=FakeConnection(cursor))

    cancelled = repository.cancel_stale_pending(BASE_TIME - timedelta(minutes=10), now=BASE_TIME)

    assert [booking.booking_id for booking in cancelled] == ["7"]
    assert cancelled[0].barber_id == "11"
    query, _ = cursor.executed[0]
    assert "WHERE payment_status = 'PENDING'" in query
    assert "AND status NOT IN ('CONFIRMED', 'CANCELLED')" in query
    assert "AND created_at < %(cutoff)s" in query


def test_confirm_payment_refuses_cancelled_bookings():
    cursor = FakeCursor()
    repository = PostgresBookingRepository(conn=FakeConnection(cursor))

    assert repository.confirm_payment("7", now=BASE_TIME) is None
    assert "AND status <> 'CANCELLED'" in cursor.executed[0][0]


def test_account_lookup_resolves_shop_membership():
    cursor = FakeCursor(
        [{"id": "barber-1", "role": "BARBER", "email": "b@example.com", "trial_ends_at": None, "shop_id": "shop-1"}]
    )
    account = PostgresAccountRepository(conn=FakeConnection(cursor)).get_account("barber-1")

    assert account.shop_id == "shop-1"
    assert account.role.value == "BARBER"


def test_push_endpoint_delete_reports_rowcount():
    cursor = FakeCursor(rowcount=0)
    assert PostgresPushSubscriptionRepository(conn=FakeConnection(cursor)).delete_endpoint("https://push/a") is False


def test_managed_connection_commits_and_closes():
    cursor = FakeCursor()
    connection = FakeConnection(cursor)
    app_context.configure(config=CoreConfig(), get_conn=lambda: connection, get_current_user=lambda **_: None)

    PostgresBillingRepository().complete_webhook_delivery("req-1", now=BASE_TIME)

    assert connection.commits >= 1
    assert connection.rollbacks == 0
    assert connection.closed
    assert cursor.closed


def test_managed_connection_rolls_back_on_error():
    class FailingCursor(FakeCursor):
        def execute(self, query, params=None):
            raise RuntimeError("connection reset")

    cursor = FailingCursor()
    connection = FakeConnection(cursor)
    app_context.configure(config=CoreConfig(), get_conn=lambda: connection, get_current_user=lambda **_: None)

    with pytest.raises(RuntimeError):
        PostgresBillingRepository().get_subscription_for_owner("owner-1")

    assert connection.commits == 0
    assert connection.rollbacks >= 1
    assert connection.closed
