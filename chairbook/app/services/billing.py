"""Application wiring for the billing services."""
from __future__ import annotations

import logging
from datetime import timedelta
from functools import lru_cache

from ... import app_context
from ..billing import (
    BillingAuditEvent,
    BillingEventLogger,
    DiscountCodeLedger,
    MercadoPagoClient,
    ProcessorLinkService,
    SignatureVerifier,
    SubscriptionReconciler,
    TokenCipher,
)
from ..billing.oauth import CSRF_SIGNING_PURPOSE, TOKEN_ENCRYPTION_PURPOSE, derive_key
from ..billing.repository import (
    PostgresBillingRepository,
    PostgresDiscountCodeRepository,
    PostgresProcessorLinkRepository,
)
from ..entitlements.repository import PostgresAccountRepository
from .bookings import get_booking_payment_service


logger = logging.getLogger("billing")


class LoggingBillingEventLogger(BillingEventLogger):
    """Event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s subscription=%s actor=%s metadata=%s",
            event.event_type.value,
            event.subscription_id,
            event.actor_id,
            event.metadata,
        )


@lru_cache(maxsize=1)
def get_processor_client() -> MercadoPagoClient:
    config = app_context.get_config()
    return MercadoPagoClient(
        access_token=config.processor_access_token,
        api_base_url=config.processor_api_base_url,
        auth_url=config.processor_auth_url,
        app_id=config.processor_app_id,
        client_secret=config.processor_client_secret,
        redirect_uri=config.processor_redirect_uri,
        currency_id=config.currency_id,
        timeout=config.processor_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_discount_ledger() -> DiscountCodeLedger:
    return DiscountCodeLedger(PostgresDiscountCodeRepository())


@lru_cache(maxsize=1)
def get_subscription_reconciler() -> SubscriptionReconciler:
    config = app_context.get_config()
    return SubscriptionReconciler(
        repository=PostgresBillingRepository(),
        processor=get_processor_client(),
        verifier=SignatureVerifier(config.webhook_secret),
        ledger=get_discount_ledger(),
        event_logger=LoggingBillingEventLogger(),
        owner_directory=PostgresAccountRepository(),
        booking_payments=get_booking_payment_service(),
        standard_price=config.standard_price,
        claim_lease=timedelta(seconds=config.webhook_claim_lease_seconds),
        checkout_back_url=f"{config.app_base_url.rstrip('/')}/dashboard/billing",
    )


@lru_cache(maxsize=1)
def get_processor_link_service() -> ProcessorLinkService:
    config = app_context.get_config()
    return ProcessorLinkService(
        PostgresProcessorLinkRepository(),
        get_processor_client(),
        TokenCipher(derive_key(config.token_encryption_key, TOKEN_ENCRYPTION_PURPOSE)),
        signing_secret=derive_key(config.token_encryption_key, CSRF_SIGNING_PURPOSE),
        state_ttl=config.oauth_state_ttl,
        refresh_buffer=timedelta(seconds=config.token_refresh_buffer_seconds),
        event_logger=LoggingBillingEventLogger(),
    )


__all__ = [
    "LoggingBillingEventLogger",
    "get_discount_ledger",
    "get_processor_client",
    "get_processor_link_service",
    "get_subscription_reconciler",
]
