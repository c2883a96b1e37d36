"""Application wiring for entitlement evaluation."""
from __future__ import annotations

from functools import lru_cache

from ... import app_context
from ..billing.repository import PostgresBillingRepository
from ..entitlements import EntitlementEngine, EntitlementService, GracePolicy
from ..entitlements.repository import PostgresAccountRepository


@lru_cache(maxsize=1)
def get_entitlement_engine() -> EntitlementEngine:
    config = app_context.get_config()
    return EntitlementEngine(
        GracePolicy(
            billing_grace=config.billing_grace_period,
            payment_retry_grace=config.payment_retry_grace_period,
        )
    )


@lru_cache(maxsize=1)
def get_entitlement_service() -> EntitlementService:
    return EntitlementService(
        PostgresAccountRepository(),
        PostgresBillingRepository(),
        get_entitlement_engine(),
    )


__all__ = ["get_entitlement_engine", "get_entitlement_service"]
