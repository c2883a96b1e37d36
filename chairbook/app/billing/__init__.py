"""Billing domain package: webhook reconciliation, discount codes and processor linking."""

from .discounts import (
    DiscountCode,
    DiscountCodeError,
    DiscountCodeLedger,
    DiscountCodeRepository,
    RedemptionFailureReason,
    RedemptionResult,
)
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    CheckoutSession,
    DiscountExpirySummary,
    ProcessorCredentials,
    ProcessorPayment,
    ProcessorSubscription,
    PurchaseIntent,
    PurchaseIntentStatus,
    ReconciliationOutcome,
    ReconciliationResult,
    Subscription,
    SubscriptionStatus,
    WebhookDelivery,
    WebhookTopic,
)
from .oauth import OAuthLinkError, OAuthLinkFailure, ProcessorLinkService, TokenCipher
from .processor import MercadoPagoClient, OAuthClient, ProcessorClient, ProcessorError
from .service import (
    BillingEventLogger,
    BillingRepository,
    SubscriptionReconciler,
    WebhookAuthenticationError,
)
from .signature import SignatureVerifier, verify_webhook_signature

__all__ = [
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingEventLogger",
    "BillingRepository",
    "CheckoutSession",
    "DiscountCode",
    "DiscountCodeError",
    "DiscountCodeLedger",
    "DiscountCodeRepository",
    "DiscountExpirySummary",
    "MercadoPagoClient",
    "OAuthClient",
    "OAuthLinkError",
    "OAuthLinkFailure",
    "ProcessorClient",
    "ProcessorCredentials",
    "ProcessorError",
    "ProcessorLinkService",
    "ProcessorPayment",
    "ProcessorSubscription",
    "PurchaseIntent",
    "PurchaseIntentStatus",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "RedemptionFailureReason",
    "RedemptionResult",
    "SignatureVerifier",
    "Subscription",
    "SubscriptionReconciler",
    "SubscriptionStatus",
    "TokenCipher",
    "WebhookAuthenticationError",
    "WebhookDelivery",
    "WebhookTopic",
    "verify_webhook_signature",
]
