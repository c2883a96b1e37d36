"""Runtime configuration for the payment and entitlement core."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional
import math
import os


@dataclass(frozen=True)
class CoreConfig:
    """Configuration shared by billing, entitlement, booking and push components."""

    db_host: str = "127.0.0.1"
    db_port: int = 5432
    db_name: str = "chairbook"
    db_user: str = "chairbook"
    db_password: str = "chairbook"
    db_connect_timeout: int = 5

    jwt_secret_key: str = "dev-secret-change-me"
    jwt_algorithm: str = "HS256"
    session_cookie_name: str = "session"
    session_cookie_secure: bool = False
    app_base_url: str = "http://localhost:3000"

    webhook_secret: Optional[str] = None
    cron_secret: Optional[str] = None

    processor_access_token: Optional[str] = None
    processor_app_id: Optional[str] = None
    processor_client_secret: Optional[str] = None
    processor_redirect_uri: Optional[str] = None
    processor_api_base_url: str = "https://api.mercadopago.com"
    processor_auth_url: str = "https://auth.mercadopago.com/authorization"
    processor_timeout_seconds: float = 10.0
    token_encryption_key: str = "dev-secret-change-me"

    vapid_public_key: Optional[str] = None
    vapid_private_key: Optional[str] = None
    vapid_subject: str = "mailto:support@example.com"
    realtime_url: Optional[str] = None
    realtime_service_key: Optional[str] = None
    push_timeout_seconds: float = 10.0

    billing_grace_days: int = 2
    payment_retry_grace_days: int = 3
    pending_booking_ttl_minutes: int = 10
    oauth_state_ttl_seconds: int = 600
    token_refresh_buffer_seconds: int = 300
    webhook_claim_lease_seconds: int = 300
    standard_price: int = 9900
    currency_id: str = "ARS"

    @property
    def billing_grace_period(self) -> timedelta:
        return timedelta(days=self.billing_grace_days)

    @property
    def payment_retry_grace_period(self) -> timedelta:
        return timedelta(days=self.payment_retry_grace_days)

    @property
    def pending_booking_ttl(self) -> timedelta:
        return timedelta(minutes=self.pending_booking_ttl_minutes)

    @property
    def oauth_state_ttl(self) -> timedelta:
        return timedelta(seconds=self.oauth_state_ttl_seconds)

    @property
    def db_settings(self) -> dict:
        return {
            "host": self.db_host,
            "port": self.db_port,
            "dbname": self.db_name,
            "user": self.db_user,
            "password": self.db_password,
            "connect_timeout": self.db_connect_timeout,
        }


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _parse_connect_timeout(value: Optional[str]) -> int:
    timeout = _to_float(value, default=5.0)
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


def load_core_config(env: Optional[Mapping[str, str]] = None) -> CoreConfig:
    """Load :class:`CoreConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    grace_days = _to_int(env_mapping.get("BILLING_GRACE_DAYS"), default=2)
    retry_grace_days = _to_int(env_mapping.get("PAYMENT_RETRY_GRACE_DAYS"), default=3)
    booking_ttl = _to_int(env_mapping.get("PENDING_BOOKING_TTL_MINUTES"), default=10)
    if grace_days < 0 or retry_grace_days < 0 or booking_ttl < 1:
        raise ValueError("Grace periods must be non-negative and the booking TTL positive")

    auth_secret = env_mapping.get("AUTH_SECRET", "dev-secret-change-me")

    return CoreConfig(
        db_host=env_mapping.get("DB_HOST", "127.0.0.1"),
        db_port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        db_name=env_mapping.get("DB_NAME", "chairbook"),
        db_user=env_mapping.get("DB_USER", "chairbook"),
        db_password=env_mapping.get("DB_PASSWORD", "chairbook"),
        db_connect_timeout=_parse_connect_timeout(env_mapping.get("DB_CONNECT_TIMEOUT")),
        jwt_secret_key=env_mapping.get("JWT_SECRET_KEY", auth_secret),
        jwt_algorithm=env_mapping.get("JWT_ALGORITHM", "HS256"),
        session_cookie_name=env_mapping.get("SESSION_COOKIE_NAME", "session"),
        session_cookie_secure=_to_bool(env_mapping.get("SESSION_COOKIE_SECURE"), default=False),
        app_base_url=env_mapping.get("APP_BASE_URL", "http://localhost:3000").rstrip("/"),
        webhook_secret=_optional(env_mapping.get("MERCADOPAGO_WEBHOOK_SECRET")),
        cron_secret=_optional(env_mapping.get("CRON_SECRET")),
        processor_access_token=_optional(env_mapping.get("MERCADOPAGO_ACCESS_TOKEN")),
        processor_app_id=_optional(env_mapping.get("MERCADOPAGO_APP_ID")),
        processor_client_secret=_optional(env_mapping.get("MERCADOPAGO_CLIENT_SECRET")),
        processor_redirect_uri=_optional(env_mapping.get("MERCADOPAGO_REDIRECT_URI")),
        processor_api_base_url=env_mapping.get(
            "MERCADOPAGO_API_BASE_URL", "https://api.mercadopago.com"
        ).rstrip("/"),
        processor_auth_url=env_mapping.get(
            "MERCADOPAGO_AUTH_URL", "https://auth.mercadopago.com/authorization"
        ),
        processor_timeout_seconds=max(
            0.1, _to_float(env_mapping.get("MERCADOPAGO_TIMEOUT_SECONDS"), default=10.0)
        ),
        token_encryption_key=env_mapping.get("MERCADOPAGO_ENCRYPTION_KEY") or auth_secret,
        vapid_public_key=_optional(env_mapping.get("VAPID_PUBLIC_KEY")),
        vapid_private_key=_optional(env_mapping.get("VAPID_PRIVATE_KEY")),
        vapid_subject=env_mapping.get("VAPID_SUBJECT", "mailto:support@example.com"),
        realtime_url=_optional(env_mapping.get("REALTIME_URL")),
        realtime_service_key=_optional(env_mapping.get("REALTIME_SERVICE_KEY")),
        push_timeout_seconds=max(0.1, _to_float(env_mapping.get("PUSH_TIMEOUT_SECONDS"), default=10.0)),
        billing_grace_days=grace_days,
        payment_retry_grace_days=retry_grace_days,
        pending_booking_ttl_minutes=booking_ttl,
        oauth_state_ttl_seconds=max(
            1, _to_int(env_mapping.get("OAUTH_STATE_TTL_SECONDS"), default=600)
        ),
        token_refresh_buffer_seconds=max(
            0, _to_int(env_mapping.get("TOKEN_REFRESH_BUFFER_SECONDS"), default=300)
        ),
        webhook_claim_lease_seconds=max(
            1, _to_int(env_mapping.get("WEBHOOK_CLAIM_LEASE_SECONDS"), default=300)
        ),
        standard_price=_to_int(env_mapping.get("STANDARD_PRICE"), default=9900),
        currency_id=env_mapping.get("CURRENCY_ID", "ARS"),
    )


__all__ = ["CoreConfig", "load_core_config"]
