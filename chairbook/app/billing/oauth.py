"""Processor account linking over the OAuth authorization-code flow.

The connect step issues a CSRF token twice: once inside a signed, short-lived
cookie and once inside the opaque ``state`` parameter handed to the processor.
The callback only trusts the returned authorization code when both copies
match and the cookie was issued within the configured lifetime. Nothing is
persisted until every check and the code exchange have succeeded.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional, Protocol, Tuple

from cryptography.fernet import Fernet, InvalidToken

from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    OAuthTokens,
    ProcessorCredentials,
)
from .processor import OAuthClient, ProcessorError

logger = logging.getLogger(__name__)

CSRF_COOKIE_NAME = "mp_oauth_csrf"
TOKEN_ENCRYPTION_PURPOSE = "processor-token-encryption"
CSRF_SIGNING_PURPOSE = "oauth-csrf-cookie"


class OAuthLinkFailure(str, Enum):
    """Generic failure codes surfaced to the browser after a failed link."""

    MISSING_PARAMS = "missing_params"
    CSRF_MISMATCH = "csrf_mismatch"
    INVALID_STATE = "invalid_state"
    SHOP_NOT_FOUND = "shop_not_found"
    TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
    PROCESSOR_ERROR = "processor_error"


class OAuthLinkError(Exception):
    """Raised when a link attempt must be aborted."""

    def __init__(self, code: OAuthLinkFailure) -> None:
        self.code = code
        super().__init__(code.value)


class ProcessorLinkRepository(Protocol):
    """Persistence operations required by the link flow."""

    def find_shop_id_for_owner(self, owner_id: str) -> Optional[str]:
        ...

    def shop_exists(self, shop_id: str) -> bool:
        ...

    def get_credentials(self, shop_id: str) -> Optional[ProcessorCredentials]:
        ...

    def upsert_credentials(self, credentials: ProcessorCredentials) -> ProcessorCredentials:
        ...


class LinkEventLogger(Protocol):
    def log(self, event: BillingAuditEvent) -> None:
        ...


def derive_key(secret: str, purpose: str) -> str:
    """Derive an independent hex key for ``purpose`` from one configured secret."""

    if not secret:
        raise ValueError("Key derivation secret must not be empty")
    return hmac.new(secret.encode("utf-8"), f"chairbook:{purpose}".encode("utf-8"), hashlib.sha256).hexdigest()


class TokenCipher:
    """Symmetric encryption for processor tokens stored at rest."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("Token encryption secret must not be empty")
        key = base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest())
        self._fernet = Fernet(key)

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            raise ValueError("Stored processor token could not be decrypted") from exc


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def encode_state(shop_id: str, csrf: str) -> str:
    payload = json.dumps({"shopId": shop_id, "csrf": csrf}, separators=(",", ":"))
    return _b64url_encode(payload.encode("utf-8"))


def decode_state(state: str) -> Tuple[str, str]:
    """Return ``(shop_id, csrf)`` carried by ``state``.

    Raises :class:`ValueError` for anything that is not the expected document.
    """

    try:
        payload = json.loads(_b64url_decode(state).decode("utf-8"))
    except (binascii.Error, UnicodeError, json.JSONDecodeError) as exc:
        raise ValueError("state is not base64url encoded JSON") from exc
    if not isinstance(payload, dict):
        raise ValueError("state must decode to an object")
    shop_id = payload.get("shopId")
    csrf = payload.get("csrf")
    if not isinstance(shop_id, str) or not shop_id or not isinstance(csrf, str) or not csrf:
        raise ValueError("state lacks shopId or csrf")
    return shop_id, csrf


def _cookie_mac(secret: str, csrf: str, issued_at: int) -> str:
    message = f"{csrf}.{issued_at}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def issue_csrf_cookie(secret: str, csrf: str, now: datetime) -> str:
    issued_at = int(now.timestamp())
    return f"{csrf}.{issued_at}.{_cookie_mac(secret, csrf, issued_at)}"


def read_csrf_cookie(secret: str, cookie_value: str, now: datetime, ttl: timedelta) -> Optional[str]:
    """Return the CSRF token held by a genuine, unexpired cookie, else ``None``."""

    csrf, _, rest = cookie_value.partition(".")
    issued_raw, _, mac = rest.partition(".")
    if not csrf or not issued_raw or not mac:
        return None
    try:
        issued_at = int(issued_raw)
    except ValueError:
        return None
    expected = _cookie_mac(secret, csrf, issued_at)
    if not hmac.compare_digest(mac.encode("utf-8"), expected.encode("utf-8")):
        return None
    age = now.timestamp() - issued_at
    if age < 0 or age > ttl.total_seconds():
        return None
    return csrf


@dataclass(frozen=True)
class LinkStart:
    """Redirect target and cookie value produced by the connect step."""

    authorization_url: str
    csrf_cookie: str
    shop_id: str


class ProcessorLinkService:
    """Links a shop to its processor account and keeps the access token fresh."""

    def __init__(
        self,
        repository: ProcessorLinkRepository,
        oauth_client: OAuthClient,
        cipher: TokenCipher,
        *,
        signing_secret: str,
        state_ttl: timedelta = timedelta(minutes=10),
        refresh_buffer: timedelta = timedelta(minutes=5),
        event_logger: Optional[LinkEventLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not signing_secret:
            raise ValueError("signing_secret must not be empty")
        self._repository = repository
        self._oauth_client = oauth_client
        self._cipher = cipher
        self._signing_secret = signing_secret
        self._state_ttl = state_ttl
        self._refresh_buffer = refresh_buffer
        self._event_logger = event_logger
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def state_ttl(self) -> timedelta:
        return self._state_ttl

    def begin_link(self, owner_id: str) -> LinkStart:
        shop_id = self._repository.find_shop_id_for_owner(owner_id)
        if not shop_id:
            raise OAuthLinkError(OAuthLinkFailure.SHOP_NOT_FOUND)

        csrf = secrets.token_urlsafe(32)
        state = encode_state(shop_id, csrf)
        return LinkStart(
            authorization_url=self._oauth_client.authorization_url(state),
            csrf_cookie=issue_csrf_cookie(self._signing_secret, csrf, self._clock()),
            shop_id=shop_id,
        )

    def complete_link(
        self,
        *,
        code: Optional[str],
        state: Optional[str],
        cookie_value: Optional[str],
    ) -> ProcessorCredentials:
        if not code or not state:
            raise OAuthLinkError(OAuthLinkFailure.MISSING_PARAMS)

        try:
            shop_id, state_csrf = decode_state(state)
        except ValueError:
            logger.warning("OAuth callback carried an undecodable state")
            raise OAuthLinkError(OAuthLinkFailure.INVALID_STATE) from None

        now = self._clock()
        cookie_csrf = (
            read_csrf_cookie(self._signing_secret, cookie_value, now, self._state_ttl)
            if cookie_value
            else None
        )
        if cookie_csrf is None or not hmac.compare_digest(
            cookie_csrf.encode("utf-8"), state_csrf.encode("utf-8")
        ):
            logger.warning("OAuth callback failed CSRF validation", extra={"shop_id": shop_id})
            raise OAuthLinkError(OAuthLinkFailure.CSRF_MISMATCH)

        if not self._repository.shop_exists(shop_id):
            raise OAuthLinkError(OAuthLinkFailure.SHOP_NOT_FOUND)

        try:
            tokens = self._oauth_client.exchange_code(code)
        except ProcessorError:
            logger.exception("Processor rejected the authorization code", extra={"shop_id": shop_id})
            raise OAuthLinkError(OAuthLinkFailure.TOKEN_EXCHANGE_FAILED) from None

        stored = self._store_tokens(shop_id, tokens, now)
        logger.info("Processor account linked", extra={"shop_id": shop_id})
        if self._event_logger is not None:
            self._event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.PROCESSOR_LINKED,
                    metadata={"shop_id": shop_id},
                )
            )
        return stored

    def get_valid_access_token(self, shop_id: str) -> str:
        """Return a decrypted access token, refreshing it when close to expiry."""

        credentials = self._repository.get_credentials(shop_id)
        if credentials is None:
            raise LookupError(f"Shop {shop_id} has no linked processor account")

        now = self._clock()
        if credentials.expires_at - self._refresh_buffer > now:
            return self._cipher.decrypt(credentials.access_token)

        refresh_token = self._cipher.decrypt(credentials.refresh_token)
        try:
            tokens = self._oauth_client.refresh(refresh_token)
        except ProcessorError:
            logger.exception("Processor token refresh failed", extra={"shop_id": shop_id})
            raise OAuthLinkError(OAuthLinkFailure.PROCESSOR_ERROR) from None

        self._store_tokens(shop_id, tokens, now, fallback_user_id=credentials.processor_user_id)
        logger.info("Processor access token refreshed", extra={"shop_id": shop_id})
        return tokens.access_token

    def _store_tokens(
        self,
        shop_id: str,
        tokens: OAuthTokens,
        now: datetime,
        *,
        fallback_user_id: Optional[str] = None,
    ) -> ProcessorCredentials:
        return self._repository.upsert_credentials(
            ProcessorCredentials(
                shop_id=shop_id,
                access_token=self._cipher.encrypt(tokens.access_token),
                refresh_token=self._cipher.encrypt(tokens.refresh_token),
                expires_at=now + timedelta(seconds=tokens.expires_in),
                processor_user_id=tokens.user_id or fallback_user_id,
            )
        )


__all__ = [
    "CSRF_COOKIE_NAME",
    "CSRF_SIGNING_PURPOSE",
    "LinkStart",
    "OAuthLinkError",
    "OAuthLinkFailure",
    "ProcessorLinkRepository",
    "ProcessorLinkService",
    "TOKEN_ENCRYPTION_PURPOSE",
    "TokenCipher",
    "decode_state",
    "derive_key",
    "encode_state",
    "issue_csrf_cookie",
    "read_csrf_cookie",
]
