"""HTTP client for the Mercado Pago subscription, payment and OAuth APIs."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Protocol
from urllib import error as urllib_error, parse as urllib_parse, request as urllib_request

from .models import OAuthTokens, ProcessorCheckout, ProcessorPayment, ProcessorSubscription

logger = logging.getLogger(__name__)


RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


class ProcessorError(RuntimeError):
    """Raised when the processor API cannot be reached or answers with an error.

    Network failures, 5xx answers, 408 and 429 may succeed later. Other 4xx
    answers and unusable payloads will not.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self._retryable = retryable

    @property
    def is_retryable(self) -> bool:
        if self._retryable is not None:
            return self._retryable
        if self.status_code is None:
            return True
        return self.status_code >= 500 or self.status_code in RETRYABLE_CLIENT_STATUSES


class ProcessorClient(Protocol):
    """Subscription and payment operations used by the reconciler."""

    def get_subscription(self, subscription_id: str) -> ProcessorSubscription:
        ...

    def get_payment(self, payment_id: str) -> ProcessorPayment:
        ...

    def create_subscription(
        self,
        *,
        owner_id: str,
        payer_email: str,
        amount: int,
        reason: str,
        back_url: str,
    ) -> ProcessorCheckout:
        ...

    def update_subscription_amount(self, subscription_id: str, amount: int) -> None:
        ...


class OAuthClient(Protocol):
    """Authorization-code operations used by the account link flow."""

    def authorization_url(self, state: str) -> str:
        ...

    def exchange_code(self, code: str) -> OAuthTokens:
        ...

    def refresh(self, refresh_token: str) -> OAuthTokens:
        ...


def _parse_optional_datetime(value: object) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise TypeError("Unsupported datetime value")


def _optional_str(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _safe_metadata(value: object) -> Dict[str, str]:
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items() if v is not None}
    return {}


def subscription_from_payload(payload: Mapping[str, Any]) -> ProcessorSubscription:
    subscription_id = _optional_str(payload.get("id"))
    if not subscription_id:
        raise ValueError("subscription payload lacks an id")
    payer = payload.get("payer_email")
    return ProcessorSubscription(
        subscription_id=subscription_id,
        status=str(payload.get("status") or ""),
        external_reference=_optional_str(payload.get("external_reference")),
        next_payment_date=_parse_optional_datetime(payload.get("next_payment_date")),
        payer_email=_optional_str(payer),
    )


def payment_from_payload(payload: Mapping[str, Any]) -> ProcessorPayment:
    payment_id = _optional_str(payload.get("id"))
    if not payment_id:
        raise ValueError("payment payload lacks an id")
    payer = payload.get("payer") if isinstance(payload.get("payer"), dict) else {}
    return ProcessorPayment(
        payment_id=payment_id,
        status=str(payload.get("status") or ""),
        external_reference=_optional_str(payload.get("external_reference")),
        payer_email=_optional_str(payer.get("email")),
        metadata=_safe_metadata(payload.get("metadata")),
    )


def tokens_from_payload(payload: Mapping[str, Any]) -> OAuthTokens:
    try:
        return OAuthTokens(
            access_token=str(payload["access_token"]),
            refresh_token=str(payload["refresh_token"]),
            expires_in=int(payload.get("expires_in") or 0),
            user_id=_optional_str(payload.get("user_id")),
            public_key=_optional_str(payload.get("public_key")),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ProcessorError("Malformed OAuth token response") from exc


class MercadoPagoClient:
    """Thin JSON-over-HTTP client for the processor REST API."""

    def __init__(
        self,
        *,
        access_token: Optional[str],
        api_base_url: str = "https://api.mercadopago.com",
        auth_url: str = "https://auth.mercadopago.com/authorization",
        app_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        currency_id: str = "ARS",
        timeout: float = 10.0,
    ) -> None:
        self._access_token = access_token
        self._api_base_url = api_base_url.rstrip("/")
        self._auth_url = auth_url
        self._app_id = app_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._currency_id = currency_id
        self._timeout = timeout

    def _send(self, request: urllib_request.Request) -> Dict[str, Any]:
        try:
            with urllib_request.urlopen(request, timeout=self._timeout) as response:
                body = response.read()
        except urllib_error.HTTPError as exc:
            logger.warning(
                "Processor request failed",
                extra={"processor_url": request.full_url, "status_code": exc.code},
            )
            raise ProcessorError(f"Processor responded with {exc.code}", status_code=exc.code) from exc
        except urllib_error.URLError as exc:
            raise ProcessorError(f"Processor unreachable: {exc.reason}") from exc

        if not body:
            return {}
        try:
            payload = json.loads(body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ProcessorError("Processor returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise ProcessorError("Processor returned an unexpected JSON document")
        return payload

    def _request(self, method: str, path: str, body: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        if not self._access_token:
            raise ProcessorError("Processor access token is not configured")
        data = json.dumps(body).encode("utf-8") if body is not None else None
        request = urllib_request.Request(
            f"{self._api_base_url}{path}",
            data=data,
            method=method,
            headers={
                "Authorization": f"Bearer {self._access_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        return self._send(request)

    def get_subscription(self, subscription_id: str) -> ProcessorSubscription:
        path = f"/preapproval/{urllib_parse.quote(subscription_id, safe='')}"
        payload = self._request("GET", path)
        try:
            return subscription_from_payload(payload)
        except ValueError as exc:
            raise ProcessorError(f"Malformed subscription payload: {exc}", retryable=False) from exc

    def get_payment(self, payment_id: str) -> ProcessorPayment:
        path = f"/v1/payments/{urllib_parse.quote(payment_id, safe='')}"
        payload = self._request("GET", path)
        try:
            return payment_from_payload(payload)
        except ValueError as exc:
            raise ProcessorError(f"Malformed payment payload: {exc}", retryable=False) from exc

    def create_subscription(
        self,
        *,
        owner_id: str,
        payer_email: str,
        amount: int,
        reason: str,
        back_url: str,
    ) -> ProcessorCheckout:
        payload = self._request(
            "POST",
            "/preapproval",
            {
                "reason": reason,
                "auto_recurring": {
                    "frequency": 1,
                    "frequency_type": "months",
                    "transaction_amount": amount,
                    "currency_id": self._currency_id,
                },
                "back_url": back_url,
                "payer_email": payer_email,
                "status": "pending",
                "external_reference": owner_id,
            },
        )
        subscription_id = _optional_str(payload.get("id"))
        checkout_url = _optional_str(payload.get("init_point"))
        if not subscription_id or not checkout_url:
            raise ProcessorError("Processor did not return a checkout link")
        return ProcessorCheckout(subscription_id=subscription_id, checkout_url=checkout_url)

    def update_subscription_amount(self, subscription_id: str, amount: int) -> None:
        path = f"/preapproval/{urllib_parse.quote(subscription_id, safe='')}"
        self._request(
            "PUT",
            path,
            {"auto_recurring": {"transaction_amount": amount, "currency_id": self._currency_id}},
        )

    def authorization_url(self, state: str) -> str:
        params = urllib_parse.urlencode(
            {
                "client_id": self._app_id or "",
                "response_type": "code",
                "platform_id": "mp",
                "redirect_uri": self._redirect_uri or "",
                "state": state,
            }
        )
        return f"{self._auth_url}?{params}"

    def _token_request(self, fields: Dict[str, str]) -> OAuthTokens:
        if not self._app_id or not self._client_secret:
            raise ProcessorError("Processor OAuth credentials are not configured")
        form = urllib_parse.urlencode(
            {"client_id": self._app_id, "client_secret": self._client_secret, **fields}
        ).encode("utf-8")
        request = urllib_request.Request(
            f"{self._api_base_url}/oauth/token",
            data=form,
            method="POST",
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
        )
        return tokens_from_payload(self._send(request))

    def exchange_code(self, code: str) -> OAuthTokens:
        return self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self._redirect_uri or "",
            }
        )

    def refresh(self, refresh_token: str) -> OAuthTokens:
        return self._token_request({"grant_type": "refresh_token", "refresh_token": refresh_token})


__all__ = [
    "MercadoPagoClient",
    "OAuthClient",
    "ProcessorClient",
    "ProcessorError",
    "payment_from_payload",
    "subscription_from_payload",
    "tokens_from_payload",
]
