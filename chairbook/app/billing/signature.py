"""Authenticity checks for inbound payment processor webhooks.

The processor signs each delivery with HMAC-SHA256 over a manifest built from
the resource id, the ``x-request-id`` header and the timestamp carried in the
``x-signature`` header::

    x-signature: ts=1704067200,v1=<hex digest>
    manifest:    id:{resource_id};request-id:{request_id};ts:{ts};

Field order and punctuation of the manifest must match the processor's
construction byte for byte. Verification fails closed: any missing input or
parsing anomaly yields ``False`` and never raises.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)


def parse_signature_header(header: Optional[str]) -> Dict[str, str]:
    """Split a ``key=value`` comma separated header into a mapping."""

    parts: Dict[str, str] = {}
    if not header:
        return parts
    for chunk in header.split(","):
        key, separator, value = chunk.partition("=")
        if not separator:
            continue
        key = key.strip()
        value = value.strip()
        if key and value:
            parts[key] = value
    return parts


def build_manifest(resource_id: str, request_id: str, ts: str) -> str:
    return f"id:{resource_id};request-id:{request_id};ts:{ts};"


def compute_signature(manifest: str, secret: str) -> str:
    """Compute the hex encoded HMAC-SHA256 of ``manifest`` under ``secret``."""

    return hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_webhook_signature(
    signature_header: Optional[str],
    request_id: Optional[str],
    resource_id: Optional[str],
    secret: Optional[str],
) -> bool:
    """Return ``True`` only for a correctly signed delivery."""

    if not signature_header or not request_id or not resource_id or not secret:
        logger.warning(
            "Webhook signature check missing inputs",
            extra={
                "has_signature": bool(signature_header),
                "has_request_id": bool(request_id),
                "has_resource_id": bool(resource_id),
                "has_secret": bool(secret),
            },
        )
        return False

    try:
        parts = parse_signature_header(signature_header)
        ts = parts.get("ts")
        received = parts.get("v1")
        if not ts or not received:
            logger.warning("Webhook signature header lacks ts or v1")
            return False

        expected = compute_signature(build_manifest(str(resource_id), request_id, ts), secret)
        # compare_digest tolerates length mismatches and does not short-circuit.
        is_valid = hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))
    except (AttributeError, TypeError, UnicodeError, ValueError):
        logger.warning("Webhook signature header could not be parsed")
        return False

    if not is_valid:
        logger.warning("Webhook signature mismatch", extra={"request_id": request_id})
    return is_valid


class SignatureVerifier:
    """Verifier bound to the configured webhook secret."""

    def __init__(self, secret: Optional[str]) -> None:
        self._secret = secret or None

    @property
    def is_configured(self) -> bool:
        return self._secret is not None

    def verify(
        self,
        signature_header: Optional[str],
        request_id: Optional[str],
        resource_id: Optional[str],
    ) -> bool:
        if self._secret is None:
            logger.error("Webhook secret is not configured; rejecting delivery")
            return False
        return verify_webhook_signature(signature_header, request_id, resource_id, self._secret)


__all__ = [
    "SignatureVerifier",
    "build_manifest",
    "compute_signature",
    "parse_signature_header",
    "verify_webhook_signature",
]
