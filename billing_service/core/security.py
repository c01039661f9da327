# billing_service/core/security.py
# Webhook signature verification (HMAC-SHA256 over the raw request body)
#
# Gateways sign the exact bytes they send, so callers must pass the raw
# body -- never a re-serialised JSON dict.

import hashlib
import hmac
from typing import Optional

from billing_service.core.config import settings


def compute_signature(secret: str, payload_body: bytes) -> str:
    """Hex HMAC-SHA256 of payload_body keyed by secret."""
    return hmac.new(
        secret.encode("utf-8"),
        payload_body,
        hashlib.sha256,
    ).hexdigest()


def verify_signature(
    payload_body: bytes,
    signature: Optional[str],
    secret: str,
) -> bool:
    """
    Verify a webhook signature.

    Args:
        payload_body: Raw request body bytes
        signature: Value of the signature header (may be None)
        secret: Shared webhook secret

    Returns:
        True if the signature matches. With no secret configured, verification
        is skipped outside production and always fails in production.
    """
    if not secret:
        return not settings.is_production

    if not signature:
        return False

    expected = compute_signature(secret, payload_body)
    return hmac.compare_digest(expected, signature.strip().lower())


def verify_payment_webhook(payload_body: bytes, signature: Optional[str]) -> bool:
    """X-Webhook-Signature check for POST /payments/webhook."""
    return verify_signature(payload_body, signature, settings.payment_webhook_secret)


def verify_sepay_webhook(payload_body: bytes, signature: Optional[str]) -> bool:
    """Sepay signs with the merchant API key."""
    return verify_signature(payload_body, signature, settings.sepay_api_key)
