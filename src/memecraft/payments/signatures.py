"""Webhook signature verifiers, selected by the provider's scheme tag.

Every verifier has the shape ``verify(payload, signature, secret) -> bool`` and
works on the raw request body exactly as received.
"""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Callable

import stripe
import structlog

from memecraft.errors import InvalidSignature

log = structlog.get_logger()

# Maximum age of a timestamped signature, in seconds
STRIPE_TOLERANCE = 300

Verifier = Callable[[bytes, str, str], bool]


def sign_hmac_sha256(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_hmac_sha256(payload: bytes, signature: str, secret: str) -> bool:
    """Hex HMAC-SHA256 of the raw body, compared in constant time."""
    if not signature:
        return False
    expected = sign_hmac_sha256(payload, secret)
    return hmac.compare_digest(expected, signature.strip().lower())


def verify_stripe_v1(payload: bytes, signature: str, secret: str) -> bool:
    """``t=<ts>,v1=<hex>`` header: HMAC-SHA256 over ``"<ts>.<body>"`` with a replay window."""
    if not signature:
        return False
    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"), signature, secret, tolerance=STRIPE_TOLERANCE,
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError):
        return False
    return True


SIGNATURE_VERIFIERS: dict[str, Verifier] = {
    "hmac-sha256": verify_hmac_sha256,
    "stripe-v1": verify_stripe_v1,
}


def verify_webhook_signature(
    provider: str,
    scheme: str,
    payload: bytes,
    signature: str,
    secret: str,
    allow_unsigned: bool = False,
) -> None:
    """Raise InvalidSignature unless *signature* authenticates *payload*.

    Without a configured secret the callback is rejected, except when
    *allow_unsigned* is set (development only).
    """
    if not secret:
        if allow_unsigned:
            log.warning("webhook_signature_skipped", provider=provider)
            return
        raise InvalidSignature(provider, "Webhook secret not configured")

    verifier = SIGNATURE_VERIFIERS[scheme]
    if not verifier(payload, signature, secret):
        log.warning("webhook_signature_invalid", provider=provider, scheme=scheme)
        raise InvalidSignature(provider)
