"""HMAC-SHA256 signature checks for the payment gateway.

Webhooks are signed over the raw request body with the webhook secret.
Checkout confirmations are signed over ``"<order_id>|<payment_id>"`` with
the API key secret. Both use hex digests compared in constant time.
"""

from __future__ import annotations

import hashlib
import hmac

SIGNATURE_HEADER = "x-razorpay-signature"


def compute_signature(message: bytes | str, secret: str) -> str:
    """Return the hex HMAC-SHA256 of ``message`` under ``secret``."""
    if isinstance(message, str):
        message = message.encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes | str, signature: str | None, secret: str | None) -> bool:
    """Verify a webhook signature against the unparsed request body.

    The body must be the exact bytes received; a re-serialized payload will
    not byte-match what the gateway signed.
    """
    if not signature or not secret:
        return False
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(signature.encode(), expected.encode())


def verify_payment_signature(
    order_id: str, payment_id: str, signature: str | None, secret: str | None,
) -> bool:
    """Verify a checkout confirmation signature."""
    return verify_signature(f"{order_id}|{payment_id}", signature, secret)
