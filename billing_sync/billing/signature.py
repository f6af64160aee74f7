"""Webhook signature verification - constant-time HMAC-SHA256.

The processor signs the exact request body bytes and sends the hex digest
in ``X-Signature-Hmac-Sha256``. The body is never re-serialized before
verification; whitespace or key order changes would break the digest.
"""

import hashlib
import hmac

SIGNATURE_HEADER = "X-Signature-Hmac-Sha256"


def compute_signature(raw_body: bytes, secret: bytes | str) -> str:
    """Hex HMAC-SHA256 of `raw_body` under `secret`."""
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    return hmac.new(secret, raw_body, hashlib.sha256).hexdigest()


def verify(raw_body: bytes, signature_header: str | None, secret: bytes | str | None) -> bool:
    """
    Check a webhook signature.

    Returns False for a missing header, a missing secret, or a mismatch.
    Malformed input of any kind is a mismatch, never an exception.
    """
    if not signature_header or not secret:
        return False

    try:
        expected = compute_signature(raw_body, secret)
        return hmac.compare_digest(expected, signature_header.strip().lower())
    except (TypeError, ValueError, AttributeError):
        # Non-bytes body, non-ASCII header, wrong header type
        return False
