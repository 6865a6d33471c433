"""Dropbox webhook signature verification."""

import hashlib
import hmac

SIGNATURE_HEADER = "X-Dropbox-Signature"


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body keyed by the app secret."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    """Check a webhook signature in constant time.

    Args:
        raw_body: The request body exactly as received.
        signature: Value of the ``X-Dropbox-Signature`` header.
        secret: The Dropbox app secret.

    Returns:
        True only if the signature is present and matches.
    """
    if not signature or not secret:
        return False
    expected = compute_signature(raw_body, secret)
    provided = signature.strip().lower().encode("utf-8", "surrogateescape")
    return hmac.compare_digest(expected.encode("ascii"), provided)
