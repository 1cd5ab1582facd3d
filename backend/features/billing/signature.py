"""Billing webhook signatures: HMAC-SHA256 hex over the raw request body."""

import hashlib
import hmac
from typing import Optional


def sign_payload(secret: str, body_bytes: bytes) -> str:
    return hmac.new(secret.encode(), body_bytes, hashlib.sha256).hexdigest()


def verify_signature(secret: Optional[str], signature_header: Optional[str], body_bytes: bytes) -> bool:
    """Constant-time check of ``signature_header`` against the body digest.

    An unconfigured secret or a missing header never verifies.
    """
    if not secret or not signature_header:
        return False
    expected = sign_payload(secret, body_bytes)
    return hmac.compare_digest(expected.encode(), signature_header.strip().lower().encode())
