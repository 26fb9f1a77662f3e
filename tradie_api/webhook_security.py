"""
Webhook Security Module

Signing for outgoing webhooks. Subscribers receive the HMAC-SHA256 hex digest of the
raw request body, keyed by the subscription secret, in the X-Signature header.
"""

import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature"


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def sign_payload(secret: Optional[str], body: bytes) -> Optional[str]:
    """Signature for an outgoing delivery, or None when the subscription has no secret"""
    if not secret:
        return None
    return compute_hmac_sha256(secret, body)


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Check an X-Signature header the way a subscriber would"""
    if not signature:
        logger.warning("🚫 Webhook missing signature")
        return False
    return constant_time_compare(compute_hmac_sha256(secret, body), signature)

