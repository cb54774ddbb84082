"""
Webhook signature verification.

The gateway signs the raw request body with a shared secret. The header
value may carry an algorithm prefix (``sha256=...`` / ``sha1=...``) or be
bare hex, in which case the digest length decides the algorithm.
"""

import hashlib
import hmac
import logging
from typing import Optional

from crm_bridge.errors import SignatureError

logger = logging.getLogger(__name__)

_ALGORITHMS = {
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
}


def _split_signature(signature: str) -> tuple[str, str]:
    """Return (algorithm, hex digest) for a signature header value."""
    value = signature.strip()
    if "=" in value:
        prefix, _, digest = value.partition("=")
        algorithm = prefix.strip().lower()
        if algorithm not in _ALGORITHMS:
            raise SignatureError("invalid signature")
        return algorithm, digest.strip().lower()
    algorithm = "sha1" if len(value) == 40 else "sha256"
    return algorithm, value.lower()


def compute_signature(body: bytes, secret: str, algorithm: str = "sha256") -> str:
    """Hex HMAC of the raw body."""
    return hmac.new(secret.encode("utf-8"), body, _ALGORITHMS[algorithm]).hexdigest()


def verify_signature(body: bytes, secret: Optional[str], signature: Optional[str]) -> bool:
    """
    Verify an HMAC-SHA1 or HMAC-SHA256 signature over the raw body.

    Args:
        body: Raw request body bytes, exactly as received
        secret: WEBHOOK_SECRET, or None when signatures are not enforced
        signature: Value of the signature header, if any

    Returns:
        True when the signature matches or no secret is configured.

    Raises:
        SignatureError: secret configured and signature missing or wrong
    """
    if not secret:
        logger.warning("WEBHOOK_SECRET not configured, accepting unsigned webhook")
        return True

    if not signature:
        logger.error("Missing signature header")
        raise SignatureError("invalid signature")

    algorithm, provided = _split_signature(signature)
    expected = compute_signature(body, secret, algorithm)
    logger.debug(f"Body length: {len(body)} bytes, algorithm: {algorithm}, signature: {provided[:8]}...")

    # Constant-time comparison
    if not hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8")):
        logger.error("Invalid HMAC signature")
        raise SignatureError("invalid signature")

    return True
