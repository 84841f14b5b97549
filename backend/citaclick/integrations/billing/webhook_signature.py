"""
Billing webhook signature verification.

SECURITY: Every webhook MUST be verified before its payload is trusted.
The provider signs "<timestamp>.<raw body>" with HMAC-SHA256 using the
shared webhook secret and sends:

    Billing-Signature: t=1700000000,v1=<hex digest>[,v1=<hex digest>...]

Multiple v1 entries appear during secret rotation; any match is accepted.
"""

import hmac
import hashlib
import logging
import time
from typing import List, Optional, Tuple

from citaclick.services.errors import SignatureInvalidError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Billing-Signature"


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def _parse_header(header: str) -> Tuple[Optional[int], List[str]]:
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def verify_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> int:
    """
    Verify a webhook signature header.

    Args:
        payload: Raw request body bytes
        header: Billing-Signature header value
        secret: Shared webhook secret
        tolerance_seconds: Maximum age of the signed timestamp
        now: Current unix time (defaults to time.time())

    Returns:
        The signed timestamp

    Raises:
        SignatureInvalidError: If the header is missing, malformed, too old or wrong
    """
    if not secret:
        raise SignatureInvalidError("Webhook secret is not configured")
    if not header:
        raise SignatureInvalidError("Missing signature header")

    timestamp, signatures = _parse_header(header)
    if timestamp is None or not signatures:
        raise SignatureInvalidError("Malformed signature header")

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        raise SignatureInvalidError("Signature timestamp outside tolerance")

    expected = compute_signature(payload, secret, timestamp)
    # Constant-time comparison to prevent timing attacks
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise SignatureInvalidError("Signature mismatch")

    return timestamp
