"""
Stripe webhook signature verification.

SECURITY: Every inbound event MUST be verified before it touches the
deduplicator or the state machine.

Header format:
    Stripe-Signature: t=<unix seconds>,v1=<hex digest>[,v1=<hex digest>...]

The signed payload is "<t>.<raw body>" under HMAC-SHA256 with the endpoint
secret. Unknown header keys (v0, future schemes) are ignored.
"""

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Union

from habit_billing.errors import WebhookSignatureError

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300
SIGNATURE_SCHEME = "v1"

# Rejection reason codes
REASON_MISSING_SECRET = "missing_secret"
REASON_MALFORMED_HEADER = "malformed_header"
REASON_MISSING_TIMESTAMP = "missing_timestamp"
REASON_MISSING_SIGNATURE = "missing_signature"
REASON_TIMESTAMP_OUT_OF_TOLERANCE = "timestamp_out_of_tolerance"
REASON_SIGNATURE_MISMATCH = "signature_mismatch"


@dataclass(frozen=True)
class SignatureVerification:
    """Outcome of verifying one webhook delivery."""
    valid: bool
    reason: Optional[str] = None
    timestamp: Optional[int] = None

    def raise_for_failure(self) -> None:
        """Raise WebhookSignatureError if the delivery was rejected."""
        if not self.valid:
            raise WebhookSignatureError(self.reason or REASON_SIGNATURE_MISMATCH)


def _reject(reason: str, timestamp: Optional[int] = None) -> SignatureVerification:
    return SignatureVerification(valid=False, reason=reason, timestamp=timestamp)


def _as_bytes(payload: Union[bytes, str]) -> bytes:
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return payload


def compute_signature(payload: Union[bytes, str], secret: str, timestamp: int) -> str:
    """HMAC-SHA256 hex digest of "<timestamp>.<payload>"."""
    signed = str(timestamp).encode("utf-8") + b"." + _as_bytes(payload)
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def sign_payload(
    payload: Union[bytes, str],
    secret: str,
    timestamp: Optional[int] = None,
) -> str:
    """
    Build a valid Stripe-Signature header for a payload.

    Used by tests and local tooling that replays events.
    """
    if timestamp is None:
        timestamp = int(time.time())
    return f"t={timestamp},{SIGNATURE_SCHEME}={compute_signature(payload, secret, timestamp)}"


def _parse_header(signature_header: str):
    timestamp_raw = None
    signatures: List[str] = []
    for item in signature_header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            return None, None
        if key == "t":
            timestamp_raw = value
        elif key == SIGNATURE_SCHEME:
            signatures.append(value)
    return timestamp_raw, signatures


def verify_webhook_signature(
    payload: Union[bytes, str],
    signature_header: Optional[str],
    secret: Optional[str],
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> SignatureVerification:
    """
    Verify a Stripe webhook signature and its freshness.

    Every v1 candidate is compared with hmac.compare_digest, and the
    comparison always happens before the freshness verdict.

    Args:
        payload: Raw request body bytes
        signature_header: Stripe-Signature header value
        secret: Endpoint signing secret (whsec_...)
        tolerance_seconds: Max allowed |now - t|
        now: Current unix time (defaults to time.time())

    Returns:
        SignatureVerification with a reason code on rejection
    """
    if not secret:
        return _reject(REASON_MISSING_SECRET)
    if not signature_header:
        return _reject(REASON_MALFORMED_HEADER)

    timestamp_raw, signatures = _parse_header(signature_header)
    if signatures is None:
        return _reject(REASON_MALFORMED_HEADER)
    if timestamp_raw is None or timestamp_raw == "":
        return _reject(REASON_MISSING_TIMESTAMP)
    try:
        timestamp = int(timestamp_raw)
    except ValueError:
        return _reject(REASON_MALFORMED_HEADER)
    if not signatures:
        return _reject(REASON_MISSING_SIGNATURE, timestamp)

    expected = compute_signature(payload, secret, timestamp).encode("ascii")
    matched = False
    for candidate in signatures:
        if hmac.compare_digest(expected, candidate.encode("utf-8")):
            matched = True

    current = time.time() if now is None else now
    fresh = abs(current - timestamp) <= tolerance_seconds

    if not matched:
        return _reject(REASON_SIGNATURE_MISMATCH, timestamp)
    if not fresh:
        return _reject(REASON_TIMESTAMP_OUT_OF_TOLERANCE, timestamp)
    return SignatureVerification(valid=True, timestamp=timestamp)
