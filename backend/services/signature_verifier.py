"""Webhook signature verification over the raw request body.

Supports headers:
- Stripe-Signature:  t=<unix>,v1=<hex>[,v1=<hex>...], checked by the Stripe SDK
- Persona-Signature: a bare hex digest over the body, or one or more
  space-separated "t=<unix>,v1=<hex>" sets signed over "{t}.{body}"

Timestamped signatures older than 300 seconds are rejected. Several v1
candidates are accepted so secrets can be rotated. Verification never raises;
every failure is a False return.
"""
import hashlib
import hmac
import logging
import time
from typing import List, Optional, Tuple

import stripe

logger = logging.getLogger(__name__)

REPLAY_TOLERANCE_SECONDS = 300


def compute_signature(secret: str, payload: bytes) -> str:
    """Hex HMAC-SHA256 of payload under secret."""
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def _parse_timestamped_header(header: str) -> Optional[Tuple[int, List[str]]]:
    """Parse "t=...,v1=...,v1=..." into (timestamp, [signatures]). None when malformed."""
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None
        elif key == "v1" and value:
            signatures.append(value.strip())
    if timestamp is None or not signatures:
        return None
    return timestamp, signatures


def _matches_any(expected: str, candidates: List[str]) -> bool:
    matched = False
    for candidate in candidates:
        # Check every candidate so timing does not depend on position
        if hmac.compare_digest(expected, candidate.lower()):
            matched = True
    return matched


def _verify_timestamped(
    raw_body: bytes,
    header: str,
    secret: str,
    now: Optional[float] = None,
    tolerance: int = REPLAY_TOLERANCE_SECONDS,
) -> bool:
    parsed = _parse_timestamped_header(header)
    if parsed is None:
        return False
    timestamp, candidates = parsed

    current = int(now if now is not None else time.time())
    if current - timestamp > tolerance:
        logger.warning(f"Webhook signature timestamp outside tolerance: age={current - timestamp}s")
        return False

    signed_payload = f"{timestamp}.".encode() + raw_body
    expected = compute_signature(secret, signed_payload)
    return _matches_any(expected, candidates)


def verify_stripe_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    tolerance: int = REPLAY_TOLERANCE_SECONDS,
) -> bool:
    """Verify a Stripe-Signature header against the raw body with the Stripe SDK."""
    if not secret or not secret.strip():
        logger.error("Stripe webhook secret not configured - rejecting delivery")
        return False
    if not signature_header or not signature_header.strip():
        return False
    try:
        payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
        return stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance=tolerance)
    except stripe.error.SignatureVerificationError as e:
        logger.warning(f"Stripe signature verification failed: {e}")
        return False
    except (ValueError, TypeError) as e:
        # Undecodable body or a header the SDK cannot parse
        logger.warning(f"Stripe signature header rejected: {e}")
        return False


def verify_persona_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    now: Optional[float] = None,
    tolerance: int = REPLAY_TOLERANCE_SECONDS,
) -> bool:
    """Verify a Persona-Signature header against the raw body.

    The header is either a bare hex digest of the body, or space-separated
    timestamped sets; any one valid set passes.
    """
    if not secret or not secret.strip():
        logger.error("Persona webhook secret not configured - rejecting delivery")
        return False
    if not signature_header or not signature_header.strip():
        return False
    if isinstance(raw_body, str):
        raw_body = raw_body.encode()

    try:
        header = signature_header.strip()
        if "=" not in header:
            expected = compute_signature(secret, raw_body)
            return hmac.compare_digest(expected, header.lower())

        for signature_set in header.split():
            if _verify_timestamped(raw_body, signature_set, secret, now=now, tolerance=tolerance):
                return True
        return False
    except Exception as e:
        logger.error(f"Persona signature verification error: {e}")
        return False


def build_timestamped_header(secret: str, raw_body: bytes, timestamp: Optional[int] = None) -> str:
    """Produce a "t=...,v1=..." header for the given body (used to sign test deliveries)."""
    ts = int(timestamp if timestamp is not None else time.time())
    signature = compute_signature(secret, f"{ts}.".encode() + raw_body)
    return f"t={ts},v1={signature}"
