"""
Utility functions for the dashboard API.
"""

import hmac
import hashlib
import logging
import math
from typing import Any, Optional

logger = logging.getLogger(__name__)


def compute_signature(value: str, secret: str) -> str:
    """Hex HMAC-SHA256 of value using secret."""
    return hmac.new(
        secret.encode("utf-8"),
        value.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()


def sign_session(email: str, secret: str) -> str:
    """
    Build a session cookie value for a staff email.

    Format: "<email>.<hex hmac-sha256 of the lower-cased email>"
    """
    email = email.strip().lower()
    return f"{email}.{compute_signature(email, secret)}"


def verify_session_token(token: Optional[str], secret: str) -> Optional[str]:
    """
    Verify a session cookie value.

    Args:
        token: Cookie value as produced by sign_session
        secret: SESSION_SECRET

    Returns:
        The email when the signature is valid, None otherwise
    """
    if not token or not secret or "." not in token:
        return None

    email, _, signature = token.rpartition(".")
    if not email:
        return None

    expected_signature = compute_signature(email, secret)

    # Use constant-time comparison to prevent timing attacks
    if not hmac.compare_digest(expected_signature, signature):
        logger.debug("Session signature mismatch")
        return None
    return email


def pick_string(value: Any) -> Optional[str]:
    """Stripped string, or None when empty."""
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def pick_number(value: Any) -> Optional[float]:
    """Finite float, or None when missing or unparseable."""
    if value is None or value == "":
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) else None


def parse_int_safe(value: Any, fallback: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return fallback


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))
