"""Phone number utilities for consistent handling across the application.

Two forms are used everywhere:
    international  254712345678  - the key for deduplication and SMS history
    local          0712345678    - the form shown to staff and sent to FluxSMS

Both functions are total: anything that cannot be read yields "" and callers
skip such rows.
"""

import re
from typing import Any

_NON_DIGITS = re.compile(r"\D")


def phone_digits(value: Any) -> str:
    """Strip everything but digits."""
    if value is None:
        return ""
    raw = str(value).strip()
    if not raw:
        return ""
    return _NON_DIGITS.sub("", raw)


def to_international(value: Any) -> str:
    """Normalize a phone number to its 254XXXXXXXXX form.

    Handles:
        0712 345 678   -> 254712345678
        +254712345678  -> 254712345678
        712345678      -> 254712345678
        110345678      -> 254110345678

    Anything else is returned as its digit string unchanged.
    """
    digits = phone_digits(value)
    if not digits:
        return ""
    if digits.startswith("254") and len(digits) in (12, 13):
        return digits
    if digits.startswith("0") and len(digits) == 10:
        return f"254{digits[1:]}"
    if digits[0] in ("7", "1") and len(digits) == 9:
        return f"254{digits}"
    return digits


def to_local(value: Any) -> str:
    """Convert a phone number to the local 0XXXXXXXXX display form."""
    international = to_international(value)
    if not international:
        return ""
    if international.startswith("254") and len(international) >= 12:
        return f"0{international[3:]}"
    return international


def is_kenyan_mobile(international: str, local: str) -> bool:
    """True when both forms have the shape of a Kenyan mobile number."""
    return (
        international.startswith("254")
        and len(international) in (12, 13)
        and local.startswith("0")
        and len(local) == 10
    )
