"""
Input validation utilities for user data and API inputs.
"""

import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from utils.constants import PLACEHOLDER_SLOT_PREFIX

_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
)
_CENTS = Decimal("0.01")


def normalize_email(email: str) -> str:
    """Lower-case and trim an email address for lookups."""
    return email.strip().lower()


def normalize_discount_code(code: str) -> str:
    """
    Normalize a human-entered discount code.

    Args:
        code: Raw code as typed by the user

    Returns:
        Trimmed, upper-cased code
    """
    return (code or "").strip().upper()


def validate_uuid(uuid_string: str) -> bool:
    """
    Validate UUID format.

    Args:
        uuid_string: UUID string

    Returns:
        True if valid UUID format, False otherwise
    """
    if not uuid_string or not isinstance(uuid_string, str):
        return False
    return bool(_UUID_PATTERN.match(uuid_string.lower()))


def is_placeholder_id(slot_id: Optional[str]) -> bool:
    """True when a slot id was generated client-side and was never persisted."""
    if not slot_id:
        return True
    if slot_id.startswith(PLACEHOLDER_SLOT_PREFIX):
        return True
    return not validate_uuid(slot_id)


def sanitize_text(text: Optional[str], max_length: Optional[int] = None) -> str:
    """
    Sanitize user input text.

    Args:
        text: Input text
        max_length: Optional maximum length

    Returns:
        Sanitized text
    """
    if not text:
        return ""

    # Remove control characters except newlines and tabs
    sanitized = re.sub(r"[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F]", "", str(text))
    sanitized = sanitized.strip()

    if max_length and len(sanitized) > max_length:
        sanitized = sanitized[:max_length]

    return sanitized


def to_money(value) -> Decimal:
    """Round an amount to cents, half-up, for persistence or display."""
    return Decimal(str(value)).quantize(_CENTS, rounding=ROUND_HALF_UP)
