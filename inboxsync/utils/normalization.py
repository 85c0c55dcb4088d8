"""Normalization helpers for mailbox addresses and history cursors."""

from typing import Optional


def normalize_email(email: Optional[str]) -> Optional[str]:
    """
    Normalize email to lowercase.

    Args:
        email: Raw email input

    Returns:
        Lowercased email or None if empty
    """
    if not email or not isinstance(email, str):
        return None
    normalized = email.strip().lower()
    return normalized or None


def parse_history_id(value: object | None) -> Optional[int]:
    """
    Parse a Gmail history id for ordering comparisons.

    Gmail documents history ids as opaque but monotonically increasing
    unsigned 64-bit integers serialized as strings.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    if parsed < 0:
        return None
    return parsed
