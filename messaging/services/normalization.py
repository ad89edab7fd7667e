"""
Normalization helpers for phone numbers and gateway payload values.
"""
import hashlib
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


def normalize_phone(raw: Optional[str]) -> str:
    """
    Normalize a phone number for contact matching.

    - Keep digits only ('+62 812-34' -> '6281234')
    - If nothing numeric is left, fall back to the trimmed raw value
    """
    if raw is None:
        return ''
    trimmed = str(raw).strip()
    digits = ''.join(ch for ch in trimmed if ch.isdigit())
    return digits or trimmed


def hash_phone(phone: str) -> str:
    """SHA-256 hex digest of a recipient phone, as stored in the send log."""
    return hashlib.sha256((phone or '').encode('utf-8')).hexdigest()


def as_dict(value: Any) -> dict:
    """Return value if it is a dict, otherwise an empty dict."""
    return value if isinstance(value, dict) else {}


def as_list(value: Any) -> list:
    """Return value if it is a list, otherwise an empty list."""
    return value if isinstance(value, list) else []


def as_text(value: Any, default: str = '') -> str:
    """
    Coerce a loosely typed JSON value to a trimmed string.

    None and containers become ``default``; numbers are stringified.
    """
    if value is None or isinstance(value, (dict, list)):
        return default
    if isinstance(value, bool):
        return 'true' if value else 'false'
    text = str(value).strip()
    return text if text else default
