"""Base64 helpers for binary fields carried over JSON."""

from __future__ import annotations

import base64
import binascii

from dworld_e2e.core.errors import ValidationError


def decode_b64(value: str, field: str) -> bytes:
    """Decode standard (or URL-safe) base64, tolerating missing padding.

    Raises:
        ValidationError: If `value` is empty or not base64.
    """
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{field} is required")
    padded = cleaned + "=" * (-len(cleaned) % 4)
    altchars = b"-_" if ("-" in cleaned or "_" in cleaned) else None
    try:
        return base64.b64decode(padded, altchars=altchars, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"{field} must be valid base64") from exc


def encode_b64(value: bytes) -> str:
    """Encode bytes as standard base64 text."""
    return base64.b64encode(value).decode()
