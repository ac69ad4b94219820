"""Username normalisation applied at every boundary."""

from __future__ import annotations

from dworld_e2e.core.errors import ValidationError

MAX_USERNAME_LENGTH = 255


def canonical_username(username: str | None) -> str:
    """Return the canonical (stripped, lower-cased) form of a username.

    Raises:
        ValidationError: If the username is empty or too long.
    """
    canonical = (username or "").strip().lower()
    if not canonical:
        raise ValidationError("Username is required")
    if len(canonical) > MAX_USERNAME_LENGTH:
        raise ValidationError("Username is too long")
    return canonical
