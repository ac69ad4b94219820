# src/dworld_e2e/utils/hash.py
"""Hashing helpers built on BLAKE3."""

from __future__ import annotations

from blake3 import blake3


def blake3_hexdigest(data: bytes, length: int = 32) -> str:
    """Return the hexadecimal BLAKE3 digest of the supplied data, `length` bytes long."""
    return blake3(data).hexdigest(length=length)
