"""Identity-key fingerprints used to detect key rotation."""

from __future__ import annotations

import hmac

from dworld_e2e.utils.hash import blake3_hexdigest

FINGERPRINT_BYTES = 16


def compute_fingerprint(identity_key: bytes) -> str:
    """Return a short, stable fingerprint of a raw public identity key.

    The digest is taken over the decoded key bytes, so two uploads that only
    differ in base64 formatting produce the same fingerprint.
    """
    return blake3_hexdigest(identity_key, length=FINGERPRINT_BYTES)


def is_rotation(stored: str | None, candidate: str) -> bool:
    """Return True if `candidate` represents a different identity key than `stored`.

    A missing stored fingerprint is a first upload, which is never a rotation.
    """
    if stored is None:
        return False
    return not hmac.compare_digest(stored.lower(), candidate.lower())
