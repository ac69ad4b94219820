"""Token and signature utilities."""
from __future__ import annotations

import hmac
from datetime import timedelta

from jose import jwt
from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from dworld_e2e.core.settings import settings
from dworld_e2e.db.time import utcnow

ED25519_KEY_BYTES = 32


def create_access_token(username: str, extra_claims: dict[str, str] | None = None) -> str:
    """Create a JWT access token whose subject is the canonical username."""
    to_encode: dict[str, object] = {"sub": username}
    if extra_claims:
        to_encode.update(extra_claims)
    to_encode["exp"] = utcnow() + timedelta(minutes=settings.access_token_expire_minutes)
    encoded_jwt: str = jwt.encode(
        to_encode,
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )
    return encoded_jwt


def decode_access_token(token: str) -> str | None:
    """Return the token subject, or None if the token carries no subject.

    Raises:
        jose.JWTError: If the token is malformed, expired or badly signed.
    """
    payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    subject = payload.get("sub")
    return str(subject) if subject is not None else None


def verify_ed25519_signature(pubkey: bytes, message: bytes, signature: bytes) -> bool:
    """Verify an Ed25519 signature.

    Args:
        pubkey: Raw 32-byte public key.
        message: Exact bytes that were signed on the client.
        signature: Raw 64-byte signature.

    Returns:
        True if the signature is valid for `message` under `pubkey`; False otherwise.
    """
    if len(pubkey) != ED25519_KEY_BYTES:
        return False
    try:
        VerifyKey(pubkey).verify(message, signature)
    except (BadSignatureError, ValueError, TypeError):
        return False
    return True


def admin_key_matches(candidate: str | None) -> bool:
    """Return True if `candidate` equals the configured admin API key."""
    expected = settings.admin_api_key
    if not expected or not candidate:
        return False
    return hmac.compare_digest(candidate.encode(), expected.encode())
