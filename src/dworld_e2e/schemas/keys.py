"""Key bundle Pydantic schemas.

Structural fields are permissive on purpose: bundle completeness is checked by
the registry so malformed uploads are reported as 400 like every other bundle
validation failure.
"""

from datetime import datetime

from pydantic import BaseModel, Field


class PreKeyIn(BaseModel):
    """One-time pre-key supplied by the client."""

    key_id: int = Field(..., description="Client-assigned pre-key ID")
    public_key: str = Field("", description="Base64-encoded public key")


class SignedPreKeyIn(BaseModel):
    """Signed pre-key (or post-quantum pre-key) supplied by the client."""

    key_id: int = Field(..., description="Client-assigned key ID")
    public_key: str = Field("", description="Base64-encoded public key")
    signature: str = Field("", description="Base64-encoded signature by the identity key")


class KeyBundleUpload(BaseModel):
    """Schema for publishing a user's key bundle."""

    identity_key: str = Field("", description="Base64-encoded public identity key")
    registration_id: int | None = Field(None, description="Signal registration ID")
    device_id: int = Field(1, description="Device the bundle belongs to")
    signed_pre_key: SignedPreKeyIn | None = None
    pre_keys: list[PreKeyIn] = Field(default_factory=list)
    kyber_pre_key: SignedPreKeyIn | None = Field(
        None, description="Optional post-quantum (Kyber) pre-key"
    )
    source: str = Field("client", max_length=64, description="Where the upload came from")


class KeyUploadResponse(BaseModel):
    """Result of a key bundle upload."""

    username: str
    version: int
    changed: bool


class PreKeyOut(BaseModel):
    """A single one-time pre-key handed to a session initiator."""

    key_id: int
    public_key: str


class SignedPreKeyOut(BaseModel):
    """Published signed pre-key."""

    key_id: int
    public_key: str
    signature: str


class KeyBundleResponse(BaseModel):
    """Public key bundle fields; never includes history."""

    username: str
    key_version: int
    identity_key: str
    identity_key_fingerprint: str
    registration_id: int | None
    device_id: int
    signed_pre_key: SignedPreKeyOut
    kyber_pre_key: SignedPreKeyOut | None = None
    pre_key: PreKeyOut | None = None
    updated_at: datetime


class PreKeyCountResponse(BaseModel):
    """Number of one-time pre-keys still available for a user."""

    username: str
    available_pre_keys: int
