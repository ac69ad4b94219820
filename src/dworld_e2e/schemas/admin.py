"""Admin diagnostic schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class RecipientDiagnosisResponse(BaseModel):
    recipient: str
    encrypted_for_version: int
    current_version: int | None
    version_match: bool
    delivery_status: str
    delivery_attempts: int
    delivered_at: datetime | None
    recommendation: str

    model_config = ConfigDict(from_attributes=True)


class MessageDiagnosisResponse(BaseModel):
    """Per-recipient delivery health of a message."""

    message_id: int
    author: str
    created_at: datetime
    recipients: list[RecipientDiagnosisResponse]

    model_config = ConfigDict(from_attributes=True)


class KeyHistoryEntry(BaseModel):
    version: int
    fingerprint: str
    uploaded_at: datetime
    upload_source: str | None
    pre_key_count: int

    model_config = ConfigDict(from_attributes=True)


class UserKeyDiagnosisResponse(BaseModel):
    """Key version state of a user with the retained upload history."""

    username: str
    current_version: int
    fingerprint: str
    pre_key_count: int
    updated_at: datetime
    history: list[KeyHistoryEntry]

    model_config = ConfigDict(from_attributes=True)


class ForceReencryptRequest(BaseModel):
    """Admin request to force re-encryption of one recipient slot."""

    recipient: str = Field(..., description="Recipient whose ciphertext must be replaced")
    reason: str = Field("admin request", max_length=500)
