"""Encrypted direct message Pydantic schemas."""

import base64
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class RecipientCiphertext(BaseModel):
    """Ciphertext produced by the sender for one recipient."""

    username: str = Field(..., description="Recipient username")
    ciphertext: str = Field(..., description="Base64-encoded Signal ciphertext")
    key_version: int = Field(..., ge=1, description="Recipient key version the ciphertext targets")


class MessageCreate(BaseModel):
    """Schema for sending an encrypted message to one or more recipients."""

    recipients: list[RecipientCiphertext] = Field(default_factory=list)
    message_type: int = Field(3, description="2 for a pre-key message, 3 for a whisper message")
    feed_item_id: str | None = Field(None, max_length=255)


class MessageCreateResponse(BaseModel):
    """Acknowledgement returned after a message is stored."""

    status: str = "message_sent"
    message_id: int


class RecipientMessageResponse(BaseModel):
    """One recipient's view of an encrypted message."""

    message_id: int
    author: str
    message_type: int
    feed_item_id: str | None
    ciphertext: bytes
    encrypted_for_key_version: int
    status: str
    delivery_attempts: int
    delivered_at: datetime | None
    created_at: datetime

    @field_serializer("ciphertext")
    def serialize_ciphertext(self, value: bytes) -> str:
        """Encode the binary ciphertext as base64."""
        return base64.b64encode(value).decode()


class RecipientSlotSummary(BaseModel):
    """Delivery state of one recipient, as shown to the author."""

    recipient_username: str
    encrypted_for_key_version: int
    status: str
    delivery_attempts: int
    delivered_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class SentMessageResponse(BaseModel):
    """An authored message with the delivery state of each recipient."""

    id: int
    message_type: int
    feed_item_id: str | None
    created_at: datetime
    deliveries: list[RecipientSlotSummary]

    model_config = ConfigDict(from_attributes=True)


class DeliveryFailureReport(BaseModel):
    """Recipient-side report that a ciphertext could not be fetched or decrypted."""

    reason: str | None = Field(None, max_length=500)


class ReencryptedPayload(BaseModel):
    """Fresh ciphertext pushed by the sender after a key change."""

    ciphertext: str = Field(..., description="Base64-encoded ciphertext for the new key")
    key_version: int = Field(..., ge=1, description="Recipient key version the ciphertext targets")


class ReencryptionResponse(BaseModel):
    """Result of applying a re-encrypted payload."""

    message_id: int
    recipient: str
    applied: bool
    from_version: int
    to_version: int
