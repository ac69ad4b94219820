"""Pydantic schemas for request/response validation."""

from .admin import (
    ForceReencryptRequest,
    KeyHistoryEntry,
    MessageDiagnosisResponse,
    RecipientDiagnosisResponse,
    UserKeyDiagnosisResponse,
)
from .keys import (
    KeyBundleResponse,
    KeyBundleUpload,
    KeyUploadResponse,
    PreKeyCountResponse,
    PreKeyIn,
    PreKeyOut,
    SignedPreKeyIn,
    SignedPreKeyOut,
)
from .messages import (
    DeliveryFailureReport,
    MessageCreate,
    MessageCreateResponse,
    RecipientCiphertext,
    RecipientMessageResponse,
    RecipientSlotSummary,
    ReencryptedPayload,
    ReencryptionResponse,
    SentMessageResponse,
)
from .notifications import AcknowledgeRequest, NotificationResponse

__all__ = [
    "AcknowledgeRequest",
    "DeliveryFailureReport",
    "ForceReencryptRequest",
    "KeyBundleResponse",
    "KeyBundleUpload",
    "KeyHistoryEntry",
    "KeyUploadResponse",
    "MessageCreate",
    "MessageCreateResponse",
    "MessageDiagnosisResponse",
    "NotificationResponse",
    "PreKeyCountResponse",
    "PreKeyIn",
    "PreKeyOut",
    "RecipientCiphertext",
    "RecipientDiagnosisResponse",
    "RecipientMessageResponse",
    "RecipientSlotSummary",
    "ReencryptedPayload",
    "ReencryptionResponse",
    "SentMessageResponse",
    "SignedPreKeyIn",
    "SignedPreKeyOut",
    "UserKeyDiagnosisResponse",
]
