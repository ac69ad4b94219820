# src/dworld_e2e/models/__init__.py
"""SQLAlchemy models for the dWorld E2E service."""

from .encrypted_message import (
    DeliveryStatus,
    EncryptedMessage,
    MessageDelivery,
    ReencryptionRecord,
)
from .key_bundle import KeyBundle, KeyBundleHistory, PreKey
from .notification import KeyChangeNotification, NotificationStatus

__all__ = [
    "DeliveryStatus", "EncryptedMessage", "MessageDelivery", "ReencryptionRecord",
    "KeyBundle", "KeyBundleHistory", "PreKey",
    "KeyChangeNotification", "NotificationStatus",
]
