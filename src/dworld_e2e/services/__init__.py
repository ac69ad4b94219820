"""Service layer for key rotation and encrypted message delivery."""

from .delivery import DeliveryLedger, DeliveryStatusTracker, RecipientPayload
from .diagnostics import DiagnosticsService
from .key_change import KeyChangeDetector, dispatch_rotation
from .key_registry import KeyBundleRegistry, UploadResult
from .notification_queue import AckOutcome, NotificationQueue
from .notifier import ReencryptionNotifier, RotationEvent
from .reencryption import ReencryptionCoordinator, ReencryptionOutcome

__all__ = [
    "AckOutcome",
    "DeliveryLedger",
    "DeliveryStatusTracker",
    "DiagnosticsService",
    "KeyBundleRegistry",
    "KeyChangeDetector",
    "NotificationQueue",
    "RecipientPayload",
    "ReencryptionCoordinator",
    "ReencryptionNotifier",
    "ReencryptionOutcome",
    "RotationEvent",
    "UploadResult",
    "dispatch_rotation",
]
