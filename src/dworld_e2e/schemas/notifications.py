"""Key-change notification schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from dworld_e2e.models import KeyChangeNotification


class NotificationResponse(BaseModel):
    """A key-change notification as seen by the sender that must act on it."""

    id: int
    recipient_username: str
    sender_username: str
    old_version: int
    new_version: int
    old_fingerprint: str | None
    new_fingerprint: str
    affected_message_ids: list[int]
    affected_message_count: int
    status: str
    reason: str
    created_at: datetime
    sent_at: datetime | None
    acknowledged_at: datetime | None
    reencrypted_at: datetime | None
    expires_at: datetime
    send_attempts: int
    processing_log: list[dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_model(cls, notification: KeyChangeNotification, now: datetime) -> NotificationResponse:
        """Build a response whose status reflects lazy expiry at `now`."""
        return cls(
            id=notification.id,
            recipient_username=notification.recipient_username,
            sender_username=notification.sender_username,
            old_version=notification.old_version,
            new_version=notification.new_version,
            old_fingerprint=notification.old_fingerprint,
            new_fingerprint=notification.new_fingerprint,
            affected_message_ids=list(notification.affected_message_ids or []),
            affected_message_count=notification.affected_message_count,
            status=notification.effective_status(now).value,
            reason=notification.reason,
            created_at=notification.created_at,
            sent_at=notification.sent_at,
            acknowledged_at=notification.acknowledged_at,
            reencrypted_at=notification.reencrypted_at,
            expires_at=notification.expires_at,
            send_attempts=notification.send_attempts,
            processing_log=list(notification.processing_log or []),
        )


class AcknowledgeRequest(BaseModel):
    """Sender progress on a notification: acknowledged, success or failure."""

    outcome: str = Field(..., description="One of: acknowledged, success, failure")
    details: str | None = Field(None, max_length=1000)
