# src/dworld_e2e/models/notification.py
"""Model for key-change notifications queued for message senders."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from dworld_e2e.db.session import Base
from dworld_e2e.db.time import ensure_utc, utcnow


class NotificationStatus(StrEnum):
    """Lifecycle of a key-change notification."""

    PENDING = "pending"
    SENT = "sent"
    ACKNOWLEDGED = "acknowledged"
    REENCRYPTED = "reencrypted"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset(
    {NotificationStatus.REENCRYPTED, NotificationStatus.FAILED, NotificationStatus.EXPIRED}
)

# Forward-only edges; expiry is reachable from every non-terminal state.
ALLOWED_TRANSITIONS: dict[NotificationStatus, frozenset[NotificationStatus]] = {
    NotificationStatus.PENDING: frozenset({NotificationStatus.SENT, NotificationStatus.EXPIRED}),
    NotificationStatus.SENT: frozenset(
        {NotificationStatus.ACKNOWLEDGED, NotificationStatus.EXPIRED}
    ),
    NotificationStatus.ACKNOWLEDGED: frozenset(
        {
            NotificationStatus.REENCRYPTED,
            NotificationStatus.FAILED,
            NotificationStatus.EXPIRED,
        }
    ),
}

NOTIFICATION_REASON_ROTATION = "rotation"
NOTIFICATION_REASON_FORCED = "forced"


class KeyChangeNotification(Base):
    """Tells one sender that a recipient's key changed under their undelivered messages.

    `status` holds the last explicitly recorded state. Expiry is never written
    back by a sweep; read it through :meth:`effective_status`.
    """

    __tablename__ = "key_change_notification"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    recipient_username: Mapped[str] = mapped_column(String(255), nullable=False)
    sender_username: Mapped[str] = mapped_column(String(255), nullable=False)

    old_version: Mapped[int] = mapped_column(Integer, nullable=False)
    new_version: Mapped[int] = mapped_column(Integer, nullable=False)
    old_fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True)
    new_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)

    affected_message_ids: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    affected_message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=NotificationStatus.PENDING.value
    )
    reason: Mapped[str] = mapped_column(
        String(20), nullable=False, default=NOTIFICATION_REASON_ROTATION
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    reencrypted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    send_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processing_log: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )

    __table_args__ = (
        Index("ix_key_change_notification_sender_status", "sender_username", "status"),
        Index("ix_key_change_notification_recipient", "recipient_username"),
    )

    def is_expired(self, now: datetime) -> bool:
        """Return True if the expiry deadline has passed."""
        expires_at = ensure_utc(self.expires_at)
        return expires_at is not None and now > expires_at

    def effective_status(self, now: datetime) -> NotificationStatus:
        """Return the stored status, or `expired` once a non-terminal record outlives its TTL."""
        stored = NotificationStatus(self.status)
        if stored not in TERMINAL_STATUSES and self.is_expired(now):
            return NotificationStatus.EXPIRED
        return stored

    def log(self, action: str, at: datetime, details: str | None = None) -> None:
        """Append an entry to the processing log."""
        # Reassign so the JSON column registers the change.
        self.processing_log = [
            *(self.processing_log or []),
            {"action": action, "at": at.isoformat(), "details": details},
        ]
