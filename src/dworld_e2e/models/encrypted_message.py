# src/dworld_e2e/models/encrypted_message.py
"""Models describing encrypted direct messages and their per-recipient delivery state."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    SmallInteger,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dworld_e2e.db.session import Base
from dworld_e2e.db.time import utcnow


class DeliveryStatus(StrEnum):
    """Delivery state of one (message, recipient) slot."""

    PENDING = "pending"
    NEEDS_REENCRYPT = "needs_reencrypt"
    DELIVERED = "delivered"
    FAILED = "failed"


# Slots a key rotation can invalidate; delivered ciphertext was already decrypted.
ROTATION_SCANNABLE_STATUSES = (DeliveryStatus.PENDING, DeliveryStatus.FAILED)

# Signal message types carried alongside the ciphertext.
MESSAGE_TYPE_PREKEY = 2
MESSAGE_TYPE_WHISPER = 3


class EncryptedMessage(Base):
    """Direct message authored once and encrypted separately for each recipient.

    Messages are stored on the server but are never decrypted, providing
    end-to-end encryption between users.
    """

    __tablename__ = "encrypted_message"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    author: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    message_type: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=MESSAGE_TYPE_WHISPER
    )
    # Optional link to the feed item this message belongs to.
    feed_item_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    deliveries: Mapped[list[MessageDelivery]] = relationship(
        "MessageDelivery",
        back_populates="message",
        cascade="all, delete-orphan",
        order_by="MessageDelivery.recipient_username",
    )
    reencryption_history: Mapped[list[ReencryptionRecord]] = relationship(
        "ReencryptionRecord",
        back_populates="message",
        cascade="all, delete-orphan",
        order_by="ReencryptionRecord.id",
    )

    @property
    def recipients(self) -> set[str]:
        """Return the usernames this message is addressed to."""
        return {delivery.recipient_username for delivery in self.deliveries}


class MessageDelivery(Base):
    """Per-recipient slot of an encrypted message.

    One row per recipient so every recipient's ciphertext, key version and
    status can be changed by a single-row UPDATE without touching the others.
    """

    __tablename__ = "message_delivery"

    message_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("encrypted_message.id", ondelete="CASCADE"),
        primary_key=True,
    )
    recipient_username: Mapped[str] = mapped_column(String(255), primary_key=True)

    ciphertext: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    encrypted_for_key_version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DeliveryStatus.PENDING.value
    )
    delivery_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    message: Mapped[EncryptedMessage] = relationship(
        "EncryptedMessage", back_populates="deliveries"
    )

    __table_args__ = (
        Index("ix_message_delivery_recipient_status", "recipient_username", "status"),
    )


class ReencryptionRecord(Base):
    """Audit entry written whenever a recipient slot is (or fails to be) re-encrypted."""

    __tablename__ = "reencryption_record"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("encrypted_message.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    recipient_username: Mapped[str] = mapped_column(String(255), nullable=False)
    from_version: Mapped[int] = mapped_column(Integer, nullable=False)
    to_version: Mapped[int] = mapped_column(Integer, nullable=False)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    by: Mapped[str] = mapped_column(String(255), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)

    message: Mapped[EncryptedMessage] = relationship(
        "EncryptedMessage", back_populates="reencryption_history"
    )
