"""Delivery ledger for encrypted direct messages.

Each recipient of a message owns one ``message_delivery`` row. Status changes
are issued as single-row UPDATE statements keyed by ``(message_id,
recipient_username)``, so concurrent updates for different recipients of the
same message never overwrite each other.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import case, desc, select, update
from sqlalchemy.orm import Session, selectinload

from dworld_e2e.core.errors import NotFoundError, StaleKeyVersionError, ValidationError
from dworld_e2e.core.retry import storage_errors
from dworld_e2e.db.time import utcnow
from dworld_e2e.models import DeliveryStatus, EncryptedMessage, MessageDelivery
from dworld_e2e.models.encrypted_message import MESSAGE_TYPE_PREKEY, MESSAGE_TYPE_WHISPER
from dworld_e2e.services.key_registry import KeyBundleRegistry
from dworld_e2e.utils.usernames import canonical_username

logger = logging.getLogger(__name__)

SUPPORTED_MESSAGE_TYPES = frozenset({MESSAGE_TYPE_PREKEY, MESSAGE_TYPE_WHISPER})
MAX_ERROR_LENGTH = 500


@dataclass(frozen=True)
class RecipientPayload:
    """Ciphertext produced by the sender for one recipient."""

    username: str
    ciphertext: bytes
    key_version: int


def _slot_clause(message_id: int, recipient: str):
    return (
        MessageDelivery.message_id == message_id,
        MessageDelivery.recipient_username == recipient,
    )


class DeliveryLedger:
    """Creates messages and answers per-recipient delivery queries."""

    def __init__(
        self,
        db: Session,
        registry: KeyBundleRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.registry = registry or KeyBundleRegistry(db, clock=clock)
        self._clock = clock

    def record_message(
        self,
        author: str,
        recipients: Sequence[RecipientPayload],
        message_type: int = MESSAGE_TYPE_WHISPER,
        feed_item_id: str | None = None,
    ) -> EncryptedMessage:
        """Store a message with one pending slot per recipient.

        Raises:
            ValidationError: If the recipient list is empty, duplicated or carries empty ciphertext.
            NotFoundError: If a recipient has never uploaded keys.
            StaleKeyVersionError: If ciphertext targets a key version that is not current.
        """
        canonical_author = canonical_username(author)
        if not recipients:
            raise ValidationError("At least one recipient is required")
        if message_type not in SUPPORTED_MESSAGE_TYPES:
            raise ValidationError(f"Unsupported message type {message_type}")

        now = self._clock()
        message = EncryptedMessage(
            author=canonical_author,
            message_type=message_type,
            feed_item_id=feed_item_id,
            created_at=now,
        )
        seen: set[str] = set()
        for payload in recipients:
            recipient = canonical_username(payload.username)
            if recipient in seen:
                raise ValidationError(f"Recipient {recipient} listed more than once")
            seen.add(recipient)
            if not payload.ciphertext:
                raise ValidationError(f"Ciphertext for {recipient} is empty")

            current = self.registry.current_version(recipient)
            if payload.key_version != current:
                raise StaleKeyVersionError(recipient, payload.key_version, current)

            message.deliveries.append(
                MessageDelivery(
                    recipient_username=recipient,
                    ciphertext=payload.ciphertext,
                    encrypted_for_key_version=payload.key_version,
                    status=DeliveryStatus.PENDING.value,
                    delivery_attempts=0,
                    updated_at=now,
                )
            )

        with storage_errors():
            self.db.add(message)
            self.db.commit()
        self.db.refresh(message)
        logger.debug(
            "Stored message %s from %s for %d recipient(s)",
            message.id,
            canonical_author,
            len(seen),
        )
        return message

    def get_message(self, message_id: int) -> EncryptedMessage:
        """Return a message with its delivery slots and re-encryption history."""
        message = self.db.execute(
            select(EncryptedMessage)
            .where(EncryptedMessage.id == message_id)
            .options(
                selectinload(EncryptedMessage.deliveries),
                selectinload(EncryptedMessage.reencryption_history),
            )
        ).scalar_one_or_none()
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        return message

    def get_slot(self, message_id: int, recipient: str) -> MessageDelivery:
        """Return one recipient's slot of a message.

        Raises:
            NotFoundError: If the message, or the recipient on it, is unknown.
        """
        canonical = canonical_username(recipient)
        slot = self.db.execute(
            select(MessageDelivery)
            .where(*_slot_clause(message_id, canonical))
            .options(selectinload(MessageDelivery.message))
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if slot is None:
            if self.db.get(EncryptedMessage, message_id) is None:
                raise NotFoundError(f"Message {message_id} not found")
            raise NotFoundError(f"Recipient {canonical} not found on message {message_id}")
        return slot

    def fetch_for_recipient(self, message_id: int, recipient: str) -> MessageDelivery:
        """Return the ciphertext slot a recipient should try to decrypt."""
        return self.get_slot(message_id, recipient)

    def fetch_for_feed_item(self, feed_item_id: str, recipient: str) -> MessageDelivery:
        """Return the recipient's slot on the newest message attached to a feed item.

        Raises:
            NotFoundError: If no message on the feed item is addressed to the recipient.
        """
        canonical = canonical_username(recipient)
        slot = self.db.execute(
            select(MessageDelivery)
            .join(EncryptedMessage, EncryptedMessage.id == MessageDelivery.message_id)
            .where(
                EncryptedMessage.feed_item_id == feed_item_id,
                MessageDelivery.recipient_username == canonical,
            )
            .options(selectinload(MessageDelivery.message))
            .order_by(desc(MessageDelivery.message_id))
            .limit(1)
        ).scalar_one_or_none()
        if slot is None:
            raise NotFoundError(f"No encrypted message for {canonical} on feed item {feed_item_id}")
        return slot

    def inbox(
        self,
        recipient: str,
        limit: int = 50,
        before: int | None = None,
        include_delivered: bool = True,
    ) -> list[MessageDelivery]:
        """Return the recipient's slots, newest message first."""
        query = (
            select(MessageDelivery)
            .where(MessageDelivery.recipient_username == canonical_username(recipient))
            .options(selectinload(MessageDelivery.message))
        )
        if before is not None:
            query = query.where(MessageDelivery.message_id < before)
        if not include_delivered:
            query = query.where(MessageDelivery.status != DeliveryStatus.DELIVERED.value)
        query = query.order_by(desc(MessageDelivery.message_id)).limit(limit)
        return list(self.db.scalars(query))

    def sent(self, author: str, limit: int = 50, before: int | None = None) -> list[EncryptedMessage]:
        """Return messages authored by a user, newest first."""
        query = (
            select(EncryptedMessage)
            .where(EncryptedMessage.author == canonical_username(author))
            .options(selectinload(EncryptedMessage.deliveries))
        )
        if before is not None:
            query = query.where(EncryptedMessage.id < before)
        query = query.order_by(desc(EncryptedMessage.id)).limit(limit)
        return list(self.db.scalars(query))


class DeliveryStatusTracker:
    """Records recipient-side confirmation (or failure) of a delivery."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self._clock = clock

    def mark_delivered(self, message_id: int, recipient: str) -> bool:
        """Mark a slot delivered. Returns False if it already was.

        Raises:
            NotFoundError: If the message or recipient slot is unknown.
            StorageError: If the store is unavailable; callers may simply retry.
        """
        canonical = canonical_username(recipient)
        now = self._clock()
        with storage_errors():
            result = self.db.execute(
                update(MessageDelivery)
                .where(
                    *_slot_clause(message_id, canonical),
                    MessageDelivery.status != DeliveryStatus.DELIVERED.value,
                )
                .values(
                    status=DeliveryStatus.DELIVERED.value,
                    delivered_at=now,
                    delivery_attempts=MessageDelivery.delivery_attempts + 1,
                    last_error=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            changed = result.rowcount == 1
            if not changed:
                self._require_slot(message_id, canonical)
            self.db.commit()

        if changed:
            logger.debug("Message %s delivered to %s", message_id, canonical)
        return changed

    def mark_failed(self, message_id: int, recipient: str, reason: str | None = None) -> bool:
        """Record a failed fetch or decrypt. Delivered slots are left untouched.

        A pending slot becomes `failed` so the next key rotation rescans it; a
        slot already awaiting re-encryption keeps that status.
        """
        canonical = canonical_username(recipient)
        now = self._clock()
        with storage_errors():
            result = self.db.execute(
                update(MessageDelivery)
                .where(
                    *_slot_clause(message_id, canonical),
                    MessageDelivery.status != DeliveryStatus.DELIVERED.value,
                )
                .values(
                    status=case(
                        (
                            MessageDelivery.status == DeliveryStatus.PENDING.value,
                            DeliveryStatus.FAILED.value,
                        ),
                        else_=MessageDelivery.status,
                    ),
                    delivery_attempts=MessageDelivery.delivery_attempts + 1,
                    last_error=(reason or "")[:MAX_ERROR_LENGTH] or None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            changed = result.rowcount == 1
            if not changed:
                self._require_slot(message_id, canonical)
            self.db.commit()

        if changed:
            logger.info("Delivery of message %s to %s failed: %s", message_id, canonical, reason)
        return changed

    def _require_slot(self, message_id: int, recipient: str) -> None:
        exists = self.db.scalar(
            select(MessageDelivery.status).where(*_slot_clause(message_id, recipient))
        )
        if exists is None:
            if self.db.get(EncryptedMessage, message_id) is None:
                raise NotFoundError(f"Message {message_id} not found")
            raise NotFoundError(f"Recipient {recipient} not found on message {message_id}")
