"""Applies senders' re-encrypted payloads to the delivery ledger."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from dworld_e2e.core.errors import (
    ConcurrencyConflict,
    NotFoundError,
    StaleKeyVersionError,
    ValidationError,
)
from dworld_e2e.core.retry import storage_errors
from dworld_e2e.db.time import utcnow
from dworld_e2e.models import (
    DeliveryStatus,
    EncryptedMessage,
    KeyBundle,
    MessageDelivery,
    NotificationStatus,
    ReencryptionRecord,
)
from dworld_e2e.services.key_registry import KeyBundleRegistry
from dworld_e2e.services.notification_queue import NotificationQueue, advance_notification
from dworld_e2e.utils.usernames import canonical_username

logger = logging.getLogger(__name__)

SLOT_UPDATE_ATTEMPTS = 3


@dataclass(frozen=True)
class ReencryptionOutcome:
    """Result of pushing a re-encrypted payload for one recipient."""

    message_id: int
    recipient: str
    applied: bool
    from_version: int
    to_version: int


class ReencryptionCoordinator:
    """Replaces one recipient's ciphertext after the sender re-encrypted it."""

    def __init__(
        self,
        db: Session,
        registry: KeyBundleRegistry | None = None,
        queue: NotificationQueue | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.registry = registry or KeyBundleRegistry(db, clock=clock)
        self.queue = queue or NotificationQueue(db, clock=clock)
        self._clock = clock

    def apply_reencryption(
        self,
        message_id: int,
        recipient: str,
        new_ciphertext: bytes,
        new_version: int,
        actor: str | None = None,
    ) -> ReencryptionOutcome:
        """Store fresh ciphertext for `recipient` and reset the slot to pending.

        Repeating a submission for a slot that already targets `new_version` is
        a no-op, so senders can safely replay work after an at-least-once pull.
        A slot the recipient already marked delivered is never touched.

        Raises:
            NotFoundError: If the message or recipient slot is unknown, or `actor`
                is not the message author.
            StaleKeyVersionError: If `new_version` is not the recipient's current version.
            ValidationError: If the ciphertext is empty.
        """
        canonical = canonical_username(recipient)
        if not new_ciphertext:
            raise ValidationError("Ciphertext is required")

        for attempt in range(1, SLOT_UPDATE_ATTEMPTS + 1):
            with storage_errors():
                outcome = self._apply_once(message_id, canonical, new_ciphertext, new_version, actor)
            if outcome is not None:
                return outcome
            self.db.rollback()
            logger.warning(
                "Slot %s/%s changed during re-encryption (attempt %d/%d)",
                message_id,
                canonical,
                attempt,
                SLOT_UPDATE_ATTEMPTS,
            )

        raise ConcurrencyConflict(
            f"Could not apply re-encryption for message {message_id} to {canonical}"
        )

    def _apply_once(
        self,
        message_id: int,
        recipient: str,
        new_ciphertext: bytes,
        new_version: int,
        actor: str | None,
    ) -> ReencryptionOutcome | None:
        slot = self.db.execute(
            select(
                MessageDelivery.encrypted_for_key_version,
                MessageDelivery.status,
                EncryptedMessage.author,
            )
            .join(EncryptedMessage, EncryptedMessage.id == MessageDelivery.message_id)
            .where(
                MessageDelivery.message_id == message_id,
                MessageDelivery.recipient_username == recipient,
            )
        ).first()
        if slot is None:
            if self.db.get(EncryptedMessage, message_id) is None:
                raise NotFoundError(f"Message {message_id} not found")
            raise NotFoundError(f"Recipient {recipient} not found on message {message_id}")
        if actor is not None and canonical_username(actor) != slot.author:
            raise NotFoundError(f"Message {message_id} not found")

        from_version = slot.encrypted_for_key_version
        if slot.status == DeliveryStatus.DELIVERED.value:
            logger.debug(
                "Message %s already delivered to %s; ignoring re-encrypted payload",
                message_id,
                recipient,
            )
            return ReencryptionOutcome(message_id, recipient, False, from_version, from_version)

        # Locks the bundle row until commit so a rotation cannot land between the
        # version check and the slot update. Without row locks (SQLite) the
        # version guard in the UPDATE below rejects the write instead.
        current = self.registry.current_version(recipient, for_update=True)
        if new_version != current:
            self.db.rollback()
            raise StaleKeyVersionError(recipient, new_version, current)

        if from_version == new_version and slot.status != DeliveryStatus.NEEDS_REENCRYPT.value:
            self.db.rollback()
            logger.debug(
                "Message %s already encrypted for %s v%d; ignoring resubmission",
                message_id,
                recipient,
                new_version,
            )
            return ReencryptionOutcome(message_id, recipient, False, from_version, new_version)

        now = self._clock()
        key_still_current = (
            select(KeyBundle.username)
            .where(KeyBundle.username == recipient, KeyBundle.current_version == new_version)
            .exists()
        )
        result = self.db.execute(
            update(MessageDelivery)
            .where(
                MessageDelivery.message_id == message_id,
                MessageDelivery.recipient_username == recipient,
                MessageDelivery.encrypted_for_key_version == from_version,
                MessageDelivery.status == slot.status,
                key_still_current,
            )
            .values(
                ciphertext=new_ciphertext,
                encrypted_for_key_version=new_version,
                status=DeliveryStatus.PENDING.value,
                last_error=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = self.registry.current_version(recipient, for_update=True)
            if new_version != current:
                self.db.rollback()
                raise StaleKeyVersionError(recipient, new_version, current)
            return None

        self.db.add(
            ReencryptionRecord(
                message_id=message_id,
                recipient_username=recipient,
                from_version=from_version,
                to_version=new_version,
                at=now,
                by=slot.author,
                success=True,
            )
        )
        self._complete_notifications(recipient, slot.author, message_id, now)
        self.db.commit()

        logger.info(
            "Message %s re-encrypted for %s: v%d -> v%d",
            message_id,
            recipient,
            from_version,
            new_version,
        )
        return ReencryptionOutcome(message_id, recipient, True, from_version, new_version)

    def _complete_notifications(
        self,
        recipient: str,
        sender: str,
        message_id: int,
        now: datetime,
    ) -> None:
        """Close notifications whose every listed message has now been re-encrypted."""
        for notification in self.queue.open_for_pair(recipient, sender):
            message_ids = list(notification.affected_message_ids or [])
            if message_id not in message_ids:
                continue
            remaining = self.db.scalar(
                select(func.count())
                .select_from(MessageDelivery)
                .where(
                    MessageDelivery.recipient_username == recipient,
                    MessageDelivery.message_id.in_(message_ids),
                    MessageDelivery.status == DeliveryStatus.NEEDS_REENCRYPT.value,
                )
            )
            if remaining:
                notification.log(
                    "message_reencrypted",
                    now,
                    f"message {message_id}, {remaining} remaining",
                )
                continue
            advance_notification(
                notification,
                NotificationStatus.REENCRYPTED,
                now,
                "all affected messages re-encrypted",
            )
