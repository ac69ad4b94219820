"""Administrative views over key versions and delivery state."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.orm import Session

from dworld_e2e.core.errors import InvalidTransitionError
from dworld_e2e.core.retry import retry_storage
from dworld_e2e.core.settings import settings
from dworld_e2e.db.time import utcnow
from dworld_e2e.models import (
    DeliveryStatus,
    KeyBundleHistory,
    KeyChangeNotification,
    MessageDelivery,
    NotificationStatus,
)
from dworld_e2e.models.notification import NOTIFICATION_REASON_FORCED
from dworld_e2e.services.delivery import DeliveryLedger
from dworld_e2e.services.key_registry import KeyBundleRegistry
from dworld_e2e.services.notification_queue import NotificationQueue
from dworld_e2e.utils.usernames import canonical_username

logger = logging.getLogger(__name__)

RECOMMEND_NONE = "none"
RECOMMEND_AWAIT_FETCH = "await_recipient_fetch"
RECOMMEND_AWAIT_SENDER = "await_sender_reencryption"
RECOMMEND_FORCE = "force_reencryption"
RECOMMEND_RECIPIENT_RETRY = "recipient_retry"
RECOMMEND_NO_KEYS = "recipient_has_no_keys"


@dataclass(frozen=True)
class RecipientDiagnosis:
    """Delivery health of one recipient slot."""

    recipient: str
    encrypted_for_version: int
    current_version: int | None
    version_match: bool
    delivery_status: str
    delivery_attempts: int
    delivered_at: datetime | None
    recommendation: str


@dataclass(frozen=True)
class MessageDiagnosis:
    """Per-recipient delivery health of a message."""

    message_id: int
    author: str
    created_at: datetime
    recipients: list[RecipientDiagnosis] = field(default_factory=list)


@dataclass(frozen=True)
class UserKeyDiagnosis:
    """Key version state of a user, including the retained history."""

    username: str
    current_version: int
    fingerprint: str
    pre_key_count: int
    updated_at: datetime
    history: list[KeyBundleHistory] = field(default_factory=list)


class DiagnosticsService:
    """Read-mostly admin tooling for stuck deliveries."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self._clock = clock
        self.registry = KeyBundleRegistry(db, clock=clock)
        self.ledger = DeliveryLedger(db, registry=self.registry, clock=clock)
        self.queue = NotificationQueue(db, clock=clock)

    def diagnose_message(self, message_id: int) -> MessageDiagnosis:
        """Compare each recipient's ciphertext version with their current key version."""
        message = self.ledger.get_message(message_id)
        recipients = []
        for slot in message.deliveries:
            bundle = self.registry.find(slot.recipient_username)
            current = bundle.current_version if bundle is not None else None
            match = current is not None and slot.encrypted_for_key_version == current
            recipients.append(
                RecipientDiagnosis(
                    recipient=slot.recipient_username,
                    encrypted_for_version=slot.encrypted_for_key_version,
                    current_version=current,
                    version_match=match,
                    delivery_status=slot.status,
                    delivery_attempts=slot.delivery_attempts,
                    delivered_at=slot.delivered_at,
                    recommendation=self._recommend(slot, current, message.author),
                )
            )
        return MessageDiagnosis(
            message_id=message.id,
            author=message.author,
            created_at=message.created_at,
            recipients=recipients,
        )

    def _recommend(self, slot: MessageDelivery, current: int | None, author: str) -> str:
        status = slot.status
        if status == DeliveryStatus.DELIVERED.value:
            return RECOMMEND_NONE
        if current is None:
            return RECOMMEND_NO_KEYS
        if status == DeliveryStatus.NEEDS_REENCRYPT.value:
            covered = any(
                slot.message_id in (n.affected_message_ids or [])
                for n in self.queue.open_for_pair(slot.recipient_username, author)
            )
            return RECOMMEND_AWAIT_SENDER if covered else RECOMMEND_FORCE
        if slot.encrypted_for_key_version != current:
            return RECOMMEND_FORCE
        if status == DeliveryStatus.FAILED.value:
            return RECOMMEND_RECIPIENT_RETRY
        return RECOMMEND_AWAIT_FETCH

    def diagnose_user_keys(self, username: str) -> UserKeyDiagnosis:
        """Return the user's key version, fingerprint and full retained history."""
        bundle = self.registry.get_bundle(username)
        return UserKeyDiagnosis(
            username=bundle.username,
            current_version=bundle.current_version,
            fingerprint=bundle.identity_key_fingerprint,
            pre_key_count=self.registry.pre_key_count(bundle.username),
            updated_at=bundle.updated_at,
            history=self.registry.history(bundle.username),
        )

    def force_reencryption(
        self,
        message_id: int,
        recipient: str,
        reason: str,
    ) -> KeyChangeNotification:
        """Queue a notification for one slot as though the recipient's key had rotated.

        Raises:
            NotFoundError: If the message, recipient slot or recipient bundle is unknown.
            InvalidTransitionError: If the recipient already marked the message delivered.
        """
        canonical = canonical_username(recipient)
        slot = self.ledger.get_slot(message_id, canonical)
        if slot.status == DeliveryStatus.DELIVERED.value:
            raise InvalidTransitionError(
                f"Message {message_id} was already delivered to {canonical}"
            )
        bundle = self.registry.get_bundle(canonical)
        author = slot.message.author
        old_version = slot.encrypted_for_key_version
        old_fingerprint = self.registry.fingerprint_for_version(canonical, old_version)
        new_version = bundle.current_version
        new_fingerprint = bundle.identity_key_fingerprint

        def _force() -> KeyChangeNotification:
            now = self._clock()
            result = self.db.execute(
                update(MessageDelivery)
                .where(
                    MessageDelivery.message_id == message_id,
                    MessageDelivery.recipient_username == canonical,
                    MessageDelivery.status != DeliveryStatus.DELIVERED.value,
                )
                .values(status=DeliveryStatus.NEEDS_REENCRYPT.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.rollback()
                raise InvalidTransitionError(
                    f"Message {message_id} was already delivered to {canonical}"
                )
            notification = KeyChangeNotification(
                recipient_username=canonical,
                sender_username=author,
                old_version=old_version,
                new_version=new_version,
                old_fingerprint=old_fingerprint,
                new_fingerprint=new_fingerprint,
                affected_message_ids=[message_id],
                affected_message_count=1,
                status=NotificationStatus.PENDING.value,
                reason=NOTIFICATION_REASON_FORCED,
                created_at=now,
                expires_at=now + timedelta(days=settings.notification_ttl_days),
                send_attempts=0,
                processing_log=[],
            )
            notification.log("created", now, f"forced re-encryption: {reason}")
            self.db.add(notification)
            self.db.commit()
            return notification

        notification = retry_storage(self.db, _force)
        logger.warning(
            "Forced re-encryption of message %s for %s by %s: %s",
            message_id,
            canonical,
            author,
            reason,
        )
        return notification
