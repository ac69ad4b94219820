"""Turns a detected key rotation into re-encryption work for message senders.

A rotation invalidates every not-yet-delivered ciphertext addressed to the
rotated user. The notifier flips those slots to ``needs_reencrypt`` and queues
one notification per affected sender listing exactly the flipped messages.

Scanning is keyset-paginated in batches of ``REENCRYPTION_SCAN_BATCH_SIZE``
message ids. There is no upper bound on the number of batches.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from dworld_e2e.core.retry import retry_storage
from dworld_e2e.core.settings import settings
from dworld_e2e.db.time import utcnow
from dworld_e2e.models import (
    DeliveryStatus,
    EncryptedMessage,
    KeyChangeNotification,
    MessageDelivery,
    NotificationStatus,
)
from dworld_e2e.models.encrypted_message import ROTATION_SCANNABLE_STATUSES
from dworld_e2e.models.notification import NOTIFICATION_REASON_ROTATION
from dworld_e2e.utils.usernames import canonical_username

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RotationEvent:
    """A change of identity key detected on upload."""

    username: str
    old_version: int
    new_version: int
    old_fingerprint: str | None
    new_fingerprint: str


class ReencryptionNotifier:
    """Scans the delivery ledger for a rotated recipient and queues notifications."""

    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = utcnow,
        batch_size: int | None = None,
    ) -> None:
        self.db = db
        self._clock = clock
        self.batch_size = max(1, batch_size or settings.reencryption_scan_batch_size)

    def notify_rotation(
        self,
        recipient: str,
        old_version: int,
        new_version: int,
        old_fingerprint: str | None,
        new_fingerprint: str,
    ) -> list[KeyChangeNotification]:
        """Queue one notification per sender with undelivered messages to `recipient`.

        The scan, the status flips and the notification inserts commit as one
        transaction. Transient store failures roll everything back and retry;
        re-running is safe because only slots still pending or failed are picked.
        """
        canonical = canonical_username(recipient)
        return retry_storage(
            self.db,
            lambda: self._notify_once(
                canonical, old_version, new_version, old_fingerprint, new_fingerprint
            ),
        )

    def notify(self, event: RotationEvent) -> list[KeyChangeNotification]:
        """Queue notifications for a :class:`RotationEvent`."""
        return self.notify_rotation(
            event.username,
            event.old_version,
            event.new_version,
            event.old_fingerprint,
            event.new_fingerprint,
        )

    def _notify_once(
        self,
        recipient: str,
        old_version: int,
        new_version: int,
        old_fingerprint: str | None,
        new_fingerprint: str,
    ) -> list[KeyChangeNotification]:
        now = self._clock()
        affected = self._invalidate_undelivered(recipient, now)

        notifications: list[KeyChangeNotification] = []
        for sender, message_ids in sorted(affected.items()):
            if not message_ids:
                continue
            notification = KeyChangeNotification(
                recipient_username=recipient,
                sender_username=sender,
                old_version=old_version,
                new_version=new_version,
                old_fingerprint=old_fingerprint,
                new_fingerprint=new_fingerprint,
                affected_message_ids=sorted(message_ids),
                affected_message_count=len(message_ids),
                status=NotificationStatus.PENDING.value,
                reason=NOTIFICATION_REASON_ROTATION,
                created_at=now,
                expires_at=now + timedelta(days=settings.notification_ttl_days),
                send_attempts=0,
                processing_log=[],
            )
            notification.log(
                "created",
                now,
                f"key version {old_version} -> {new_version}, "
                f"{len(message_ids)} message(s) need re-encryption",
            )
            self.db.add(notification)
            notifications.append(notification)

        self.db.commit()

        if notifications:
            logger.info(
                "Key rotation for %s (v%d -> v%d) queued %d notification(s) covering %d message(s)",
                recipient,
                old_version,
                new_version,
                len(notifications),
                sum(n.affected_message_count for n in notifications),
            )
        else:
            logger.info(
                "Key rotation for %s (v%d -> v%d) left no undelivered messages",
                recipient,
                old_version,
                new_version,
            )
        return notifications

    def _invalidate_undelivered(self, recipient: str, now: datetime) -> dict[str, list[int]]:
        """Flip scannable slots to needs_reencrypt batch by batch; return flipped ids by author."""
        scannable = [status.value for status in ROTATION_SCANNABLE_STATUSES]
        affected: dict[str, list[int]] = defaultdict(list)
        last_id = 0

        while True:
            batch = self.db.execute(
                select(MessageDelivery.message_id, EncryptedMessage.author)
                .join(EncryptedMessage, EncryptedMessage.id == MessageDelivery.message_id)
                .where(
                    MessageDelivery.recipient_username == recipient,
                    MessageDelivery.status.in_(scannable),
                    MessageDelivery.message_id > last_id,
                )
                .order_by(MessageDelivery.message_id)
                .limit(self.batch_size)
            ).all()
            if not batch:
                break

            authors = {row.message_id: row.author for row in batch}
            # Only rows that are still scannable at UPDATE time are reported;
            # a slot delivered since the SELECT keeps its delivered status.
            flipped = self.db.execute(
                update(MessageDelivery)
                .where(
                    MessageDelivery.recipient_username == recipient,
                    MessageDelivery.message_id.in_(list(authors)),
                    MessageDelivery.status.in_(scannable),
                )
                .values(status=DeliveryStatus.NEEDS_REENCRYPT.value, updated_at=now)
                .returning(MessageDelivery.message_id)
                .execution_options(synchronize_session=False)
            ).scalars().all()

            for message_id in flipped:
                affected[authors[message_id]].append(message_id)

            last_id = batch[-1].message_id
            if len(batch) < self.batch_size:
                break

        return affected
