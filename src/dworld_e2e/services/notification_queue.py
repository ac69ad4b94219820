"""Pull/acknowledge queue of key-change notifications.

Delivery is at-least-once: pulling moves a notification to ``sent`` but keeps
returning it until the sender acknowledges it, so a sender that crashes
mid-way sees the same work again on its next poll. Senders de-duplicate by
notification id and affected message ids.

Expiry is evaluated lazily: a notification past ``expires_at`` reads as
``expired`` without any background job having touched it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from enum import StrEnum

from sqlalchemy import select
from sqlalchemy.orm import Session

from dworld_e2e.core.errors import InvalidTransitionError, NotFoundError, ValidationError
from dworld_e2e.core.retry import storage_errors
from dworld_e2e.core.settings import settings
from dworld_e2e.db.time import utcnow
from dworld_e2e.models import (
    DeliveryStatus,
    KeyChangeNotification,
    MessageDelivery,
    NotificationStatus,
    ReencryptionRecord,
)
from dworld_e2e.models.notification import ALLOWED_TRANSITIONS, TERMINAL_STATUSES
from dworld_e2e.utils.usernames import canonical_username

logger = logging.getLogger(__name__)

_FORWARD_CHAIN = (
    NotificationStatus.PENDING,
    NotificationStatus.SENT,
    NotificationStatus.ACKNOWLEDGED,
)
_RANK = {
    NotificationStatus.PENDING: 0,
    NotificationStatus.SENT: 1,
    NotificationStatus.ACKNOWLEDGED: 2,
    NotificationStatus.REENCRYPTED: 3,
    NotificationStatus.FAILED: 3,
}


class AckOutcome(StrEnum):
    """What a sender reports when acknowledging a notification."""

    ACKNOWLEDGED = "acknowledged"
    SUCCESS = "success"
    FAILURE = "failure"


_OUTCOME_TARGET = {
    AckOutcome.ACKNOWLEDGED: NotificationStatus.ACKNOWLEDGED,
    AckOutcome.SUCCESS: NotificationStatus.REENCRYPTED,
    AckOutcome.FAILURE: NotificationStatus.FAILED,
}

_PULLABLE = (NotificationStatus.PENDING, NotificationStatus.SENT)


def _forward_path(
    current: NotificationStatus,
    target: NotificationStatus,
) -> list[NotificationStatus]:
    if current in TERMINAL_STATUSES:
        raise InvalidTransitionError(f"Notification is already {current.value}")
    if target == NotificationStatus.EXPIRED:
        return [target]
    start = _FORWARD_CHAIN.index(current)
    if target in _FORWARD_CHAIN:
        end = _FORWARD_CHAIN.index(target)
        if end <= start:
            raise InvalidTransitionError(
                f"Cannot move notification from {current.value} back to {target.value}"
            )
        return list(_FORWARD_CHAIN[start + 1 : end + 1])
    return [*_FORWARD_CHAIN[start + 1 :], target]


def advance_notification(
    notification: KeyChangeNotification,
    target: NotificationStatus,
    now: datetime,
    details: str | None = None,
) -> bool:
    """Move a notification forward to `target`, logging every intermediate state.

    Returns False if the notification is already in `target`.

    Raises:
        InvalidTransitionError: If the move would go backwards or leave a terminal state.
    """
    current = notification.effective_status(now)
    if current == target:
        return False

    for step in _forward_path(current, target):
        stored = NotificationStatus(notification.status)
        if step not in ALLOWED_TRANSITIONS.get(stored, frozenset()):
            raise InvalidTransitionError(
                f"Cannot move notification from {stored.value} to {step.value}"
            )
        notification.status = step.value
        if step == NotificationStatus.SENT and notification.sent_at is None:
            notification.sent_at = now
        elif step == NotificationStatus.ACKNOWLEDGED:
            notification.acknowledged_at = now
        elif step == NotificationStatus.REENCRYPTED:
            notification.reencrypted_at = now
        notification.log(step.value, now, details)
    return True


class NotificationQueue:
    """Exposes key-change notifications to the senders that must act on them."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self._clock = clock

    def pull_pending(self, sender: str, limit: int | None = None) -> list[KeyChangeNotification]:
        """Return the sender's open notifications, oldest first, marking each as sent."""
        canonical = canonical_username(sender)
        max_items = limit or settings.notification_pull_limit
        now = self._clock()

        with storage_errors():
            candidates = self.db.scalars(
                select(KeyChangeNotification)
                .where(
                    KeyChangeNotification.sender_username == canonical,
                    KeyChangeNotification.status.in_([status.value for status in _PULLABLE]),
                )
                .order_by(KeyChangeNotification.created_at, KeyChangeNotification.id)
            ).all()

            ready = [n for n in candidates if n.effective_status(now) in _PULLABLE][:max_items]
            for notification in ready:
                notification.send_attempts = (notification.send_attempts or 0) + 1
                if notification.effective_status(now) == NotificationStatus.PENDING:
                    advance_notification(
                        notification, NotificationStatus.SENT, now, "pulled by sender"
                    )
                else:
                    notification.log(
                        "redelivered", now, f"delivery attempt {notification.send_attempts}"
                    )
            self.db.commit()

        if ready:
            logger.debug("Delivered %d notification(s) to %s", len(ready), canonical)
        return ready

    def acknowledge(
        self,
        notification_id: int,
        sender: str,
        outcome: AckOutcome | str,
        details: str | None = None,
    ) -> KeyChangeNotification:
        """Record the sender's progress on a notification.

        Repeating an outcome the notification has already reached is a no-op.

        Raises:
            NotFoundError: If the notification does not exist or belongs to another sender.
            ValidationError: If the outcome is unknown.
            InvalidTransitionError: If the notification expired or already ended differently.
        """
        try:
            outcome = AckOutcome(outcome)
        except ValueError as exc:
            raise ValidationError(f"Unknown acknowledgement outcome {outcome!r}") from exc

        notification = self.get(notification_id)
        if notification.sender_username != canonical_username(sender):
            raise NotFoundError(f"Notification {notification_id} not found")

        target = _OUTCOME_TARGET[outcome]
        now = self._clock()
        current = notification.effective_status(now)
        if current == target or (
            target not in TERMINAL_STATUSES
            and current in _RANK
            and _RANK[current] >= _RANK[target]
        ):
            return notification
        if current in TERMINAL_STATUSES:
            raise InvalidTransitionError(f"Notification is already {current.value}")

        with storage_errors():
            if outcome == AckOutcome.FAILURE:
                self._record_failed_reencryptions(notification, now, details)
            advance_notification(notification, target, now, details)
            self.db.commit()

        logger.info(
            "Notification %s for %s acknowledged by %s with outcome %s",
            notification.id,
            notification.recipient_username,
            notification.sender_username,
            outcome.value,
        )
        return notification

    def _record_failed_reencryptions(
        self,
        notification: KeyChangeNotification,
        now: datetime,
        details: str | None,
    ) -> None:
        slots = self.db.execute(
            select(MessageDelivery.message_id, MessageDelivery.encrypted_for_key_version).where(
                MessageDelivery.recipient_username == notification.recipient_username,
                MessageDelivery.message_id.in_(list(notification.affected_message_ids or [])),
                MessageDelivery.status == DeliveryStatus.NEEDS_REENCRYPT.value,
            )
        ).all()
        for slot in slots:
            self.db.add(
                ReencryptionRecord(
                    message_id=slot.message_id,
                    recipient_username=notification.recipient_username,
                    from_version=slot.encrypted_for_key_version,
                    to_version=notification.new_version,
                    at=now,
                    by=notification.sender_username,
                    success=False,
                    details=details,
                )
            )

    def get(self, notification_id: int) -> KeyChangeNotification:
        """Return a notification by id."""
        notification = self.db.get(KeyChangeNotification, notification_id)
        if notification is None:
            raise NotFoundError(f"Notification {notification_id} not found")
        return notification

    def list_for_recipient(self, recipient: str) -> list[KeyChangeNotification]:
        """Return every notification raised for a recipient's key changes, oldest first."""
        return list(
            self.db.scalars(
                select(KeyChangeNotification)
                .where(KeyChangeNotification.recipient_username == canonical_username(recipient))
                .order_by(KeyChangeNotification.created_at, KeyChangeNotification.id)
            )
        )

    def open_for_pair(self, recipient: str, sender: str) -> list[KeyChangeNotification]:
        """Return notifications for (recipient, sender) that have not reached a final state."""
        now = self._clock()
        candidates = self.db.scalars(
            select(KeyChangeNotification)
            .where(
                KeyChangeNotification.recipient_username == canonical_username(recipient),
                KeyChangeNotification.sender_username == canonical_username(sender),
                KeyChangeNotification.status.in_(
                    [status.value for status in _FORWARD_CHAIN]
                ),
            )
            .order_by(KeyChangeNotification.created_at, KeyChangeNotification.id)
        ).all()
        return [n for n in candidates if n.effective_status(now) not in TERMINAL_STATUSES]
