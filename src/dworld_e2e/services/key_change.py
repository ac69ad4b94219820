"""Key upload orchestration: store the bundle, then react to identity-key rotation.

The upload commits before any notification work starts, so a failure while
queueing notifications never fails or rolls back the upload. Such failures are
logged with a traceback.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dworld_e2e.core.errors import E2EError
from dworld_e2e.db.session import SessionFactory
from dworld_e2e.db.time import utcnow
from dworld_e2e.schemas.keys import KeyBundleUpload
from dworld_e2e.services.key_registry import KeyBundleRegistry, UploadResult
from dworld_e2e.services.notifier import ReencryptionNotifier, RotationEvent

logger = logging.getLogger(__name__)

RotationDispatcher = Callable[[RotationEvent], None]


def rotation_event_from(result: UploadResult) -> RotationEvent | None:
    """Return the rotation described by an upload result, or None if nothing rotated."""
    if not result.changed or result.previous_version is None:
        return None
    return RotationEvent(
        username=result.username,
        old_version=result.previous_version,
        new_version=result.version,
        old_fingerprint=result.previous_fingerprint,
        new_fingerprint=result.fingerprint,
    )


def notify_rotation_safely(
    event: RotationEvent,
    db: Session,
    clock: Callable[[], datetime] = utcnow,
) -> bool:
    """Run the notifier for `event`, logging instead of raising on failure.

    Returns True if notifications were queued (or none were needed).
    """
    try:
        ReencryptionNotifier(db, clock=clock).notify(event)
    except (E2EError, SQLAlchemyError, ValueError, TypeError, KeyError, AttributeError):
        db.rollback()
        logger.exception(
            "Failed to queue re-encryption notifications for %s (v%d -> v%d); "
            "undelivered messages stay undecryptable until re-run",
            event.username,
            event.old_version,
            event.new_version,
        )
        return False
    return True


def dispatch_rotation(event: RotationEvent, session_factory: SessionFactory) -> None:
    """Background entry point: open a fresh session and notify senders."""
    with session_factory() as db:
        notify_rotation_safely(event, db)


class KeyChangeDetector:
    """Wraps key uploads and hands detected rotations to a dispatcher."""

    def __init__(
        self,
        db: Session,
        registry: KeyBundleRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self._clock = clock
        self.registry = registry or KeyBundleRegistry(db, clock=clock)

    def process_upload(
        self,
        username: str,
        bundle: KeyBundleUpload,
        source: str | None = None,
        dispatch: RotationDispatcher | None = None,
    ) -> UploadResult:
        """Store a bundle and, if the identity key rotated, dispatch a rotation event.

        Without an explicit `dispatch`, notifications are queued inline on this
        detector's session, still without letting a failure reach the caller.
        """
        result = self.registry.upload(username, bundle, source)
        event = rotation_event_from(result)
        if event is None:
            return result

        if dispatch is None:
            notify_rotation_safely(event, self.db, clock=self._clock)
            return result

        try:
            dispatch(event)
        except Exception:
            logger.exception("Could not dispatch key rotation event for %s", event.username)
        return result
