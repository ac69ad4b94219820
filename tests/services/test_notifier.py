"""Tests for the re-encryption notifier."""

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from dworld_e2e.core.errors import StorageError
from dworld_e2e.core.settings import settings
from dworld_e2e.models import DeliveryStatus, KeyChangeNotification, NotificationStatus
from dworld_e2e.services.delivery import DeliveryLedger, DeliveryStatusTracker
from dworld_e2e.services.notifier import ReencryptionNotifier, RotationEvent


@pytest.fixture()
def rotate(register_keys):
    """Rotate a user's identity key and return the matching rotation event."""

    def _rotate(username: str) -> RotationEvent:
        result = register_keys(username)
        assert result.changed
        return RotationEvent(
            username=result.username,
            old_version=result.previous_version,
            new_version=result.version,
            old_fingerprint=result.previous_fingerprint,
            new_fingerprint=result.fingerprint,
        )

    return _rotate


@pytest.fixture()
def users(register_keys):
    for username in ("alice", "bob", "carol"):
        register_keys(username)


def _notifications(db_session):
    return list(
        db_session.scalars(select(KeyChangeNotification).order_by(KeyChangeNotification.id))
    )


@pytest.mark.usefixtures("users")
def test_rotation_lists_every_undelivered_message(
    db_session, clock, send_message, rotate
) -> None:
    messages = [send_message("alice", "bob") for _ in range(3)]
    DeliveryStatusTracker(db_session, clock=clock).mark_delivered(messages[0].id, "bob")

    event = rotate("bob")
    created = ReencryptionNotifier(db_session, clock=clock).notify(event)

    assert len(created) == 1
    notification = created[0]
    assert notification.sender_username == "alice"
    assert notification.recipient_username == "bob"
    assert (notification.old_version, notification.new_version) == (1, 2)
    assert notification.old_fingerprint == event.old_fingerprint
    assert notification.new_fingerprint == event.new_fingerprint
    assert notification.affected_message_ids == [messages[1].id, messages[2].id]
    assert notification.affected_message_count == 2
    assert notification.status == NotificationStatus.PENDING.value
    assert notification.processing_log[0]["action"] == "created"

    ledger = DeliveryLedger(db_session, clock=clock)
    assert ledger.get_slot(messages[0].id, "bob").status == DeliveryStatus.DELIVERED.value
    for message in messages[1:]:
        assert ledger.get_slot(message.id, "bob").status == DeliveryStatus.NEEDS_REENCRYPT.value


@pytest.mark.usefixtures("users")
def test_one_notification_per_sender(db_session, clock, send_message, rotate) -> None:
    from_alice = send_message("alice", "bob")
    from_carol = send_message("carol", "bob", "alice")

    created = ReencryptionNotifier(db_session, clock=clock).notify(rotate("bob"))

    by_sender = {n.sender_username: n.affected_message_ids for n in created}
    assert by_sender == {"alice": [from_alice.id], "carol": [from_carol.id]}
    # alice's copy of carol's message is untouched by bob's rotation
    slot = DeliveryLedger(db_session, clock=clock).get_slot(from_carol.id, "alice")
    assert slot.status == DeliveryStatus.PENDING.value


@pytest.mark.usefixtures("users")
def test_rotation_without_undelivered_messages_creates_nothing(
    db_session, clock, send_message, rotate
) -> None:
    message = send_message("alice", "bob")
    DeliveryStatusTracker(db_session, clock=clock).mark_delivered(message.id, "bob")

    assert ReencryptionNotifier(db_session, clock=clock).notify(rotate("bob")) == []
    assert _notifications(db_session) == []


@pytest.mark.usefixtures("users")
def test_failed_slots_are_rescanned(db_session, clock, send_message, rotate) -> None:
    message = send_message("alice", "bob")
    DeliveryStatusTracker(db_session, clock=clock).mark_failed(message.id, "bob", "no session")

    created = ReencryptionNotifier(db_session, clock=clock).notify(rotate("bob"))
    assert created[0].affected_message_ids == [message.id]


@pytest.mark.usefixtures("users")
def test_scan_walks_every_batch(db_session, clock, send_message, rotate) -> None:
    messages = [send_message("alice", "bob") for _ in range(5)]

    created = ReencryptionNotifier(db_session, clock=clock, batch_size=2).notify(rotate("bob"))

    assert created[0].affected_message_ids == [m.id for m in messages]
    assert created[0].affected_message_count == 5


@pytest.mark.usefixtures("users")
def test_second_rotation_skips_slots_already_awaiting_reencryption(
    db_session, clock, send_message, rotate
) -> None:
    send_message("alice", "bob")
    notifier = ReencryptionNotifier(db_session, clock=clock)
    notifier.notify(rotate("bob"))

    assert notifier.notify(rotate("bob")) == []
    assert len(_notifications(db_session)) == 1


@pytest.mark.usefixtures("users")
def test_transient_storage_failure_is_retried(
    db_session, clock, send_message, rotate, mocker, monkeypatch
) -> None:
    monkeypatch.setattr(settings, "storage_retry_backoff_seconds", 0)
    message = send_message("alice", "bob")
    event = rotate("bob")
    notifier = ReencryptionNotifier(db_session, clock=clock)

    real_scan = notifier._invalidate_undelivered
    failures = []

    def flaky_scan(*args, **kwargs):
        if not failures:
            failures.append(True)
            raise OperationalError("UPDATE message_delivery", {}, Exception("database is locked"))
        return real_scan(*args, **kwargs)

    mocker.patch.object(notifier, "_invalidate_undelivered", side_effect=flaky_scan)
    created = notifier.notify(event)

    assert failures == [True]
    assert created[0].affected_message_ids == [message.id]


@pytest.mark.usefixtures("users")
def test_persistent_storage_failure_surfaces(
    db_session, clock, send_message, rotate, mocker, monkeypatch
) -> None:
    monkeypatch.setattr(settings, "storage_retry_backoff_seconds", 0)
    monkeypatch.setattr(settings, "storage_retry_attempts", 2)
    send_message("alice", "bob")
    event = rotate("bob")
    notifier = ReencryptionNotifier(db_session, clock=clock)
    scan = mocker.patch.object(
        notifier,
        "_invalidate_undelivered",
        side_effect=OperationalError("SELECT", {}, Exception("connection refused")),
    )

    with pytest.raises(StorageError):
        notifier.notify(event)
    assert scan.call_count == 2
    assert _notifications(db_session) == []
