"""Tests for the notification queue and its lifecycle."""

import pytest
from sqlalchemy import select

from dworld_e2e.core.errors import InvalidTransitionError, NotFoundError, ValidationError
from dworld_e2e.models import NotificationStatus, ReencryptionRecord
from dworld_e2e.services.key_change import KeyChangeDetector
from dworld_e2e.services.notification_queue import AckOutcome, NotificationQueue


@pytest.fixture()
def queue(db_session, clock):
    return NotificationQueue(db_session, clock=clock)


@pytest.fixture()
def rotated(db_session, clock, register_keys, send_message, make_bundle):
    """alice and carol each have undelivered messages to bob; bob then rotates."""
    for username in ("alice", "bob", "carol"):
        register_keys(username)
    messages = {
        "alice": [send_message("alice", "bob"), send_message("alice", "bob")],
        "carol": [send_message("carol", "bob")],
    }
    clock.advance(seconds=1)
    KeyChangeDetector(db_session, clock=clock).process_upload("bob", make_bundle())
    return messages


@pytest.mark.usefixtures("rotated")
def test_pull_marks_sent_and_redelivers_until_acknowledged(queue) -> None:
    first = queue.pull_pending("alice")
    assert len(first) == 1
    notification = first[0]
    assert notification.status == NotificationStatus.SENT.value
    assert notification.sent_at is not None
    assert notification.send_attempts == 1

    again = queue.pull_pending("alice")
    assert [n.id for n in again] == [notification.id]
    assert again[0].send_attempts == 2
    assert [entry["action"] for entry in again[0].processing_log] == [
        "created",
        "sent",
        "redelivered",
    ]

    queue.acknowledge(notification.id, "alice", AckOutcome.SUCCESS)
    assert queue.pull_pending("alice") == []


def test_pull_orders_oldest_first(queue, db_session, clock, register_keys, send_message, make_bundle) -> None:
    for username in ("alice", "bob", "carol"):
        register_keys(username)
    send_message("alice", "carol")
    send_message("alice", "bob")
    detector = KeyChangeDetector(db_session, clock=clock)

    clock.advance(minutes=1)
    detector.process_upload("bob", make_bundle())
    clock.advance(minutes=1)
    detector.process_upload("carol", make_bundle())

    pulled = queue.pull_pending("alice")
    assert [n.recipient_username for n in pulled] == ["bob", "carol"]
    assert [n.recipient_username for n in queue.pull_pending("alice", limit=1)] == ["bob"]


@pytest.mark.usefixtures("rotated")
def test_expiry_is_evaluated_lazily(queue, clock) -> None:
    notification = queue.pull_pending("carol")[0]

    clock.advance(days=31)

    assert queue.pull_pending("carol") == []
    stored = queue.get(notification.id)
    assert stored.status == NotificationStatus.SENT.value
    assert stored.effective_status(clock()) == NotificationStatus.EXPIRED
    with pytest.raises(InvalidTransitionError):
        queue.acknowledge(notification.id, "carol", AckOutcome.SUCCESS)


@pytest.mark.usefixtures("rotated")
def test_acknowledge_walks_the_lifecycle(queue) -> None:
    notification = queue.pull_pending("alice")[0]

    acknowledged = queue.acknowledge(notification.id, "alice", "acknowledged", "working on it")
    assert acknowledged.status == NotificationStatus.ACKNOWLEDGED.value
    assert acknowledged.acknowledged_at is not None

    # at-least-once delivery means senders may repeat themselves
    assert queue.acknowledge(notification.id, "alice", "acknowledged").status == "acknowledged"

    done = queue.acknowledge(notification.id, "alice", "success")
    assert done.status == NotificationStatus.REENCRYPTED.value
    assert done.reencrypted_at is not None
    assert queue.acknowledge(notification.id, "alice", "success").status == "reencrypted"
    assert queue.acknowledge(notification.id, "alice", "acknowledged").status == "reencrypted"

    with pytest.raises(InvalidTransitionError):
        queue.acknowledge(notification.id, "alice", "failure")


@pytest.mark.usefixtures("rotated")
def test_acknowledge_from_pending_logs_every_step(queue, db_session) -> None:
    notification = queue.open_for_pair("bob", "alice")[0]
    assert notification.status == NotificationStatus.PENDING.value

    done = queue.acknowledge(notification.id, "alice", AckOutcome.SUCCESS, "re-sent")
    assert [entry["action"] for entry in done.processing_log] == [
        "created",
        "sent",
        "acknowledged",
        "reencrypted",
    ]


def test_failure_outcome_records_failed_reencryptions(queue, db_session, rotated) -> None:
    notification = queue.pull_pending("alice")[0]

    failed = queue.acknowledge(notification.id, "alice", AckOutcome.FAILURE, "lost session")

    assert failed.status == NotificationStatus.FAILED.value
    records = db_session.scalars(
        select(ReencryptionRecord).order_by(ReencryptionRecord.message_id)
    ).all()
    assert [r.message_id for r in records] == [m.id for m in rotated["alice"]]
    assert all(r.success is False and r.details == "lost session" for r in records)
    assert all((r.from_version, r.to_version) == (1, 2) for r in records)


@pytest.mark.usefixtures("rotated")
def test_acknowledge_rejects_other_senders_and_unknown_outcomes(queue) -> None:
    notification = queue.pull_pending("alice")[0]

    with pytest.raises(NotFoundError):
        queue.acknowledge(notification.id, "carol", AckOutcome.SUCCESS)
    with pytest.raises(NotFoundError):
        queue.acknowledge(12345, "alice", AckOutcome.SUCCESS)
    with pytest.raises(ValidationError):
        queue.acknowledge(notification.id, "alice", "maybe")


@pytest.mark.usefixtures("rotated")
def test_list_for_recipient(queue) -> None:
    listed = queue.list_for_recipient("bob")
    assert sorted(n.sender_username for n in listed) == ["alice", "carol"]
    assert queue.list_for_recipient("alice") == []
