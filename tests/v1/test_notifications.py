"""Tests for key-change notification endpoints."""

import base64
from datetime import timedelta

import pytest
from fastapi import status
from sqlalchemy import update

from dworld_e2e.db.time import utcnow
from dworld_e2e.models import KeyChangeNotification


@pytest.fixture()
def rotation(client, auth_headers, register_keys, send_message, make_bundle):
    """alice has one undelivered message to bob; bob uploads a new identity key."""
    register_keys("alice")
    register_keys("bob")
    message = send_message("alice", "bob")
    response = client.post(
        "/api/v1/keys", json=make_bundle().model_dump(), headers=auth_headers("bob")
    )
    assert response.json()["changed"] is True
    return message


def test_pull_returns_notification_until_acknowledged(client, auth_headers, rotation) -> None:
    headers = auth_headers("alice")

    first = client.get("/api/v1/notifications", headers=headers).json()
    assert len(first) == 1
    notification = first[0]
    assert notification["recipient_username"] == "bob"
    assert notification["affected_message_ids"] == [rotation.id]
    assert notification["status"] == "sent"
    assert (notification["old_version"], notification["new_version"]) == (1, 2)

    second = client.get("/api/v1/notifications", headers=headers).json()
    assert [n["id"] for n in second] == [notification["id"]]
    assert second[0]["send_attempts"] == 2

    assert client.get("/api/v1/notifications", headers=auth_headers("bob")).json() == []


def test_acknowledge_lifecycle(client, auth_headers, rotation) -> None:
    headers = auth_headers("alice")
    notification_id = client.get("/api/v1/notifications", headers=headers).json()[0]["id"]
    url = f"/api/v1/notifications/{notification_id}/ack"

    ack = client.post(url, json={"outcome": "acknowledged"}, headers=headers)
    assert ack.status_code == status.HTTP_200_OK
    assert ack.json()["status"] == "acknowledged"

    done = client.post(url, json={"outcome": "success"}, headers=headers)
    assert done.json()["status"] == "reencrypted"
    assert [e["action"] for e in done.json()["processing_log"]] == [
        "created",
        "sent",
        "acknowledged",
        "reencrypted",
    ]

    repeat = client.post(url, json={"outcome": "success"}, headers=headers)
    assert repeat.status_code == status.HTTP_200_OK

    conflict = client.post(url, json={"outcome": "failure"}, headers=headers)
    assert conflict.status_code == status.HTTP_409_CONFLICT

    assert client.get("/api/v1/notifications", headers=headers).json() == []


def test_acknowledge_errors(client, auth_headers, rotation) -> None:
    notification_id = client.get(
        "/api/v1/notifications", headers=auth_headers("alice")
    ).json()[0]["id"]

    other = client.post(
        f"/api/v1/notifications/{notification_id}/ack",
        json={"outcome": "success"},
        headers=auth_headers("carol"),
    )
    assert other.status_code == status.HTTP_404_NOT_FOUND

    unknown = client.post(
        f"/api/v1/notifications/{notification_id}/ack",
        json={"outcome": "maybe"},
        headers=auth_headers("alice"),
    )
    assert unknown.status_code == status.HTTP_400_BAD_REQUEST


def test_expired_notifications_are_hidden(client, auth_headers, db_session, rotation) -> None:
    headers = auth_headers("alice")
    notification_id = client.get("/api/v1/notifications", headers=headers).json()[0]["id"]
    db_session.execute(
        update(KeyChangeNotification)
        .where(KeyChangeNotification.id == notification_id)
        .values(expires_at=utcnow() - timedelta(minutes=1))
    )
    db_session.commit()

    assert client.get("/api/v1/notifications", headers=headers).json() == []
    ack = client.post(
        f"/api/v1/notifications/{notification_id}/ack",
        json={"outcome": "success"},
        headers=headers,
    )
    assert ack.status_code == status.HTTP_409_CONFLICT


def test_reencrypted_payload_completes_notification(client, auth_headers, rotation) -> None:
    headers = auth_headers("alice")
    notification = client.get("/api/v1/notifications", headers=headers).json()[0]

    stale = client.put(
        f"/api/v1/messages/{rotation.id}/recipients/bob",
        json={"ciphertext": base64.b64encode(b"old").decode(), "key_version": 1},
        headers=headers,
    )
    assert stale.status_code == status.HTTP_409_CONFLICT

    applied = client.put(
        f"/api/v1/messages/{rotation.id}/recipients/bob",
        json={"ciphertext": base64.b64encode(b"new").decode(), "key_version": 2},
        headers=headers,
    )
    assert applied.status_code == status.HTTP_200_OK
    assert applied.json() == {
        "message_id": rotation.id,
        "recipient": "bob",
        "applied": True,
        "from_version": 1,
        "to_version": 2,
    }

    done = client.post(
        f"/api/v1/notifications/{notification['id']}/ack",
        json={"outcome": "success"},
        headers=headers,
    )
    assert done.json()["status"] == "reencrypted"
