# mypy: ignore-errors
"""Integration tests that walk a key rotation through the whole API."""

import base64

import pytest
from fastapi import status
from nacl.signing import SigningKey


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def _upload(client, headers, bundle) -> dict:
    response = client.post("/api/v1/keys", json=bundle.model_dump(), headers=headers)
    assert response.status_code == status.HTTP_200_OK
    return response.json()


def _send(client, headers, recipient: str, data: bytes, version: int) -> int:
    response = client.post(
        "/api/v1/messages",
        json={
            "recipients": [
                {"username": recipient, "ciphertext": _b64(data), "key_version": version}
            ]
        },
        headers=headers,
    )
    assert response.status_code == status.HTTP_201_CREATED
    return response.json()["message_id"]


@pytest.fixture()
def alice(auth_headers):
    return auth_headers("alice")


@pytest.fixture()
def bob(auth_headers):
    return auth_headers("bob")


def test_rotation_round_trip(client, alice, bob, admin_headers, make_bundle) -> None:
    _upload(client, alice, make_bundle())
    assert _upload(client, bob, make_bundle()) == {"username": "bob", "version": 1, "changed": False}
    message_id = _send(client, alice, "bob", b"hello bob v1", 1)

    rotated = _upload(client, bob, make_bundle())
    assert rotated == {"username": "bob", "version": 2, "changed": True}

    notifications = client.get("/api/v1/notifications", headers=alice).json()
    assert len(notifications) == 1
    notification = notifications[0]
    assert notification["affected_message_ids"] == [message_id]
    assert notification["reason"] == "rotation"

    diagnosis = client.get(
        f"/api/v1/admin/messages/{message_id}/diagnosis", headers=admin_headers
    ).json()
    assert diagnosis["recipients"][0]["delivery_status"] == "needs_reencrypt"

    ack = client.post(
        f"/api/v1/notifications/{notification['id']}/ack",
        json={"outcome": "acknowledged"},
        headers=alice,
    )
    assert ack.json()["status"] == "acknowledged"

    bundle = client.get("/api/v1/keys/bob", headers=alice).json()
    assert bundle["key_version"] == 2
    assert bundle["identity_key_fingerprint"] == notification["new_fingerprint"]

    pushed = client.put(
        f"/api/v1/messages/{message_id}/recipients/bob",
        json={"ciphertext": _b64(b"hello bob v2"), "key_version": bundle["key_version"]},
        headers=alice,
    )
    assert pushed.json()["applied"] is True

    assert client.get("/api/v1/notifications", headers=alice).json() == []
    history = client.get("/api/v1/admin/keys/bob/notifications", headers=admin_headers).json()
    assert history[0]["status"] == "reencrypted"

    fetched = client.get(f"/api/v1/messages/{message_id}", headers=bob).json()
    assert base64.b64decode(fetched["ciphertext"]) == b"hello bob v2"
    assert fetched["encrypted_for_key_version"] == 2
    assert fetched["status"] == "pending"

    delivered = client.put(f"/api/v1/messages/{message_id}/delivered", headers=bob)
    assert delivered.json()["changed"] is True

    diagnosis = client.get(
        f"/api/v1/admin/messages/{message_id}/diagnosis", headers=admin_headers
    ).json()
    assert diagnosis["recipients"][0]["recommendation"] == "none"


def test_delivered_messages_are_not_reencrypted(client, alice, bob, make_bundle) -> None:
    _upload(client, bob, make_bundle())
    message_id = _send(client, alice, "bob", b"read already", 1)
    client.put(f"/api/v1/messages/{message_id}/delivered", headers=bob)

    assert _upload(client, bob, make_bundle())["changed"] is True

    assert client.get("/api/v1/notifications", headers=alice).json() == []
    fetched = client.get(f"/api/v1/messages/{message_id}", headers=bob).json()
    assert fetched["encrypted_for_key_version"] == 1
    assert fetched["status"] == "delivered"


def test_prekey_refresh_keeps_version(client, alice, bob, make_bundle) -> None:
    signing_key = SigningKey.generate()
    _upload(client, bob, make_bundle(signing_key=signing_key))
    message_id = _send(client, alice, "bob", b"still valid", 1)

    refreshed = _upload(client, bob, make_bundle(signing_key=signing_key, pre_key_ids=(7, 8)))
    assert refreshed == {"username": "bob", "version": 1, "changed": False}

    assert client.get("/api/v1/notifications", headers=alice).json() == []
    count = client.get("/api/v1/keys/bob/prekey-count", headers=alice).json()
    assert count["available_pre_keys"] == 2
    fetched = client.get(f"/api/v1/messages/{message_id}", headers=bob).json()
    assert fetched["status"] == "pending"


def test_second_rotation_before_sender_acts(client, alice, bob, make_bundle) -> None:
    _upload(client, bob, make_bundle())
    message_id = _send(client, alice, "bob", b"v1", 1)
    _upload(client, bob, make_bundle())
    _upload(client, bob, make_bundle())

    notifications = client.get("/api/v1/notifications", headers=alice).json()
    assert [(n["old_version"], n["new_version"]) for n in notifications] == [(1, 2)]

    superseded = client.put(
        f"/api/v1/messages/{message_id}/recipients/bob",
        json={"ciphertext": _b64(b"v2"), "key_version": 2},
        headers=alice,
    )
    assert superseded.status_code == status.HTTP_409_CONFLICT

    pushed = client.put(
        f"/api/v1/messages/{message_id}/recipients/bob",
        json={"ciphertext": _b64(b"v3"), "key_version": 3},
        headers=alice,
    )
    assert pushed.json() == {
        "message_id": message_id,
        "recipient": "bob",
        "applied": True,
        "from_version": 1,
        "to_version": 3,
    }
    assert client.get("/api/v1/notifications", headers=alice).json() == []
