"""Tests for key bundle endpoints."""

from fastapi import status
from nacl.signing import SigningKey


def _upload(client, headers, bundle):
    return client.post("/api/v1/keys", json=bundle.model_dump(), headers=headers)


def test_upload_requires_authentication(client, make_bundle) -> None:
    response = client.post("/api/v1/keys", json=make_bundle().model_dump())
    assert response.status_code in {status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN}

    response = client.post(
        "/api/v1/keys",
        json=make_bundle().model_dump(),
        headers={"Authorization": "Bearer not-a-jwt"},
    )
    assert response.status_code == status.HTTP_401_UNAUTHORIZED


def test_upload_versions(client, auth_headers, make_bundle) -> None:
    headers = auth_headers("alice")
    key = SigningKey.generate()

    first = _upload(client, headers, make_bundle(key))
    assert first.status_code == status.HTTP_200_OK
    assert first.json() == {"username": "alice", "version": 1, "changed": False}

    same = _upload(client, headers, make_bundle(key, pre_key_ids=(9,)))
    assert same.json()["version"] == 1
    assert same.json()["changed"] is False

    rotated = _upload(client, headers, make_bundle())
    assert rotated.json() == {"username": "alice", "version": 2, "changed": True}


def test_upload_rejects_incomplete_bundle(client, auth_headers, make_bundle) -> None:
    bundle = make_bundle().model_dump()
    bundle["pre_keys"] = []

    response = client.post("/api/v1/keys", json=bundle, headers=auth_headers("alice"))

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert "pre-key" in response.json()["detail"]


def test_fetch_bundle_consumes_one_pre_key(client, auth_headers, make_bundle) -> None:
    bundle = make_bundle(pre_key_ids=(21, 22))
    _upload(client, auth_headers("bob"), bundle)
    headers = auth_headers("alice")

    response = client.get("/api/v1/keys/Bob", headers=headers)
    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["username"] == "bob"
    assert data["key_version"] == 1
    assert data["identity_key"] == bundle.identity_key
    assert data["signed_pre_key"]["public_key"] == bundle.signed_pre_key.public_key
    assert data["pre_key"]["key_id"] == 21
    assert "history" not in data

    count = client.get("/api/v1/keys/bob/prekey-count", headers=headers)
    assert count.json() == {"username": "bob", "available_pre_keys": 1}

    client.get("/api/v1/keys/bob", headers=headers)
    exhausted = client.get("/api/v1/keys/bob", headers=headers)
    assert exhausted.status_code == status.HTTP_200_OK
    assert exhausted.json()["pre_key"] is None


def test_fetch_unknown_user(client, auth_headers) -> None:
    response = client.get("/api/v1/keys/nobody", headers=auth_headers("alice"))
    assert response.status_code == status.HTTP_404_NOT_FOUND
    assert "has not set up encryption" in response.json()["detail"]

    count = client.get("/api/v1/keys/nobody/prekey-count", headers=auth_headers("alice"))
    assert count.status_code == status.HTTP_404_NOT_FOUND
