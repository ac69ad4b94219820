"""Key bundle endpoints for the dWorld E2E API."""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks

from dworld_e2e.api.v1.dependencies import (
    CurrentUsernameDep,
    SessionDep,
    SessionFactoryDep,
    http_error,
)
from dworld_e2e.core.errors import E2EError
from dworld_e2e.schemas.keys import (
    KeyBundleResponse,
    KeyBundleUpload,
    KeyUploadResponse,
    PreKeyCountResponse,
    PreKeyOut,
    SignedPreKeyOut,
)
from dworld_e2e.services.key_change import KeyChangeDetector, dispatch_rotation
from dworld_e2e.services.key_registry import BundleView, KeyBundleRegistry
from dworld_e2e.services.notifier import RotationEvent

router = APIRouter(prefix="/keys", tags=["keys"])


def _serialize_bundle(view: BundleView) -> KeyBundleResponse:
    bundle = view.bundle
    kyber = None
    if bundle.kyber_pre_key_id is not None:
        kyber = SignedPreKeyOut(
            key_id=bundle.kyber_pre_key_id,
            public_key=bundle.kyber_pre_key or "",
            signature=bundle.kyber_pre_key_signature or "",
        )
    pre_key = None
    if view.pre_key is not None:
        pre_key = PreKeyOut(key_id=view.pre_key.key_id, public_key=view.pre_key.public_key)
    return KeyBundleResponse(
        username=bundle.username,
        key_version=bundle.current_version,
        identity_key=bundle.identity_key,
        identity_key_fingerprint=bundle.identity_key_fingerprint,
        registration_id=bundle.registration_id,
        device_id=bundle.device_id,
        signed_pre_key=SignedPreKeyOut(
            key_id=bundle.signed_pre_key_id,
            public_key=bundle.signed_pre_key,
            signature=bundle.signed_pre_key_signature,
        ),
        kyber_pre_key=kyber,
        pre_key=pre_key,
        updated_at=bundle.updated_at,
    )


@router.post("", response_model=KeyUploadResponse)
async def upload_key_bundle(
    bundle: KeyBundleUpload,
    current_username: CurrentUsernameDep,
    db: SessionDep,
    session_factory: SessionFactoryDep,
    background_tasks: BackgroundTasks,
) -> KeyUploadResponse:
    """Publish the caller's key bundle.

    The key version only advances when the identity key changed; re-uploads
    that merely refresh pre-keys keep the current version. A rotation queues
    re-encryption notifications after the response is sent.
    """

    def _dispatch(event: RotationEvent) -> None:
        background_tasks.add_task(dispatch_rotation, event, session_factory)

    try:
        result = KeyChangeDetector(db).process_upload(
            current_username, bundle, source=bundle.source, dispatch=_dispatch
        )
    except E2EError as exc:
        raise http_error(exc) from exc

    return KeyUploadResponse(
        username=result.username,
        version=result.version,
        changed=result.changed,
    )


@router.get("/{username}", response_model=KeyBundleResponse)
async def get_key_bundle(
    username: str,
    current_username: CurrentUsernameDep,
    db: SessionDep,
) -> KeyBundleResponse:
    """Fetch a user's public bundle to start a session, claiming one one-time pre-key."""
    try:
        view = KeyBundleRegistry(db).fetch_bundle_for_session(username)
    except E2EError as exc:
        raise http_error(exc) from exc
    return _serialize_bundle(view)


@router.get("/{username}/prekey-count", response_model=PreKeyCountResponse)
async def get_pre_key_count(
    username: str,
    current_username: CurrentUsernameDep,
    db: SessionDep,
) -> PreKeyCountResponse:
    """Report how many one-time pre-keys a user has left."""
    registry = KeyBundleRegistry(db)
    try:
        record = registry.get_bundle(username)
        count = registry.pre_key_count(record.username)
    except E2EError as exc:
        raise http_error(exc) from exc
    return PreKeyCountResponse(username=record.username, available_pre_keys=count)
