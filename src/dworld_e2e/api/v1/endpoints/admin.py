"""Admin diagnostic endpoints, gated by the X-Admin-Key header."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, status

from dworld_e2e.api.v1.dependencies import SessionDep, http_error, require_admin
from dworld_e2e.core.errors import E2EError
from dworld_e2e.db.time import utcnow
from dworld_e2e.schemas.admin import (
    ForceReencryptRequest,
    MessageDiagnosisResponse,
    UserKeyDiagnosisResponse,
)
from dworld_e2e.schemas.notifications import NotificationResponse
from dworld_e2e.services.diagnostics import DiagnosticsService
from dworld_e2e.services.notification_queue import NotificationQueue

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/messages/{message_id}/diagnosis", response_model=MessageDiagnosisResponse)
async def diagnose_message(message_id: int, db: SessionDep) -> Any:
    """Compare each recipient's ciphertext version with their current key version."""
    try:
        return DiagnosticsService(db).diagnose_message(message_id)
    except E2EError as exc:
        raise http_error(exc) from exc


@router.get("/keys/{username}", response_model=UserKeyDiagnosisResponse)
async def diagnose_user_keys(username: str, db: SessionDep) -> Any:
    """Return a user's key version, fingerprint and upload history."""
    try:
        return DiagnosticsService(db).diagnose_user_keys(username)
    except E2EError as exc:
        raise http_error(exc) from exc


@router.get("/keys/{username}/notifications", response_model=list[NotificationResponse])
async def list_key_change_notifications(username: str, db: SessionDep) -> list[NotificationResponse]:
    """List every notification raised for a user's key changes."""
    try:
        notifications = NotificationQueue(db).list_for_recipient(username)
    except E2EError as exc:
        raise http_error(exc) from exc
    now = utcnow()
    return [NotificationResponse.from_model(n, now) for n in notifications]


@router.post(
    "/messages/{message_id}/force-reencrypt",
    status_code=status.HTTP_201_CREATED,
    response_model=NotificationResponse,
)
async def force_reencrypt(
    message_id: int,
    request: ForceReencryptRequest,
    db: SessionDep,
) -> NotificationResponse:
    """Ask the author to re-encrypt one recipient's ciphertext."""
    try:
        notification = DiagnosticsService(db).force_reencryption(
            message_id, request.recipient, request.reason
        )
    except E2EError as exc:
        raise http_error(exc) from exc
    return NotificationResponse.from_model(notification, utcnow())
