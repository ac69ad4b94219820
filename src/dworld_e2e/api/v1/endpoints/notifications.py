"""Key-change notification endpoints for message senders."""

from __future__ import annotations

from fastapi import APIRouter, Query

from dworld_e2e.api.v1.dependencies import CurrentUsernameDep, SessionDep, http_error
from dworld_e2e.core.errors import E2EError
from dworld_e2e.db.time import utcnow
from dworld_e2e.schemas.notifications import AcknowledgeRequest, NotificationResponse
from dworld_e2e.services.notification_queue import NotificationQueue

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationResponse])
async def pull_notifications(
    current_username: CurrentUsernameDep,
    db: SessionDep,
    limit: int | None = Query(None, ge=1, le=500),
) -> list[NotificationResponse]:
    """Pull the caller's open notifications, oldest first.

    Notifications keep coming back until they are acknowledged.
    """
    try:
        notifications = NotificationQueue(db).pull_pending(current_username, limit=limit)
    except E2EError as exc:
        raise http_error(exc) from exc
    now = utcnow()
    return [NotificationResponse.from_model(n, now) for n in notifications]


@router.post("/{notification_id}/ack", response_model=NotificationResponse)
async def acknowledge_notification(
    notification_id: int,
    ack: AcknowledgeRequest,
    current_username: CurrentUsernameDep,
    db: SessionDep,
) -> NotificationResponse:
    """Record progress on a notification: acknowledged, success or failure."""
    try:
        notification = NotificationQueue(db).acknowledge(
            notification_id, current_username, ack.outcome, ack.details
        )
    except E2EError as exc:
        raise http_error(exc) from exc
    return NotificationResponse.from_model(notification, utcnow())
