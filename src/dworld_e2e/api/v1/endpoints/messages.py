"""Encrypted direct message endpoints for the dWorld E2E API."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, status

from dworld_e2e.api.v1.dependencies import CurrentUsernameDep, SessionDep, http_error
from dworld_e2e.core.errors import E2EError
from dworld_e2e.models import MessageDelivery
from dworld_e2e.schemas.messages import (
    DeliveryFailureReport,
    MessageCreate,
    MessageCreateResponse,
    RecipientMessageResponse,
    ReencryptedPayload,
    ReencryptionResponse,
    SentMessageResponse,
)
from dworld_e2e.services.delivery import DeliveryLedger, DeliveryStatusTracker, RecipientPayload
from dworld_e2e.services.reencryption import ReencryptionCoordinator
from dworld_e2e.utils.encoding import decode_b64

router = APIRouter(prefix="/messages", tags=["messages"])


def _serialize_slot(slot: MessageDelivery) -> RecipientMessageResponse:
    """Serialize one recipient slot into API payload form."""
    message = slot.message
    return RecipientMessageResponse(
        message_id=slot.message_id,
        author=message.author,
        message_type=message.message_type,
        feed_item_id=message.feed_item_id,
        ciphertext=slot.ciphertext,
        encrypted_for_key_version=slot.encrypted_for_key_version,
        status=slot.status,
        delivery_attempts=slot.delivery_attempts,
        delivered_at=slot.delivered_at,
        created_at=message.created_at,
    )


@router.post("", status_code=status.HTTP_201_CREATED, response_model=MessageCreateResponse)
async def send_message(
    message_data: MessageCreate,
    current_username: CurrentUsernameDep,
    db: SessionDep,
) -> MessageCreateResponse:
    """Send an end-to-end encrypted message, one ciphertext per recipient."""
    try:
        payloads = [
            RecipientPayload(
                username=recipient.username,
                ciphertext=decode_b64(recipient.ciphertext, f"ciphertext for {recipient.username}"),
                key_version=recipient.key_version,
            )
            for recipient in message_data.recipients
        ]
        message = DeliveryLedger(db).record_message(
            current_username,
            payloads,
            message_type=message_data.message_type,
            feed_item_id=message_data.feed_item_id,
        )
    except E2EError as exc:
        raise http_error(exc) from exc

    return MessageCreateResponse(message_id=message.id)


@router.get("/inbox", response_model=list[RecipientMessageResponse])
async def get_inbox(
    current_username: CurrentUsernameDep,
    db: SessionDep,
    limit: int = Query(50, ge=1, le=100),
    before: int | None = Query(None),
    include_delivered: bool = Query(True),
) -> list[RecipientMessageResponse]:
    """Get encrypted messages for current user (as recipient)."""
    slots = DeliveryLedger(db).inbox(
        current_username, limit=limit, before=before, include_delivered=include_delivered
    )
    return [_serialize_slot(slot) for slot in slots]


@router.get("/sent", response_model=list[SentMessageResponse])
async def get_sent_messages(
    current_username: CurrentUsernameDep,
    db: SessionDep,
    limit: int = Query(50, ge=1, le=100),
    before: int | None = Query(None),
) -> list[Any]:
    """Get messages sent by current user with per-recipient delivery state."""
    return DeliveryLedger(db).sent(current_username, limit=limit, before=before)


@router.get("/feed/{feed_item_id}", response_model=RecipientMessageResponse)
async def get_feed_item_message(
    feed_item_id: str,
    current_username: CurrentUsernameDep,
    db: SessionDep,
) -> RecipientMessageResponse:
    """Fetch the caller's ciphertext for the newest message on a feed item."""
    try:
        slot = DeliveryLedger(db).fetch_for_feed_item(feed_item_id, current_username)
    except E2EError as exc:
        raise http_error(exc) from exc
    return _serialize_slot(slot)


@router.get("/{message_id}", response_model=RecipientMessageResponse)
async def get_message(
    message_id: int,
    current_username: CurrentUsernameDep,
    db: SessionDep,
) -> RecipientMessageResponse:
    """Fetch the ciphertext addressed to the caller."""
    try:
        slot = DeliveryLedger(db).fetch_for_recipient(message_id, current_username)
    except E2EError as exc:
        raise http_error(exc) from exc
    return _serialize_slot(slot)


@router.put("/{message_id}/delivered")
async def mark_message_delivered(
    message_id: int,
    current_username: CurrentUsernameDep,
    db: SessionDep,
) -> dict[str, object]:
    """Confirm the caller decrypted the message. Safe to repeat."""
    try:
        changed = DeliveryStatusTracker(db).mark_delivered(message_id, current_username)
    except E2EError as exc:
        raise http_error(exc) from exc
    return {"status": "delivered", "changed": changed}


@router.put("/{message_id}/failed")
async def report_delivery_failure(
    message_id: int,
    report: DeliveryFailureReport,
    current_username: CurrentUsernameDep,
    db: SessionDep,
) -> dict[str, object]:
    """Report that the caller could not fetch or decrypt the message."""
    try:
        changed = DeliveryStatusTracker(db).mark_failed(
            message_id, current_username, report.reason
        )
    except E2EError as exc:
        raise http_error(exc) from exc
    return {"status": "failure_recorded", "changed": changed}


@router.put("/{message_id}/recipients/{username}", response_model=ReencryptionResponse)
async def push_reencrypted_payload(
    message_id: int,
    username: str,
    payload: ReencryptedPayload,
    current_username: CurrentUsernameDep,
    db: SessionDep,
) -> ReencryptionResponse:
    """Replace one recipient's ciphertext after the author re-encrypted it."""
    try:
        ciphertext = decode_b64(payload.ciphertext, "ciphertext")
        outcome = ReencryptionCoordinator(db).apply_reencryption(
            message_id,
            username,
            ciphertext,
            payload.key_version,
            actor=current_username,
        )
    except E2EError as exc:
        raise http_error(exc) from exc

    return ReencryptionResponse(
        message_id=outcome.message_id,
        recipient=outcome.recipient,
        applied=outcome.applied,
        from_version=outcome.from_version,
        to_version=outcome.to_version,
    )
