"""key rotation initial schema

Revision ID: 3c1e9a7d52f0
Revises:
Create Date: 2026-10-18 09:12:44.503118

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "3c1e9a7d52f0"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create key bundle, delivery ledger and notification tables."""
    op.create_table(
        "key_bundle",
        sa.Column("username", sa.String(length=255), nullable=False),
        sa.Column("current_version", sa.Integer(), nullable=False),
        sa.Column("identity_key_fingerprint", sa.String(length=64), nullable=False),
        sa.Column("registration_id", sa.Integer(), nullable=True),
        sa.Column("device_id", sa.Integer(), nullable=False),
        sa.Column("identity_key", sa.Text(), nullable=False),
        sa.Column("signed_pre_key_id", sa.Integer(), nullable=False),
        sa.Column("signed_pre_key", sa.Text(), nullable=False),
        sa.Column("signed_pre_key_signature", sa.Text(), nullable=False),
        sa.Column("kyber_pre_key_id", sa.Integer(), nullable=True),
        sa.Column("kyber_pre_key", sa.Text(), nullable=True),
        sa.Column("kyber_pre_key_signature", sa.Text(), nullable=True),
        sa.Column("revision", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("username"),
    )
    op.create_table(
        "key_bundle_history",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("username", sa.String(length=255), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("upload_source", sa.String(length=64), nullable=False),
        sa.Column("pre_key_count", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["username"], ["key_bundle.username"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_key_bundle_history_username_id", "key_bundle_history", ["username", "id"]
    )
    op.create_table(
        "one_time_pre_key",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("username", sa.String(length=255), nullable=False),
        sa.Column("key_id", sa.Integer(), nullable=False),
        sa.Column("public_key", sa.Text(), nullable=False),
        sa.Column("consumed", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["username"], ["key_bundle.username"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("username", "key_id", name="uq_pre_key_username_key_id"),
    )
    op.create_index(
        "ix_pre_key_username_consumed", "one_time_pre_key", ["username", "consumed"]
    )

    op.create_table(
        "encrypted_message",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("author", sa.String(length=255), nullable=False),
        sa.Column("message_type", sa.SmallInteger(), nullable=False),
        sa.Column("feed_item_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_encrypted_message_author", "encrypted_message", ["author"])
    op.create_index("ix_encrypted_message_feed_item_id", "encrypted_message", ["feed_item_id"])
    op.create_table(
        "message_delivery",
        sa.Column("message_id", sa.Integer(), nullable=False),
        sa.Column("recipient_username", sa.String(length=255), nullable=False),
        sa.Column("ciphertext", sa.LargeBinary(), nullable=False),
        sa.Column("encrypted_for_key_version", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("delivery_attempts", sa.Integer(), nullable=False),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["message_id"], ["encrypted_message.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("message_id", "recipient_username"),
    )
    op.create_index(
        "ix_message_delivery_recipient_status",
        "message_delivery",
        ["recipient_username", "status"],
    )
    op.create_table(
        "reencryption_record",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("message_id", sa.Integer(), nullable=False),
        sa.Column("recipient_username", sa.String(length=255), nullable=False),
        sa.Column("from_version", sa.Integer(), nullable=False),
        sa.Column("to_version", sa.Integer(), nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("by", sa.String(length=255), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("details", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["message_id"], ["encrypted_message.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_reencryption_record_message_id", "reencryption_record", ["message_id"]
    )

    op.create_table(
        "key_change_notification",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("recipient_username", sa.String(length=255), nullable=False),
        sa.Column("sender_username", sa.String(length=255), nullable=False),
        sa.Column("old_version", sa.Integer(), nullable=False),
        sa.Column("new_version", sa.Integer(), nullable=False),
        sa.Column("old_fingerprint", sa.String(length=64), nullable=True),
        sa.Column("new_fingerprint", sa.String(length=64), nullable=False),
        sa.Column("affected_message_ids", sa.JSON(), nullable=False),
        sa.Column("affected_message_count", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("reason", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reencrypted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("send_attempts", sa.Integer(), nullable=False),
        sa.Column("processing_log", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_key_change_notification_sender_status",
        "key_change_notification",
        ["sender_username", "status"],
    )
    op.create_index(
        "ix_key_change_notification_recipient",
        "key_change_notification",
        ["recipient_username"],
    )


def downgrade() -> None:
    """Drop every key-rotation table."""
    op.drop_index("ix_key_change_notification_recipient", table_name="key_change_notification")
    op.drop_index(
        "ix_key_change_notification_sender_status", table_name="key_change_notification"
    )
    op.drop_table("key_change_notification")
    op.drop_index("ix_reencryption_record_message_id", table_name="reencryption_record")
    op.drop_table("reencryption_record")
    op.drop_index("ix_message_delivery_recipient_status", table_name="message_delivery")
    op.drop_table("message_delivery")
    op.drop_index("ix_encrypted_message_feed_item_id", table_name="encrypted_message")
    op.drop_index("ix_encrypted_message_author", table_name="encrypted_message")
    op.drop_table("encrypted_message")
    op.drop_index("ix_pre_key_username_consumed", table_name="one_time_pre_key")
    op.drop_table("one_time_pre_key")
    op.drop_index("ix_key_bundle_history_username_id", table_name="key_bundle_history")
    op.drop_table("key_bundle_history")
    op.drop_table("key_bundle")
