# src/dworld_e2e/models/key_bundle.py
"""Models for users' published key material and its version history."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dworld_e2e.db.session import Base
from dworld_e2e.db.time import utcnow


class KeyBundle(Base):
    """Current public identity and pre-key material for one user.

    The server never interprets the key material; it only tracks which
    version of it is current so stale ciphertext can be detected.
    """

    __tablename__ = "key_bundle"

    # Canonical (lower-cased) username.
    username: Mapped[str] = mapped_column(String(255), primary_key=True)
    current_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    identity_key_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)

    registration_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    device_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    identity_key: Mapped[str] = mapped_column(Text, nullable=False)
    signed_pre_key_id: Mapped[int] = mapped_column(Integer, nullable=False)
    signed_pre_key: Mapped[str] = mapped_column(Text, nullable=False)
    signed_pre_key_signature: Mapped[str] = mapped_column(Text, nullable=False)
    kyber_pre_key_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    kyber_pre_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    kyber_pre_key_signature: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Bumped on every write; the ORM turns each UPDATE into a compare-and-set on it.
    revision: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    history: Mapped[list[KeyBundleHistory]] = relationship(
        "KeyBundleHistory",
        back_populates="bundle",
        cascade="all, delete-orphan",
        order_by="KeyBundleHistory.id",
    )

    __mapper_args__ = {"version_id_col": revision}


class KeyBundleHistory(Base):
    """Append-only record of every upload, newest entries kept."""

    __tablename__ = "key_bundle_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("key_bundle.username", ondelete="CASCADE"),
        nullable=False,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    upload_source: Mapped[str] = mapped_column(String(64), nullable=False, default="unknown")
    pre_key_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    bundle: Mapped[KeyBundle] = relationship("KeyBundle", back_populates="history")

    __table_args__ = (Index("ix_key_bundle_history_username_id", "username", "id"),)


class PreKey(Base):
    """One-time pre-key handed out to at most one session initiator."""

    __tablename__ = "one_time_pre_key"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("key_bundle.username", ondelete="CASCADE"),
        nullable=False,
    )
    key_id: Mapped[int] = mapped_column(Integer, nullable=False)
    public_key: Mapped[str] = mapped_column(Text, nullable=False)
    consumed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("username", "key_id", name="uq_pre_key_username_key_id"),
        Index("ix_pre_key_username_consumed", "username", "consumed"),
    )
