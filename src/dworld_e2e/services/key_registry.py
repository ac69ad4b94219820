"""Durable registry of users' public key bundles.

Uploads are serialised per username with an optimistic compare-and-set on the
bundle row's ``revision`` column: two concurrent uploads can never both read the
same ``current_version`` and both commit a bump computed from it. The loser
re-reads and re-applies its upload.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from dworld_e2e.core.errors import (
    ConcurrencyConflict,
    NotFoundError,
    StorageError,
    ValidationError,
)
from dworld_e2e.core.retry import storage_errors
from dworld_e2e.core.security import ED25519_KEY_BYTES, verify_ed25519_signature
from dworld_e2e.core.settings import settings
from dworld_e2e.db.time import utcnow
from dworld_e2e.models import KeyBundle, KeyBundleHistory, PreKey
from dworld_e2e.schemas.keys import KeyBundleUpload, SignedPreKeyIn
from dworld_e2e.services.fingerprint import compute_fingerprint, is_rotation
from dworld_e2e.utils.encoding import decode_b64
from dworld_e2e.utils.usernames import canonical_username

logger = logging.getLogger(__name__)

PRE_KEY_CLAIM_ATTEMPTS = 5
MAX_UPLOAD_SOURCE_LENGTH = 64


@dataclass(frozen=True)
class UploadResult:
    """Outcome of a key bundle upload."""

    username: str
    version: int
    changed: bool
    fingerprint: str
    previous_version: int | None = None
    previous_fingerprint: str | None = None


@dataclass(frozen=True)
class ClaimedPreKey:
    """One-time pre-key consumed by a bundle fetch."""

    key_id: int
    public_key: str


@dataclass(frozen=True)
class BundleView:
    """Public bundle plus the one-time pre-key claimed for this fetch, if any."""

    bundle: KeyBundle
    pre_key: ClaimedPreKey | None


class KeyBundleRegistry:
    """Stores key bundles, assigns key versions and hands out one-time pre-keys."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self._clock = clock

    # --- Uploads --------------------------------------------------------------------
    def upload(
        self,
        username: str,
        bundle: KeyBundleUpload,
        source: str | None = None,
    ) -> UploadResult:
        """Store a bundle, bumping the key version only when the identity key changed.

        Raises:
            ValidationError: If the bundle is incomplete or malformed.
            ConcurrencyConflict: If every retry lost the race for this username.
            StorageError: If the store is unavailable.
        """
        canonical = canonical_username(username)
        identity_key, signed = self.validate_bundle(bundle)
        fingerprint = compute_fingerprint(identity_key)
        upload_source = (source or bundle.source or "unknown")[:MAX_UPLOAD_SOURCE_LENGTH]

        attempts = max(1, settings.key_upload_max_retries)
        for attempt in range(1, attempts + 1):
            try:
                with storage_errors():
                    return self._upload_once(canonical, bundle, signed, upload_source, fingerprint)
            except ConcurrencyConflict as exc:
                self.db.rollback()
                logger.warning(
                    "Key upload for %s lost a concurrent update (attempt %d/%d): %s",
                    canonical,
                    attempt,
                    attempts,
                    exc,
                )
            except StorageError:
                self.db.rollback()
                raise

        raise ConcurrencyConflict(
            f"Could not store key bundle for {canonical} after {attempts} attempts"
        )

    def _upload_once(
        self,
        username: str,
        bundle: KeyBundleUpload,
        signed: SignedPreKeyIn,
        upload_source: str,
        fingerprint: str,
    ) -> UploadResult:
        now = self._clock()
        record = self.db.execute(
            select(KeyBundle)
            .where(KeyBundle.username == username)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        previous_version: int | None = None
        previous_fingerprint: str | None = None
        changed = False

        if record is None:
            record = KeyBundle(
                username=username,
                current_version=1,
                identity_key_fingerprint=fingerprint,
                created_at=now,
            )
            self.db.add(record)
        else:
            previous_version = record.current_version
            previous_fingerprint = record.identity_key_fingerprint
            changed = is_rotation(previous_fingerprint, fingerprint)
            if changed:
                record.current_version = previous_version + 1
                record.identity_key_fingerprint = fingerprint

        self._apply_material(record, bundle, signed, now)
        self._replace_pre_keys(username, bundle, now)
        self.db.add(
            KeyBundleHistory(
                username=username,
                version=record.current_version,
                fingerprint=fingerprint,
                uploaded_at=now,
                upload_source=upload_source,
                pre_key_count=len(bundle.pre_keys),
            )
        )

        try:
            self.db.flush()
        except StaleDataError as exc:
            raise ConcurrencyConflict(f"Key bundle for {username} changed underneath") from exc
        except IntegrityError as exc:
            raise ConcurrencyConflict(f"Key bundle for {username} was created concurrently") from exc

        self._trim_history(username)
        version = record.current_version
        self.db.commit()

        if changed:
            logger.info(
                "Identity key rotated for %s: version %d -> %d",
                username,
                previous_version,
                version,
            )
        return UploadResult(
            username=username,
            version=version,
            changed=changed,
            fingerprint=fingerprint,
            previous_version=previous_version,
            previous_fingerprint=previous_fingerprint,
        )

    @staticmethod
    def _apply_material(
        record: KeyBundle,
        bundle: KeyBundleUpload,
        signed: SignedPreKeyIn,
        now: datetime,
    ) -> None:
        record.identity_key = bundle.identity_key.strip()
        record.registration_id = bundle.registration_id
        record.device_id = bundle.device_id
        record.signed_pre_key_id = signed.key_id
        record.signed_pre_key = signed.public_key
        record.signed_pre_key_signature = signed.signature
        kyber = bundle.kyber_pre_key
        record.kyber_pre_key_id = kyber.key_id if kyber else None
        record.kyber_pre_key = kyber.public_key if kyber else None
        record.kyber_pre_key_signature = kyber.signature if kyber else None
        # Always written, so every upload goes through the revision check.
        record.updated_at = now

    def _replace_pre_keys(self, username: str, bundle: KeyBundleUpload, now: datetime) -> None:
        self.db.execute(
            delete(PreKey)
            .where(PreKey.username == username)
            .execution_options(synchronize_session=False)
        )
        self.db.add_all(
            PreKey(
                username=username,
                key_id=pre_key.key_id,
                public_key=pre_key.public_key,
                consumed=False,
                created_at=now,
            )
            for pre_key in bundle.pre_keys
        )

    def _trim_history(self, username: str) -> None:
        limit = settings.key_history_limit
        if limit <= 0:
            return
        cutoff = self.db.scalar(
            select(KeyBundleHistory.id)
            .where(KeyBundleHistory.username == username)
            .order_by(KeyBundleHistory.id.desc())
            .offset(limit - 1)
            .limit(1)
        )
        if cutoff is None:
            return
        self.db.execute(
            delete(KeyBundleHistory)
            .where(KeyBundleHistory.username == username, KeyBundleHistory.id < cutoff)
            .execution_options(synchronize_session=False)
        )

    # --- Validation -----------------------------------------------------------------
    @staticmethod
    def validate_bundle(bundle: KeyBundleUpload) -> tuple[bytes, SignedPreKeyIn]:
        """Check a bundle for completeness.

        Returns the raw identity key and the signed pre-key it was checked against.

        Raises:
            ValidationError: On any missing or malformed field.
        """
        identity_key = decode_b64(bundle.identity_key, "identity_key")

        signed = bundle.signed_pre_key
        if signed is None:
            raise ValidationError("signed_pre_key is required")
        signed_public, signed_signature = _decode_signed_key(signed, "signed_pre_key")

        if not bundle.pre_keys:
            raise ValidationError("pre_keys must contain at least one pre-key")
        seen: set[int] = set()
        for pre_key in bundle.pre_keys:
            if pre_key.key_id in seen:
                raise ValidationError(f"Duplicate pre-key id {pre_key.key_id}")
            seen.add(pre_key.key_id)
            decode_b64(pre_key.public_key, f"pre_keys[{pre_key.key_id}].public_key")

        if bundle.kyber_pre_key is not None:
            _decode_signed_key(bundle.kyber_pre_key, "kyber_pre_key")

        if settings.verify_signed_pre_keys:
            if len(identity_key) != ED25519_KEY_BYTES:
                raise ValidationError("identity_key must be a 32-byte Ed25519 key")
            if not verify_ed25519_signature(identity_key, signed_public, signed_signature):
                raise ValidationError("signed_pre_key signature does not verify")

        return identity_key, signed

    # --- Reads ----------------------------------------------------------------------
    def find(self, username: str) -> KeyBundle | None:
        """Return the bundle for a username, or None."""
        return self.db.get(KeyBundle, canonical_username(username))

    def get_bundle(self, username: str) -> KeyBundle:
        """Return the bundle for a username.

        Raises:
            NotFoundError: If the user has never uploaded keys.
        """
        record = self.find(username)
        if record is None:
            raise NotFoundError(f"User {canonical_username(username)} has not set up encryption")
        return record

    def current_version(self, username: str, for_update: bool = False) -> int:
        """Return the user's current key version.

        With `for_update` the bundle row stays locked until the caller's
        transaction ends, so no upload can bump the version in between.
        """
        if not for_update:
            return self.get_bundle(username).current_version
        canonical = canonical_username(username)
        version = self.db.scalar(
            select(KeyBundle.current_version)
            .where(KeyBundle.username == canonical)
            .with_for_update()
        )
        if version is None:
            raise NotFoundError(f"User {canonical} has not set up encryption")
        return version

    def fetch_bundle_for_session(self, username: str) -> BundleView:
        """Return the public bundle and atomically claim one one-time pre-key.

        The pre-key is None when the pool is exhausted; the signed pre-key alone
        still allows a session to be established.
        """
        record = self.get_bundle(username)
        canonical = record.username
        claimed: ClaimedPreKey | None = None

        with storage_errors():
            for _ in range(PRE_KEY_CLAIM_ATTEMPTS):
                candidate = self.db.execute(
                    select(PreKey.id, PreKey.key_id, PreKey.public_key)
                    .where(PreKey.username == canonical, PreKey.consumed.is_(False))
                    .order_by(PreKey.key_id)
                    .limit(1)
                ).first()
                if candidate is None:
                    break
                result = self.db.execute(
                    update(PreKey)
                    .where(PreKey.id == candidate.id, PreKey.consumed.is_(False))
                    .values(consumed=True)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed = ClaimedPreKey(key_id=candidate.key_id, public_key=candidate.public_key)
                    break
            self.db.commit()

        if claimed is None:
            logger.info("No one-time pre-keys left for %s", canonical)
        return BundleView(bundle=record, pre_key=claimed)

    def pre_key_count(self, username: str) -> int:
        """Return the number of unconsumed one-time pre-keys."""
        record = self.get_bundle(username)
        count = self.db.scalar(
            select(func.count(PreKey.id)).where(
                PreKey.username == record.username,
                PreKey.consumed.is_(False),
            )
        )
        return int(count or 0)

    def history(self, username: str) -> list[KeyBundleHistory]:
        """Return the retained upload history, oldest first."""
        record = self.get_bundle(username)
        return list(
            self.db.scalars(
                select(KeyBundleHistory)
                .where(KeyBundleHistory.username == record.username)
                .order_by(KeyBundleHistory.id)
            )
        )

    def fingerprint_for_version(self, username: str, version: int) -> str | None:
        """Return the fingerprint recorded for a past version, if still in history."""
        return self.db.scalar(
            select(KeyBundleHistory.fingerprint)
            .where(
                KeyBundleHistory.username == canonical_username(username),
                KeyBundleHistory.version == version,
            )
            .order_by(KeyBundleHistory.id.desc())
            .limit(1)
        )


def _decode_signed_key(key: SignedPreKeyIn, field: str) -> tuple[bytes, bytes]:
    public = decode_b64(key.public_key, f"{field}.public_key")
    signature = decode_b64(key.signature, f"{field}.signature")
    return public, signature
