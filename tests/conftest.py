# tests/conftest.py
from __future__ import annotations

import base64
import contextlib
import os
from collections.abc import Callable, Generator, Iterable, Iterator
from datetime import UTC, datetime, timedelta

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from nacl.signing import SigningKey
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from dworld_e2e.core.security import create_access_token
from dworld_e2e.core.settings import settings
from dworld_e2e.db.session import Base, get_db, get_session_factory
from dworld_e2e.main import app as fastapi_app
from dworld_e2e.models import EncryptedMessage
from dworld_e2e.schemas.keys import KeyBundleUpload, PreKeyIn, SignedPreKeyIn
from dworld_e2e.services.delivery import DeliveryLedger, RecipientPayload
from dworld_e2e.services.key_registry import KeyBundleRegistry, UploadResult

TEST_DB_URL = "sqlite://"


class FrozenClock:
    """Deterministic clock for services; advance it explicitly."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(UTC).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def build_bundle(
    signing_key: SigningKey | None = None,
    pre_key_ids: Iterable[int] = (1, 2, 3),
    source: str = "client",
) -> KeyBundleUpload:
    """Build a complete bundle whose signed pre-key is signed by the identity key."""
    signing_key = signing_key or SigningKey.generate()
    signed_pre_key = os.urandom(32)
    signature = signing_key.sign(signed_pre_key).signature
    return KeyBundleUpload(
        identity_key=b64(bytes(signing_key.verify_key)),
        registration_id=4242,
        device_id=1,
        signed_pre_key=SignedPreKeyIn(
            key_id=1,
            public_key=b64(signed_pre_key),
            signature=b64(signature),
        ),
        pre_keys=[PreKeyIn(key_id=key_id, public_key=b64(os.urandom(32))) for key_id in pre_key_ids],
        source=source,
    )


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Iterator[Session]:
    # Services commit and roll back on their own, so each test gets a fresh
    # in-memory database instead of an outer transaction.
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture(autouse=True)
def override_session_dependency(app: FastAPI, db_session: Session) -> Iterator[None]:
    def _get_session_override() -> Generator[Session, None, None]:
        yield db_session

    def _get_session_factory_override() -> Callable[[], contextlib.AbstractContextManager[Session]]:
        return lambda: contextlib.nullcontext(db_session)

    app.dependency_overrides[get_db] = _get_session_override
    app.dependency_overrides[get_session_factory] = _get_session_factory_override
    try:
        yield
    finally:
        app.dependency_overrides.pop(get_db, None)
        app.dependency_overrides.pop(get_session_factory, None)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def make_bundle() -> Callable[..., KeyBundleUpload]:
    """Return the bundle builder so tests can vary identity keys and pre-keys."""
    return build_bundle


@pytest.fixture()
def register_keys(
    db_session: Session,
    clock: FrozenClock,
) -> Callable[..., UploadResult]:
    """Upload a fresh bundle for a user straight through the registry."""

    def _register(username: str, signing_key: SigningKey | None = None) -> UploadResult:
        return KeyBundleRegistry(db_session, clock=clock).upload(username, build_bundle(signing_key))

    return _register


@pytest.fixture()
def send_message(
    db_session: Session,
    clock: FrozenClock,
) -> Callable[..., EncryptedMessage]:
    """Store a message from `author` encrypted for each recipient's current key."""

    def _send(author: str, *recipients: str, ciphertext: bytes = b"ciphertext") -> EncryptedMessage:
        registry = KeyBundleRegistry(db_session, clock=clock)
        payloads = [
            RecipientPayload(
                username=recipient,
                ciphertext=ciphertext + b":" + recipient.encode(),
                key_version=registry.current_version(recipient),
            )
            for recipient in recipients
        ]
        clock.advance(seconds=1)
        return DeliveryLedger(db_session, registry=registry, clock=clock).record_message(
            author, payloads
        )

    return _send


@pytest.fixture()
def auth_headers() -> Callable[[str], dict[str, str]]:
    """Return a builder of authorization headers for a username."""

    def _headers(username: str) -> dict[str, str]:
        token = create_access_token(username)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    assert settings.admin_api_key
    return {"X-Admin-Key": settings.admin_api_key}
