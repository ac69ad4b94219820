"""Storage failure translation and retry helpers."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TypeVar

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session

from dworld_e2e.core.errors import StorageError
from dworld_e2e.core.settings import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Driver-level failures that mean "the store is unreachable", not "the data is wrong".
TRANSIENT_DB_ERRORS = (OperationalError, InterfaceError)


@contextmanager
def storage_errors() -> Iterator[None]:
    """Re-raise transient database failures as :class:`StorageError`."""
    try:
        yield
    except TRANSIENT_DB_ERRORS as exc:
        raise StorageError(f"Durable store unavailable: {exc.orig!r}") from exc


def retry_storage(
    db: Session,
    operation: Callable[[], T],
    *,
    attempts: int | None = None,
    backoff_seconds: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run an additive operation, retrying transient store failures with backoff.

    The session is rolled back between attempts so each retry starts from a
    clean transaction. After the last attempt the failure surfaces as
    :class:`StorageError`.
    """
    max_attempts = max(1, attempts if attempts is not None else settings.storage_retry_attempts)
    delay = (
        backoff_seconds
        if backoff_seconds is not None
        else settings.storage_retry_backoff_seconds
    )

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except TRANSIENT_DB_ERRORS as exc:
            db.rollback()
            if attempt == max_attempts:
                raise StorageError(
                    f"Durable store unavailable after {attempt} attempts: {exc.orig!r}"
                ) from exc
            wait = delay * (2 ** (attempt - 1))
            logger.warning(
                "Storage failure on attempt %d/%d, retrying in %.2fs: %s",
                attempt,
                max_attempts,
                wait,
                exc,
            )
            sleep(wait)

    raise AssertionError("unreachable")  # pragma: no cover
