"""Exception taxonomy for the key-rotation delivery core.

Every error carries the HTTP status the API layer reports for it, so the
endpoints can translate service failures without a lookup table.
"""

from __future__ import annotations


class E2EError(RuntimeError):
    """Base exception for all key-rotation and delivery failures."""

    status_code: int = 500


class ValidationError(E2EError):
    """Raised for malformed key bundles or missing required fields.

    Always a client bug; never retried server-side.
    """

    status_code = 400


class NotFoundError(E2EError):
    """Raised when a user, message, recipient slot or notification is unknown."""

    status_code = 404


class InvalidTransitionError(E2EError):
    """Raised when a notification is asked to move backwards or out of a terminal state."""

    status_code = 409


class StaleKeyVersionError(E2EError):
    """Raised when ciphertext targets a key version other than the recipient's current one."""

    status_code = 409

    def __init__(self, recipient: str, submitted: int, current: int) -> None:
        super().__init__(
            f"Ciphertext for {recipient} targets key version {submitted}, "
            f"current version is {current}"
        )
        self.recipient = recipient
        self.submitted = submitted
        self.current = current


class ConcurrencyConflict(E2EError):
    """Raised when an optimistic compare-and-set loses a race.

    Retried internally; only surfaces once the retry budget is spent.
    """

    status_code = 503


class StorageError(E2EError):
    """Raised when the durable store is unavailable."""

    status_code = 503
