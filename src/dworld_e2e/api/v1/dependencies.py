"""Shared API dependencies for authentication and service error translation."""

from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.orm import Session

from dworld_e2e.core.errors import E2EError, ValidationError
from dworld_e2e.core.security import admin_key_matches, decode_access_token
from dworld_e2e.db.session import SessionFactory, get_db, get_session_factory
from dworld_e2e.utils.usernames import canonical_username

# HTTP Bearer scheme for JWT authentication
bearer_scheme = HTTPBearer()

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]

# Sessions for work that runs after the response has been sent
SessionFactoryDep = Annotated[SessionFactory, Depends(get_session_factory)]


def http_error(exc: E2EError) -> HTTPException:
    """Translate a service error into the HTTPException the API reports."""
    return HTTPException(status_code=exc.status_code, detail=str(exc))


def get_current_username(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> str:
    """Get the canonical username of the authenticated caller.

    Args:
        credentials: HTTP Bearer token credentials

    Returns:
        Canonical username taken from the token subject

    Raises:
        HTTPException: If the token is invalid, expired or has no usable subject
    """
    try:
        subject = decode_access_token(credentials.credentials)
    except JWTError as err:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from err
    if subject is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    try:
        return canonical_username(subject)
    except ValidationError as err:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from err


def require_admin(
    x_admin_key: Annotated[str | None, Header()] = None,
) -> None:
    """Reject the request unless the X-Admin-Key header matches the configured key."""
    if not admin_key_matches(x_admin_key):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin API key required",
        )


# Type alias for current user dependency
CurrentUsernameDep = Annotated[str, Depends(get_current_username)]
