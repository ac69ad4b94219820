"""Version 1 API endpoints."""

from .endpoints import (
    admin_router,
    keys_router,
    messages_router,
    notifications_router,
    system_router,
)

__all__ = [
    "admin_router",
    "keys_router",
    "messages_router",
    "notifications_router",
    "system_router",
]
