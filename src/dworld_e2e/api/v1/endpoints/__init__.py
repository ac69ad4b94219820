"""API endpoint modules for version 1."""

from .admin import router as admin_router
from .keys import router as keys_router
from .messages import router as messages_router
from .notifications import router as notifications_router
from .system import router as system_router

__all__ = [
    "admin_router",
    "keys_router",
    "messages_router",
    "notifications_router",
    "system_router",
]
