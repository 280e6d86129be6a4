"""API routers."""

from chatrelay.api.chat import router as chat_router
from chatrelay.api.health import router as health_router

__all__ = [
    "chat_router",
    "health_router",
]
