"""API routers."""

from inbox_sync.routers.webhooks import router as webhooks_router
from inbox_sync.routers.internal import router as internal_router
from inbox_sync.routers.connections import router as connections_router

__all__ = [
    "webhooks_router",
    "internal_router",
    "connections_router",
]
