"""API routers."""

from inboxsync.routers.internal import router as internal_router
from inboxsync.routers.webhooks import router as webhooks_router

__all__ = ["internal_router", "webhooks_router"]
