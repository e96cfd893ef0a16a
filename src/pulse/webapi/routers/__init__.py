"""API routers."""

from .admin import router as admin_router
from .cron import router as cron_router
from .health import router as health_router

__all__ = ["admin_router", "cron_router", "health_router"]
