"""API endpoints package for the backend."""

from backend.app.api.health import router as health_router
from backend.app.api.routes import ROUTE_MOUNTS, discover_routers, mount_routers

__all__ = [
    "health_router",
    "ROUTE_MOUNTS",
    "discover_routers",
    "mount_routers",
]
