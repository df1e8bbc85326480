"""Mount table for the business-logic routers.

The attendance, leave and account routes are implemented by collaborator
modules outside this package. Each collaborator is a module exposing an
``APIRouter`` named ``router``; this module only decides where they live.
"""

import importlib
from dataclasses import dataclass
from typing import Mapping

from fastapi import APIRouter, FastAPI

from backend.app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RouteMount:
    """A collaborator module mounted under a path prefix."""
    prefix: str
    module: str


ROUTE_MOUNTS: tuple[RouteMount, ...] = (
    RouteMount("/api/auth", "auth"),
    RouteMount("/api/attendance", "attendance"),
    RouteMount("/api/dashboard", "dashboard"),
    RouteMount("/api/badges", "badges"),
    RouteMount("/api/profile", "profile"),
    RouteMount("/api/leaves", "leaves"),
    RouteMount("/api/leave-types", "leave_types"),
    RouteMount("/api/notifications", "notifications"),
    RouteMount("/api/leave-analytics", "leave_analytics"),
)

# Endpoints guarded by the auth rate limiter
AUTH_LIMITED_PATHS = ("/api/auth/login", "/api/auth/register")


def discover_routers(package: str) -> dict[str, APIRouter]:
    """Import ``<package>.<module>`` for every mount and collect its router.

    Collaborators that are not installed are skipped with a warning. A
    module that exists but fails to import, or exposes no router, is a
    deployment error and raises.

    Args:
        package: Dotted name of the package holding the route modules

    Returns:
        Mapping of module name to router
    """
    routers: dict[str, APIRouter] = {}
    for mount in ROUTE_MOUNTS:
        module_name = f"{package}.{mount.module}"
        try:
            module = importlib.import_module(module_name)
        except ModuleNotFoundError as e:
            if e.name not in (package, module_name) and not package.startswith(f"{e.name}."):
                raise
            logger.warning(f"Route module '{module_name}' not found, {mount.prefix} stays unmounted")
            continue

        router = getattr(module, "router", None)
        if not isinstance(router, APIRouter):
            raise TypeError(f"Route module '{module_name}' does not expose an APIRouter named 'router'")
        routers[mount.module] = router
    return routers


def mount_routers(app: FastAPI, routers: Mapping[str, APIRouter]) -> list[str]:
    """Include the given routers under their prefixes.

    Returns:
        Prefixes that were mounted, in mount table order
    """
    known = {mount.module for mount in ROUTE_MOUNTS}
    unknown = sorted(set(routers) - known)
    if unknown:
        raise ValueError(f"No mount point for route modules: {', '.join(unknown)}")

    mounted = []
    for mount in ROUTE_MOUNTS:
        router = routers.get(mount.module)
        if router is None:
            continue
        app.include_router(router, prefix=mount.prefix, tags=[mount.module])
        mounted.append(mount.prefix)

    logger.debug(f"Mounted {len(mounted)} of {len(ROUTE_MOUNTS)} route modules")
    return mounted
