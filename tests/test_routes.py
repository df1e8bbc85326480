"""Tests for the collaborator mount table."""

import textwrap

import pytest
from fastapi import APIRouter, FastAPI
from fastapi.testclient import TestClient

from backend.app.api.routes import ROUTE_MOUNTS, discover_routers, mount_routers

ROUTER_MODULE = textwrap.dedent("""
    from fastapi import APIRouter

    router = APIRouter()

    @router.get("/ping")
    async def ping():
        return {"module": __name__}
""")


@pytest.fixture
def route_package(tmp_path, monkeypatch, request):
    """Create an importable package of route modules, unique per test."""
    name = f"collab_{request.node.name.replace('[', '_').replace(']', '_')}"
    package_dir = tmp_path / name
    package_dir.mkdir()
    (package_dir / "__init__.py").write_text("")
    monkeypatch.syspath_prepend(str(tmp_path))

    def _write(module: str, source: str) -> None:
        (package_dir / f"{module}.py").write_text(source)

    return name, _write


def test_mount_table_prefixes():
    assert [(m.prefix, m.module) for m in ROUTE_MOUNTS] == [
        ("/api/auth", "auth"),
        ("/api/attendance", "attendance"),
        ("/api/dashboard", "dashboard"),
        ("/api/badges", "badges"),
        ("/api/profile", "profile"),
        ("/api/leaves", "leaves"),
        ("/api/leave-types", "leave_types"),
        ("/api/notifications", "notifications"),
        ("/api/leave-analytics", "leave_analytics"),
    ]


def test_discover_skips_missing_package():
    assert discover_routers("no_such_collaborator_package") == {}


def test_discover_collects_present_modules(route_package):
    package, write = route_package
    write("auth", ROUTER_MODULE)
    write("leave_types", ROUTER_MODULE)

    routers = discover_routers(package)

    assert set(routers) == {"auth", "leave_types"}
    assert all(isinstance(r, APIRouter) for r in routers.values())


def test_discover_rejects_module_without_router(route_package):
    package, write = route_package
    write("dashboard", "handlers = []\n")

    with pytest.raises(TypeError, match="dashboard"):
        discover_routers(package)


def test_discover_propagates_broken_imports(route_package):
    package, write = route_package
    write("profile", "import a_dependency_that_is_not_installed\n")

    with pytest.raises(ModuleNotFoundError):
        discover_routers(package)


def test_mount_routers_uses_table_prefixes(route_package):
    package, write = route_package
    write("leave_types", ROUTER_MODULE)
    write("auth", ROUTER_MODULE)
    app = FastAPI()

    mounted = mount_routers(app, discover_routers(package))

    assert mounted == ["/api/auth", "/api/leave-types"]
    client = TestClient(app)
    assert client.get("/api/leave-types/ping").json() == {"module": f"{package}.leave_types"}
    assert client.get("/api/auth/ping").status_code == 200


def test_mount_routers_rejects_unknown_modules():
    with pytest.raises(ValueError, match="payroll"):
        mount_routers(FastAPI(), {"payroll": APIRouter()})


def test_app_records_mounted_routes(make_app):
    app = make_app()

    assert app.state.mounted_routes == ["/api/auth", "/api/attendance", "/api/leaves"]


def test_app_discovers_routers_from_settings(route_package, make_settings):
    from backend.app.main import create_app
    from tests.fakes import FakeDatabase

    package, write = route_package
    write("notifications", ROUTER_MODULE)

    app = create_app(make_settings(routes_package=package), database=FakeDatabase())

    assert app.state.mounted_routes == ["/api/notifications"]
    assert TestClient(app).get("/api/notifications/ping").status_code == 200
