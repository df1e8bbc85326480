"""Shared fixtures: settings, a fake database and collaborator routers."""

from typing import Any, Optional

import pytest
from fastapi import APIRouter
from fastapi.testclient import TestClient

from backend.app.core.config import Settings
from backend.app.main import create_app
from tests.fakes import (
    FakeDatabase,
    build_attendance_router,
    build_auth_router,
    build_leaves_router,
)


@pytest.fixture
def make_settings(tmp_path):
    """Build Settings isolated from the environment and .env files."""
    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "node_env": "test",
            "uploads_dir": tmp_path / "uploads",
            "routes_package": "tests.no_such_routes",
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)
    return _make


@pytest.fixture
def collaborators() -> dict[str, APIRouter]:
    return {
        "auth": build_auth_router(),
        "attendance": build_attendance_router(),
        "leaves": build_leaves_router(),
    }


@pytest.fixture
def make_app(make_settings, collaborators):
    """Create an app with fake collaborators and an already connected database."""
    def _make(database: Optional[FakeDatabase] = None, **overrides: Any):
        return create_app(
            make_settings(**overrides),
            database=database or FakeDatabase(),
            routers=collaborators,
        )
    return _make


@pytest.fixture
def client(make_app) -> TestClient:
    return TestClient(make_app(), raise_server_exceptions=False)
