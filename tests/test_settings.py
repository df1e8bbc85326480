from pathlib import Path

import pytest
from pydantic import ValidationError

import backend
from backend.app.core.config import BACKEND_DIR, DEFAULT_MONGODB_URI, DEFAULT_UPLOADS_DIR, Settings


def test_defaults() -> None:
    settings = Settings(_env_file=None)

    assert settings.node_env == "development"
    assert settings.mongodb_uri == DEFAULT_MONGODB_URI
    assert settings.port == 5000
    assert settings.rate_limit_window_seconds == 900
    assert settings.rate_limit_max_requests == 100
    assert settings.auth_rate_limit_max_requests == 5
    assert settings.body_limit_bytes == 10 * 1024 * 1024
    assert settings.uploads_dir == DEFAULT_UPLOADS_DIR
    assert settings.shutdown_drain_timeout == 30.0
    assert settings.shutdown_close_timeout == 10.0


def test_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("NODE_ENV", " Production ")
    monkeypatch.setenv("PORT", "8080")
    monkeypatch.setenv("MONGODB_URI", "mongodb://db:27017/attendance")
    monkeypatch.setenv("TRUST_PROXY", "true")

    settings = Settings(_env_file=None)

    assert settings.node_env == "production"
    assert settings.is_production
    assert not settings.is_development
    assert settings.port == 8080
    assert settings.mongodb_uri == "mongodb://db:27017/attendance"
    assert settings.trust_proxy is True


def test_cors_origins_include_local_frontends() -> None:
    settings = Settings(_env_file=None)

    assert settings.cors_allowed_origins == ["http://localhost:3000", "http://localhost:5173"]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("https://attendance.example.com", "https://attendance.example.com"),
        ("https://attendance.example.com/", "https://attendance.example.com"),
        ("  https://hr.example.com  ", "https://hr.example.com"),
    ],
)
def test_frontend_url_appended_to_cors_origins(monkeypatch, raw: str, expected: str) -> None:
    monkeypatch.setenv("FRONTEND_URL", raw)

    settings = Settings(_env_file=None)

    assert settings.cors_allowed_origins[-1] == expected
    assert len(settings.cors_allowed_origins) == 3


def test_frontend_url_not_duplicated() -> None:
    settings = Settings(_env_file=None, frontend_url="http://localhost:3000")

    assert settings.cors_allowed_origins.count("http://localhost:3000") == 1


@pytest.mark.parametrize(
    ("node_env", "log_level", "expected"),
    [
        ("development", None, "DEBUG"),
        ("production", None, "INFO"),
        ("test", None, "INFO"),
        ("production", "warning", "WARNING"),
    ],
)
def test_effective_log_level(node_env: str, log_level, expected: str) -> None:
    settings = Settings(_env_file=None, node_env=node_env, log_level=log_level)

    assert settings.effective_log_level == expected


def test_uploads_dir_anchored_to_backend_package(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)

    settings = Settings(_env_file=None)

    assert BACKEND_DIR == Path(backend.__file__).resolve().parent
    assert settings.uploads_dir == BACKEND_DIR / "uploads"
    assert not settings.uploads_dir.is_relative_to(tmp_path)


def test_relative_uploads_dir_resolves_against_backend_package(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("UPLOADS_DIR", "files/uploads")

    settings = Settings(_env_file=None)

    assert settings.uploads_dir == BACKEND_DIR / "files" / "uploads"


def test_uploads_leaves_dir() -> None:
    settings = Settings(_env_file=None, uploads_dir="/srv/uploads")

    assert settings.uploads_leaves_dir == Path("/srv/uploads/leaves")


@pytest.mark.parametrize(
    "overrides",
    [
        {"rate_limit_max_requests": 0},
        {"auth_rate_limit_max_requests": -1},
        {"body_limit_bytes": 0},
        {"port": 70000},
        {"shutdown_drain_timeout": 0},
        {"log_format": "xml"},
    ],
)
def test_invalid_values_rejected(overrides) -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **overrides)
