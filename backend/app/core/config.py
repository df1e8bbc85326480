from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_MONGODB_URI = "mongodb://localhost:27017/employee_attendance"
DEFAULT_DATABASE_NAME = "employee_attendance"

# Directory of the backend package, relative upload paths resolve against it
BACKEND_DIR = Path(__file__).resolve().parents[2]
DEFAULT_UPLOADS_DIR = BACKEND_DIR / "uploads"

# Local frontends are always allowed, FRONTEND_URL is appended when set.
DEV_CORS_ORIGINS = (
    "http://localhost:3000",
    "http://localhost:5173",
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    The instance is resolved once at startup and handed to the components
    that need it, nothing re-reads the environment per request.
    """

    # Environment mode (development | production | test)
    node_env: str = "development"

    # MongoDB settings
    mongodb_uri: str = DEFAULT_MONGODB_URI
    mongodb_server_selection_timeout_ms: int = 5000

    # Listener settings
    host: str = "0.0.0.0"
    port: int = 5000

    # CORS settings
    frontend_url: str = ""
    cors_max_age: int = 600  # Cache preflight requests for 10 minutes

    # Rate limiting settings
    rate_limit_window_seconds: int = 15 * 60
    rate_limit_max_requests: int = 100
    rate_limit_message: str = "Too many requests from this IP, please try again later."
    auth_rate_limit_max_requests: int = 5
    auth_rate_limit_message: str = "Too many login attempts, please try again later."
    rate_limit_fail_closed: bool = True  # Deny requests when Redis is unavailable
    trust_proxy: bool = False  # Use X-Forwarded-For for the client address

    # Redis settings (optional, shares limiter counters between processes)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"

    # Body parser settings
    body_limit_bytes: int = 10 * 1024 * 1024  # 10MB, same for JSON and forms

    # Static file settings
    uploads_dir: Path = DEFAULT_UPLOADS_DIR

    # Collaborator route modules are looked up in this package
    routes_package: str = "routes"

    # Logging settings
    log_level: str | None = None  # Defaults to DEBUG in development, INFO otherwise
    log_format: str = "text"  # text | json

    # Graceful shutdown settings (seconds)
    shutdown_drain_timeout: float = 30.0
    shutdown_close_timeout: float = 10.0

    @field_validator("node_env", mode="before")
    @classmethod
    def normalize_node_env(cls, v: str | None) -> str:
        if v is None:
            return "development"
        v = str(v).strip().lower()
        return v or "development"

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("text", "json"):
            raise ValueError("log_format must be 'text' or 'json'")
        return v

    @field_validator(
        "rate_limit_window_seconds",
        "rate_limit_max_requests",
        "auth_rate_limit_max_requests",
        "body_limit_bytes",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate limiter and body limits are positive."""
        if v < 1:
            raise ValueError("Limit values must be at least 1")
        return v

    @field_validator("uploads_dir")
    @classmethod
    def anchor_uploads_dir(cls, v: Path) -> Path:
        """Resolve relative upload directories against the backend package."""
        if not v.is_absolute():
            v = BACKEND_DIR / v
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 0 <= v <= 65535:
            raise ValueError("port must be between 0 and 65535")
        return v

    @field_validator("shutdown_drain_timeout", "shutdown_close_timeout")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @property
    def is_production(self) -> bool:
        return self.node_env == "production"

    @property
    def is_development(self) -> bool:
        return self.node_env == "development"

    @property
    def cors_allowed_origins(self) -> list[str]:
        """Static CORS allow-list: local frontends plus FRONTEND_URL."""
        origins = list(DEV_CORS_ORIGINS)
        frontend_url = self.frontend_url.strip().rstrip("/")
        if frontend_url and frontend_url not in origins:
            origins.append(frontend_url)
        return origins

    @property
    def effective_log_level(self) -> str:
        if self.log_level:
            return self.log_level.upper()
        return "DEBUG" if self.is_development else "INFO"

    @property
    def uploads_leaves_dir(self) -> Path:
        return self.uploads_dir / "leaves"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
