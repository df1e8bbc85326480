"""Core utilities for the backend application."""

from backend.app.core.config import Settings, settings
from backend.app.core.logging import get_logger, setup_logging
from backend.app.core.shutdown import ShutdownCoordinator, ShutdownState

__all__ = [
    "Settings",
    "settings",
    "get_logger",
    "setup_logging",
    "ShutdownCoordinator",
    "ShutdownState",
]
