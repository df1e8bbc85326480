"""Process entry point: startup sequencing and graceful shutdown.

The listening port is bound only after the database answers, and the
database is closed only after the listener has drained. Exit codes:

- 0: graceful shutdown completed
- 1: database unreachable, port in use, or the server failed to start
"""

import asyncio
import errno
import math
import signal
import socket
import sys
from types import FrameType
from typing import Mapping, Optional

import uvicorn
from fastapi import APIRouter

from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.logging import get_logger, setup_logging
from backend.app.core.shutdown import ShutdownCoordinator
from backend.app.db.mongo import MongoDatabase
from backend.app.exceptions import DatabaseConnectionError
from backend.app.main import create_app

logger = get_logger(__name__)


def bind_socket(host: str, port: int) -> socket.socket:
    """Bind a TCP socket without listening yet.

    Raises:
        OSError: If the address cannot be bound (EADDRINUSE for a taken port)
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


class DrainingServer(uvicorn.Server):
    """uvicorn server that reports termination signals to a coordinator.

    uvicorn already stops accepting connections and waits for in-flight
    requests once ``should_exit`` is set; this subclass makes the
    coordinator the owner of the shutdown state.
    """

    def __init__(self, config: uvicorn.Config, coordinator: ShutdownCoordinator, settings: Settings):
        super().__init__(config)
        self.coordinator = coordinator
        self.settings = settings
        self.bound_port: Optional[int] = None

    def handle_exit(self, sig: int, frame: Optional[FrameType]) -> None:
        self.coordinator.request_shutdown(signal.Signals(sig).name)
        # A second Ctrl+C skips the drain
        if self.should_exit and sig == signal.SIGINT:
            self.force_exit = True
        else:
            self.should_exit = True

    async def startup(self, sockets: Optional[list[socket.socket]] = None) -> None:
        await super().startup(sockets=sockets)
        if self.started:
            logger.info(
                f"Server running on port {self.bound_port or self.settings.port} "
                f"in {self.settings.node_env} mode"
            )


class BackendServer:
    """Connects the database, binds the port and serves until drained."""

    def __init__(
        self,
        settings: Settings,
        database: Optional[MongoDatabase] = None,
        routers: Optional[Mapping[str, APIRouter]] = None,
    ):
        self.settings = settings
        self.database = database or MongoDatabase.from_settings(settings)
        self.routers = routers
        self.coordinator = ShutdownCoordinator(
            self.database.close,
            drain_timeout=settings.shutdown_drain_timeout,
            close_timeout=settings.shutdown_close_timeout,
        )
        self.server: Optional[DrainingServer] = None
        self.port: Optional[int] = None

    async def run(self) -> int:
        """Run the startup sequence and serve until shutdown.

        Returns:
            Process exit code
        """
        try:
            await self.database.connect()
        except DatabaseConnectionError as e:
            logger.error(e.message)
            return 1

        try:
            sock = bind_socket(self.settings.host, self.settings.port)
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                logger.error(f"Port {self.settings.port} is already in use!")
            else:
                logger.error(f"Server error: {e}")
            await self.database.close()
            return 1

        self.port = sock.getsockname()[1]

        app = create_app(self.settings, database=self.database, routers=self.routers)
        config = uvicorn.Config(
            app,
            host=self.settings.host,
            port=self.port,
            log_config=None,
            access_log=False,
            proxy_headers=self.settings.trust_proxy,
            timeout_graceful_shutdown=math.ceil(self.settings.shutdown_drain_timeout),
        )
        self.server = DrainingServer(config, self.coordinator, self.settings)
        self.server.bound_port = self.port

        exit_code = await self.coordinator.run(self.server.serve(sockets=[sock]))
        if not self.server.started:
            logger.error("Server failed to start")
            exit_code = 1
        return exit_code

    def request_shutdown(self) -> None:
        """Trigger the same drain a SIGTERM would."""
        if self.server is not None:
            self.server.handle_exit(signal.SIGTERM, None)
        else:
            self.coordinator.request_shutdown("shutdown request")


def main() -> None:
    setup_logging(default_settings)
    exit_code = asyncio.run(BackendServer(default_settings).run())
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
