"""Graceful shutdown coordination.

Shutdown runs in a strict order: stop accepting connections and let
in-flight requests finish, then close the database, then exit. Closing
the database first would break requests that are still running. Every
step is bounded by a timeout and a failing step never keeps the process
from exiting.
"""

import asyncio
from enum import Enum
from typing import Awaitable, Callable

from backend.app.core.logging import get_logger

logger = get_logger(__name__)


class ShutdownState(str, Enum):
    """Process-wide shutdown progress. Transitions only move forward."""
    RUNNING = "running"
    DRAINING = "draining"
    DB_CLOSING = "db_closing"
    TERMINATED = "terminated"


class ShutdownCoordinator:
    """Supervise the serving task and tear down in order.

    Usage:
        coordinator = ShutdownCoordinator(database.close)
        # signal handler: coordinator.request_shutdown("SIGTERM")
        exit_code = await coordinator.run(server.serve())
    """

    def __init__(
        self,
        close_database: Callable[[], Awaitable[None]],
        drain_timeout: float = 30.0,
        close_timeout: float = 10.0,
    ):
        """Initialize the coordinator.

        Args:
            close_database: Coroutine function closing the database
            drain_timeout: Seconds in-flight requests get once draining starts
            close_timeout: Seconds the database close may take
        """
        self._close_database = close_database
        self.drain_timeout = drain_timeout
        self.close_timeout = close_timeout
        self.state = ShutdownState.RUNNING
        self._drain_requested = asyncio.Event()

    @property
    def draining(self) -> bool:
        return self.state is not ShutdownState.RUNNING

    def request_shutdown(self, reason: str = "SIGTERM") -> bool:
        """Enter DRAINING. Only the first request has an effect.

        Returns:
            True if this call started the drain
        """
        if self.state is not ShutdownState.RUNNING:
            return False
        self.state = ShutdownState.DRAINING
        logger.info(f"{reason} received, draining in-flight requests")
        self._drain_requested.set()
        return True

    async def run(self, serving: Awaitable[None]) -> int:
        """Wait for the server to stop, then close the database.

        Args:
            serving: Awaitable that completes once the listener is closed
                and in-flight requests are done

        Returns:
            Process exit code: 1 if the server failed, else 0
        """
        exit_code = await self._wait_for_server(serving)

        self.state = ShutdownState.DB_CLOSING
        await self._close_database_bounded()

        self.state = ShutdownState.TERMINATED
        logger.info("Shutdown complete")
        return exit_code

    async def _wait_for_server(self, serving: Awaitable[None]) -> int:
        server_task = asyncio.ensure_future(serving)
        drain_waiter = asyncio.ensure_future(self._drain_requested.wait())
        try:
            await asyncio.wait(
                {server_task, drain_waiter},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            drain_waiter.cancel()

        if not server_task.done():
            done, _ = await asyncio.wait({server_task}, timeout=self.drain_timeout)
            if not done:
                logger.warning(
                    f"In-flight requests did not finish within {self.drain_timeout}s, "
                    "cancelling the server"
                )
                server_task.cancel()
                await asyncio.wait({server_task})

        # The server may also stop without a signal, e.g. on a startup error
        if self.state is ShutdownState.RUNNING:
            self.state = ShutdownState.DRAINING

        if server_task.cancelled():
            return 0
        exc = server_task.exception()
        if exc is not None:
            logger.error(f"Server error: {exc}", exc_info=exc)
            return 1
        return 0

    async def _close_database_bounded(self) -> None:
        try:
            await asyncio.wait_for(self._close_database(), timeout=self.close_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Database close did not finish within {self.close_timeout}s")
        except Exception as e:
            logger.error(f"Error closing database connection: {e}")
