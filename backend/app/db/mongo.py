"""MongoDB connection management.

One ``MongoDatabase`` wraps the process-wide asyncio client. The client
is shared by all requests; route code gets short-lived handles from
``database.db`` and never holds the connection exclusively.
"""

from typing import Any, Callable, Optional
from urllib.parse import urlsplit

from pymongo import AsyncMongoClient
from pymongo.errors import PyMongoError

from backend.app.core.config import DEFAULT_DATABASE_NAME, Settings
from backend.app.core.logging import get_logger
from backend.app.exceptions import DatabaseConnectionError

logger = get_logger(__name__)


def _describe_host(uri: str) -> str:
    """Host part of a connection string without credentials."""
    try:
        netloc = urlsplit(uri).netloc
    except ValueError:
        return "unknown"
    return netloc.rsplit("@", 1)[-1] or "unknown"


class MongoDatabase:
    """Lifecycle wrapper around ``pymongo.AsyncMongoClient``.

    ``connect()`` creates the client and pings the server so an
    unreachable database is detected before the process starts serving.
    """

    def __init__(
        self,
        uri: str,
        server_selection_timeout_ms: int = 5000,
        client_factory: Callable[..., Any] = AsyncMongoClient,
    ):
        """Initialize without connecting.

        Args:
            uri: MongoDB connection string
            server_selection_timeout_ms: Bound on how long connect() may wait
            client_factory: Client constructor, injectable for tests
        """
        self.uri = uri
        self.server_selection_timeout_ms = server_selection_timeout_ms
        self._client_factory = client_factory
        self._client: Optional[Any] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "MongoDatabase":
        return cls(
            settings.mongodb_uri,
            server_selection_timeout_ms=settings.mongodb_server_selection_timeout_ms,
        )

    @property
    def host(self) -> str:
        return _describe_host(self.uri)

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    @property
    def client(self) -> Any:
        if self._client is None:
            raise DatabaseConnectionError("Database is not connected")
        return self._client

    @property
    def db(self) -> Any:
        """Default database named in the URI."""
        return self.client.get_default_database(default=DEFAULT_DATABASE_NAME)

    async def connect(self) -> None:
        """Create the client and verify the server answers.

        Raises:
            DatabaseConnectionError: If the server cannot be reached
        """
        if self._client is not None:
            return

        try:
            client = self._client_factory(
                self.uri,
                serverSelectionTimeoutMS=self.server_selection_timeout_ms,
            )
        except PyMongoError as e:
            raise DatabaseConnectionError(f"MongoDB connection error: {e}") from e

        try:
            await client.admin.command("ping")
        except PyMongoError as e:
            await client.close()
            raise DatabaseConnectionError(f"MongoDB connection error: {e}") from e

        self._client = client
        logger.info(f"MongoDB Connected: {self.host}")

    async def ping(self) -> bool:
        """Check the server answers, without raising."""
        if self._client is None:
            return False
        try:
            await self._client.admin.command("ping")
        except PyMongoError as e:
            logger.warning(f"MongoDB ping failed: {e}")
            return False
        return True

    async def close(self) -> None:
        """Close the client. Safe to call more than once."""
        client, self._client = self._client, None
        if client is None:
            return
        await client.close()
        logger.info("MongoDB connection closed")
