"""Request body parsing middleware.

This middleware limits the size of incoming request bodies and rejects
malformed JSON before the request reaches any route.

Enforces size limits for both Content-Length and chunked transfer encoding.
"""

import json
from typing import Optional

from fastapi.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from backend.app.exceptions import BackendError, MalformedBodyError, PayloadTooLargeError


class SizeLimitedStream:
    """A stream wrapper that enforces size limits during reading.

    This prevents chunked transfer encoding bypass by counting bytes
    as they are read from the stream.
    """

    class SizeExceededError(Exception):
        """Raised when request body exceeds size limit."""

    def __init__(self, receive: Receive, max_size: int):
        """Initialize the size-limited stream.

        Args:
            receive: The ASGI receive callable
            max_size: Maximum number of bytes allowed
        """
        self._receive = receive
        self._max_size = max_size
        self._bytes_read = 0

    async def receive(self) -> Message:
        """Receive and enforce size limit.

        Raises:
            SizeExceededError: If body size exceeds max_size
        """
        message = await self._receive()

        if message["type"] == "http.request":
            self._bytes_read += len(message.get("body", b""))
            if self._bytes_read > self._max_size:
                raise self.SizeExceededError(
                    f"Request body too large. Maximum allowed: {self._max_size} bytes"
                )

        return message


def _header(scope: Scope, name: bytes) -> Optional[str]:
    for key, value in scope.get("headers", []):
        if key.lower() == name:
            return value.decode("latin-1")
    return None


def _is_json(content_type: Optional[str]) -> bool:
    if not content_type:
        return False
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")


class BodyParserMiddleware:
    """ASGI middleware for request body limits and JSON validation.

    - Bodies larger than ``max_body_size`` are answered with 413, using
      Content-Length up front and a counting stream for chunked uploads.
    - Non-empty JSON bodies are buffered and parsed once; invalid JSON is
      answered with 400. The buffered body is replayed to the route.

    Usage:
        app.add_middleware(BodyParserMiddleware, max_body_size=10*1024*1024)
    """

    def __init__(self, app: ASGIApp, max_body_size: int = 10 * 1024 * 1024):
        """Initialize the middleware.

        Args:
            app: The ASGI application
            max_body_size: Maximum allowed body size in bytes (default: 10MB)
        """
        self.app = app
        self.max_body_size = max_body_size

    async def _reject(self, error: BackendError, scope: Scope, receive: Receive, send: Send) -> None:
        response = JSONResponse(status_code=error.status_code, content=error.to_response())
        await response(scope, receive, send)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        # Check Content-Length header first (fast path for most requests)
        content_length = _header(scope, b"content-length")
        if content_length:
            try:
                if int(content_length) > self.max_body_size:
                    await self._reject(PayloadTooLargeError(self.max_body_size), scope, receive, send)
                    return
            except ValueError:
                # Invalid Content-Length, the stream check still applies
                pass

        limited_receive = SizeLimitedStream(receive, self.max_body_size).receive

        if _is_json(_header(scope, b"content-type")):
            await self._handle_json(scope, limited_receive, send)
            return

        response_started = False

        async def tracking_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, limited_receive, tracking_send)
        except SizeLimitedStream.SizeExceededError:
            if response_started:
                raise
            await self._reject(PayloadTooLargeError(self.max_body_size), scope, receive, send)

    async def _handle_json(self, scope: Scope, receive: Receive, send: Send) -> None:
        chunks = []
        try:
            while True:
                message = await receive()
                if message["type"] != "http.request":
                    # Client went away before sending the whole body
                    return
                chunks.append(message.get("body", b""))
                if not message.get("more_body", False):
                    break
        except SizeLimitedStream.SizeExceededError:
            await self._reject(PayloadTooLargeError(self.max_body_size), scope, receive, send)
            return

        body = b"".join(chunks)
        if body.strip():
            try:
                json.loads(body)
            except ValueError:
                await self._reject(MalformedBodyError(), scope, receive, send)
                return

        body_sent = False

        async def replay_receive() -> Message:
            nonlocal body_sent
            if not body_sent:
                body_sent = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await receive()

        await self.app(scope, replay_receive, send)
