"""Unhandled exception middleware.

Sits inside the CORS stage so the 500 envelope of a crashing route still
passes back through CORS, access logging, security headers and request id.
"""

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from backend.app.core.logging import get_logger
from backend.app.middleware.request_id import get_request_id

logger = get_logger(__name__)


def unhandled_error_response(request: Request, exc: Exception, production: bool) -> JSONResponse:
    """Log ``exc`` and build the 500 envelope.

    Security notes:
    - Never returns raw traceback to client
    - Logs full details server-side for debugging
    - Outside production returns the exception message and type
    """
    request_id = get_request_id(request)

    logger.error(
        f"Unhandled exception [request_id={request_id}]",
        exc_info=exc,
        extra={
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
            "exception_type": type(exc).__name__,
        }
    )

    content = {
        "success": False,
        "error": "Internal server error",
        "requestId": request_id,
    }
    if not production:
        content["message"] = str(exc)
        content["exceptionType"] = type(exc).__name__

    return JSONResponse(status_code=500, content=content)


class UnhandledErrorMiddleware:
    """ASGI middleware turning uncaught route exceptions into the 500 envelope.

    Exceptions raised after the response has started are re-raised, there
    is no way to replace a response that is already on the wire.
    """

    def __init__(self, app: ASGIApp, production: bool = False):
        self.app = app
        self.production = production

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def tracking_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive, tracking_send)
        except Exception as exc:
            if response_started:
                raise
            response = unhandled_error_response(Request(scope), exc, self.production)
            await response(scope, receive, send)
