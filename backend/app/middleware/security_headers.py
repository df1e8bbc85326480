"""Security headers middleware.

Adds a conservative set of HTTP security headers to every response that
passes through the pipeline, including rate limit and CORS rejections.
Headers already set further down the stack are left untouched.
"""

from typing import Iterable, Optional

from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

DEFAULT_CONTENT_SECURITY_POLICY = (
    "default-src 'self';"
    "base-uri 'self';"
    "font-src 'self' https: data:;"
    "form-action 'self';"
    "frame-ancestors 'self';"
    "img-src 'self' data:;"
    "object-src 'none';"
    "script-src 'self';"
    "script-src-attr 'none';"
    "style-src 'self' https: 'unsafe-inline';"
    "upgrade-insecure-requests"
)

DEFAULT_SECURITY_HEADERS = {
    "Content-Security-Policy": DEFAULT_CONTENT_SECURITY_POLICY,
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}


class SecurityHeadersMiddleware:
    """ASGI middleware that injects security headers into responses.

    Implemented as raw ASGI so the headers are added to the response start
    message, whatever produced it.

    Usage:
        app.add_middleware(SecurityHeadersMiddleware)
    """

    def __init__(
        self,
        app: ASGIApp,
        headers: Optional[dict[str, str]] = None,
        exclude: Iterable[str] = (),
    ):
        """Initialize the middleware.

        Args:
            app: The ASGI application
            headers: Header overrides, merged over the defaults
            exclude: Header names to leave out entirely
        """
        self.app = app
        merged = dict(DEFAULT_SECURITY_HEADERS)
        merged.update(headers or {})
        excluded = {name.lower() for name in exclude}
        self.headers = {
            name: value for name, value in merged.items()
            if name.lower() not in excluded
        }

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                response_headers = MutableHeaders(scope=message)
                for name, value in self.headers.items():
                    if name not in response_headers:
                        response_headers[name] = value
            await send(message)

        await self.app(scope, receive, send_with_headers)
