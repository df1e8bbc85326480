"""HTTP access logging middleware.

Writes one line per admitted request to the ``backend.access`` logger,
in the short ``dev`` format during development and in the Apache
``combined`` format everywhere else.
"""

import time
from datetime import datetime, timezone

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from backend.app.core.logging import get_logger

access_logger = get_logger("backend.access")

FORMAT_DEV = "dev"
FORMAT_COMBINED = "combined"


def _request_target(request: Request) -> str:
    target = request.url.path
    if request.url.query:
        target = f"{target}?{request.url.query}"
    return target


def format_dev(request: Request, status_code: int, duration_ms: float, length: str) -> str:
    return f"{request.method} {_request_target(request)} {status_code} {duration_ms:.3f} ms - {length}"


def format_combined(request: Request, status_code: int, length: str, now: datetime) -> str:
    remote_addr = request.client.host if request.client else "-"
    http_version = request.scope.get("http_version", "1.1")
    referrer = request.headers.get("Referer") or request.headers.get("Referrer") or "-"
    user_agent = request.headers.get("User-Agent", "-")
    timestamp = now.strftime("%d/%b/%Y:%H:%M:%S +0000")
    return (
        f'{remote_addr} - - [{timestamp}] '
        f'"{request.method} {_request_target(request)} HTTP/{http_version}" '
        f'{status_code} {length} "{referrer}" "{user_agent}"'
    )


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and timing of every request."""

    def __init__(self, app, log_format: str = FORMAT_COMBINED):
        super().__init__(app)
        if log_format not in (FORMAT_DEV, FORMAT_COMBINED):
            raise ValueError(f"Unknown access log format: {log_format}")
        self.log_format = log_format

    def _log(self, request: Request, status_code: int, started: float, length: str) -> None:
        duration_ms = (time.perf_counter() - started) * 1000
        if self.log_format == FORMAT_DEV:
            line = format_dev(request, status_code, duration_ms, length)
        else:
            line = format_combined(request, status_code, length, datetime.now(timezone.utc))

        access_logger.info(
            line,
            extra={
                "request_id": getattr(request.state, "request_id", None),
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "duration_ms": round(duration_ms, 3),
            },
        )

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._log(request, 500, started, "-")
            raise

        self._log(request, response.status_code, started, response.headers.get("content-length", "-"))
        return response
