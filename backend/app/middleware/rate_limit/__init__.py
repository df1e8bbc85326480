"""Rate limiting middleware for the backend.

This module bounds the number of requests a single client may issue
within a fixed time window. One middleware instance is mounted per
limiter rule: the general limiter covers every path under ``/api`` and
the auth limiter covers the login and registration endpoints, counting
only failed attempts.
"""

import hashlib
import ipaddress
from typing import Iterable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from backend.app.core.config import Settings
from backend.app.core.logging import get_log_context, get_logger
from backend.app.exceptions import RateLimitExceededError

# Re-export models
from backend.app.middleware.rate_limit.models import (
    RateLimitEntry,
    RateLimitResult,
    RateLimitRule,
)

# Re-export backends
from backend.app.middleware.rate_limit.backends import (
    InMemoryRateLimiter,
    RateLimitBackend,
    RedisRateLimiter,
)

logger = get_logger(__name__)

__all__ = [
    # Models
    "RateLimitResult",
    "RateLimitEntry",
    "RateLimitRule",
    # Backends
    "RateLimitBackend",
    "InMemoryRateLimiter",
    "RedisRateLimiter",
    # Main classes
    "RateLimiter",
    "RateLimitMiddleware",
    "general_rule",
    "auth_rule",
    "UNKNOWN_CLIENT",
]

# Shared bucket for requests whose client address cannot be determined
UNKNOWN_CLIENT = "unknown"


def general_rule(settings: Settings) -> RateLimitRule:
    """Limiter applied to all API traffic."""
    return RateLimitRule(
        name="general",
        window_seconds=settings.rate_limit_window_seconds,
        max_requests=settings.rate_limit_max_requests,
        message=settings.rate_limit_message,
        standard_headers=True,
        legacy_headers=False,
    )


def auth_rule(settings: Settings) -> RateLimitRule:
    """Limiter applied to login and registration, counting failures only."""
    return RateLimitRule(
        name="auth",
        window_seconds=settings.rate_limit_window_seconds,
        max_requests=settings.auth_rate_limit_max_requests,
        message=settings.auth_rate_limit_message,
        skip_successful_requests=True,
        standard_headers=False,
        legacy_headers=True,
    )


class RateLimiter:
    """Rate limiter for one rule, backed by memory or Redis.

    The limiter owns all counter state for its rule. It is created by the
    application factory and handed to the middleware, so tests can drive
    it directly without a running listener.
    """

    def __init__(
        self,
        rule: RateLimitRule,
        use_redis: bool = False,
        redis_url: str = "redis://localhost:6379/0",
        fail_closed: bool = True,
        backend: Optional[RateLimitBackend] = None,
    ):
        """Initialize rate limiter with appropriate backend.

        Args:
            rule: Window, maximum and response policy of this limiter
            use_redis: Share counters through Redis
            redis_url: Redis connection URL
            fail_closed: Deny requests when Redis is unavailable
            backend: Explicit backend, overrides use_redis
        """
        self.rule = rule

        if backend is not None:
            self._backend = backend
        elif use_redis:
            self._backend = RedisRateLimiter(
                redis_url=redis_url,
                window_seconds=rule.window_seconds,
                max_requests=rule.max_requests,
                fail_closed=fail_closed,
            )
            logger.info(f"Using Redis rate limiter backend for '{rule.name}'")
        else:
            self._backend = InMemoryRateLimiter(
                window_seconds=rule.window_seconds,
                max_requests=rule.max_requests,
            )
            logger.debug(f"Using in-memory rate limiter backend for '{rule.name}'")

    @classmethod
    def from_settings(cls, rule: RateLimitRule, settings: Settings) -> "RateLimiter":
        return cls(
            rule,
            use_redis=settings.redis_enabled,
            redis_url=settings.redis_url,
            fail_closed=settings.rate_limit_fail_closed,
        )

    @property
    def backend(self) -> RateLimitBackend:
        return self._backend

    def key_for(self, client_address: str) -> str:
        """Build the storage key for a client address.

        Addresses are hashed so raw IPs are never kept in memory or Redis.
        """
        if client_address == UNKNOWN_CLIENT:
            return f"ratelimit:{self.rule.name}:{UNKNOWN_CLIENT}"
        digest = hashlib.sha256(client_address.encode()).hexdigest()[:32]
        return f"ratelimit:{self.rule.name}:ip:{digest}"

    async def hit(self, key: str) -> RateLimitResult:
        """Count a request and report whether it is admitted."""
        return await self._backend.hit(key)

    async def release(self, key: str, result: RateLimitResult) -> None:
        """Return the slot taken by an admitted request."""
        if result.allowed and result.window_start is not None:
            await self._backend.release(key, result.window_start)

    async def cleanup(self) -> None:
        """Clean up expired entries."""
        await self._backend.cleanup()

    async def close(self) -> None:
        await self._backend.close()


def resolve_client_address(request: Request, trust_proxy: bool = False) -> str:
    """Return the normalized client IP, or ``UNKNOWN_CLIENT``.

    Only the peer address is used unless ``trust_proxy`` is set, in which
    case the first ``X-Forwarded-For`` hop wins. Anything that does not
    parse as an IP address lands in the shared unknown bucket instead of
    getting a bucket of its own.
    """
    candidate: Optional[str] = None
    if trust_proxy:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            candidate = forwarded.split(",")[0].strip()
    if candidate is None and request.client is not None:
        candidate = request.client.host

    if not candidate:
        return UNKNOWN_CLIENT
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return UNKNOWN_CLIENT


def _path_matches(path: str, prefixes: Iterable[str]) -> bool:
    for prefix in prefixes:
        prefix = prefix.rstrip("/")
        if path == prefix or path.startswith(prefix + "/"):
            return True
    return False


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce one limiter rule on a set of path prefixes.

    Rejected requests get a 429 JSON envelope with ``Retry-After``. When
    the rule skips successful requests the counted slot is given back once
    the response turns out to be a success (status < 400); failed
    responses and exceptions keep it.
    """

    def __init__(
        self,
        app,
        limiter: RateLimiter,
        paths: Iterable[str] = ("/api",),
        trust_proxy: bool = False,
    ):
        super().__init__(app)
        self.limiter = limiter
        self.rule = limiter.rule
        self.paths = tuple(paths)
        self.trust_proxy = trust_proxy

    def _apply_headers(self, response: Response, result: RateLimitResult) -> None:
        if self.rule.standard_headers:
            response.headers["RateLimit-Limit"] = str(result.limit)
            response.headers["RateLimit-Remaining"] = str(result.remaining)
            response.headers["RateLimit-Reset"] = str(result.seconds_until_reset())
        if self.rule.legacy_headers:
            response.headers["X-RateLimit-Limit"] = str(result.limit)
            response.headers["X-RateLimit-Remaining"] = str(result.remaining)
            response.headers["X-RateLimit-Reset"] = str(result.reset_time)

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        if not _path_matches(request.url.path, self.paths):
            return await call_next(request)

        client_address = resolve_client_address(request, self.trust_proxy)
        key = self.limiter.key_for(client_address)
        result = await self.limiter.hit(key)

        if not result.allowed:
            retry_after = result.retry_after or self.rule.window_seconds
            logger.warning(
                "Rate limit exceeded",
                extra=get_log_context(
                    request_id=getattr(request.state, "request_id", None),
                    client_ip=client_address,
                    limiter=self.rule.name,
                    path=request.url.path,
                ),
            )
            error = RateLimitExceededError(self.rule.message, retry_after=retry_after)
            response = JSONResponse(status_code=error.status_code, content=error.to_response())
            self._apply_headers(response, result)
            response.headers["Retry-After"] = str(retry_after)
            return response

        # Exceptions propagate without a release: a crash is not a success
        response = await call_next(request)

        if self.rule.skip_successful_requests and response.status_code < 400:
            await self.limiter.release(key, result)

        self._apply_headers(response, result)
        return response
