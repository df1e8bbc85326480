"""CORS policy evaluation and middleware.

The policy decides, once per request and before any route logic, whether
a cross-origin call is permitted. Allowed cross-origin calls always get
credentialed access (cookies and Authorization headers), so the allow-list
is the only thing standing between a foreign page and a user's session in
production.

``CorsGateMiddleware`` rejects denied origins with a terminal 403. The
response headers and preflight answers for allowed origins come from
Starlette's ``CORSMiddleware``, configured by ``cors_options``.
"""

from dataclasses import dataclass
from typing import Any, Iterable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from backend.app.core.config import Settings
from backend.app.core.logging import get_log_context, get_logger
from backend.app.exceptions import CorsOriginError

logger = get_logger(__name__)

DEFAULT_ALLOW_METHODS = ("GET", "HEAD", "PUT", "PATCH", "POST", "DELETE")
DEFAULT_EXPOSE_HEADERS = (
    "X-Request-ID",
    "RateLimit-Limit",
    "RateLimit-Remaining",
    "RateLimit-Reset",
    "X-RateLimit-Limit",
    "X-RateLimit-Remaining",
    "X-RateLimit-Reset",
    "Retry-After",
)

# Outside production every origin is echoed back
ANY_ORIGIN_REGEX = ".*"


@dataclass(frozen=True)
class CorsDecision:
    """Outcome of evaluating one request's origin."""
    allowed: bool
    allow_credentials: bool


ALLOW = CorsDecision(allowed=True, allow_credentials=True)
DENY = CorsDecision(allowed=False, allow_credentials=False)


class CorsPolicy:
    """Decides whether an origin may call the API.

    Rules, in order:
    1. No Origin header (same-origin, curl, server-to-server): allow
    2. Origin in the allow-list: allow, in every mode
    3. Any mode other than production: allow
    4. Otherwise: deny
    """

    def __init__(self, allowed_origins: Iterable[str], production: bool):
        self.allowed_origins = frozenset(allowed_origins)
        self.production = production

    @classmethod
    def from_settings(cls, settings: Settings) -> "CorsPolicy":
        return cls(settings.cors_allowed_origins, production=settings.is_production)

    def evaluate(self, origin: Optional[str]) -> CorsDecision:
        if not origin:
            return ALLOW
        if origin in self.allowed_origins:
            return ALLOW
        if not self.production:
            return ALLOW
        return DENY


def cors_options(
    policy: CorsPolicy,
    allow_methods: Iterable[str] = DEFAULT_ALLOW_METHODS,
    expose_headers: Iterable[str] = DEFAULT_EXPOSE_HEADERS,
    max_age: int = 600,
) -> dict[str, Any]:
    """Keyword arguments for Starlette's ``CORSMiddleware`` matching ``policy``."""
    options: dict[str, Any] = {
        "allow_credentials": True,
        "allow_methods": list(allow_methods),
        "allow_headers": ["*"],
        "expose_headers": list(expose_headers),
        "max_age": max_age,
    }
    if policy.production:
        options["allow_origins"] = sorted(policy.allowed_origins)
    else:
        options["allow_origin_regex"] = ANY_ORIGIN_REGEX
    return options


class CorsGateMiddleware(BaseHTTPMiddleware):
    """Reject requests whose origin the policy denies.

    Denied origins get a terminal 403 envelope, preflights included, and
    never reach the routes.
    """

    def __init__(self, app, policy: CorsPolicy):
        super().__init__(app)
        self.policy = policy

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        origin = request.headers.get("Origin")
        if self.policy.evaluate(origin).allowed:
            return await call_next(request)

        logger.warning(
            f"Blocked cross-origin request from {origin}",
            extra=get_log_context(
                request_id=getattr(request.state, "request_id", None),
                path=request.url.path,
                method=request.method,
            ),
        )
        error = CorsOriginError(origin)
        return JSONResponse(status_code=error.status_code, content=error.to_response())
