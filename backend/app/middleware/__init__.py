"""Middleware package for the backend admission pipeline."""

from backend.app.middleware.access_log import AccessLogMiddleware
from backend.app.middleware.body_parser import BodyParserMiddleware
from backend.app.middleware.cors import CorsDecision, CorsGateMiddleware, CorsPolicy, cors_options
from backend.app.middleware.error_handler import UnhandledErrorMiddleware
from backend.app.middleware.rate_limit import RateLimiter, RateLimitMiddleware
from backend.app.middleware.request_id import RequestIdMiddleware, get_request_id
from backend.app.middleware.security_headers import SecurityHeadersMiddleware

__all__ = [
    "AccessLogMiddleware",
    "BodyParserMiddleware",
    "CorsDecision",
    "CorsGateMiddleware",
    "CorsPolicy",
    "cors_options",
    "RateLimiter",
    "RateLimitMiddleware",
    "RequestIdMiddleware",
    "get_request_id",
    "SecurityHeadersMiddleware",
    "UnhandledErrorMiddleware",
]
