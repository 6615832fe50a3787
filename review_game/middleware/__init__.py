from __future__ import annotations

from .admin_rate_limit import AdminRateLimitMiddleware
from .access_log import AccessLogMiddleware
from .auth import AuthMiddleware
from .request_context import RequestContextMiddleware

__all__ = [
    "AccessLogMiddleware",
    "AdminRateLimitMiddleware",
    "AuthMiddleware",
    "RequestContextMiddleware",
]
