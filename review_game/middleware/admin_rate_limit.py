from __future__ import annotations

import time
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..observability.logging import get_logger
from ..problem_details import problem_response
from ..services.request_utils import client_ip
from ..settings import settings

ADMIN_PREFIX = "/api/admin/"

log = get_logger("admin_rate_limit")


@dataclass
class _Bucket:
    window_start: float
    count: int


class AdminRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Fixed-window rate limit for admin endpoints, keyed by client IP.

    In-memory per process; a horizontal deployment multiplies the budget.
    """

    def __init__(self, app, *, max_requests: int | None = None, window_seconds: int | None = None):
        super().__init__(app)
        self._max = max(1, int(max_requests or settings.admin_rate_limit_requests or 20))
        self._window = float(max(1, int(window_seconds or settings.admin_rate_limit_window_seconds or 900)))
        self._buckets: dict[str, _Bucket] = {}

    def _sweep(self, now: float) -> None:
        stale = [k for k, b in self._buckets.items() if (now - b.window_start) >= self._window]
        for k in stale:
            self._buckets.pop(k, None)

    async def dispatch(self, request: Request, call_next) -> Response:
        path = str(getattr(request.url, "path", "") or "")
        if not path.startswith(ADMIN_PREFIX) or request.method.upper() == "OPTIONS":
            return await call_next(request)

        key = client_ip(request)
        now = time.time()

        b = self._buckets.get(key)
        if not b or (now - b.window_start) >= self._window:
            if len(self._buckets) > 10_000:
                self._sweep(now)
            b = _Bucket(window_start=now, count=0)
            self._buckets[key] = b

        b.count += 1
        if b.count > self._max:
            retry_after = int(max(1.0, self._window - (now - b.window_start)))
            log.warning("admin_rate_limited", client_ip=key, path=path, retry_after=retry_after)
            return problem_response(
                request=request,
                status_code=429,
                detail="Too many requests",
                headers={"Retry-After": str(retry_after)},
            )

        return await call_next(request)
