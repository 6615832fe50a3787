from __future__ import annotations

import re
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from ..observability.context import request_id_var

REQUEST_ID_HEADER = "X-Request-Id"

# Ids from the frontend proxy are UUIDs or short trace ids; anything else
# (whitespace, quotes, control chars, oversized) is replaced.
_INBOUND_ID_RE = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")


def resolve_request_id(inbound: str | None) -> str:
    candidate = str(inbound or "").strip()
    return candidate if _INBOUND_ID_RE.match(candidate) else str(uuid.uuid4())


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Outermost middleware: one request id per request, visible to logs, problem bodies and the response header."""

    async def dispatch(self, request: Request, call_next):
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
