from __future__ import annotations

from http import HTTPStatus
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .observability.context import get_request_id
from .settings import settings

PROBLEM_JSON = "application/problem+json"

# Location prefixes FastAPI adds that clients don't need in a field path.
_LOCATION_ROOTS = ("body", "query", "path", "header")


def _title_for(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Internal Server Error" if status_code >= 500 else "Error"


def problem_response(
    *,
    request: Request,
    status_code: int,
    title: str | None = None,
    detail: str | None = None,
    errors: list[dict[str, Any]] | None = None,
    extensions: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> ORJSONResponse:
    """
    RFC 7807 body: ``type``/``title``/``status`` always, then ``detail``,
    ``instance`` (the request path), ``requestId``, ``errors`` and
    ``extensions`` when present. Server error details are withheld in production.
    """
    status_code = int(status_code)
    body: dict[str, Any] = {"type": "about:blank", "title": title or _title_for(status_code), "status": status_code}

    if detail and not (status_code >= 500 and settings.is_production):
        body["detail"] = str(detail)
    if request.url.path:
        body["instance"] = request.url.path
    rid = get_request_id() or getattr(request.state, "request_id", None)
    if rid:
        body["requestId"] = str(rid)
    if errors:
        body["errors"] = errors
    if extensions:
        body["extensions"] = extensions

    return ORJSONResponse(status_code=status_code, content=body, media_type=PROBLEM_JSON, headers=headers)


def from_http_exception(request: Request, exc: StarletteHTTPException) -> ORJSONResponse:
    """
    Services raise either a plain message or a dict detail such as
    ``{"error": ..., "message": ..., "upgrade_required": True}``. The dict's
    ``error`` becomes the title, ``message`` the detail, and the whole dict
    is carried as extensions so clients keep fields like ``upgrade_url``.
    """
    status_code = int(exc.status_code or 500)
    raw = exc.detail
    title: str | None = None
    detail: str | None = None
    extensions: dict[str, Any] | None = None

    if isinstance(raw, dict):
        extensions = raw
        title = raw.get("error") if isinstance(raw.get("error"), str) else None
        msg = raw.get("message")
        detail = msg.strip() if isinstance(msg, str) and msg.strip() else None
    elif raw is not None:
        detail = str(raw)

    if status_code == 404:
        title = title or "Not Found"
        detail = detail or "Route not found"

    return problem_response(
        request=request,
        status_code=status_code,
        title=title,
        detail=detail,
        extensions=extensions,
        headers=getattr(exc, "headers", None),
    )


def from_validation_error(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    errors: list[dict[str, Any]] = []
    for e in exc.errors():
        loc = list(e.get("loc") or ())
        errors.append(
            {
                "location": loc,
                "path": ".".join(str(x) for x in loc if x not in _LOCATION_ROOTS),
                "message": e.get("msg", "Invalid value"),
                "type": e.get("type"),
            }
        )
    return problem_response(
        request=request,
        status_code=422,
        title="Validation Failed",
        detail="Request validation failed",
        errors=errors,
    )
