from __future__ import annotations

import re

from fastapi import HTTPException, Request
from starlette.middleware.base import BaseHTTPMiddleware

from ..auth.cognito import CognitoAuthError, verify_bearer_token
from ..observability.logging import get_logger
from ..problem_details import problem_response

# Game-play endpoints used by student devices without an account.
_PUBLIC_PATTERNS = (
    re.compile(r"^/api/games/[^/]+/teams/[^/]+/claim$"),
    re.compile(r"^/api/games/[^/]+/final-jeopardy/(wager|answer)$"),
)


def is_public_path(path: str) -> bool:
    # "GET /" health is public.
    if path == "/":
        return True

    # Stripe authenticates with its signature header.
    if path == "/api/webhooks/stripe":
        return True

    # Scheduled jobs authenticate with CRON_SECRET in the route.
    if path.startswith("/api/cron/"):
        return True

    return any(p.match(path) for p in _PUBLIC_PATTERNS)


async def require_auth(request: Request):
    path = request.url.path

    # Let CORS preflight through without auth.
    if request.method.upper() == "OPTIONS":
        return

    if not path.startswith("/api/"):
        return

    if is_public_path(path):
        return

    auth = request.headers.get("authorization")
    if not auth:
        raise HTTPException(status_code=401, detail="Unauthorized")

    parts = str(auth).split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        user = verify_bearer_token(parts[1].strip())
    except CognitoAuthError as e:
        raise HTTPException(status_code=int(getattr(e, "status_code", 401)), detail=str(e))

    request.state.user = user


class AuthMiddleware(BaseHTTPMiddleware):
    """
    Bearer token enforcement for /api/*.

    Added before CORSMiddleware so CORS wraps auth failures too.
    """

    async def dispatch(self, request: Request, call_next):
        log = get_logger("auth_middleware")
        try:
            await require_auth(request)
        except HTTPException as exc:
            status_code = int(exc.status_code or 401)
            if status_code >= 500:
                log.error("auth_middleware_error", status_code=status_code, path=request.url.path)
            else:
                log.info("auth_middleware_denied", status_code=status_code, path=request.url.path)
            return problem_response(
                request=request,
                status_code=status_code,
                title="Unauthorized" if status_code == 401 else None,
                detail=str(exc.detail) if isinstance(exc.detail, str) else None,
            )
        return await call_next(request)
