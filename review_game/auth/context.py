from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, Request

from ..observability.logging import get_logger
from ..repositories import profiles_repo
from ..services import impersonation

log = get_logger("request_context")


@dataclass(frozen=True)
class RequestContext:
    """
    Who is calling and on whose behalf.

    ``effective_user_id`` is the impersonated user during an active
    impersonation session and the caller otherwise.
    """

    user: Any
    profile: dict[str, Any]
    effective_user_id: str
    admin_user_id: str | None = None
    is_impersonating: bool = False
    impersonated_user_id: str | None = None
    session_id: str | None = None
    effective_profile: dict[str, Any] | None = None

    @property
    def user_id(self) -> str:
        return str(self.profile.get("id") or "")

    @property
    def acting_profile(self) -> dict[str, Any]:
        return self.effective_profile or self.profile


def _bearer_user(request: Request):
    user = getattr(request.state, "user", None)
    sub = str(getattr(user, "sub", "") or "").strip() if user else ""
    if not sub:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user, sub


def _is_admin(profile: dict[str, Any] | None) -> bool:
    return bool(profile) and str(profile.get("role") or "") == "admin" and profile.get("is_active") is not False


def require_user(request: Request) -> RequestContext:
    user, sub = _bearer_user(request)
    email = str(getattr(user, "email", "") or "").strip().lower() or None
    username = str(getattr(user, "username", "") or "").strip() or None
    profile = profiles_repo.ensure_profile(user_id=sub, email=email, full_name=username)

    if profile.get("is_active") is False:
        log.info("suspended_user_denied", user_id=sub, path=request.url.path)
        raise HTTPException(status_code=403, detail="Account suspended")

    if _is_admin(profile):
        session = impersonation.get_active_session(sub)
        if session:
            target_id = str(session.get("target_user_id") or "")
            target = profiles_repo.get_profile(target_id)
            if target:
                return RequestContext(
                    user=user,
                    profile=profile,
                    effective_user_id=target_id,
                    admin_user_id=sub,
                    is_impersonating=True,
                    impersonated_user_id=target_id,
                    session_id=str(session.get("id") or ""),
                    effective_profile=target,
                )

    return RequestContext(
        user=user,
        profile=profile,
        effective_user_id=sub,
        admin_user_id=sub if _is_admin(profile) else None,
    )


def require_admin(request: Request) -> RequestContext:
    user, sub = _bearer_user(request)
    profile = profiles_repo.get_profile(sub)
    if not _is_admin(profile):
        log.info("admin_access_denied", user_id=sub, path=request.url.path)
        raise HTTPException(status_code=401, detail="Unauthorized: Admin access required")
    return RequestContext(user=user, profile=profile or {}, effective_user_id=sub, admin_user_id=sub)
