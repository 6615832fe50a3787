from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import HTTPException

from ..db.dynamodb.errors import DdbConflict
from ..observability.logging import get_logger
from ..repositories import impersonation_repo, profiles_repo
from .audit import log_admin_action
from .request_utils import contains_forbidden_pattern

log = get_logger("impersonation")

SESSION_DURATION = timedelta(minutes=15)
MAX_SESSIONS_PER_HOUR = 5
REASON_MIN_LEN = 10
REASON_MAX_LEN = 500


def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse(value: Any) -> datetime | None:
    s = str(value or "").strip()
    if not s:
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def is_session_active(session: dict[str, Any] | None, *, now: datetime | None = None) -> bool:
    if not session or session.get("ended_at"):
        return False
    expires = _parse(session.get("expires_at"))
    return bool(expires and (now or _now()) < expires)


def get_active_session(admin_user_id: str) -> dict[str, Any] | None:
    now = _now()
    for s in impersonation_repo.list_open_sessions(admin_user_id):
        if is_session_active(s, now=now):
            return s
    return None


def validate_reason(reason: Any) -> str:
    if reason is None or (isinstance(reason, str) and not reason.strip()):
        raise HTTPException(status_code=400, detail="Reason is required")
    if not isinstance(reason, str):
        raise HTTPException(status_code=400, detail="Reason is required")
    r = reason.strip()
    if len(r) < REASON_MIN_LEN:
        raise HTTPException(status_code=400, detail=f"Reason must be at least {REASON_MIN_LEN} characters")
    if len(r) > REASON_MAX_LEN:
        raise HTTPException(status_code=400, detail=f"Reason must be {REASON_MAX_LEN} characters or less")
    if contains_forbidden_pattern(r):
        raise HTTPException(status_code=400, detail="Reason contains invalid characters or patterns")
    return r


def _duration_minutes(started_at: Any, ended: datetime) -> int:
    started = _parse(started_at)
    if not started:
        return 0
    return max(0, int(round((ended - started).total_seconds() / 60.0)))


def _close(session: dict[str, Any], *, ended_by: str) -> dict[str, Any] | None:
    ended = _now()
    return impersonation_repo.end_session(
        session["id"],
        ended_at=_iso(ended),
        duration_minutes=_duration_minutes(session.get("started_at"), ended),
        ended_by=ended_by,
    )


def start_impersonation(
    *,
    admin_user_id: str,
    target_user_id: str,
    reason: Any,
    ip_address: str,
    user_agent: str,
) -> dict[str, Any]:
    clean_reason = validate_reason(reason)

    if target_user_id == admin_user_id:
        raise HTTPException(status_code=400, detail="Cannot impersonate yourself")

    target = profiles_repo.get_profile(target_user_id)
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    if str(target.get("role") or "") == "admin":
        raise HTTPException(status_code=403, detail="Cannot impersonate admin users")
    if target.get("is_active") is False:
        raise HTTPException(status_code=403, detail="Cannot impersonate suspended users")

    now = _now()
    recent = impersonation_repo.list_sessions_started_since(admin_user_id, _iso(now - timedelta(hours=1)))
    if len(recent) >= MAX_SESSIONS_PER_HOUR:
        log.warning("impersonation_rate_limited", admin_user_id=admin_user_id, recent=len(recent))
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded: Maximum {MAX_SESSIONS_PER_HOUR} impersonations per hour",
        )

    # One session per admin at a time.
    for open_session in impersonation_repo.list_open_sessions(admin_user_id):
        try:
            _close(open_session, ended_by="system")
        except DdbConflict:
            continue
        log_admin_action(
            admin_user_id=admin_user_id,
            action_type="end_impersonation_auto",
            target_type="impersonation_session",
            target_id=open_session["id"],
            changes={"target_user_id": open_session.get("target_user_id"), "ended_by": "system"},
            ip_address=ip_address,
            user_agent=user_agent,
        )

    started = _now()
    session = impersonation_repo.create_session(
        admin_user_id=admin_user_id,
        target_user_id=target_user_id,
        reason=clean_reason,
        started_at=_iso(started),
        expires_at=_iso(started + SESSION_DURATION),
        ip_address=ip_address,
        user_agent=user_agent,
    )

    log_admin_action(
        admin_user_id=admin_user_id,
        action_type="start_impersonation",
        target_type="user",
        target_id=target_user_id,
        changes={"session_id": session["id"]},
        reason=clean_reason,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    log.info("impersonation_started", admin_user_id=admin_user_id, target_user_id=target_user_id, session_id=session["id"])

    return {
        "sessionId": session["id"],
        "targetUserId": target_user_id,
        "targetUserEmail": target.get("email"),
        "targetUserName": target.get("full_name"),
        "startedAt": session["started_at"],
        "expiresAt": session["expires_at"],
        "reason": clean_reason,
        "startedBy": admin_user_id,
    }


def end_impersonation(*, admin_user_id: str, session_id: str, ip_address: str, user_agent: str) -> dict[str, Any]:
    session = impersonation_repo.get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Impersonation session not found")
    if session.get("admin_user_id") != admin_user_id:
        raise HTTPException(status_code=403, detail="Only the admin who started the session can end it")
    if session.get("ended_at"):
        raise HTTPException(status_code=400, detail="Session has already ended")

    try:
        ended = _close(session, ended_by="admin") or {}
    except DdbConflict:
        raise HTTPException(status_code=400, detail="Session has already ended")

    target = profiles_repo.get_profile(str(session.get("target_user_id") or "")) or {}
    log_admin_action(
        admin_user_id=admin_user_id,
        action_type="end_impersonation",
        target_type="user",
        target_id=str(session.get("target_user_id") or ""),
        changes={"session_id": session_id, "duration_minutes": ended.get("duration_minutes")},
        ip_address=ip_address,
        user_agent=user_agent,
    )
    log.info("impersonation_ended", admin_user_id=admin_user_id, session_id=session_id)

    return {
        "sessionId": session_id,
        "targetUserId": session.get("target_user_id"),
        "targetUserEmail": target.get("email"),
        "targetUserName": target.get("full_name"),
        "startedAt": session.get("started_at"),
        "endedAt": ended.get("ended_at"),
        "durationMinutes": ended.get("duration_minutes"),
        "endedBy": "admin",
    }


def session_status(admin_user_id: str) -> dict[str, Any]:
    session = get_active_session(admin_user_id)
    if not session:
        return {"active": False, "session": None}
    target = profiles_repo.get_profile(str(session.get("target_user_id") or "")) or {}
    return {
        "active": True,
        "session": {
            "sessionId": session["id"],
            "adminUserId": session.get("admin_user_id"),
            "targetUserId": session.get("target_user_id"),
            "targetUserEmail": target.get("email"),
            "targetUserName": target.get("full_name"),
            "startedAt": session.get("started_at"),
            "expiresAt": session.get("expires_at"),
            "reason": session.get("reason"),
        },
    }
