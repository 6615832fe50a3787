from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import HTTPException

from ..auth import cognito_idp
from ..auth.context import RequestContext
from ..db.dynamodb.errors import DdbConflict, DdbError
from ..observability.logging import get_logger
from ..repositories import audit_log_repo, games_repo, profiles_repo, question_banks_repo
from .audit import log_admin_action
from .request_utils import contains_forbidden_pattern, is_uuid

log = get_logger("admin_users")

PAGE_SIZES = (25, 50, 100)
SUSPEND_REASONS = ("policy_violation", "payment_fraud", "abuse", "other")
MAX_NOTES_LEN = 5000
MAX_NAME_LEN = 255
MAX_EMAIL_LEN = 255
RECENT_ACTIVITY_LIMIT = 5

EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)


def mask_email(email: Any) -> str | None:
    s = str(email or "").strip()
    if "@" not in s:
        return None
    local, domain = s.split("@", 1)
    if not local or not domain:
        return None
    return f"{local[0]}***@{domain}"


def _user_summary(profile: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": profile.get("id"),
        "email_masked": mask_email(profile.get("email")),
        "full_name": profile.get("full_name"),
        "role": profile.get("role"),
        "is_active": profile.get("is_active") is not False,
        "subscription_tier": profile.get("subscription_tier"),
        "subscription_status": profile.get("subscription_status"),
        "games_created_count": int(profile.get("games_created_count") or 0),
        "created_at": profile.get("created_at"),
    }


def _require_user_id(user_id: str) -> str:
    uid = str(user_id or "").strip()
    if not is_uuid(uid):
        raise HTTPException(status_code=400, detail="Invalid user ID format")
    return uid


def _load_user(user_id: str) -> dict[str, Any]:
    profile = profiles_repo.get_profile(user_id)
    if not profile:
        raise HTTPException(status_code=404, detail="User not found")
    return profile


def list_users(
    ctx: RequestContext,
    *,
    limit: int,
    sort_order: str,
    next_token: str | None,
    ip_address: str,
    user_agent: str,
) -> dict[str, Any]:
    if limit not in PAGE_SIZES:
        raise HTTPException(status_code=400, detail="limit must be one of 25, 50, 100")
    order = str(sort_order or "desc").lower()
    if order not in ("asc", "desc"):
        raise HTTPException(status_code=400, detail="sortOrder must be asc or desc")

    page = profiles_repo.list_profiles(limit=limit, next_token=next_token, ascending=order == "asc")
    log_admin_action(
        admin_user_id=ctx.user_id,
        action_type="list_users",
        target_type="user",
        target_id="*",
        changes={"limit": limit, "sortOrder": order},
        ip_address=ip_address,
        user_agent=user_agent,
    )
    nt = page.get("nextToken")
    return {
        "data": [_user_summary(p) for p in page.get("data") or []],
        "pagination": {"limit": limit, "nextToken": nt, "hasNextPage": bool(nt)},
    }


def get_user_detail(ctx: RequestContext, user_id: str, *, ip_address: str, user_agent: str) -> dict[str, Any]:
    uid = _require_user_id(user_id)
    profile = _load_user(uid)
    games = games_repo.list_games_for_teacher(uid)
    recent = audit_log_repo.list_for_target(uid, limit=RECENT_ACTIVITY_LIMIT)

    log_admin_action(
        admin_user_id=ctx.user_id,
        action_type="view_user",
        target_type="user",
        target_id=uid,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return {
        "data": {
            **_user_summary(profile),
            "email": profile.get("email"),
            "suspension_reason": profile.get("suspension_reason"),
            "stripe_customer_id": profile.get("stripe_customer_id"),
            "current_period_end": profile.get("current_period_end"),
            "game_count": len(games),
            "recent_activity": recent.get("data") or [],
        }
    }


def suspend_user(ctx: RequestContext, user_id: str, body: dict[str, Any], *, ip_address: str, user_agent: str) -> dict[str, Any]:
    uid = _require_user_id(user_id)
    reason = body.get("reason")
    if reason not in SUSPEND_REASONS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid reason. Must be one of: {', '.join(SUSPEND_REASONS)}",
        )
    notes = body.get("notes")
    if notes is not None:
        if not isinstance(notes, str) or len(notes) > MAX_NOTES_LEN:
            raise HTTPException(status_code=400, detail=f"Notes must be {MAX_NOTES_LEN} characters or less")
        if contains_forbidden_pattern(notes):
            raise HTTPException(status_code=400, detail="Notes contain invalid characters or patterns")
        notes = notes.strip() or None

    if uid == ctx.user_id:
        raise HTTPException(status_code=400, detail="You cannot suspend your own account")
    profile = _load_user(uid)
    if profile.get("is_active") is False:
        raise HTTPException(status_code=400, detail="User is already suspended")

    suspension_reason = f"{reason}: {notes}" if notes else str(reason)
    try:
        updated = profiles_repo.suspend_profile(uid, reason=suspension_reason) or {}
    except DdbConflict:
        raise HTTPException(status_code=400, detail="User is already suspended")

    log_admin_action(
        admin_user_id=ctx.user_id,
        action_type="suspend_user",
        target_type="user",
        target_id=uid,
        changes={"is_active": {"from": True, "to": False}},
        reason=str(reason),
        notes=notes,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    log.info("user_suspended", admin_user_id=ctx.user_id, target_user_id=uid, reason=reason)
    return {
        "success": True,
        "message": "User suspended successfully",
        "data": {
            "id": uid,
            "is_active": False,
            "suspension_reason": updated.get("suspension_reason", suspension_reason),
        },
    }


def activate_user(ctx: RequestContext, user_id: str, *, ip_address: str, user_agent: str) -> dict[str, Any]:
    uid = _require_user_id(user_id)
    profile = _load_user(uid)
    if profile.get("is_active") is not False:
        raise HTTPException(status_code=400, detail="User is already active")

    try:
        profiles_repo.activate_profile(uid)
    except DdbConflict:
        raise HTTPException(status_code=400, detail="User is already active")

    log_admin_action(
        admin_user_id=ctx.user_id,
        action_type="activate_user",
        target_type="user",
        target_id=uid,
        changes={
            "is_active": {"from": False, "to": True},
            "suspension_reason": {"from": profile.get("suspension_reason"), "to": None},
        },
        ip_address=ip_address,
        user_agent=user_agent,
    )
    log.info("user_activated", admin_user_id=ctx.user_id, target_user_id=uid)
    return {
        "success": True,
        "message": "User activated successfully",
        "data": {"id": uid, "is_active": True, "suspension_reason": None},
    }


def list_user_games(ctx: RequestContext, user_id: str, *, ip_address: str, user_agent: str) -> dict[str, Any]:
    uid = _require_user_id(user_id)
    _load_user(uid)
    games = games_repo.list_games_for_teacher(uid)
    log_admin_action(
        admin_user_id=ctx.user_id,
        action_type="view_user_games",
        target_type="user",
        target_id=uid,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return {"data": games, "total": len(games)}


def list_user_activity(
    ctx: RequestContext,
    user_id: str,
    *,
    limit: int,
    next_token: str | None,
    ip_address: str,
    user_agent: str,
) -> dict[str, Any]:
    uid = _require_user_id(user_id)
    lim = max(1, min(int(limit or 50), 100))
    page = audit_log_repo.list_for_target(uid, limit=lim, next_token=next_token)
    log_admin_action(
        admin_user_id=ctx.user_id,
        action_type="view_user_activity",
        target_type="user",
        target_id=uid,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return {"data": page.get("data") or [], "nextToken": page.get("nextToken")}


def _page_meta(*, page: int, limit: int, total: int) -> dict[str, Any]:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "page": page,
        "limit": limit,
        "totalCount": total,
        "totalPages": total_pages,
        "hasNextPage": page < total_pages,
        "hasPreviousPage": page > 1,
    }


def _matches(profile: dict[str, Any], needle: str) -> bool:
    return any(needle in str(profile.get(f) or "").lower() for f in ("email", "full_name"))


def search_users(ctx: RequestContext, body: dict[str, Any], *, ip_address: str, user_agent: str) -> dict[str, Any]:
    """
    A UUID query is an exact id lookup; anything else is a case-insensitive
    substring match on email or full name. Newest accounts first.
    """
    raw = body.get("query")
    if raw is None or not isinstance(raw, str):
        raise HTTPException(status_code=400, detail="Search query is required")
    query = raw.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Search query cannot be empty")
    try:
        page = max(1, int(body.get("page") or 1))
        limit = int(body.get("limit") or 25)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="page and limit must be integers")
    if limit not in PAGE_SIZES:
        limit = 25

    if is_uuid(query):
        hit = profiles_repo.get_profile(query.lower())
        matches = [hit] if hit else []
    else:
        needle = query.lower()
        matches = [p for p in profiles_repo.list_all_profiles() if _matches(p, needle)]
    matches.sort(key=lambda p: str(p.get("created_at") or ""), reverse=True)

    start = (page - 1) * limit
    window = matches[start : start + limit]
    log_admin_action(
        admin_user_id=ctx.user_id,
        action_type="search_users",
        target_type="users",
        target_id="search",
        notes=f'Searched users with query: "{query}" ({len(window)} results)',
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return {
        "data": [_user_summary(p) for p in window],
        "query": query,
        "pagination": _page_meta(page=page, limit=limit, total=len(matches)),
    }


def _user_detail(profile: dict[str, Any]) -> dict[str, Any]:
    return {
        **_user_summary(profile),
        "email": profile.get("email"),
        "updated_at": profile.get("updated_at"),
        "admin_notes": profile.get("admin_notes"),
        "email_verified_manually": bool(profile.get("email_verified_manually")),
        "suspension_reason": profile.get("suspension_reason"),
        "custom_plan_name": profile.get("custom_plan_name"),
        "custom_plan_type": profile.get("custom_plan_type"),
    }


def _parse_profile_edit(body: dict[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    if "full_name" in body:
        name = body.get("full_name")
        if name is not None and not isinstance(name, str):
            raise HTTPException(status_code=400, detail="Full name must be a string")
        name = (name or "").strip()
        if len(name) > MAX_NAME_LEN:
            raise HTTPException(status_code=400, detail=f"Full name must be {MAX_NAME_LEN} characters or less")
        fields["full_name"] = name or None

    if "email" in body:
        email = body.get("email")
        email = email.strip().lower() if isinstance(email, str) else ""
        if not email:
            raise HTTPException(status_code=400, detail="Email cannot be empty")
        if len(email) > MAX_EMAIL_LEN:
            raise HTTPException(status_code=400, detail=f"Email must be {MAX_EMAIL_LEN} characters or less")
        if not EMAIL_RE.match(email):
            raise HTTPException(status_code=400, detail="Invalid email format")
        fields["email"] = email

    if "admin_notes" in body:
        notes = body.get("admin_notes")
        if notes is not None and not isinstance(notes, str):
            raise HTTPException(status_code=400, detail="Admin notes must be a string")
        if notes and len(notes) > MAX_NOTES_LEN:
            raise HTTPException(status_code=400, detail=f"Admin notes must be {MAX_NOTES_LEN} characters or less")
        if contains_forbidden_pattern(notes):
            raise HTTPException(status_code=400, detail="Admin notes contain invalid characters or patterns")
        fields["admin_notes"] = (notes or "").strip() or None

    if not fields:
        raise HTTPException(status_code=400, detail="At least one field must be provided for update")
    return fields


def update_user(ctx: RequestContext, user_id: str, body: dict[str, Any], *, ip_address: str, user_agent: str) -> dict[str, Any]:
    uid = _require_user_id(user_id)
    fields = _parse_profile_edit(body)
    current = _load_user(uid)

    email_changed = "email" in fields and fields["email"] != current.get("email")
    if email_changed:
        taken = any(
            str(p.get("email") or "").lower() == fields["email"] and p.get("id") != uid
            for p in profiles_repo.list_all_profiles()
        )
        if taken:
            raise HTTPException(status_code=409, detail="Email is already in use by another user")
        fields["email_verified_manually"] = False

    changes = {
        k: {"from": current.get(k), "to": v}
        for k, v in fields.items()
        if k in ("full_name", "email", "admin_notes") and current.get(k) != v
    }

    expected = current.get("updated_at")
    try:
        if expected:
            updated = profiles_repo.update_profile_if_unchanged(uid, fields, expected_updated_at=str(expected))
        else:
            updated = profiles_repo.update_profile_fields(uid, fields)
    except DdbConflict:
        raise HTTPException(
            status_code=409,
            detail="User was modified by another admin. Please refresh and try again.",
        )

    log_admin_action(
        admin_user_id=ctx.user_id,
        action_type="edit_user_profile",
        target_type="user",
        target_id=uid,
        changes=changes,
        notes=(
            f"Updated profile for {current.get('email')}. Email changed - verification required."
            if email_changed
            else f"Updated profile for {current.get('email')}"
        ),
        ip_address=ip_address,
        user_agent=user_agent,
    )
    log.info("user_profile_edited", admin_user_id=ctx.user_id, target_user_id=uid, fields=sorted(changes))
    return {"data": _user_detail(updated or {**current, **fields}), "message": "User profile updated successfully"}


def list_user_banks(
    ctx: RequestContext,
    user_id: str,
    *,
    page: int,
    limit: int,
    ip_address: str,
    user_agent: str,
) -> dict[str, Any]:
    uid = _require_user_id(user_id)
    _load_user(uid)
    page = max(1, int(page or 1))
    limit = max(1, min(int(limit or 25), 100))

    banks = question_banks_repo.list_owned_banks(uid)
    banks.sort(key=lambda b: str(b.get("created_at") or ""), reverse=True)
    start = (page - 1) * limit
    window = banks[start : start + limit]
    data = [
        {
            "id": b.get("id"),
            "title": b.get("title"),
            "subject": b.get("subject"),
            "description": b.get("description"),
            "difficulty": b.get("difficulty"),
            "is_custom": b.get("is_custom"),
            "is_public": b.get("is_public"),
            "created_at": b.get("created_at"),
            "updated_at": b.get("updated_at"),
            "question_count": len(question_banks_repo.list_questions(str(b.get("id")))),
        }
        for b in window
    ]
    log_admin_action(
        admin_user_id=ctx.user_id,
        action_type="view_user_banks",
        target_type="question_banks",
        target_id=uid,
        notes=f"Viewed question banks for user {uid} ({len(data)} results)",
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return {"data": data, "pagination": _page_meta(page=page, limit=limit, total=len(banks))}


def reveal_email(ctx: RequestContext, user_id: str, *, ip_address: str, user_agent: str) -> dict[str, Any]:
    """The full address is returned only once the audit entry is stored."""
    if not is_uuid(user_id):
        raise HTTPException(status_code=400, detail="Invalid user ID")
    uid = str(user_id).strip()
    profile = _load_user(uid)
    try:
        log_admin_action(
            admin_user_id=ctx.user_id,
            action_type="reveal_email",
            target_type="user",
            target_id=uid,
            notes=f"Revealed full email for user: {profile.get('full_name') or profile.get('email')}",
            ip_address=ip_address,
            user_agent=user_agent,
            required=True,
        )
    except DdbError:
        log.error("email_reveal_refused_without_audit", admin_user_id=ctx.user_id, target_user_id=uid)
        raise HTTPException(
            status_code=500,
            detail=(
                "Unable to complete request due to system error. "
                "Please try again or contact support if the issue persists."
            ),
        )
    return {"userId": uid, "email": profile.get("email"), "full_name": profile.get("full_name")}


def verify_email(ctx: RequestContext, user_id: str, *, ip_address: str, user_agent: str) -> dict[str, Any]:
    """
    Mark the address verified in Cognito and flag the profile. The profile
    flag is written first and restored if Cognito refuses the update.
    """
    uid = _require_user_id(user_id)
    profile = _load_user(uid)
    manually = bool(profile.get("email_verified_manually"))

    try:
        auth_verified = cognito_idp.is_email_verified(uid)
    except (BotoCoreError, ClientError) as e:
        log.error("cognito_user_fetch_failed", target_user_id=uid, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to fetch user authentication data")

    if auth_verified or manually:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "Email is already verified",
                "message": "Email is already verified",
                "details": {"authVerified": auth_verified, "manuallyVerified": manually},
            },
        )

    profiles_repo.update_profile_fields(uid, {"email_verified_manually": True})
    try:
        cognito_idp.mark_email_verified(uid)
    except (BotoCoreError, ClientError) as e:
        log.error("cognito_email_verify_failed", target_user_id=uid, error=str(e))
        try:
            profiles_repo.update_profile_fields(uid, {"email_verified_manually": manually})
        except DdbError as rollback_error:
            log.critical(
                "email_verify_rollback_failed",
                target_user_id=uid,
                admin_user_id=ctx.user_id,
                error=str(rollback_error),
            )
            raise HTTPException(
                status_code=500,
                detail="Failed to verify email. System administrators have been notified.",
            )
        raise HTTPException(status_code=500, detail="Failed to verify email in authentication system")

    log_admin_action(
        admin_user_id=ctx.user_id,
        action_type="verify_email_manually",
        target_type="profile",
        target_id=uid,
        changes={"email_verified_manually": {"from": manually, "to": True}},
        notes=f"Manually verified email for {profile.get('email')}",
        ip_address=ip_address,
        user_agent=user_agent,
    )
    log.info("email_verified_manually", admin_user_id=ctx.user_id, target_user_id=uid)
    return {
        "message": "Email verified successfully",
        "data": {
            "userId": uid,
            "userEmail": profile.get("email"),
            "verifiedBy": ctx.profile.get("email"),
            "verifiedAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        },
    }
