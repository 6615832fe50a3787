from __future__ import annotations

from fastapi import APIRouter, Body, HTTPException, Request

from ..auth.context import require_admin, require_user
from ..services import admin_billing, admin_users, impersonation
from ..services.request_utils import is_uuid, request_fingerprint

router = APIRouter(tags=["admin"])


@router.get("/admin/users")
def list_users(request: Request, limit: int = 25, sortOrder: str = "desc", nextToken: str | None = None):
    ctx = require_admin(request)
    ip, ua = request_fingerprint(request)
    return admin_users.list_users(
        ctx,
        limit=limit,
        sort_order=sortOrder,
        next_token=nextToken,
        ip_address=ip,
        user_agent=ua,
    )


@router.post("/admin/users/search")
def search_users(request: Request, body: dict = Body(default_factory=dict)):
    ctx = require_admin(request)
    ip, ua = request_fingerprint(request)
    return admin_users.search_users(ctx, body, ip_address=ip, user_agent=ua)


@router.get("/admin/users/{userId}")
def get_user(request: Request, userId: str):
    ctx = require_admin(request)
    ip, ua = request_fingerprint(request)
    return admin_users.get_user_detail(ctx, userId, ip_address=ip, user_agent=ua)


@router.post("/admin/users/{userId}/suspend")
def suspend_user(request: Request, userId: str, body: dict = Body(default_factory=dict)):
    ctx = require_admin(request)
    ip, ua = request_fingerprint(request)
    return admin_users.suspend_user(ctx, userId, body, ip_address=ip, user_agent=ua)


@router.post("/admin/users/{userId}/activate")
def activate_user(request: Request, userId: str):
    ctx = require_admin(request)
    ip, ua = request_fingerprint(request)
    return admin_users.activate_user(ctx, userId, ip_address=ip, user_agent=ua)


@router.get("/admin/users/{userId}/games")
def list_user_games(request: Request, userId: str):
    ctx = require_admin(request)
    ip, ua = request_fingerprint(request)
    return admin_users.list_user_games(ctx, userId, ip_address=ip, user_agent=ua)


@router.get("/admin/users/{userId}/activity")
def list_user_activity(request: Request, userId: str, limit: int = 50, nextToken: str | None = None):
    ctx = require_admin(request)
    ip, ua = request_fingerprint(request)
    return admin_users.list_user_activity(
        ctx,
        userId,
        limit=limit,
        next_token=nextToken,
        ip_address=ip,
        user_agent=ua,
    )


@router.patch("/admin/users/{userId}")
def update_user(request: Request, userId: str, body: dict = Body(default_factory=dict)):
    ctx = require_admin(request)
    ip, ua = request_fingerprint(request)
    return admin_users.update_user(ctx, userId, body, ip_address=ip, user_agent=ua)


@router.get("/admin/users/{userId}/banks")
def list_user_banks(request: Request, userId: str, page: int = 1, limit: int = 25):
    ctx = require_admin(request)
    ip, ua = request_fingerprint(request)
    return admin_users.list_user_banks(ctx, userId, page=page, limit=limit, ip_address=ip, user_agent=ua)


@router.post("/admin/users/{userId}/reveal-email")
def reveal_email(request: Request, userId: str):
    ctx = require_admin(request)
    ip, ua = request_fingerprint(request)
    return admin_users.reveal_email(ctx, userId, ip_address=ip, user_agent=ua)


@router.post("/admin/users/{userId}/verify-email")
def verify_email(request: Request, userId: str):
    ctx = require_admin(request)
    ip, ua = request_fingerprint(request)
    return admin_users.verify_email(ctx, userId, ip_address=ip, user_agent=ua)


# --- billing ---

@router.get("/admin/users/{userId}/payments")
def list_user_payments(request: Request, userId: str, limit: int = 50, starting_after: str | None = None):
    ctx = require_admin(request)
    ip, ua = request_fingerprint(request)
    return admin_billing.list_user_payments(
        ctx,
        userId,
        limit=limit,
        starting_after=starting_after,
        ip_address=ip,
        user_agent=ua,
    )


@router.get("/admin/users/{userId}/subscription")
def get_user_subscription(request: Request, userId: str):
    ctx = require_admin(request)
    ip, ua = request_fingerprint(request)
    return admin_billing.get_user_subscription(ctx, userId, ip_address=ip, user_agent=ua)


@router.post("/admin/users/{userId}/subscription/cancel")
def cancel_user_subscription(request: Request, userId: str, body: dict = Body(default_factory=dict)):
    ctx = require_admin(request)
    ip, ua = request_fingerprint(request)
    return admin_billing.cancel_subscription(ctx, userId, body, ip_address=ip, user_agent=ua)


@router.post("/admin/users/{userId}/subscription/reactivate")
def reactivate_user_subscription(request: Request, userId: str, body: dict = Body(default_factory=dict)):
    ctx = require_admin(request)
    ip, ua = request_fingerprint(request)
    return admin_billing.reactivate_subscription(ctx, userId, body, ip_address=ip, user_agent=ua)


@router.post("/admin/users/{userId}/subscription/update")
def update_user_billing_cycle(request: Request, userId: str, body: dict = Body(default_factory=dict)):
    ctx = require_admin(request)
    ip, ua = request_fingerprint(request)
    return admin_billing.change_billing_cycle(ctx, userId, body, ip_address=ip, user_agent=ua)


@router.post("/admin/users/{userId}/subscription/extend")
def extend_user_subscription(request: Request, userId: str, body: dict = Body(default_factory=dict)):
    ctx = require_admin(request)
    ip, ua = request_fingerprint(request)
    return admin_billing.extend_subscription(ctx, userId, body, ip_address=ip, user_agent=ua)


@router.post("/admin/users/{userId}/subscription/extend-trial")
def extend_user_trial(request: Request, userId: str, body: dict = Body(default_factory=dict)):
    ctx = require_admin(request)
    ip, ua = request_fingerprint(request)
    return admin_billing.extend_trial(ctx, userId, body, ip_address=ip, user_agent=ua)


@router.post("/admin/users/{userId}/subscription/grant-access")
def grant_user_access(request: Request, userId: str, body: dict = Body(default_factory=dict)):
    ctx = require_admin(request)
    ip, ua = request_fingerprint(request)
    return admin_billing.grant_access(ctx, userId, body, ip_address=ip, user_agent=ua)


@router.post("/admin/users/{userId}/subscription/custom-plan")
def assign_custom_plan(request: Request, userId: str, body: dict = Body(default_factory=dict)):
    ctx = require_admin(request)
    ip, ua = request_fingerprint(request)
    return admin_billing.assign_custom_plan(ctx, userId, body, ip_address=ip, user_agent=ua)


@router.delete("/admin/users/{userId}/subscription/custom-plan")
def remove_custom_plan(request: Request, userId: str):
    ctx = require_admin(request)
    ip, ua = request_fingerprint(request)
    return admin_billing.remove_custom_plan(ctx, userId, ip_address=ip, user_agent=ua)


@router.post("/admin/payments/{paymentId}/refund")
def refund_payment(request: Request, paymentId: str, body: dict = Body(default_factory=dict)):
    ctx = require_admin(request)
    ip, ua = request_fingerprint(request)
    return admin_billing.refund_payment(ctx, paymentId, body, ip_address=ip, user_agent=ua)


# --- impersonation ---

@router.post("/admin/users/{userId}/impersonate")
def start_impersonation(request: Request, userId: str, body: dict = Body(default_factory=dict)):
    ctx = require_admin(request)
    if not is_uuid(userId):
        raise HTTPException(status_code=400, detail="Invalid user ID format")
    ip, ua = request_fingerprint(request)
    data = impersonation.start_impersonation(
        admin_user_id=ctx.user_id,
        target_user_id=userId,
        reason=body.get("reason"),
        ip_address=ip,
        user_agent=ua,
    )
    return {"message": "Impersonation session started", "data": data}


@router.post("/admin/impersonate/end")
def end_impersonation(request: Request, body: dict = Body(default_factory=dict)):
    ctx = require_admin(request)
    session_id = body.get("sessionId")
    if not session_id:
        raise HTTPException(status_code=400, detail="sessionId is required")
    if not is_uuid(session_id):
        raise HTTPException(status_code=400, detail="Invalid session ID format")
    ip, ua = request_fingerprint(request)
    data = impersonation.end_impersonation(
        admin_user_id=ctx.user_id,
        session_id=str(session_id),
        ip_address=ip,
        user_agent=ua,
    )
    return {"message": "Impersonation session ended", "data": data}


@router.get("/admin/impersonate/status")
def impersonation_status(request: Request):
    ctx = require_admin(request)
    return impersonation.session_status(ctx.user_id)


@router.get("/user/context")
def user_context(request: Request):
    ctx = require_user(request)
    out = {
        "effectiveUserId": ctx.effective_user_id,
        "effectiveUserEmail": ctx.acting_profile.get("email"),
        "adminUserId": ctx.admin_user_id,
        "isImpersonating": ctx.is_impersonating,
    }
    if ctx.is_impersonating:
        out["impersonatedUserId"] = ctx.impersonated_user_id
        out["sessionId"] = ctx.session_id
    return out
