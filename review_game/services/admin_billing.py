from __future__ import annotations

import re
import time
from datetime import date, datetime, timezone
from typing import Any

import stripe
from fastapi import HTTPException

from ..auth.context import RequestContext
from ..db.dynamodb.errors import DdbError
from ..observability.logging import get_logger
from ..repositories import profiles_repo, refunds_repo
from ..settings import settings
from .audit import log_admin_action
from .billing import stripe_gateway
from .billing.stripe_gateway import StripeGatewayError, StripeTimeout
from .billing.subscription import (
    billing_cycle,
    epoch_to_iso,
    first_item,
    map_stripe_status,
    subscription_period_end,
)
from .request_utils import contains_forbidden_pattern, is_uuid

log = get_logger("admin_billing")

SECONDS_PER_DAY = 86400
MAX_UNIX_TIMESTAMP = 2147483647
REASON_MIN = 10
REASON_MAX = 500
NOTES_MAX = 1000
MAX_EXTEND_DAYS = 365
MAX_GRANT_DAYS = 3650
PLAN_NAME_MIN = 3
PLAN_NAME_MAX = 100
MAX_MONTHLY_PRICE = 10000
MAX_PLAN_YEARS = 10
MIN_REFUND_CENTS = 50
# Slack allowed between the requested and the applied trial_end.
TRIAL_END_TOLERANCE_SECONDS = 10

CANCEL_ACTIONS = ("cancel_immediate", "cancel_period_end")
CYCLE_ACTIONS = ("change_to_monthly", "change_to_yearly")
ACCESS_TYPES = ("temporary", "lifetime")
GRANT_CATEGORIES = ("service_outage", "promotional", "educational", "employee_partner", "competition", "other")
PLAN_CATEGORIES = ("educational", "partnership", "enterprise", "non_profit", "promotional", "other")
BILLING_PERIODS = ("monthly", "annual")
REFUND_TYPES = ("full", "partial")
REFUND_CATEGORIES = ("technical_issue", "user_request", "duplicate_charge", "fraudulent", "service_outage", "other")

CHARGE_ID_RE = re.compile(r"^(ch|py)_[a-zA-Z0-9]+$")
_METADATA_UNSAFE_RE = re.compile(r"[^\w\s.,!?'-]")


# --- shared helpers ---

def _require_user(user_id: str) -> tuple[str, dict[str, Any]]:
    uid = str(user_id or "").strip()
    if not is_uuid(uid):
        raise HTTPException(status_code=400, detail="Invalid user ID format")
    profile = profiles_repo.get_profile(uid)
    if not profile:
        raise HTTPException(status_code=404, detail="User not found")
    return uid, profile


def _failure(message: str, *, status_code: int = 500, **extra: Any) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"success": False, "error": message, "message": message, **extra})


def _stripe_failure(e: StripeGatewayError, what: str) -> HTTPException:
    if isinstance(e, StripeTimeout):
        return _failure(e.message)
    return _failure(f"Failed to {what}: {e.message}")


def _checked_text(value: Any, label: str, *, required: bool, min_len: int = 0, max_len: int, strict: bool = False) -> str | None:
    if value is None or value == "":
        if required:
            raise HTTPException(status_code=400, detail=f"{label} is required")
        return None
    if not isinstance(value, str):
        raise HTTPException(status_code=400, detail=f"{label} must be a string")
    text = value.strip()
    if required and len(text) < min_len:
        raise HTTPException(status_code=400, detail=f"{label} must be at least {min_len} characters")
    if len(text) > max_len:
        raise HTTPException(status_code=400, detail=f"{label} must be {max_len} characters or less")
    if contains_forbidden_pattern(text, strict=strict):
        raise HTTPException(
            status_code=400,
            detail=(
                f"{label} contains invalid characters or patterns. "
                "Please remove any HTML tags, scripts, or control characters."
            ),
        )
    return text or None


def _whole_days(value: Any, *, field: str, maximum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= maximum:
        raise HTTPException(status_code=400, detail=f"{field} must be an integer between 1 and {maximum}")
    return value


def _period_end_epoch(subscription: Any) -> int | None:
    ts = (subscription or {}).get("current_period_end")
    if ts is None:
        ts = (first_item(subscription) or {}).get("current_period_end")
    return int(ts) if ts else None


def _subscription_out(sub: Any) -> dict[str, Any]:
    return {
        "id": sub.get("id"),
        "status": sub.get("status"),
        "cancelAtPeriodEnd": bool(sub.get("cancel_at_period_end")),
        "canceledAt": epoch_to_iso(sub.get("canceled_at")),
        "trialEnd": epoch_to_iso(sub.get("trial_end")),
        "currentPeriodEnd": subscription_period_end(sub),
    }


def _sync_profile(uid: str, fields: dict[str, Any], *, operation: str) -> None:
    """Profile writes after a committed Stripe change; webhooks reconcile a failed write."""
    try:
        profiles_repo.update_profile_fields(uid, fields)
    except DdbError as e:
        log.error("admin_billing_profile_sync_failed", operation=operation, target_user_id=uid, error=str(e))


def _require_subscription_id(profile: dict[str, Any], message: str = "User does not have an active subscription") -> str:
    sub_id = profile.get("stripe_subscription_id")
    if not sub_id:
        raise HTTPException(status_code=400, detail=message)
    return str(sub_id)


def _ensure_customer(uid: str, profile: dict[str, Any]) -> str:
    customer_id = profile.get("stripe_customer_id")
    if customer_id:
        return str(customer_id)
    customer = stripe_gateway.create_customer(email=profile.get("email"), user_id=uid)
    customer_id = str(customer.get("id"))
    profiles_repo.update_profile_fields(uid, {"stripe_customer_id": customer_id})
    profiles_repo.put_customer_pointer(customer_id=customer_id, user_id=uid)
    log.info("stripe_customer_created", target_user_id=uid)
    return customer_id


# --- read-only views ---

def get_user_subscription(ctx: RequestContext, user_id: str, *, ip_address: str, user_agent: str) -> dict[str, Any]:
    """Customer and subscription as Stripe sees them. Stripe failures degrade to an ``error`` field."""
    uid, profile = _require_user(user_id)
    out: dict[str, Any] = {"subscription": None, "customer": None}

    customer_id = profile.get("stripe_customer_id")
    if customer_id:
        try:
            customer = stripe_gateway.retrieve_customer(str(customer_id))
            if not customer.get("deleted"):
                pm = (customer.get("invoice_settings") or {}).get("default_payment_method")
                out["customer"] = {
                    "id": customer.get("id"),
                    "email": customer.get("email"),
                    "name": customer.get("name"),
                    "created": epoch_to_iso(customer.get("created")),
                    "defaultPaymentMethod": pm.get("id") if isinstance(pm, dict) else pm,
                }
        except StripeGatewayError as e:
            log.warning("admin_customer_fetch_failed", target_user_id=uid, error=e.message)

    sub_id = profile.get("stripe_subscription_id")
    if sub_id:
        try:
            sub = stripe_gateway.retrieve_subscription(str(sub_id))
            price = (first_item(sub) or {}).get("price")
            if price:
                out["subscription"] = {
                    **_subscription_out(sub),
                    "planName": price.get("nickname") or str(price.get("product") or ""),
                    "planId": price.get("id"),
                    "amount": price.get("unit_amount") or 0,
                    "currency": price.get("currency"),
                    "interval": (price.get("recurring") or {}).get("interval") or "month",
                    "trialStart": epoch_to_iso(sub.get("trial_start")),
                    "metadata": dict(sub.get("metadata") or {}),
                }
        except StripeGatewayError as e:
            log.warning("admin_subscription_fetch_failed", target_user_id=uid, error=e.message)
            out["error"] = "Failed to fetch subscription from Stripe"

    log_admin_action(
        admin_user_id=ctx.user_id,
        action_type="view_subscription",
        target_type="user",
        target_id=uid,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return out


def _payment_out(charge: Any) -> dict[str, Any]:
    def _ref(v: Any) -> Any:
        return v.get("id") if isinstance(v, dict) else v

    return {
        "id": charge.get("id"),
        "amount": charge.get("amount"),
        "currency": charge.get("currency"),
        "status": charge.get("status"),
        "created": epoch_to_iso(charge.get("created")),
        "description": charge.get("description"),
        "paymentMethod": _ref(charge.get("payment_method")),
        "receiptUrl": charge.get("receipt_url"),
        "refunded": bool(charge.get("refunded")),
        "refundedAmount": charge.get("amount_refunded") or 0,
        "invoiceId": _ref(charge.get("invoice")),
        "type": "charge",
    }


def list_user_payments(
    ctx: RequestContext,
    user_id: str,
    *,
    limit: int,
    starting_after: str | None,
    ip_address: str,
    user_agent: str,
) -> dict[str, Any]:
    uid, profile = _require_user(user_id)
    lim = max(1, min(int(limit or 50), 100))
    if starting_after and not CHARGE_ID_RE.match(starting_after):
        raise HTTPException(status_code=400, detail="Invalid starting_after cursor")

    customer_id = profile.get("stripe_customer_id")
    if not customer_id:
        return {"payments": [], "hasMore": False}

    out: dict[str, Any] = {"payments": [], "hasMore": False}
    try:
        charges = stripe_gateway.list_charges(customer_id=str(customer_id), limit=lim, starting_after=starting_after)
    except StripeGatewayError as e:
        log.warning("admin_payments_fetch_failed", target_user_id=uid, error=e.message)
        out["error"] = "Failed to fetch payment history from Stripe"
        return out

    out["payments"] = [_payment_out(c) for c in charges.get("data") or []]
    out["hasMore"] = bool(charges.get("has_more"))
    log_admin_action(
        admin_user_id=ctx.user_id,
        action_type="view_payment_history",
        target_type="user",
        target_id=uid,
        changes={"payment_count": min(len(out["payments"]), 1000), "has_more": out["hasMore"]},
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return out


# --- subscription changes ---

def cancel_subscription(ctx: RequestContext, user_id: str, body: dict[str, Any], *, ip_address: str, user_agent: str) -> dict[str, Any]:
    action = body.get("action")
    if not action or not body.get("reason"):
        raise HTTPException(status_code=400, detail="Missing required fields: action, reason")
    if action not in CANCEL_ACTIONS:
        raise HTTPException(status_code=400, detail="Invalid action. Must be cancel_immediate or cancel_period_end")
    reason = _checked_text(body.get("reason"), "Reason", required=True, max_len=REASON_MAX)
    notes = _checked_text(body.get("notes"), "Notes", required=False, max_len=NOTES_MAX)

    uid, profile = _require_user(user_id)
    sub_id = _require_subscription_id(profile)
    immediate = action == "cancel_immediate"
    try:
        sub = stripe_gateway.retrieve_subscription(sub_id)
        status = str(sub.get("status") or "")
        if status == "canceled":
            raise HTTPException(status_code=400, detail="Subscription is already canceled")
        if status in ("unpaid", "past_due"):
            raise HTTPException(
                status_code=400,
                detail=f"Cannot cancel subscription with status: {status}. Please resolve payment issues first.",
            )
        if immediate:
            result = stripe_gateway.cancel_subscription_now(sub_id)
        else:
            result = stripe_gateway.set_cancel_at_period_end(sub_id, True, reason=reason)
    except StripeGatewayError as e:
        raise _stripe_failure(e, "cancel subscription")

    if immediate:
        fields: dict[str, Any] = {
            "subscription_status": "CANCELLED",
            "subscription_tier": "FREE",
            "stripe_subscription_id": None,
            "current_period_end": None,
            "trial_end_date": None,
        }
    else:
        fields = {"subscription_status": map_stripe_status(result.get("status"))}
    _sync_profile(uid, fields, operation=action)

    log_admin_action(
        admin_user_id=ctx.user_id,
        action_type="cancel_subscription_immediate" if immediate else "cancel_subscription_period_end",
        target_type="subscription",
        target_id=sub_id,
        changes={
            "before": {"status": status, "cancel_at_period_end": bool(sub.get("cancel_at_period_end"))},
            "after": {"status": result.get("status"), "cancel_at_period_end": bool(result.get("cancel_at_period_end"))},
            "user_id": uid,
        },
        reason=reason,
        notes=notes,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    log.info("admin_subscription_cancelled", admin_user_id=ctx.user_id, target_user_id=uid, action=action)
    return {"success": True, "subscription": _subscription_out(result)}


def reactivate_subscription(ctx: RequestContext, user_id: str, body: dict[str, Any], *, ip_address: str, user_agent: str) -> dict[str, Any]:
    if not body.get("reason"):
        raise HTTPException(status_code=400, detail="Missing required field: reason")
    reason = _checked_text(body.get("reason"), "Reason", required=True, max_len=REASON_MAX)
    notes = _checked_text(body.get("notes"), "Notes", required=False, max_len=NOTES_MAX)

    uid, profile = _require_user(user_id)
    sub_id = _require_subscription_id(profile, "User does not have a subscription to reactivate")
    try:
        result = stripe_gateway.set_cancel_at_period_end(sub_id, False)
    except StripeGatewayError as e:
        raise _stripe_failure(e, "reactivate subscription")

    _sync_profile(uid, {"subscription_status": map_stripe_status(result.get("status"))}, operation="reactivate")
    log_admin_action(
        admin_user_id=ctx.user_id,
        action_type="reactivate_subscription",
        target_type="subscription",
        target_id=sub_id,
        changes={"cancel_at_period_end": {"from": True, "to": False}, "user_id": uid},
        reason=reason,
        notes=notes,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return {"success": True, "subscription": _subscription_out(result)}


def change_billing_cycle(ctx: RequestContext, user_id: str, body: dict[str, Any], *, ip_address: str, user_agent: str) -> dict[str, Any]:
    action = body.get("action")
    if not action or not body.get("reason"):
        raise HTTPException(status_code=400, detail="Missing required fields: action, reason")
    if action not in CYCLE_ACTIONS:
        raise HTTPException(status_code=400, detail="Invalid action. Must be change_to_monthly or change_to_yearly")
    reason = _checked_text(body.get("reason"), "Reason", required=True, min_len=REASON_MIN, max_len=REASON_MAX)
    notes = _checked_text(body.get("notes"), "Notes", required=False, max_len=NOTES_MAX)

    uid, profile = _require_user(user_id)
    sub_id = _require_subscription_id(profile)
    if str(profile.get("subscription_status") or "").upper() not in ("ACTIVE", "TRIAL"):
        raise HTTPException(status_code=400, detail="Can only update active or trialing subscriptions")

    tier = str(profile.get("subscription_tier") or "").upper()
    cycle_key = "MONTHLY" if action == "change_to_monthly" else "ANNUAL"
    new_price_id = settings.configured_price_ids().get(f"{tier}_{cycle_key}")
    if not new_price_id:
        log.error("admin_price_mapping_missing", tier=tier, cycle=cycle_key)
        raise _failure(f"Price mapping not configured for tier: {tier or 'unknown'}")

    try:
        sub = stripe_gateway.retrieve_subscription(sub_id)
        item = first_item(sub)
        if not item or not item.get("id"):
            raise StripeGatewayError("Subscription has no items")
        before_price = item.get("price") or {}
        if before_price.get("id") == new_price_id:
            raise HTTPException(status_code=400, detail=f"Subscription is already billed {cycle_key.lower()}")
        result = stripe_gateway.change_subscription_price(
            sub_id,
            item_id=item["id"],
            price_id=new_price_id,
            proration_behavior="create_prorations",
        )
    except StripeGatewayError as e:
        raise _stripe_failure(e, "update subscription")

    new_cycle = billing_cycle(result) or ("monthly" if cycle_key == "MONTHLY" else "annual")
    _sync_profile(
        uid,
        {"billing_cycle": new_cycle, "current_period_end": subscription_period_end(result)},
        operation=action,
    )
    log_admin_action(
        admin_user_id=ctx.user_id,
        action_type="update_subscription_billing_cycle",
        target_type="subscription",
        target_id=sub_id,
        changes={
            "before": {
                "price_id": before_price.get("id"),
                "interval": (before_price.get("recurring") or {}).get("interval"),
                "billing_cycle": profile.get("billing_cycle"),
            },
            "after": {"price_id": new_price_id, "billing_cycle": new_cycle},
        },
        reason=reason,
        notes=notes,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return {
        "success": True,
        "subscription": {**_subscription_out(result), "priceId": new_price_id, "billingCycle": new_cycle},
    }


def extend_subscription(ctx: RequestContext, user_id: str, body: dict[str, Any], *, ip_address: str, user_agent: str) -> dict[str, Any]:
    """
    Push the next charge ``extendDays`` past the current period end. Stripe
    only moves a live subscription's next charge through ``trial_end``, so the
    extension shows up as a free trial period.
    """
    days = body.get("extendDays")
    if days is None or not body.get("reason"):
        raise HTTPException(status_code=400, detail="Missing required fields: extendDays, reason")
    days = _whole_days(days, field="extendDays", maximum=MAX_EXTEND_DAYS)
    reason = _checked_text(body.get("reason"), "Reason", required=True, max_len=REASON_MAX)
    notes = _checked_text(body.get("notes"), "Notes", required=False, max_len=NOTES_MAX)

    uid, profile = _require_user(user_id)
    sub_id = _require_subscription_id(profile)
    try:
        sub = stripe_gateway.retrieve_subscription(sub_id)
        status = str(sub.get("status") or "")
        if status == "canceled" or sub.get("cancel_at_period_end"):
            raise HTTPException(status_code=400, detail="Cannot extend canceled subscription. Please reactivate first.")
        if status != "active":
            raise HTTPException(
                status_code=400,
                detail=f"Cannot extend subscription with status: {status}. Only active subscriptions can be extended.",
            )
        period_end = _period_end_epoch(sub) or int(time.time())
        new_end = period_end + days * SECONDS_PER_DAY
        result = stripe_gateway.set_trial_end(sub_id, new_end)
    except StripeGatewayError as e:
        raise _stripe_failure(e, "extend subscription")

    new_end_iso = epoch_to_iso(new_end)
    _sync_profile(
        uid,
        {"current_period_end": new_end_iso, "trial_end_date": epoch_to_iso(result.get("trial_end"))},
        operation="extend",
    )
    log_admin_action(
        admin_user_id=ctx.user_id,
        action_type="extend_subscription",
        target_type="subscription",
        target_id=sub_id,
        changes={
            "before": {"current_period_end": epoch_to_iso(period_end)},
            "after": {"current_period_end": new_end_iso, "days_extended": days},
        },
        reason=reason,
        notes=notes,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return {"success": True, "subscription": {**_subscription_out(result), "currentPeriodEnd": new_end_iso}}


def extend_trial(ctx: RequestContext, user_id: str, body: dict[str, Any], *, ip_address: str, user_agent: str) -> dict[str, Any]:
    """
    Extend (or restart) a trial. Users without a subscription get a new
    Premium monthly subscription that starts in trial.
    """
    days = body.get("extendDays")
    if days is None or not body.get("reason"):
        raise HTTPException(status_code=400, detail="Missing required fields: extendDays, reason")
    days = _whole_days(days, field="extendDays", maximum=MAX_EXTEND_DAYS)
    extension = days * SECONDS_PER_DAY
    if int(time.time()) + extension > MAX_UNIX_TIMESTAMP:
        raise HTTPException(
            status_code=400,
            detail="Trial extension would exceed maximum supported date (year 2038). Please use a smaller number of days.",
        )
    reason = _checked_text(body.get("reason"), "Reason", required=True, min_len=REASON_MIN, max_len=REASON_MAX)
    notes = _checked_text(body.get("notes"), "Notes", required=False, max_len=NOTES_MAX)

    uid, profile = _require_user(user_id)
    customer_id = profile.get("stripe_customer_id")
    if not customer_id:
        raise HTTPException(status_code=400, detail="User does not have a Stripe customer account")

    existing_id = profile.get("stripe_subscription_id")
    try:
        now = int(time.time())
        if existing_id:
            current = stripe_gateway.retrieve_subscription(str(existing_id))
            current_end = int(current.get("trial_end") or 0)
            reactivation = current_end <= now
            target = max(current_end, now) + extension
            sub = stripe_gateway.set_trial_end(str(existing_id), target)
            if int(sub.get("trial_end") or 0) < target - TRIAL_END_TOLERANCE_SECONDS:
                log.error("admin_trial_extension_not_applied", target_user_id=uid, expected=target, actual=sub.get("trial_end"))
                raise _failure("Unable to extend trial due to concurrent modifications. Please try again.")
        else:
            reactivation = True
            price_id = settings.stripe_premium_monthly_price_id
            if not price_id:
                raise _failure("STRIPE_PREMIUM_MONTHLY_PRICE_ID not configured. Cannot create trial subscription.")
            sub = stripe_gateway.create_subscription(
                customer_id=str(customer_id),
                price_id=price_id,
                trial_end=now + extension,
                metadata={"user_id": uid, "granted_by": ctx.user_id},
            )
    except StripeGatewayError as e:
        raise _stripe_failure(e, "extend trial")

    fields: dict[str, Any] = {
        "trial_end_date": epoch_to_iso(sub.get("trial_end")),
        "subscription_status": map_stripe_status(sub.get("status")),
    }
    if not existing_id:
        fields["stripe_subscription_id"] = sub.get("id")
    try:
        profiles_repo.update_profile_fields(uid, fields)
    except DdbError as e:
        log.error("admin_trial_profile_write_failed", target_user_id=uid, subscription_id=sub.get("id"), error=str(e))
        try:
            if existing_id:
                stripe_gateway.set_trial_end(str(existing_id), current_end if current_end > now else None)
            else:
                stripe_gateway.cancel_subscription_now(str(sub.get("id")))
        except StripeGatewayError as rollback_error:
            log.critical("admin_trial_rollback_failed", target_user_id=uid, subscription_id=sub.get("id"), error=rollback_error.message)
            raise _failure(
                "Critical error: Database update failed and automatic rollback failed. Please contact support immediately."
            )
        raise _failure("Failed to update database. Stripe changes have been rolled back. Please try again.")

    log_admin_action(
        admin_user_id=ctx.user_id,
        action_type="reactivate_trial" if reactivation else "extend_trial",
        target_type="subscription",
        target_id=str(sub.get("id")),
        changes={
            "before": {
                "trial_end_date": profile.get("trial_end_date"),
                "subscription_status": profile.get("subscription_status"),
            },
            "after": {**fields, "days_extended": days},
        },
        reason=reason,
        notes=notes,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return {"success": True, "subscription": _subscription_out(sub)}


# --- complimentary and custom plans ---

def grant_access(ctx: RequestContext, user_id: str, body: dict[str, Any], *, ip_address: str, user_agent: str) -> dict[str, Any]:
    """
    Temporary access is a Premium subscription trialing until the grant
    expires; lifetime access is a profile-only Premium override.
    """
    access_type = body.get("accessType")
    if access_type not in ACCESS_TYPES:
        raise HTTPException(status_code=400, detail='Invalid access type. Must be "temporary" or "lifetime"')
    category = body.get("category")
    if category not in GRANT_CATEGORIES:
        raise HTTPException(status_code=400, detail="Invalid category")
    plan_name = _checked_text(body.get("planName"), "Plan name", required=True, max_len=PLAN_NAME_MAX, strict=True)
    if len(plan_name or "") < PLAN_NAME_MIN:
        raise HTTPException(
            status_code=400,
            detail=f"Plan name must be between {PLAN_NAME_MIN} and {PLAN_NAME_MAX} characters",
        )
    duration = body.get("duration")
    if access_type == "temporary":
        duration = _whole_days(duration, field="Duration", maximum=MAX_GRANT_DAYS)
    notes = _checked_text(body.get("notes"), "Notes", required=False, max_len=NOTES_MAX, strict=True)

    uid = str(user_id or "").strip()
    if not is_uuid(uid):
        raise HTTPException(status_code=400, detail="Invalid user ID format")
    if category == "other" and not notes:
        log_admin_action(
            admin_user_id=ctx.user_id,
            action_type="grant_access_validation_failed",
            target_type="profile",
            target_id=uid,
            changes={"validation_error": "missing_notes_for_other", "category": category},
            notes='Validation failed: Notes required for "other" category',
            ip_address=ip_address,
            user_agent=user_agent,
        )
        raise HTTPException(status_code=400, detail='Notes are required when category is "other"')
    uid, profile = _require_user(uid)

    sub_id = profile.get("stripe_subscription_id")
    if sub_id:
        try:
            existing = stripe_gateway.retrieve_subscription(str(sub_id))
        except StripeGatewayError as e:
            log.warning("admin_grant_existing_subscription_unreadable", target_user_id=uid, error=e.message)
            existing = None
        if existing and existing.get("status") == "active" and not existing.get("cancel_at_period_end"):
            log_admin_action(
                admin_user_id=ctx.user_id,
                action_type="grant_access_blocked_existing_subscription",
                target_type="subscription",
                target_id=str(sub_id),
                changes={
                    "attempted_access_type": access_type,
                    "attempted_duration": duration,
                    "category": category,
                    "existing_subscription_status": existing.get("status"),
                },
                notes="Blocked grant attempt - user has active subscription",
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise _failure(
                "User has an active paid subscription. Please cancel or modify the existing subscription first, "
                "or use the Extend Trial feature instead.",
                status_code=409,
                existingSubscription={
                    "id": existing.get("id"),
                    "status": existing.get("status"),
                    "current_period_end": _period_end_epoch(existing),
                },
            )

    if access_type == "lifetime":
        return _grant_lifetime(ctx, uid, plan_name, category, notes, ip_address=ip_address, user_agent=user_agent)
    return _grant_temporary(ctx, uid, profile, int(duration), plan_name, category, notes, ip_address=ip_address, user_agent=user_agent)


def _grant_temporary(
    ctx: RequestContext,
    uid: str,
    profile: dict[str, Any],
    days: int,
    plan_name: str,
    category: str,
    notes: str | None,
    *,
    ip_address: str,
    user_agent: str,
) -> dict[str, Any]:
    price_id = settings.stripe_premium_monthly_price_id
    if not price_id:
        raise _failure("STRIPE_PREMIUM_MONTHLY_PRICE_ID environment variable not set")
    trial_end = int(time.time()) + days * SECONDS_PER_DAY
    expires_at = epoch_to_iso(trial_end)

    try:
        customer_id = _ensure_customer(uid, profile)
        sub = stripe_gateway.create_subscription(
            customer_id=customer_id,
            price_id=price_id,
            trial_end=trial_end,
            payment_behavior="default_incomplete",
            metadata={
                "user_id": uid,
                "grant_type": "temporary",
                "grant_category": category,
                "granted_by": ctx.user_id,
                "grant_plan_name": plan_name,
            },
        )
    except StripeGatewayError as e:
        raise _stripe_failure(e, "grant temporary access")

    try:
        profiles_repo.update_profile_fields(
            uid,
            {
                "stripe_subscription_id": sub.get("id"),
                "subscription_status": map_stripe_status(sub.get("status")),
                "subscription_tier": "PREMIUM",
                "trial_end_date": expires_at,
                "current_period_end": subscription_period_end(sub),
                "custom_plan_name": plan_name,
                "custom_plan_type": "temporary_stripe",
                "custom_plan_notes": notes or f"Granted temporary access via Stripe trial ({category})",
            },
        )
    except DdbError as e:
        log.error("admin_grant_profile_write_failed", target_user_id=uid, subscription_id=sub.get("id"), error=str(e))
        try:
            stripe_gateway.cancel_subscription_now(str(sub.get("id")))
        except StripeGatewayError as rollback_error:
            log_admin_action(
                admin_user_id=ctx.user_id,
                action_type="grant_access_orphaned_subscription",
                target_type="subscription",
                target_id=str(sub.get("id")),
                changes={
                    "user_id": uid,
                    "subscription_id": sub.get("id"),
                    "database_error": str(e),
                    "rollback_error": rollback_error.message,
                },
                notes="Orphaned Stripe subscription: profile update and rollback both failed. Manual cleanup required.",
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise _failure(
                "Failed to update user profile. CRITICAL: Subscription may exist in Stripe without database record. "
                "Engineering has been notified.",
                orphanedSubscriptionId=sub.get("id"),
            )
        raise _failure("Failed to update user profile. Subscription has been rolled back.")

    log_admin_action(
        admin_user_id=ctx.user_id,
        action_type="grant_temporary_access",
        target_type="subscription",
        target_id=str(sub.get("id")),
        changes={
            "plan_name": plan_name,
            "access_type": "temporary",
            "duration_days": days,
            "category": category,
            "expires_at": expires_at,
            "stripe_subscription_id": sub.get("id"),
        },
        notes=notes or f"Granted {days} days of temporary Premium access ({category})",
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return {
        "success": True,
        "type": "temporary",
        "expiresAt": expires_at,
        "planName": plan_name,
        "subscription": _subscription_out(sub),
    }


def _grant_lifetime(
    ctx: RequestContext,
    uid: str,
    plan_name: str,
    category: str,
    notes: str | None,
    *,
    ip_address: str,
    user_agent: str,
) -> dict[str, Any]:
    plan_notes = notes or f"Granted permanent Premium access ({category})"
    profiles_repo.update_profile_fields(
        uid,
        {
            "custom_plan_name": plan_name,
            "custom_plan_type": "lifetime",
            "custom_plan_expires_at": None,
            "custom_plan_notes": plan_notes,
            "subscription_tier": "PREMIUM",
            "subscription_status": "ACTIVE",
        },
    )
    log_admin_action(
        admin_user_id=ctx.user_id,
        action_type="grant_lifetime_access",
        target_type="profile",
        target_id=uid,
        changes={"plan_name": plan_name, "access_type": "lifetime", "category": category},
        notes=plan_notes,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return {"success": True, "type": "lifetime", "planName": plan_name, "expiresAt": None}


def _parse_expiration(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        expires = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid expiration date format")
    if expires.tzinfo is None:
        expires = expires.replace(tzinfo=timezone.utc)
    today = date.today()
    if expires.date() < today:
        raise HTTPException(status_code=400, detail="Expiration date cannot be in the past")
    try:
        latest = today.replace(year=today.year + MAX_PLAN_YEARS)
    except ValueError:
        latest = today.replace(year=today.year + MAX_PLAN_YEARS, day=28)
    if expires.date() > latest:
        raise HTTPException(
            status_code=400,
            detail=f"Expiration date cannot be more than {MAX_PLAN_YEARS} years in the future",
        )
    return expires


def assign_custom_plan(ctx: RequestContext, user_id: str, body: dict[str, Any], *, ip_address: str, user_agent: str) -> dict[str, Any]:
    """
    Replace the user's subscription with one on a one-off price. The new price
    and subscription are rolled back if the profile cannot record them.
    """
    price = body.get("monthlyPrice")
    period = body.get("billingPeriod")
    category = body.get("category")
    if not body.get("planName") or price is None or not period or not category:
        raise HTTPException(
            status_code=400,
            detail="Missing required fields: planName, monthlyPrice, billingPeriod, category",
        )
    plan_name = _checked_text(body.get("planName"), "Plan name", required=True, max_len=PLAN_NAME_MAX, strict=True)
    if len(plan_name or "") < PLAN_NAME_MIN:
        raise HTTPException(
            status_code=400,
            detail=f"Plan name must be between {PLAN_NAME_MIN} and {PLAN_NAME_MAX} characters",
        )
    if isinstance(price, bool) or not isinstance(price, (int, float)) or price != price or price < 0:
        raise HTTPException(status_code=400, detail="Monthly price must be a valid positive number")
    if price > MAX_MONTHLY_PRICE:
        raise HTTPException(status_code=400, detail=f"Monthly price cannot exceed ${MAX_MONTHLY_PRICE}")
    if period not in BILLING_PERIODS:
        raise HTTPException(status_code=400, detail=f"Billing period must be one of: {', '.join(BILLING_PERIODS)}")
    if category not in PLAN_CATEGORIES:
        raise HTTPException(status_code=400, detail=f"Category must be one of: {', '.join(PLAN_CATEGORIES)}")
    expires = _parse_expiration(body.get("expirationDate"))
    notes = _checked_text(body.get("notes"), "Notes", required=False, max_len=NOTES_MAX, strict=True)
    if category == "other" and not notes:
        raise HTTPException(status_code=400, detail='Notes are required when category is "other"')
    limits = body.get("featureLimits")
    if limits is not None and not isinstance(limits, dict):
        raise HTTPException(status_code=400, detail="Feature limits must be a valid JSON object")

    uid, profile = _require_user(user_id)
    if profile.get("custom_plan_type") == "custom_price":
        raise HTTPException(status_code=400, detail="User already has a custom plan. Remove the existing plan first.")

    monthly_cents = int(round(float(price) * 100))
    interval, unit_amount = ("month", monthly_cents) if period == "monthly" else ("year", monthly_cents * 12)
    try:
        customer_id = _ensure_customer(uid, profile)
        new_price = stripe_gateway.create_recurring_price(
            unit_amount=unit_amount,
            interval=interval,
            product_id=settings.stripe_custom_plan_product_id,
            product_name=f"Custom Plan: {plan_name}",
            metadata={"plan_name": plan_name, "user_id": uid, "monthly_price": str(price), "billing_period": period},
        )
        old_sub_id = profile.get("stripe_subscription_id")
        if old_sub_id:
            try:
                old = stripe_gateway.retrieve_subscription(str(old_sub_id))
                if old.get("status") in ("active", "trialing"):
                    stripe_gateway.cancel_subscription_now(str(old_sub_id))
            except StripeGatewayError as e:
                log.warning("admin_custom_plan_old_subscription_cancel_failed", target_user_id=uid, error=e.message)
        sub = stripe_gateway.create_subscription(
            customer_id=customer_id,
            price_id=str(new_price.get("id")),
            metadata={"user_id": uid, "plan_type": "custom", "plan_name": plan_name, "assigned_by": ctx.user_id},
        )
    except StripeGatewayError as e:
        raise _stripe_failure(e, "create custom plan")

    expires_iso = expires.isoformat().replace("+00:00", "Z") if expires else None
    try:
        profiles_repo.update_profile_fields(
            uid,
            {
                "stripe_subscription_id": sub.get("id"),
                "subscription_status": map_stripe_status(sub.get("status")),
                "subscription_tier": "PREMIUM",
                "custom_plan_type": "custom_price",
                "custom_plan_name": plan_name,
                "custom_plan_expires_at": expires_iso,
                "custom_plan_notes": notes,
                "plan_override_limits": limits or None,
                "billing_cycle": period,
                "current_period_end": subscription_period_end(sub),
            },
        )
    except DdbError as e:
        log.error("admin_custom_plan_profile_write_failed", target_user_id=uid, subscription_id=sub.get("id"), error=str(e))
        try:
            stripe_gateway.cancel_subscription_now(str(sub.get("id")))
            stripe_gateway.deactivate_price(str(new_price.get("id")))
        except StripeGatewayError as rollback_error:
            log.critical(
                "admin_custom_plan_rollback_failed",
                target_user_id=uid,
                subscription_id=sub.get("id"),
                price_id=new_price.get("id"),
                error=rollback_error.message,
            )
            raise _failure(
                "Failed to update database. CRITICAL: Rollback failed - manual cleanup required. "
                "Check logs for subscription ID and price ID."
            )
        raise _failure("Failed to update database. Subscription and price have been rolled back.")

    log_admin_action(
        admin_user_id=ctx.user_id,
        action_type="assign_custom_plan",
        target_type="subscription",
        target_id=str(sub.get("id")),
        changes={
            "plan_name": plan_name,
            "monthly_price": price,
            "billing_period": period,
            "expires_at": expires_iso,
            "feature_limits": limits or None,
        },
        reason=f"Custom Plan: {category}",
        notes=notes,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    pricing = f"${float(price):.2f}/month" if period == "monthly" else f"${float(price) * 12:.2f}/year"
    return {
        "success": True,
        "subscription": {"id": sub.get("id"), "status": sub.get("status"), "pricing": pricing, "expiresAt": expires_iso},
    }


def remove_custom_plan(ctx: RequestContext, user_id: str, *, ip_address: str, user_agent: str) -> dict[str, Any]:
    uid, profile = _require_user(user_id)
    if profile.get("custom_plan_type") != "custom_price":
        raise HTTPException(status_code=400, detail="User does not have a custom plan")

    sub_id = profile.get("stripe_subscription_id")
    if sub_id:
        try:
            stripe_gateway.cancel_subscription_now(str(sub_id))
        except StripeGatewayError as e:
            # The profile is cleared regardless; a live subscription is reported by the webhook.
            log.error("admin_custom_plan_cancel_failed", target_user_id=uid, subscription_id=sub_id, error=e.message)

    profiles_repo.update_profile_fields(
        uid,
        {
            "stripe_subscription_id": None,
            "subscription_status": "CANCELLED",
            "subscription_tier": "FREE",
            "custom_plan_type": None,
            "custom_plan_name": None,
            "custom_plan_expires_at": None,
            "custom_plan_notes": None,
            "plan_override_limits": None,
            "billing_cycle": None,
            "current_period_end": None,
        },
    )
    log_admin_action(
        admin_user_id=ctx.user_id,
        action_type="remove_custom_plan",
        target_type="profile",
        target_id=uid,
        changes={"previous_plan_name": profile.get("custom_plan_name"), "subscription_id": sub_id},
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return {"success": True, "planName": profile.get("custom_plan_name")}


# --- refunds ---

def _is_missing_resource(e: StripeGatewayError) -> bool:
    orig = e.original_error
    return isinstance(orig, stripe.InvalidRequestError) and getattr(orig, "code", None) == "resource_missing"


def _sync_subscription_after_refund(charge: Any) -> None:
    """Best effort: a refunded invoice can flip the subscription's status."""
    invoice_id = charge.get("invoice")
    if isinstance(invoice_id, dict):
        invoice_id = invoice_id.get("id")
    if not invoice_id:
        return
    try:
        invoice = stripe_gateway.retrieve_invoice(str(invoice_id))
        sub_id = invoice.get("subscription")
        if isinstance(sub_id, dict):
            sub_id = sub_id.get("id")
        if not sub_id:
            return
        sub = stripe_gateway.retrieve_subscription(str(sub_id))
        owner = profiles_repo.get_profile_by_customer_id(str(charge.get("customer") or ""))
        if owner and owner.get("stripe_subscription_id") == sub_id:
            profiles_repo.update_profile_fields(str(owner["id"]), {"subscription_status": map_stripe_status(sub.get("status"))})
    except (StripeGatewayError, DdbError) as e:
        log.warning("refund_subscription_sync_failed", invoice_id=invoice_id, error=str(e))


def refund_payment(ctx: RequestContext, payment_id: str, body: dict[str, Any], *, ip_address: str, user_agent: str) -> dict[str, Any]:
    if not CHARGE_ID_RE.match(str(payment_id or "")):
        raise HTTPException(status_code=400, detail="Invalid payment ID format")
    refund_type = body.get("refundType")
    category = body.get("reasonCategory")
    if not refund_type or not category or not body.get("notes"):
        raise HTTPException(status_code=400, detail="Missing required fields: refundType, reasonCategory, notes")
    if refund_type not in REFUND_TYPES:
        raise HTTPException(status_code=400, detail='refundType must be either "full" or "partial"')
    amount = body.get("amount")
    if refund_type == "partial":
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise HTTPException(status_code=400, detail="Partial refunds require a positive integer amount in cents")
        if amount < MIN_REFUND_CENTS:
            raise HTTPException(status_code=400, detail=f"Refund amount must be at least ${MIN_REFUND_CENTS / 100:.2f}")
    else:
        amount = None
    if category not in REFUND_CATEGORIES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid reason category. Must be one of: {', '.join(REFUND_CATEGORIES)}",
        )
    notes = _checked_text(body.get("notes"), "Notes", required=True, min_len=REASON_MIN, max_len=NOTES_MAX)

    try:
        charge = stripe_gateway.retrieve_charge(payment_id)
    except StripeGatewayError as e:
        if _is_missing_resource(e):
            raise HTTPException(status_code=404, detail="Payment not found")
        raise _stripe_failure(e, "process refund")
    if charge.get("refunded"):
        raise HTTPException(status_code=400, detail="This payment has already been fully refunded")
    if amount is not None:
        remaining = int(charge.get("amount") or 0) - int(charge.get("amount_refunded") or 0)
        if amount > remaining:
            raise HTTPException(
                status_code=400,
                detail=(
                    f"Refund amount (${amount / 100:.2f}) exceeds remaining refundable amount "
                    f"(${remaining / 100:.2f})"
                ),
            )

    customer_id = charge.get("customer")
    if isinstance(customer_id, dict):
        customer_id = customer_id.get("id")
    if not customer_id:
        raise HTTPException(status_code=400, detail="Unable to identify customer for this payment")
    owner = profiles_repo.get_profile_by_customer_id(str(customer_id))
    if not owner:
        raise HTTPException(status_code=404, detail="Unable to find user for this payment")

    try:
        refund = stripe_gateway.create_refund(
            charge_id=payment_id,
            amount=amount,
            metadata={
                "reason_category": category,
                "admin_notes": _METADATA_UNSAFE_RE.sub("", notes[:500]).strip(),
                "refunded_by": ctx.user_id,
            },
        )
    except StripeGatewayError as e:
        raise _stripe_failure(e, "process refund")

    try:
        refunds_repo.record_refund(
            user_id=str(owner["id"]),
            stripe_refund_id=str(refund.get("id")),
            stripe_charge_id=payment_id,
            amount_cents=int(refund.get("amount") or 0),
            currency=str(refund.get("currency") or ""),
            reason_category=category,
            notes=notes,
            refunded_by=ctx.user_id,
        )
    except DdbError as e:
        log.critical("refund_record_failed", refund_id=refund.get("id"), charge_id=payment_id, target_user_id=owner.get("id"), error=str(e))
        log_admin_action(
            admin_user_id=ctx.user_id,
            action_type="refund_db_failure",
            target_type="payment",
            target_id=payment_id,
            changes={"stripe_refund_id": refund.get("id"), "database_error": str(e), "requires_manual_reconciliation": True},
            reason="Database insert failed after successful Stripe refund",
            notes=f"Refund ID: {refund.get('id')}. This requires immediate manual reconciliation.",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        raise _failure(
            "Refund processed in Stripe but failed to record in database. "
            f"CRITICAL: Manual reconciliation required. Refund ID: {refund.get('id')}"
        )

    _sync_subscription_after_refund(charge)
    log_admin_action(
        admin_user_id=ctx.user_id,
        action_type="process_refund",
        target_type="payment",
        target_id=payment_id,
        changes={
            "refund_type": refund_type,
            "refund_amount": refund.get("amount"),
            "refund_id": refund.get("id"),
            "original_charge_amount": charge.get("amount"),
            "reason_category": category,
        },
        reason=f"Refund: {category}",
        notes=notes,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    log.info("refund_processed", admin_user_id=ctx.user_id, refund_id=refund.get("id"), charge_id=payment_id)
    return {
        "success": True,
        "refund": {
            "id": refund.get("id"),
            "amount": refund.get("amount") or 0,
            "currency": refund.get("currency"),
            "status": refund.get("status") or "succeeded",
            "created": epoch_to_iso(refund.get("created")),
        },
    }
