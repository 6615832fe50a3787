from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException

from ...auth.context import RequestContext
from ...observability.logging import get_logger
from ...repositories import profiles_repo
from ...settings import settings
from ..feature_access import get_status, get_tier
from ..request_utils import contains_forbidden_pattern
from . import stripe_gateway
from .stripe_gateway import StripeGatewayError, SubscriptionOwnershipError

log = get_logger("subscription")

CANCEL_REASON_MAX = 500

_STRIPE_STATUS_MAP = {
    "active": "ACTIVE",
    "trialing": "TRIAL",
    "canceled": "CANCELLED",
}

_PLAN_CATALOG = (
    {
        "key": "BASIC_MONTHLY",
        "tier": "BASIC",
        "billingCycle": "monthly",
        "price": 5.99,
        "label": "Basic Monthly",
        "description": "$5.99/month",
    },
    {
        "key": "BASIC_ANNUAL",
        "tier": "BASIC",
        "billingCycle": "annual",
        "price": 59.99,
        "label": "Basic Annual",
        "description": "$59.99/year (Save 17%)",
    },
    {
        "key": "PREMIUM_MONTHLY",
        "tier": "PREMIUM",
        "billingCycle": "monthly",
        "price": 9.99,
        "label": "Premium Monthly",
        "description": "$9.99/month",
    },
    {
        "key": "PREMIUM_ANNUAL",
        "tier": "PREMIUM",
        "billingCycle": "annual",
        "price": 99.99,
        "label": "Premium Annual",
        "description": "$99.99/year (Save 17%)",
    },
)

_TIER_FEATURES = {
    "BASIC": [
        "Unlimited games",
        "Custom question banks",
        "Video & images",
        "Custom team names",
        "Up to 10 teams per game",
    ],
    "PREMIUM": [
        "Everything in Basic",
        "AI question generation",
        "Community question banks",
        "Google Classroom integration",
        "Advanced analytics",
        "Up to 15 teams per game",
    ],
}


# --- Stripe object helpers (work for StripeObject and plain dicts) ---

def map_stripe_status(status: Any) -> str:
    return _STRIPE_STATUS_MAP.get(str(status or "").lower(), "INACTIVE")


def epoch_to_iso(ts: Any) -> str | None:
    if ts is None or ts == "":
        return None
    try:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc).isoformat().replace("+00:00", "Z")
    except (TypeError, ValueError, OverflowError):
        return None


def first_item(subscription: Any) -> Any:
    items = (subscription or {}).get("items") or {}
    data = items.get("data") if hasattr(items, "get") else None
    return (data or [None])[0]


def subscription_price_id(subscription: Any) -> str | None:
    item = first_item(subscription)
    price = (item or {}).get("price") or {}
    return price.get("id") if hasattr(price, "get") else None


def subscription_period_end(subscription: Any) -> str | None:
    # Newer API versions report the period on the subscription item.
    ts = (subscription or {}).get("current_period_end")
    if ts is None:
        ts = (first_item(subscription) or {}).get("current_period_end")
    return epoch_to_iso(ts)


def billing_cycle(subscription: Any) -> str | None:
    item = first_item(subscription)
    price = (item or {}).get("price") or {}
    recurring = price.get("recurring") or {}
    interval = recurring.get("interval") if hasattr(recurring, "get") else None
    if interval == "month":
        return "monthly"
    if interval == "year":
        return "annual"
    return None


def tier_for_price(price_id: str | None) -> str | None:
    for key, configured in settings.configured_price_ids().items():
        if configured == price_id:
            return key.split("_", 1)[0]
    return None


# --- operations ---

def _plan_limit(profile: dict[str, Any]) -> int | None:
    return profiles_repo.FREE_TIER_GAME_LIMIT if get_tier(profile) == "FREE" else None


def get_subscription_status(ctx: RequestContext) -> dict[str, Any]:
    profile = ctx.acting_profile
    out: dict[str, Any] = {
        "subscription_tier": get_tier(profile),
        "subscription_status": get_status(profile),
        "billing_cycle": None,
        "current_period_end": profile.get("current_period_end"),
        "trial_end_date": profile.get("trial_end_date"),
        "cancel_at_period_end": False,
        "cancel_at": None,
        "stripe_subscription": None,
        "games_created_count": int(profile.get("games_created_count") or 0),
        "games_limit": _plan_limit(profile),
    }

    sub_id = profile.get("stripe_subscription_id")
    if not sub_id:
        return out

    try:
        sub = stripe_gateway.retrieve_subscription(sub_id)
    except StripeGatewayError as e:
        # Local state is still useful when Stripe is unreachable.
        log.warning("subscription_status_stripe_failed", user_id=ctx.effective_user_id, error=e.message)
        return out

    out.update(
        {
            "billing_cycle": billing_cycle(sub),
            "current_period_end": subscription_period_end(sub) or out["current_period_end"],
            "cancel_at_period_end": bool(sub.get("cancel_at_period_end")),
            "cancel_at": epoch_to_iso(sub.get("cancel_at")),
            "stripe_subscription": {
                "id": sub.get("id"),
                "status": sub.get("status"),
                "priceId": subscription_price_id(sub),
                "trialEnd": epoch_to_iso(sub.get("trial_end")),
            },
        }
    )
    return out


def list_plans() -> dict[str, Any]:
    configured = settings.configured_price_ids()
    plans = [
        {
            "tier": p["tier"],
            "billingCycle": p["billingCycle"],
            "priceId": configured[p["key"]],
            "price": p["price"],
            "label": p["label"],
            "description": p["description"],
            "features": list(_TIER_FEATURES[p["tier"]]),
        }
        for p in _PLAN_CATALOG
        if configured.get(p["key"])
    ]
    if not plans:
        log.error("plans_not_configured")
        raise HTTPException(status_code=500, detail="Plans not configured")
    return {"plans": plans}


def _stripe_failure(e: StripeGatewayError) -> HTTPException:
    return HTTPException(status_code=500, detail={"success": False, "error": e.message, "message": e.message})


def _ownership_failure(e: SubscriptionOwnershipError) -> HTTPException:
    status = 400 if e.message == "No billing account found" else 403
    return HTTPException(status_code=status, detail=e.message)


def cancel_subscription(ctx: RequestContext, body: dict[str, Any]) -> dict[str, Any]:
    immediate = bool(body.get("immediate"))
    reason = body.get("reason")
    if reason is not None:
        if not isinstance(reason, str) or len(reason) > CANCEL_REASON_MAX:
            raise HTTPException(status_code=400, detail=f"Reason must be {CANCEL_REASON_MAX} characters or less")
        if contains_forbidden_pattern(reason):
            raise HTTPException(status_code=400, detail="Reason contains invalid characters or patterns")
        reason = reason.strip() or None

    profile = ctx.acting_profile
    user_id = ctx.effective_user_id
    sub_id = profile.get("stripe_subscription_id")
    if not sub_id:
        raise HTTPException(status_code=400, detail="No active subscription found")

    try:
        sub = stripe_gateway.retrieve_subscription(sub_id)
        stripe_gateway.verify_subscription_ownership(sub, profile.get("stripe_customer_id"))
        if sub.get("status") == "canceled":
            raise HTTPException(status_code=400, detail="Subscription is already canceled")
        if immediate:
            result = stripe_gateway.cancel_subscription_now(sub_id)
        else:
            result = stripe_gateway.set_cancel_at_period_end(sub_id, True, reason=reason)
    except SubscriptionOwnershipError as e:
        raise _ownership_failure(e)
    except StripeGatewayError as e:
        raise _stripe_failure(e)

    if immediate:
        profiles_repo.update_profile_fields(
            user_id,
            {
                "subscription_status": "CANCELLED",
                "subscription_tier": "FREE",
                "stripe_subscription_id": None,
                "current_period_end": None,
                "trial_end_date": None,
            },
        )

    log.info("subscription_cancelled", user_id=user_id, immediate=immediate, has_reason=bool(reason))
    return {
        "success": True,
        "subscription": {
            "id": result.get("id"),
            "status": result.get("status"),
            "cancelAtPeriodEnd": bool(result.get("cancel_at_period_end")),
            "canceledAt": epoch_to_iso(result.get("canceled_at")),
            "currentPeriodEnd": subscription_period_end(result),
        },
    }


def reactivate_subscription(ctx: RequestContext) -> dict[str, Any]:
    profile = ctx.acting_profile
    sub_id = profile.get("stripe_subscription_id")
    if not sub_id:
        raise HTTPException(status_code=400, detail="No subscription found to reactivate")

    try:
        sub = stripe_gateway.retrieve_subscription(sub_id)
        stripe_gateway.verify_subscription_ownership(sub, profile.get("stripe_customer_id"))
        result = stripe_gateway.set_cancel_at_period_end(sub_id, False)
    except SubscriptionOwnershipError as e:
        raise _ownership_failure(e)
    except StripeGatewayError as e:
        raise _stripe_failure(e)

    log.info("subscription_reactivated", user_id=ctx.effective_user_id)
    return {
        "success": True,
        "subscription": {
            "id": result.get("id"),
            "status": result.get("status"),
            "cancelAtPeriodEnd": bool(result.get("cancel_at_period_end")),
            "currentPeriodEnd": subscription_period_end(result),
        },
    }


def update_plan(ctx: RequestContext, body: dict[str, Any]) -> dict[str, Any]:
    new_price_id = body.get("new_price_id")
    if not stripe_gateway.is_valid_price_id(new_price_id):
        raise HTTPException(status_code=400, detail="Invalid price ID format")
    new_tier = tier_for_price(new_price_id)
    if not new_tier:
        raise HTTPException(status_code=400, detail="Invalid price ID")

    profile = ctx.acting_profile
    sub_id = profile.get("stripe_subscription_id")
    if not sub_id:
        raise HTTPException(status_code=400, detail="No active subscription found. Please subscribe first.")

    try:
        sub = stripe_gateway.retrieve_subscription(sub_id)
        stripe_gateway.verify_subscription_ownership(sub, profile.get("stripe_customer_id"))
        item = first_item(sub)
        if not item or not item.get("id"):
            raise StripeGatewayError("Subscription has no items")
        result = stripe_gateway.change_subscription_price(sub_id, item_id=item["id"], price_id=new_price_id)
    except SubscriptionOwnershipError as e:
        raise _ownership_failure(e)
    except StripeGatewayError as e:
        raise _stripe_failure(e)

    profiles_repo.update_profile_fields(ctx.effective_user_id, {"subscription_tier": new_tier})
    log.info("subscription_plan_updated", user_id=ctx.effective_user_id, new_tier=new_tier)
    return {
        "success": True,
        "subscription": {
            "id": result.get("id"),
            "status": result.get("status"),
            "priceId": new_price_id,
            "currentPeriodEnd": subscription_period_end(result),
        },
        "proration": {
            "amount": 0,
            "description": "Prorated charges will appear on your next invoice",
        },
    }


def create_portal_session(ctx: RequestContext) -> dict[str, Any]:
    customer_id = ctx.acting_profile.get("stripe_customer_id")
    if not customer_id:
        raise HTTPException(status_code=400, detail="No billing account found")
    try:
        session = stripe_gateway.create_portal_session(
            customer_id=customer_id,
            return_url=f"{settings.frontend_base_url.rstrip('/')}/account",
        )
    except StripeGatewayError as e:
        raise _stripe_failure(e)
    return {"success": True, "url": session.get("url")}


def create_checkout_session(ctx: RequestContext, body: dict[str, Any]) -> dict[str, Any]:
    price_id = body.get("priceId")
    if not stripe_gateway.is_valid_price_id(price_id):
        raise HTTPException(status_code=400, detail="Invalid price ID format")
    if not tier_for_price(price_id):
        raise HTTPException(status_code=400, detail="Invalid price ID")
    quantity = body.get("quantity", 1)
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
        raise HTTPException(status_code=400, detail="quantity must be a positive integer")
    raw_meta = body.get("metadata") or {}
    if not isinstance(raw_meta, dict):
        raise HTTPException(status_code=400, detail="metadata must be an object")

    user_id = ctx.effective_user_id
    profile = ctx.acting_profile
    metadata = {str(k): str(v) for k, v in raw_meta.items()}
    metadata["user_id"] = user_id

    try:
        customer_id = profile.get("stripe_customer_id")
        if not customer_id:
            customer = stripe_gateway.create_customer(email=profile.get("email"), user_id=user_id)
            customer_id = customer.get("id")
            profiles_repo.update_profile_fields(user_id, {"stripe_customer_id": customer_id})
            log.info("stripe_customer_created", user_id=user_id)
        profiles_repo.put_customer_pointer(customer_id=customer_id, user_id=user_id)

        base = settings.frontend_base_url.rstrip("/")
        session = stripe_gateway.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            quantity=quantity,
            metadata=metadata,
            success_url=f"{base}/account",
            cancel_url=f"{base}/",
        )
    except StripeGatewayError as e:
        raise _stripe_failure(e)

    log.info("checkout_session_created", user_id=user_id)
    return {"sessionId": session.get("id")}
