"""
Stripe webhook processing.

Events are verified against the webhook secret, de-duplicated by event id and
applied to the profile that owns the Stripe customer.
"""
from __future__ import annotations

from typing import Any, Callable

import stripe
from fastapi import HTTPException

from ...observability.logging import get_logger
from ...repositories import profiles_repo, stripe_events_repo
from . import stripe_gateway
from .stripe_gateway import StripeGatewayError
from .subscription import epoch_to_iso, map_stripe_status, subscription_period_end, subscription_price_id, tier_for_price

log = get_logger("stripe_webhooks")


def _customer_id(obj: Any) -> str | None:
    customer = (obj or {}).get("customer")
    if hasattr(customer, "get"):
        customer = customer.get("id")
    return str(customer) if customer else None


def _resolve_user_id(customer_id: str | None, obj: Any) -> str | None:
    if customer_id:
        profile = profiles_repo.get_profile_by_customer_id(customer_id)
        if profile:
            return str(profile.get("id") or profile.get("user_id") or "") or None
    metadata = (obj or {}).get("metadata") or {}
    user_id = metadata.get("user_id") if hasattr(metadata, "get") else None
    if user_id and customer_id:
        profiles_repo.put_customer_pointer(customer_id=customer_id, user_id=str(user_id))
    return str(user_id) if user_id else None


def _apply_subscription(subscription: Any, *, event_type: str) -> None:
    customer_id = _customer_id(subscription)
    user_id = _resolve_user_id(customer_id, subscription)
    if not user_id:
        log.warning("stripe_webhook_profile_not_found", event_type=event_type, customer_id=customer_id)
        return

    fields: dict[str, Any] = {
        "stripe_customer_id": customer_id,
        "stripe_subscription_id": subscription.get("id"),
        "subscription_status": map_stripe_status(subscription.get("status")),
        "current_period_end": subscription_period_end(subscription),
        "trial_end_date": epoch_to_iso(subscription.get("trial_end")),
    }
    price_id = subscription_price_id(subscription)
    tier = tier_for_price(price_id)
    if tier:
        fields["subscription_tier"] = tier
    else:
        log.warning("stripe_webhook_unknown_price", event_type=event_type, price_id=price_id)

    profiles_repo.update_profile_fields(user_id, fields)
    log.info(
        "stripe_subscription_synced",
        event_type=event_type,
        user_id=user_id,
        status=fields["subscription_status"],
        tier=fields.get("subscription_tier"),
    )


def _on_checkout_completed(obj: Any) -> None:
    sub_id = obj.get("subscription")
    if hasattr(sub_id, "get"):
        sub_id = sub_id.get("id")
    if not sub_id:
        log.info("stripe_checkout_without_subscription", session_id=obj.get("id"))
        return
    customer_id = _customer_id(obj)
    # Make sure the pointer exists before the subscription is applied.
    _resolve_user_id(customer_id, obj)
    subscription = stripe_gateway.retrieve_subscription(str(sub_id))
    _apply_subscription(subscription, event_type="checkout.session.completed")


def _on_subscription_updated(obj: Any) -> None:
    _apply_subscription(obj, event_type="customer.subscription.updated")


def _on_subscription_deleted(obj: Any) -> None:
    customer_id = _customer_id(obj)
    user_id = _resolve_user_id(customer_id, obj)
    if not user_id:
        log.warning("stripe_webhook_profile_not_found", event_type="customer.subscription.deleted", customer_id=customer_id)
        return
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
    log.info("stripe_subscription_deleted", user_id=user_id)


def _on_trial_will_end(obj: Any) -> None:
    log.info(
        "stripe_trial_will_end",
        customer_id=_customer_id(obj),
        trial_end=epoch_to_iso(obj.get("trial_end")),
    )


_HANDLERS: dict[str, Callable[[Any], None]] = {
    "checkout.session.completed": _on_checkout_completed,
    "customer.subscription.created": _on_subscription_updated,
    "customer.subscription.updated": _on_subscription_updated,
    "customer.subscription.deleted": _on_subscription_deleted,
    "customer.subscription.trial_will_end": _on_trial_will_end,
}


def process_webhook(payload: bytes, sig_header: str | None) -> dict[str, Any]:
    if not sig_header:
        raise HTTPException(status_code=400, detail="Stripe-Signature header missing")

    try:
        event = stripe_gateway.construct_event(payload, sig_header)
    except (stripe.SignatureVerificationError, ValueError) as e:
        log.warning("stripe_webhook_invalid_signature", error=type(e).__name__)
        raise HTTPException(status_code=400, detail="Invalid signature")
    except StripeGatewayError as e:
        log.error("stripe_webhook_not_configured", error=e.message)
        raise HTTPException(status_code=500, detail="Server configuration error")

    event_id = str(event.get("id") or "")
    event_type = str(event.get("type") or "")
    handler = _HANDLERS.get(event_type)
    if not handler:
        log.info("stripe_webhook_ignored", event_id=event_id, event_type=event_type)
        return {"received": True}

    if not stripe_events_repo.mark_processing(event_id=event_id, event_type=event_type):
        log.info("stripe_webhook_duplicate", event_id=event_id, event_type=event_type)
        return {"received": True, "duplicate": True}

    obj = (event.get("data") or {}).get("object") or {}
    try:
        handler(obj)
    except Exception as e:
        # Release the marker so Stripe's retry is processed.
        stripe_events_repo.release(event_id=event_id)
        log.exception("stripe_webhook_handler_failed", event_id=event_id, event_type=event_type, error=str(e))
        raise HTTPException(status_code=500, detail="Webhook handler failed")

    return {"received": True}
