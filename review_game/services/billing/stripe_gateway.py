"""
Thin wrapper around the Stripe SDK.

Every Stripe call in the service goes through this module so that:
- the API key and per-request timeout come from settings
- network timeouts surface as StripeTimeout
- tests can monkeypatch a single seam
"""
from __future__ import annotations

import re
from typing import Any, Callable, TypeVar

import stripe

from ...observability.logging import get_logger
from ...settings import settings

T = TypeVar("T")

logger = get_logger("stripe")

PRICE_ID_RE = re.compile(r"^price_[a-zA-Z0-9]{24,}$")

TIMEOUT_MESSAGE = "Stripe API timeout - please try again"


class StripeGatewayError(Exception):
    """A Stripe call failed; ``message`` is safe to return to the client."""

    def __init__(self, message: str, *, original_error: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class StripeTimeout(StripeGatewayError):
    def __init__(self, original_error: Exception | None = None):
        super().__init__(TIMEOUT_MESSAGE, original_error=original_error)


class SubscriptionOwnershipError(StripeGatewayError):
    pass


_configured = False


def _configure() -> None:
    global _configured
    if _configured:
        return
    if not settings.stripe_secret_key:
        raise StripeGatewayError("Stripe is not configured")
    stripe.api_key = settings.stripe_secret_key
    stripe.default_http_client = stripe.RequestsClient(timeout=int(settings.stripe_api_timeout_seconds or 10))
    _configured = True


def _call(operation: str, fn: Callable[[], T]) -> T:
    _configure()
    try:
        return fn()
    except stripe.APIConnectionError as e:
        logger.warning("stripe_timeout", operation=operation, error=str(e))
        raise StripeTimeout(e) from e
    except stripe.StripeError as e:
        logger.error(
            "stripe_call_failed",
            operation=operation,
            error_type=type(e).__name__,
            error=str(getattr(e, "user_message", None) or e),
        )
        raise StripeGatewayError(str(getattr(e, "user_message", None) or e), original_error=e) from e


def is_valid_price_id(price_id: Any) -> bool:
    return isinstance(price_id, str) and bool(PRICE_ID_RE.match(price_id))


def verify_subscription_ownership(subscription: Any, customer_id: str | None) -> None:
    if not customer_id:
        raise SubscriptionOwnershipError("No billing account found")
    sub_customer = subscription.get("customer") if subscription else None
    if isinstance(sub_customer, dict):
        sub_customer = sub_customer.get("id")
    if sub_customer != customer_id:
        logger.warning("stripe_subscription_ownership_mismatch", subscription_id=(subscription or {}).get("id"))
        raise SubscriptionOwnershipError("Unauthorized access to subscription")


# --- subscriptions ---

def retrieve_subscription(subscription_id: str) -> Any:
    return _call("retrieve_subscription", lambda: stripe.Subscription.retrieve(subscription_id))


def cancel_subscription_now(subscription_id: str) -> Any:
    return _call("cancel_subscription", lambda: stripe.Subscription.cancel(subscription_id))


def set_cancel_at_period_end(subscription_id: str, cancel: bool, *, reason: str | None = None) -> Any:
    kwargs: dict[str, Any] = {"cancel_at_period_end": bool(cancel)}
    if reason:
        kwargs["metadata"] = {"cancellation_reason": reason}
    return _call("modify_subscription", lambda: stripe.Subscription.modify(subscription_id, **kwargs))


def change_subscription_price(
    subscription_id: str,
    *,
    item_id: str,
    price_id: str,
    proration_behavior: str = "always_invoice",
) -> Any:
    return _call(
        "change_subscription_price",
        lambda: stripe.Subscription.modify(
            subscription_id,
            items=[{"id": item_id, "price": price_id}],
            proration_behavior=proration_behavior,
        ),
    )


def set_trial_end(subscription_id: str, trial_end: int | None) -> Any:
    """
    Move the next charge to ``trial_end`` without prorating. ``None`` ends
    the trial immediately ("now").
    """
    return _call(
        "set_trial_end",
        lambda: stripe.Subscription.modify(
            subscription_id,
            trial_end=int(trial_end) if trial_end else "now",
            proration_behavior="none",
        ),
    )


def create_subscription(
    *,
    customer_id: str,
    price_id: str,
    metadata: dict[str, str],
    trial_end: int | None = None,
    payment_behavior: str | None = None,
) -> Any:
    kwargs: dict[str, Any] = {
        "customer": customer_id,
        "items": [{"price": price_id}],
        "metadata": metadata,
    }
    if trial_end:
        kwargs["trial_end"] = int(trial_end)
    if payment_behavior:
        kwargs["payment_behavior"] = payment_behavior
    return _call("create_subscription", lambda: stripe.Subscription.create(**kwargs))


# --- prices ---

def create_recurring_price(
    *,
    unit_amount: int,
    interval: str,
    metadata: dict[str, str],
    product_id: str | None = None,
    product_name: str | None = None,
) -> Any:
    kwargs: dict[str, Any] = {
        "unit_amount": int(unit_amount),
        "currency": "usd",
        "recurring": {"interval": interval, "interval_count": 1},
        "metadata": metadata,
    }
    if product_id:
        kwargs["product"] = product_id
    else:
        kwargs["product_data"] = {"name": product_name or "Custom Plan", "metadata": {"plan_type": "custom"}}
    return _call("create_price", lambda: stripe.Price.create(**kwargs))


def deactivate_price(price_id: str) -> Any:
    return _call("deactivate_price", lambda: stripe.Price.modify(price_id, active=False))


# --- charges / refunds ---

def list_charges(*, customer_id: str, limit: int, starting_after: str | None = None) -> Any:
    kwargs: dict[str, Any] = {"customer": customer_id, "limit": int(limit)}
    if starting_after:
        kwargs["starting_after"] = starting_after
    return _call("list_charges", lambda: stripe.Charge.list(**kwargs))


def retrieve_charge(charge_id: str) -> Any:
    return _call("retrieve_charge", lambda: stripe.Charge.retrieve(charge_id))


def create_refund(*, charge_id: str, amount: int | None, metadata: dict[str, str]) -> Any:
    kwargs: dict[str, Any] = {
        "charge": charge_id,
        "reason": "requested_by_customer",
        "metadata": metadata,
    }
    if amount is not None:
        kwargs["amount"] = int(amount)
    return _call("create_refund", lambda: stripe.Refund.create(**kwargs))


def retrieve_invoice(invoice_id: str) -> Any:
    return _call("retrieve_invoice", lambda: stripe.Invoice.retrieve(invoice_id))


# --- customers / sessions ---

def create_customer(*, email: str | None, user_id: str) -> Any:
    kwargs: dict[str, Any] = {"metadata": {"user_id": user_id}}
    if email:
        kwargs["email"] = email
    return _call("create_customer", lambda: stripe.Customer.create(**kwargs))


def retrieve_customer(customer_id: str) -> Any:
    return _call("retrieve_customer", lambda: stripe.Customer.retrieve(customer_id))


def create_portal_session(*, customer_id: str, return_url: str) -> Any:
    return _call(
        "create_portal_session",
        lambda: stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url),
    )


def create_checkout_session(
    *,
    customer_id: str,
    price_id: str,
    quantity: int,
    metadata: dict[str, str],
    success_url: str,
    cancel_url: str,
) -> Any:
    return _call(
        "create_checkout_session",
        lambda: stripe.checkout.Session.create(
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": int(quantity)}],
            billing_address_collection="required",
            allow_promotion_codes=True,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            subscription_data={"metadata": metadata},
        ),
    )


# --- webhooks ---

def construct_event(payload: bytes, sig_header: str) -> Any:
    """Verify the Stripe-Signature header; raises stripe.SignatureVerificationError on mismatch."""
    secret = settings.stripe_webhook_secret
    if not secret:
        raise StripeGatewayError("Stripe webhook secret is not configured")
    return stripe.Webhook.construct_event(payload, sig_header, secret)
