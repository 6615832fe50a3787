from __future__ import annotations

from fastapi import APIRouter, Body, Request
from starlette.concurrency import run_in_threadpool

from ..auth.context import require_user
from ..services.billing import subscription, webhooks

router = APIRouter(tags=["subscription"])


@router.get("/subscription/status")
def get_status(request: Request):
    ctx = require_user(request)
    return subscription.get_subscription_status(ctx)


@router.get("/subscription/plans")
def get_plans(request: Request):
    require_user(request)
    return subscription.list_plans()


@router.post("/subscription/cancel")
def cancel(request: Request, body: dict = Body(default_factory=dict)):
    ctx = require_user(request)
    return subscription.cancel_subscription(ctx, body)


@router.post("/subscription/reactivate")
def reactivate(request: Request):
    ctx = require_user(request)
    return subscription.reactivate_subscription(ctx)


@router.post("/subscription/update-plan")
def update_plan(request: Request, body: dict = Body(default_factory=dict)):
    ctx = require_user(request)
    return subscription.update_plan(ctx, body)


@router.post("/subscription/portal")
def portal(request: Request):
    ctx = require_user(request)
    return subscription.create_portal_session(ctx)


@router.post("/checkout/subscription")
def checkout(request: Request, body: dict = Body(default_factory=dict)):
    ctx = require_user(request)
    return subscription.create_checkout_session(ctx, body)


# Public: authenticated by the Stripe-Signature header over the raw body.
@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request):
    payload = await request.body()
    return await run_in_threadpool(webhooks.process_webhook, payload, request.headers.get("stripe-signature"))
