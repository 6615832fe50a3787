from __future__ import annotations

import time
from datetime import date, timedelta
from types import SimpleNamespace

import pytest
import stripe

ADMIN = "aaaaaaaa-0000-4000-8000-000000000001"
USER = "33333333-3333-4333-8333-333333333333"
AS_ADMIN = {"Authorization": f"Bearer {ADMIN}"}
AS_USER = {"Authorization": f"Bearer {USER}"}

BASIC_MONTHLY = "price_basicmonthly0000000000000001"
PREMIUM_MONTHLY = "price_premiummonthly00000000000001"
PREMIUM_ANNUAL = "price_premiumannual000000000000001"

PERIOD_END = 1893456000  # 2030-01-01T00:00:00Z
DAY = 86400


def _subscription(**overrides):
    sub = {
        "id": "sub_123",
        "customer": "cus_123",
        "status": "active",
        "cancel_at_period_end": False,
        "trial_end": None,
        "metadata": {},
        "items": {
            "data": [
                {
                    "id": "si_1",
                    "current_period_end": PERIOD_END,
                    "price": {
                        "id": PREMIUM_MONTHLY,
                        "nickname": "Premium",
                        "unit_amount": 1299,
                        "currency": "usd",
                        "recurring": {"interval": "month"},
                    },
                }
            ]
        },
    }
    sub.update(overrides)
    return sub


class FakeStripe:
    """Records Stripe calls. `fail` maps a gateway function name to the error it raises."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.subs: dict[str, dict] = {"sub_123": _subscription()}
        self.charges: dict[str, dict] = {}
        self.invoices: dict[str, dict] = {}
        self.fail: dict[str, Exception] = {}
        self.apply_trial_end = True
        self._seq = 0

    def _record(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        if name in self.fail:
            raise self.fail[name]

    def called(self, name):
        return [c for c in self.calls if c[0] == name]

    def retrieve_subscription(self, sub_id):
        self._record("retrieve_subscription", sub_id)
        return self.subs[sub_id]

    def cancel_subscription_now(self, sub_id):
        self._record("cancel_subscription_now", sub_id)
        sub = self.subs.setdefault(sub_id, _subscription(id=sub_id))
        sub.update(status="canceled", canceled_at=PERIOD_END)
        return sub

    def set_cancel_at_period_end(self, sub_id, cancel, *, reason=None):
        self._record("set_cancel_at_period_end", sub_id, cancel, reason=reason)
        return {**self.subs[sub_id], "cancel_at_period_end": cancel}

    def change_subscription_price(self, sub_id, *, item_id, price_id, proration_behavior="always_invoice"):
        self._record("change_subscription_price", sub_id, item_id=item_id, price_id=price_id, proration_behavior=proration_behavior)
        interval = "year" if price_id == PREMIUM_ANNUAL else "month"
        return _subscription(items={"data": [{"id": item_id, "current_period_end": PERIOD_END, "price": {"id": price_id, "recurring": {"interval": interval}}}]})

    def set_trial_end(self, sub_id, trial_end):
        self._record("set_trial_end", sub_id, trial_end)
        sub = self.subs[sub_id]
        if self.apply_trial_end:
            sub.update(trial_end=trial_end, status="trialing" if trial_end else "active")
        return sub

    def create_subscription(self, **kwargs):
        self._record("create_subscription", **kwargs)
        self._seq += 1
        sub = _subscription(
            id=f"sub_new{self._seq}",
            status="trialing" if kwargs.get("trial_end") else "active",
            trial_end=kwargs.get("trial_end"),
            metadata=kwargs.get("metadata"),
        )
        self.subs[sub["id"]] = sub
        return sub

    def create_recurring_price(self, **kwargs):
        self._record("create_recurring_price", **kwargs)
        return {"id": "price_custom1", **kwargs}

    def deactivate_price(self, price_id):
        self._record("deactivate_price", price_id)
        return {"id": price_id, "active": False}

    def list_charges(self, *, customer_id, limit, starting_after=None):
        self._record("list_charges", customer_id=customer_id, limit=limit, starting_after=starting_after)
        data = [c for c in self.charges.values() if c.get("customer") == customer_id]
        return {"data": data[:limit], "has_more": len(data) > limit}

    def retrieve_charge(self, charge_id):
        self._record("retrieve_charge", charge_id)
        return self.charges[charge_id]

    def create_refund(self, *, charge_id, amount, metadata):
        self._record("create_refund", charge_id=charge_id, amount=amount, metadata=metadata)
        charge = self.charges[charge_id]
        return {
            "id": "re_1",
            "amount": amount if amount is not None else charge["amount"],
            "currency": charge.get("currency", "usd"),
            "status": "succeeded",
            "created": PERIOD_END,
        }

    def retrieve_invoice(self, invoice_id):
        self._record("retrieve_invoice", invoice_id)
        return self.invoices[invoice_id]

    def create_customer(self, *, email, user_id):
        self._record("create_customer", email=email, user_id=user_id)
        return {"id": "cus_new"}

    def retrieve_customer(self, customer_id):
        self._record("retrieve_customer", customer_id)
        return {
            "id": customer_id,
            "email": "pat@school.org",
            "name": "Pat Lee",
            "created": PERIOD_END,
            "invoice_settings": {"default_payment_method": "pm_1"},
        }


@pytest.fixture(autouse=True)
def prices(monkeypatch):
    from review_game.settings import settings

    monkeypatch.setattr(settings, "stripe_basic_monthly_price_id", BASIC_MONTHLY)
    monkeypatch.setattr(settings, "stripe_basic_annual_price_id", None)
    monkeypatch.setattr(settings, "stripe_premium_monthly_price_id", PREMIUM_MONTHLY)
    monkeypatch.setattr(settings, "stripe_premium_annual_price_id", PREMIUM_ANNUAL)
    monkeypatch.setattr(settings, "stripe_custom_plan_product_id", None)


@pytest.fixture
def stripe_fake(monkeypatch):
    from review_game.services.billing import stripe_gateway

    fake = FakeStripe()
    for name in (
        "retrieve_subscription",
        "cancel_subscription_now",
        "set_cancel_at_period_end",
        "change_subscription_price",
        "set_trial_end",
        "create_subscription",
        "create_recurring_price",
        "deactivate_price",
        "list_charges",
        "retrieve_charge",
        "create_refund",
        "retrieve_invoice",
        "create_customer",
        "retrieve_customer",
    ):
        monkeypatch.setattr(stripe_gateway, name, getattr(fake, name))
    return fake


@pytest.fixture
def store(profiles, profile_factory, monkeypatch):
    """Admin plus a Premium subscriber; profile writes land in `profiles` unless `fail_updates` is set."""
    from review_game.db.dynamodb.errors import DdbUnavailable
    from review_game.repositories import profiles_repo, refunds_repo

    profiles[ADMIN] = profile_factory(ADMIN, role="admin", email="root@example.com")
    profiles[USER] = profile_factory(
        USER,
        email="pat@school.org",
        full_name="Pat Lee",
        subscription_tier="PREMIUM",
        subscription_status="ACTIVE",
        billing_cycle="monthly",
        stripe_customer_id="cus_123",
        stripe_subscription_id="sub_123",
    )
    ns = SimpleNamespace(updates=[], refunds=[], fail_updates=False, fail_refunds=False)

    def _update(uid, fields):
        if ns.fail_updates:
            raise DdbUnavailable(message="down", operation="UpdateItem")
        ns.updates.append((uid, dict(fields)))
        profiles[uid].update(fields)
        return dict(profiles[uid])

    def _by_customer(customer_id):
        return next((p for p in profiles.values() if p.get("stripe_customer_id") == customer_id), None)

    def _record_refund(**kwargs):
        if ns.fail_refunds:
            raise DdbUnavailable(message="down", operation="PutItem")
        ns.refunds.append(kwargs)
        return kwargs

    monkeypatch.setattr(profiles_repo, "update_profile_fields", _update)
    monkeypatch.setattr(profiles_repo, "put_customer_pointer", lambda *, customer_id, user_id: None)
    monkeypatch.setattr(profiles_repo, "get_profile_by_customer_id", _by_customer)
    monkeypatch.setattr(refunds_repo, "record_refund", _record_refund)
    return ns


def _path(suffix=""):
    return f"/api/admin/users/{USER}/subscription{suffix}"


# --- views ---

def test_billing_routes_require_admin(client, store, stripe_fake):
    r = client.get(_path(), headers=AS_USER)
    assert r.status_code == 401
    r = client.post("/api/admin/payments/ch_abc/refund", headers=AS_USER, json={})
    assert r.status_code == 401
    assert stripe_fake.calls == []


def test_view_subscription(client, store, stripe_fake, audit_entries):
    r = client.get(_path(), headers=AS_ADMIN)
    assert r.status_code == 200
    body = r.json()
    assert body["customer"]["defaultPaymentMethod"] == "pm_1"
    sub = body["subscription"]
    assert sub["planName"] == "Premium"
    assert sub["amount"] == 1299
    assert sub["interval"] == "month"
    assert sub["currentPeriodEnd"] == "2030-01-01T00:00:00Z"
    assert "error" not in body
    assert audit_entries[-1]["action_type"] == "view_subscription"


def test_view_subscription_reports_stripe_failure_in_body(client, store, stripe_fake, audit_entries):
    from review_game.services.billing.stripe_gateway import StripeGatewayError

    stripe_fake.fail["retrieve_subscription"] = StripeGatewayError("boom")
    r = client.get(_path(), headers=AS_ADMIN)
    assert r.status_code == 200
    assert r.json()["subscription"] is None
    assert r.json()["error"] == "Failed to fetch subscription from Stripe"


def test_payment_history(client, store, stripe_fake, audit_entries, profiles):
    stripe_fake.charges["ch_1"] = {
        "id": "ch_1",
        "customer": "cus_123",
        "amount": 1299,
        "currency": "usd",
        "status": "succeeded",
        "created": PERIOD_END,
        "amount_refunded": 300,
        "refunded": False,
        "invoice": {"id": "in_1"},
        "payment_method": "pm_1",
    }
    r = client.get(f"/api/admin/users/{USER}/payments", headers=AS_ADMIN, params={"limit": 500})
    assert r.status_code == 200
    body = r.json()
    assert body["hasMore"] is False
    assert body["payments"][0]["refundedAmount"] == 300
    assert body["payments"][0]["invoiceId"] == "in_1"
    assert body["payments"][0]["type"] == "charge"
    assert stripe_fake.called("list_charges")[0][2]["limit"] == 100
    assert audit_entries[-1]["action_type"] == "view_payment_history"
    assert audit_entries[-1]["changes"] == {"payment_count": 1, "has_more": False}

    profiles[USER]["stripe_customer_id"] = None
    r = client.get(f"/api/admin/users/{USER}/payments", headers=AS_ADMIN)
    assert r.json() == {"payments": [], "hasMore": False}


# --- cancel / reactivate ---

def test_cancel_validation(client, store, stripe_fake, profiles):
    r = client.post(_path("/cancel"), headers=AS_ADMIN, json={"action": "cancel_immediate"})
    assert r.status_code == 400
    assert r.json()["detail"] == "Missing required fields: action, reason"

    r = client.post(_path("/cancel"), headers=AS_ADMIN, json={"action": "pause", "reason": "asked"})
    assert r.status_code == 400

    stripe_fake.subs["sub_123"]["status"] = "past_due"
    r = client.post(_path("/cancel"), headers=AS_ADMIN, json={"action": "cancel_immediate", "reason": "asked"})
    assert r.status_code == 400
    assert r.json()["detail"] == "Cannot cancel subscription with status: past_due. Please resolve payment issues first."

    profiles[USER]["stripe_subscription_id"] = None
    r = client.post(_path("/cancel"), headers=AS_ADMIN, json={"action": "cancel_immediate", "reason": "asked"})
    assert r.json()["detail"] == "User does not have an active subscription"


def test_cancel_immediately_drops_to_free(client, store, stripe_fake, audit_entries, profiles):
    r = client.post(_path("/cancel"), headers=AS_ADMIN, json={"action": "cancel_immediate", "reason": "requested by school"})
    assert r.status_code == 200
    assert r.json()["subscription"]["status"] == "canceled"
    assert profiles[USER]["subscription_tier"] == "FREE"
    assert profiles[USER]["subscription_status"] == "CANCELLED"
    assert profiles[USER]["stripe_subscription_id"] is None
    entry = audit_entries[-1]
    assert entry["action_type"] == "cancel_subscription_immediate"
    assert entry["target_type"] == "subscription"
    assert entry["target_id"] == "sub_123"


def test_cancel_at_period_end_survives_profile_write_failure(client, store, stripe_fake, audit_entries):
    store.fail_updates = True
    r = client.post(_path("/cancel"), headers=AS_ADMIN, json={"action": "cancel_period_end", "reason": "moving schools"})
    assert r.status_code == 200
    assert r.json()["subscription"]["cancelAtPeriodEnd"] is True
    assert stripe_fake.called("set_cancel_at_period_end")[0][1] == ("sub_123", True)
    assert audit_entries[-1]["action_type"] == "cancel_subscription_period_end"


def test_reactivate(client, store, stripe_fake, audit_entries):
    r = client.post(_path("/reactivate"), headers=AS_ADMIN, json={})
    assert r.status_code == 400
    assert r.json()["detail"] == "Missing required field: reason"

    r = client.post(_path("/reactivate"), headers=AS_ADMIN, json={"reason": "changed their mind"})
    assert r.status_code == 200
    assert stripe_fake.called("set_cancel_at_period_end")[0][1] == ("sub_123", False)
    assert audit_entries[-1]["action_type"] == "reactivate_subscription"


# --- billing cycle / extensions ---

def test_change_to_yearly_uses_tier_price(client, store, stripe_fake, audit_entries, profiles):
    r = client.post(_path("/update"), headers=AS_ADMIN, json={"action": "change_to_yearly", "reason": "short"})
    assert r.status_code == 400
    assert r.json()["detail"] == "Reason must be at least 10 characters"

    r = client.post(_path("/update"), headers=AS_ADMIN, json={"action": "change_to_yearly", "reason": "district pays annually"})
    assert r.status_code == 200
    call = stripe_fake.called("change_subscription_price")[0]
    assert call[2] == {"item_id": "si_1", "price_id": PREMIUM_ANNUAL, "proration_behavior": "create_prorations"}
    assert profiles[USER]["billing_cycle"] == "annual"
    assert r.json()["subscription"]["billingCycle"] == "annual"
    entry = audit_entries[-1]
    assert entry["action_type"] == "update_subscription_billing_cycle"
    assert entry["changes"]["before"]["price_id"] == PREMIUM_MONTHLY


def test_change_cycle_requires_live_subscription(client, store, stripe_fake, profiles):
    profiles[USER]["subscription_status"] = "INACTIVE"
    r = client.post(_path("/update"), headers=AS_ADMIN, json={"action": "change_to_yearly", "reason": "district pays annually"})
    assert r.status_code == 400
    assert r.json()["detail"] == "Can only update active or trialing subscriptions"
    assert stripe_fake.called("change_subscription_price") == []


def test_extend_moves_next_charge(client, store, stripe_fake, audit_entries, profiles):
    r = client.post(_path("/extend"), headers=AS_ADMIN, json={"extendDays": 0, "reason": "outage"})
    assert r.status_code == 400
    assert r.json()["detail"] == "extendDays must be an integer between 1 and 365"

    r = client.post(_path("/extend"), headers=AS_ADMIN, json={"extendDays": 30, "reason": "outage"})
    assert r.status_code == 200
    assert stripe_fake.called("set_trial_end")[0][1] == ("sub_123", PERIOD_END + 30 * DAY)
    assert profiles[USER]["current_period_end"] == "2030-01-31T00:00:00Z"
    assert audit_entries[-1]["action_type"] == "extend_subscription"
    assert audit_entries[-1]["changes"]["after"]["days_extended"] == 30


def test_extend_refuses_subscription_set_to_cancel(client, store, stripe_fake):
    stripe_fake.subs["sub_123"]["cancel_at_period_end"] = True
    r = client.post(_path("/extend"), headers=AS_ADMIN, json={"extendDays": 7, "reason": "outage"})
    assert r.status_code == 400
    assert r.json()["detail"] == "Cannot extend canceled subscription. Please reactivate first."

    stripe_fake.subs["sub_123"].update(cancel_at_period_end=False, status="trialing")
    r = client.post(_path("/extend"), headers=AS_ADMIN, json={"extendDays": 7, "reason": "outage"})
    assert r.json()["detail"] == "Cannot extend subscription with status: trialing. Only active subscriptions can be extended."


def test_extend_trial_builds_on_current_trial_end(client, store, stripe_fake, audit_entries):
    trial_end = int(time.time()) + 5 * DAY
    stripe_fake.subs["sub_123"].update(status="trialing", trial_end=trial_end)

    r = client.post(_path("/extend-trial"), headers=AS_ADMIN, json={"extendDays": 10, "reason": "pilot extended by district"})
    assert r.status_code == 200
    assert stripe_fake.called("set_trial_end")[0][1] == ("sub_123", trial_end + 10 * DAY)
    assert audit_entries[-1]["action_type"] == "extend_trial"


def test_extend_trial_detects_concurrent_change(client, store, stripe_fake):
    stripe_fake.subs["sub_123"].update(status="trialing", trial_end=int(time.time()) + DAY)
    stripe_fake.apply_trial_end = False
    r = client.post(_path("/extend-trial"), headers=AS_ADMIN, json={"extendDays": 10, "reason": "pilot extended by district"})
    assert r.status_code == 500
    assert r.json()["title"] == "Unable to extend trial due to concurrent modifications. Please try again."


def test_extend_trial_without_subscription_starts_one_and_rolls_back(client, store, stripe_fake, profiles, audit_entries):
    profiles[USER]["stripe_subscription_id"] = None
    store.fail_updates = True
    r = client.post(_path("/extend-trial"), headers=AS_ADMIN, json={"extendDays": 14, "reason": "returning customer trial"})
    assert r.status_code == 500
    assert r.json()["title"] == "Failed to update database. Stripe changes have been rolled back. Please try again."
    created = stripe_fake.called("create_subscription")[0][2]
    assert created["price_id"] == PREMIUM_MONTHLY
    assert stripe_fake.called("cancel_subscription_now")[0][1] == ("sub_new1",)
    assert audit_entries == []

    store.fail_updates = False
    r = client.post(_path("/extend-trial"), headers=AS_ADMIN, json={"extendDays": 14, "reason": "returning customer trial"})
    assert r.status_code == 200
    assert profiles[USER]["stripe_subscription_id"] == "sub_new2"
    assert profiles[USER]["subscription_status"] == "TRIAL"
    assert audit_entries[-1]["action_type"] == "reactivate_trial"


def test_extend_trial_needs_customer(client, store, stripe_fake, profiles):
    profiles[USER]["stripe_customer_id"] = None
    r = client.post(_path("/extend-trial"), headers=AS_ADMIN, json={"extendDays": 14, "reason": "returning customer trial"})
    assert r.status_code == 400
    assert r.json()["detail"] == "User does not have a Stripe customer account"


# --- grants and custom plans ---

def _grant(**overrides):
    body = {"accessType": "temporary", "category": "service_outage", "planName": "Outage Credit", "duration": 30}
    body.update(overrides)
    return body


def test_grant_blocked_by_active_subscription(client, store, stripe_fake, audit_entries):
    r = client.post(_path("/grant-access"), headers=AS_ADMIN, json=_grant())
    assert r.status_code == 409
    assert r.json()["extensions"]["existingSubscription"]["id"] == "sub_123"
    assert audit_entries[-1]["action_type"] == "grant_access_blocked_existing_subscription"
    assert stripe_fake.called("create_subscription") == []


def test_grant_other_category_requires_notes(client, store, stripe_fake, audit_entries):
    r = client.post(_path("/grant-access"), headers=AS_ADMIN, json=_grant(category="other"))
    assert r.status_code == 400
    assert r.json()["detail"] == 'Notes are required when category is "other"'
    assert audit_entries[-1]["action_type"] == "grant_access_validation_failed"

    r = client.post(_path("/grant-access"), headers=AS_ADMIN, json=_grant(planName="<iframe src=x></iframe>"))
    assert r.status_code == 400


def test_grant_temporary_access(client, store, stripe_fake, audit_entries, profiles):
    profiles[USER].update(stripe_subscription_id=None, stripe_customer_id=None)
    r = client.post(_path("/grant-access"), headers=AS_ADMIN, json=_grant())
    assert r.status_code == 200
    assert r.json()["type"] == "temporary"
    created = stripe_fake.called("create_subscription")[0][2]
    assert created["customer_id"] == "cus_new"
    assert created["payment_behavior"] == "default_incomplete"
    assert created["metadata"]["grant_type"] == "temporary"
    assert profiles[USER]["custom_plan_type"] == "temporary_stripe"
    assert profiles[USER]["subscription_tier"] == "PREMIUM"
    assert profiles[USER]["stripe_subscription_id"] == "sub_new1"
    assert audit_entries[-1]["action_type"] == "grant_temporary_access"


def test_grant_temporary_reports_orphaned_subscription(client, store, stripe_fake, audit_entries, profiles):
    from review_game.services.billing.stripe_gateway import StripeGatewayError

    profiles[USER]["stripe_subscription_id"] = None
    store.fail_updates = True
    stripe_fake.fail["cancel_subscription_now"] = StripeGatewayError("still down")
    r = client.post(_path("/grant-access"), headers=AS_ADMIN, json=_grant())
    assert r.status_code == 500
    assert r.json()["extensions"]["orphanedSubscriptionId"] == "sub_new1"
    assert audit_entries[-1]["action_type"] == "grant_access_orphaned_subscription"


def test_grant_lifetime_access(client, store, stripe_fake, audit_entries, profiles):
    stripe_fake.subs["sub_123"]["cancel_at_period_end"] = True
    r = client.post(_path("/grant-access"), headers=AS_ADMIN, json=_grant(accessType="lifetime", duration=None))
    assert r.status_code == 200
    assert r.json()["expiresAt"] is None
    assert profiles[USER]["custom_plan_type"] == "lifetime"
    assert profiles[USER]["subscription_status"] == "ACTIVE"
    assert audit_entries[-1]["action_type"] == "grant_lifetime_access"


def _custom_plan(**overrides):
    body = {
        "planName": "District Plan",
        "monthlyPrice": 5,
        "billingPeriod": "annual",
        "category": "enterprise",
        "expirationDate": (date.today() + timedelta(days=365)).isoformat(),
        "featureLimits": {"maxGames": 500},
    }
    body.update(overrides)
    return body


def test_assign_custom_plan(client, store, stripe_fake, audit_entries, profiles):
    r = client.post(_path("/custom-plan"), headers=AS_ADMIN, json=_custom_plan(monthlyPrice=20000))
    assert r.status_code == 400
    assert r.json()["detail"] == "Monthly price cannot exceed $10000"

    r = client.post(_path("/custom-plan"), headers=AS_ADMIN, json=_custom_plan())
    assert r.status_code == 200
    assert r.json()["subscription"]["pricing"] == "$60.00/year"
    price = stripe_fake.called("create_recurring_price")[0][2]
    assert price["unit_amount"] == 6000
    assert price["interval"] == "year"
    assert price["product_name"] == "Custom Plan: District Plan"
    assert stripe_fake.called("cancel_subscription_now")[0][1] == ("sub_123",)
    assert profiles[USER]["custom_plan_type"] == "custom_price"
    assert profiles[USER]["plan_override_limits"] == {"maxGames": 500}
    assert profiles[USER]["billing_cycle"] == "annual"
    assert audit_entries[-1]["action_type"] == "assign_custom_plan"
    assert audit_entries[-1]["reason"] == "Custom Plan: enterprise"

    r = client.post(_path("/custom-plan"), headers=AS_ADMIN, json=_custom_plan())
    assert r.status_code == 400
    assert r.json()["detail"] == "User already has a custom plan. Remove the existing plan first."


def test_custom_plan_rolls_back_price_when_profile_write_fails(client, store, stripe_fake):
    store.fail_updates = True
    r = client.post(_path("/custom-plan"), headers=AS_ADMIN, json=_custom_plan(billingPeriod="monthly"))
    assert r.status_code == 500
    assert r.json()["title"] == "Failed to update database. Subscription and price have been rolled back."
    assert stripe_fake.called("deactivate_price")[0][1] == ("price_custom1",)
    assert ("sub_new1",) in [c[1] for c in stripe_fake.called("cancel_subscription_now")]


def test_custom_plan_rejects_past_expiration(client, store, stripe_fake):
    body = _custom_plan(expirationDate=(date.today() - timedelta(days=1)).isoformat())
    r = client.post(_path("/custom-plan"), headers=AS_ADMIN, json=body)
    assert r.status_code == 400
    assert r.json()["detail"] == "Expiration date cannot be in the past"


def test_remove_custom_plan_continues_past_stripe_error(client, store, stripe_fake, audit_entries, profiles):
    from review_game.services.billing.stripe_gateway import StripeGatewayError

    r = client.delete(_path("/custom-plan"), headers=AS_ADMIN)
    assert r.status_code == 400
    assert r.json()["detail"] == "User does not have a custom plan"

    profiles[USER].update(custom_plan_type="custom_price", custom_plan_name="District Plan")
    stripe_fake.fail["cancel_subscription_now"] = StripeGatewayError("gone")
    r = client.delete(_path("/custom-plan"), headers=AS_ADMIN)
    assert r.status_code == 200
    assert profiles[USER]["custom_plan_type"] is None
    assert profiles[USER]["subscription_tier"] == "FREE"
    assert profiles[USER]["stripe_subscription_id"] is None
    assert audit_entries[-1]["action_type"] == "remove_custom_plan"


# --- refunds ---

def _charge(**overrides):
    charge = {
        "id": "ch_abc123",
        "customer": "cus_123",
        "amount": 2000,
        "amount_refunded": 500,
        "refunded": False,
        "currency": "usd",
        "invoice": "in_1",
    }
    charge.update(overrides)
    return charge


def _refund(**overrides):
    body = {"refundType": "partial", "amount": 1000, "reasonCategory": "duplicate_charge", "notes": "Charged twice <b>today</b>!"}
    body.update(overrides)
    return body


def test_refund_validation(client, store, stripe_fake):
    stripe_fake.charges["ch_abc123"] = _charge()
    r = client.post("/api/admin/payments/not-a-charge/refund", headers=AS_ADMIN, json=_refund())
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid payment ID format"

    r = client.post("/api/admin/payments/ch_abc123/refund", headers=AS_ADMIN, json=_refund(amount=20))
    assert r.json()["detail"] == "Refund amount must be at least $0.50"

    r = client.post("/api/admin/payments/ch_abc123/refund", headers=AS_ADMIN, json=_refund(amount=1600))
    assert r.status_code == 400
    assert r.json()["detail"] == "Refund amount ($16.00) exceeds remaining refundable amount ($15.00)"

    stripe_fake.charges["ch_abc123"]["refunded"] = True
    r = client.post("/api/admin/payments/ch_abc123/refund", headers=AS_ADMIN, json=_refund())
    assert r.json()["detail"] == "This payment has already been fully refunded"
    assert stripe_fake.called("create_refund") == []


def test_refund_of_unknown_charge_is_404(client, store, stripe_fake):
    from review_game.services.billing.stripe_gateway import StripeGatewayError

    missing = stripe.InvalidRequestError("No such charge", "id", code="resource_missing")
    stripe_fake.fail["retrieve_charge"] = StripeGatewayError("No such charge", original_error=missing)
    r = client.post("/api/admin/payments/ch_missing1/refund", headers=AS_ADMIN, json=_refund())
    assert r.status_code == 404
    assert r.json()["detail"] == "Payment not found"


def test_refund_records_and_syncs_subscription(client, store, stripe_fake, audit_entries, profiles):
    stripe_fake.charges["ch_abc123"] = _charge()
    stripe_fake.invoices["in_1"] = {"id": "in_1", "subscription": "sub_123"}
    stripe_fake.subs["sub_123"]["status"] = "past_due"

    r = client.post("/api/admin/payments/ch_abc123/refund", headers=AS_ADMIN, json=_refund())
    assert r.status_code == 200
    assert r.json()["refund"]["id"] == "re_1"
    assert r.json()["refund"]["amount"] == 1000
    metadata = stripe_fake.called("create_refund")[0][2]["metadata"]
    assert metadata["admin_notes"] == "Charged twice btodayb!"
    assert store.refunds[0]["user_id"] == USER
    assert store.refunds[0]["stripe_refund_id"] == "re_1"
    assert profiles[USER]["subscription_status"] == "INACTIVE"
    entry = audit_entries[-1]
    assert entry["action_type"] == "process_refund"
    assert entry["target_type"] == "payment"
    assert entry["changes"]["refund_amount"] == 1000


def test_refund_record_failure_names_refund_for_reconciliation(client, store, stripe_fake, audit_entries):
    stripe_fake.charges["ch_abc123"] = _charge(invoice=None)
    store.fail_refunds = True
    r = client.post("/api/admin/payments/ch_abc123/refund", headers=AS_ADMIN, json=_refund(refundType="full", amount=None))
    assert r.status_code == 500
    assert "Refund ID: re_1" in r.json()["title"]
    assert stripe_fake.called("create_refund")[0][2]["amount"] is None
    assert audit_entries[-1]["action_type"] == "refund_db_failure"


def test_refund_for_unknown_customer(client, store, stripe_fake):
    stripe_fake.charges["ch_abc123"] = _charge(customer="cus_stranger")
    r = client.post("/api/admin/payments/ch_abc123/refund", headers=AS_ADMIN, json=_refund())
    assert r.status_code == 404
    assert r.json()["detail"] == "Unable to find user for this payment"
    assert stripe_fake.called("create_refund") == []
