from __future__ import annotations

from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.errors import DdbConflict
from ..db.dynamodb.table import get_main_table
from .common import normalize_item, now_iso, set_clause, type_pk

FREE_TIER_GAME_LIMIT = 3
DEFAULT_CUSTOM_BANK_LIMIT = 15

# Statuses allowed to create games (FREE accounts are allowed up to the free quota).
GAME_CREATION_STATUSES = ("FREE", "TRIAL", "ACTIVE")


def profile_key(user_id: str) -> dict[str, str]:
    uid = str(user_id or "").strip()
    if not uid:
        raise ValueError("user_id is required")
    return {"pk": f"USER#{uid}", "sk": "PROFILE"}


def customer_pointer_key(customer_id: str) -> dict[str, str]:
    cid = str(customer_id or "").strip()
    if not cid:
        raise ValueError("customer_id is required")
    return {"pk": f"STRIPE_CUSTOMER#{cid}", "sk": "PROFILE"}


def get_profile(user_id: str) -> dict[str, Any] | None:
    it = get_main_table().get_item(key=profile_key(user_id))
    return normalize_item(it)


def ensure_profile(*, user_id: str, email: str | None, full_name: str | None = None) -> dict[str, Any]:
    """
    Return the caller's profile, creating a FREE profile on first sight.

    Concurrent first requests race on ``attribute_not_exists(pk)``; the loser re-reads.
    """
    existing = get_profile(user_id)
    if existing:
        return existing

    now = now_iso()
    item: dict[str, Any] = {
        **profile_key(user_id),
        "entityType": "Profile",
        "id": user_id,
        "email": str(email or "").strip().lower(),
        "role": "user",
        "is_active": True,
        "subscription_tier": "FREE",
        "subscription_status": "FREE",
        "games_created_count": 0,
        "custom_bank_count": 0,
        "custom_bank_limit": DEFAULT_CUSTOM_BANK_LIMIT,
        "accessible_prebuilt_bank_ids": [],
        "created_at": now,
        "updated_at": now,
        "gsi1pk": type_pk("PROFILE"),
        "gsi1sk": f"{now}#{user_id}",
    }
    if full_name:
        item["full_name"] = str(full_name).strip()

    try:
        get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    except DdbConflict:
        return get_profile(user_id) or normalize_item(item) or {}
    return normalize_item(item) or {}


def list_profiles(*, limit: int = 25, next_token: str | None = None, ascending: bool = False) -> dict[str, Any]:
    pg = get_main_table().query_page(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(type_pk("PROFILE")),
        scan_index_forward=ascending,
        limit=limit,
        next_token=next_token,
    )
    data = [p for p in (normalize_item(it) for it in pg.items) if p]
    return {"data": data, "nextToken": pg.next_token}


def list_all_profiles(*, max_items: int = 5000) -> list[dict[str, Any]]:
    """Every profile, newest first. Admin search and email uniqueness filter this in memory."""
    items = get_main_table().query_all(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(type_pk("PROFILE")),
        scan_index_forward=False,
        max_items=max_items,
    )
    return [p for p in (normalize_item(it) for it in items) if p]


def update_profile_if_unchanged(user_id: str, fields: dict[str, Any], *, expected_updated_at: str) -> dict[str, Any] | None:
    """
    Optimistic update: applies only while ``updated_at`` still equals what the
    caller read. Raises DdbConflict when another writer got there first.
    """
    expr, names, values = set_clause({**fields, "updated_at": now_iso()})
    names["#lock"] = "updated_at"
    values[":expected"] = expected_updated_at
    it = get_main_table().update_item(
        key=profile_key(user_id),
        update_expression=expr,
        expression_attribute_names=names,
        expression_attribute_values=values,
        condition_expression="attribute_exists(pk) AND #lock = :expected",
    )
    return normalize_item(it)


def update_profile_fields(user_id: str, fields: dict[str, Any]) -> dict[str, Any] | None:
    if not fields:
        return get_profile(user_id)
    expr, names, values = set_clause({**fields, "updated_at": now_iso()})
    it = get_main_table().update_item(
        key=profile_key(user_id),
        update_expression=expr,
        expression_attribute_names=names,
        expression_attribute_values=values,
        condition_expression="attribute_exists(pk)",
    )
    return normalize_item(it)


# --- game quota ---

def increment_game_count_if_allowed(user_id: str) -> bool:
    """
    Atomically check game-creation eligibility and consume FREE-tier quota.

    - status must be FREE, TRIAL or ACTIVE
    - FREE tier: allowed while games_created_count < 3, and the count is incremented
    - paid tiers: allowed without touching the counter
    """
    table = get_main_table()
    key = profile_key(user_id)
    names = {"#st": "subscription_status", "#tier": "subscription_tier", "#cnt": "games_created_count"}

    try:
        table.update_item(
            key=key,
            update_expression="SET #cnt = if_not_exists(#cnt, :zero) + :one",
            expression_attribute_names=names,
            expression_attribute_values={
                ":zero": 0,
                ":one": 1,
                ":free": "FREE",
                ":limit": FREE_TIER_GAME_LIMIT,
                ":s1": GAME_CREATION_STATUSES[0],
                ":s2": GAME_CREATION_STATUSES[1],
                ":s3": GAME_CREATION_STATUSES[2],
            },
            condition_expression=(
                "attribute_exists(pk) AND #st IN (:s1, :s2, :s3) "
                "AND (attribute_not_exists(#tier) OR #tier = :free) "
                "AND (attribute_not_exists(#cnt) OR #cnt < :limit)"
            ),
        )
        return True
    except DdbConflict:
        pass

    # Not a FREE-tier increment; paid tiers only need an eligible status.
    try:
        table.update_item(
            key=key,
            update_expression="SET #seen = :now",
            expression_attribute_names={"#st": "subscription_status", "#tier": "subscription_tier", "#seen": "last_game_created_at"},
            expression_attribute_values={
                ":now": now_iso(),
                ":free": "FREE",
                ":s1": GAME_CREATION_STATUSES[0],
                ":s2": GAME_CREATION_STATUSES[1],
                ":s3": GAME_CREATION_STATUSES[2],
            },
            condition_expression="attribute_exists(pk) AND #st IN (:s1, :s2, :s3) AND #tier <> :free",
            return_values="NONE",
        )
        return True
    except DdbConflict:
        return False


def decrement_game_count(user_id: str) -> None:
    """
    Compensating decrement for a FREE-tier game creation.

    Only FREE profiles consume quota, so a paid profile's counter (left over from
    its FREE days) is never touched. Never drops below zero.
    """
    try:
        get_main_table().update_item(
            key=profile_key(user_id),
            update_expression="SET #cnt = #cnt - :one",
            expression_attribute_names={"#cnt": "games_created_count", "#tier": "subscription_tier"},
            expression_attribute_values={":one": 1, ":zero": 0, ":free": "FREE"},
            condition_expression="#cnt > :zero AND (attribute_not_exists(#tier) OR #tier = :free)",
            return_values="NONE",
        )
    except DdbConflict:
        return


# --- suspension ---

def suspend_profile(user_id: str, *, reason: str) -> dict[str, Any] | None:
    it = get_main_table().update_item(
        key=profile_key(user_id),
        update_expression="SET #active = :false, #reason = :reason, #upd = :now",
        expression_attribute_names={"#active": "is_active", "#reason": "suspension_reason", "#upd": "updated_at"},
        expression_attribute_values={":false": False, ":true": True, ":reason": reason, ":now": now_iso()},
        condition_expression="attribute_exists(pk) AND #active = :true",
    )
    return normalize_item(it)


def activate_profile(user_id: str) -> dict[str, Any] | None:
    it = get_main_table().update_item(
        key=profile_key(user_id),
        update_expression="SET #active = :true, #upd = :now REMOVE #reason",
        expression_attribute_names={"#active": "is_active", "#reason": "suspension_reason", "#upd": "updated_at"},
        expression_attribute_values={":false": False, ":true": True, ":now": now_iso()},
        condition_expression="attribute_exists(pk) AND #active = :false",
    )
    return normalize_item(it)


# --- Stripe customer pointer ---

def put_customer_pointer(*, customer_id: str, user_id: str) -> None:
    get_main_table().put_item(
        item={
            **customer_pointer_key(customer_id),
            "entityType": "StripeCustomerPointer",
            "customer_id": customer_id,
            "user_id": user_id,
            "created_at": now_iso(),
        }
    )


def get_profile_by_customer_id(customer_id: str) -> dict[str, Any] | None:
    cid = str(customer_id or "").strip()
    if not cid:
        return None
    ptr = get_main_table().get_item(key=customer_pointer_key(cid))
    uid = str((ptr or {}).get("user_id") or "").strip()
    if not uid:
        return None
    return get_profile(uid)
