from __future__ import annotations

from typing import Any

from ..db.dynamodb.table import get_main_table
from .common import normalize_item, now_iso


def _key(user_id: str, refund_id: str) -> dict[str, str]:
    uid = str(user_id or "").strip()
    rid = str(refund_id or "").strip()
    if not uid or not rid:
        raise ValueError("user_id and refund_id are required")
    return {"pk": f"USER#{uid}", "sk": f"REFUND#{rid}"}


def record_refund(
    *,
    user_id: str,
    stripe_refund_id: str,
    stripe_charge_id: str,
    amount_cents: int,
    currency: str,
    reason_category: str,
    notes: str,
    refunded_by: str,
) -> dict[str, Any]:
    item: dict[str, Any] = {
        **_key(user_id, stripe_refund_id),
        "entityType": "Refund",
        "user_id": user_id,
        "stripe_refund_id": stripe_refund_id,
        "stripe_charge_id": stripe_charge_id,
        "amount_cents": int(amount_cents or 0),
        "currency": currency,
        "reason_category": reason_category,
        "notes": notes,
        "refunded_by": refunded_by,
        "created_at": now_iso(),
    }
    get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    return normalize_item(item) or {}
