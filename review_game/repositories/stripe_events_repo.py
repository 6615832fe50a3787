from __future__ import annotations

import time
from typing import Any

from ..db.dynamodb.errors import DdbConflict
from ..db.dynamodb.table import get_main_table

# Stripe retries deliveries for up to three days.
_MARKER_TTL_SECONDS = 7 * 24 * 60 * 60


def _key(event_id: str) -> dict[str, str]:
    eid = str(event_id or "").strip()
    if not eid:
        raise ValueError("event_id is required")
    return {"pk": f"STRIPE_EVENT#{eid}", "sk": "EVENT"}


def mark_processing(*, event_id: str, event_type: str) -> bool:
    """
    Idempotency marker for webhook deliveries.

    Returns:
      True the first time an event id is seen; False if it was already recorded.
    """
    now = int(time.time())
    item: dict[str, Any] = {
        **_key(event_id),
        "entityType": "StripeEvent",
        "event_id": str(event_id).strip(),
        "event_type": str(event_type or ""),
        "created_at_epoch": now,
        "expires_at_epoch": now + _MARKER_TTL_SECONDS,
    }
    try:
        get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
        return True
    except DdbConflict:
        return False


def release(*, event_id: str) -> None:
    """Drop the marker so Stripe's retry of a failed delivery is processed again."""
    get_main_table().delete_item(key=_key(event_id))
