from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.table import get_main_table
from .common import new_id, normalize_item, now_iso

RETENTION_YEARS = 7


def _month_partition(ts: datetime) -> str:
    return f"AUDIT#{ts.strftime('%Y-%m')}"


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def append_entry(
    *,
    admin_user_id: str,
    action_type: str,
    target_type: str,
    target_id: str,
    changes: dict[str, Any] | None = None,
    reason: str | None = None,
    notes: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> dict[str, Any]:
    """
    Append-only audit entry.

    Entries are partitioned by month so retention cleanup can drop whole
    partitions, and indexed by target for per-user activity views.
    """
    created_at = now_iso()
    ts = _parse_iso(created_at)
    audit_id = new_id()
    expires = ts + timedelta(days=365 * RETENTION_YEARS)

    item: dict[str, Any] = {
        "pk": _month_partition(ts),
        "sk": f"{created_at}#{audit_id}",
        "entityType": "AdminAuditLog",
        "id": audit_id,
        "admin_user_id": admin_user_id,
        "action_type": action_type,
        "target_type": target_type,
        "target_id": target_id,
        "created_at": created_at,
        # DynamoDB TTL attribute; cleanup_older_than covers tables without TTL enabled.
        "expires_at_epoch": int(expires.timestamp()),
        "gsi1pk": f"AUDIT_TARGET#{target_id}",
        "gsi1sk": f"{created_at}#{audit_id}",
    }
    for k, v in (
        ("changes", changes),
        ("reason", reason),
        ("notes", notes),
        ("ip_address", ip_address),
        ("user_agent", user_agent),
    ):
        if v:
            item[k] = v

    get_main_table().put_item(item=item)
    return normalize_item(item) or {}


def list_for_target(target_id: str, *, limit: int = 50, next_token: str | None = None) -> dict[str, Any]:
    pg = get_main_table().query_page(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(f"AUDIT_TARGET#{target_id}"),
        scan_index_forward=False,
        limit=limit,
        next_token=next_token,
    )
    return {"data": [e for e in (normalize_item(it) for it in pg.items) if e], "nextToken": pg.next_token}


def _previous_month(month: datetime) -> datetime:
    if month.month == 1:
        return month.replace(year=month.year - 1, month=12)
    return month.replace(month=month.month - 1)


def cleanup_older_than(cutoff: datetime, *, empty_streak: int = 12) -> int:
    """
    Delete entries created before ``cutoff``.

    Walks monthly partitions backwards from the cutoff month (filtered by sort
    key) and stops once ``empty_streak`` consecutive partitions hold nothing
    older than the cutoff, which is where the log begins or where earlier runs
    already cleaned up. Entries stranded behind a longer gap are left to the
    ``expires_at_epoch`` TTL.
    """
    table = get_main_table()
    cutoff_iso = cutoff.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    month = datetime(cutoff.year, cutoff.month, 1, tzinfo=timezone.utc)

    deleted = 0
    empty = 0
    while empty < empty_streak:
        items = table.query_all(
            key_condition_expression=Key("pk").eq(_month_partition(month)) & Key("sk").lt(cutoff_iso),
        )
        if items:
            empty = 0
            deleted += table.batch_delete(keys=[{"pk": it["pk"], "sk": it["sk"]} for it in items])
        else:
            empty += 1
        month = _previous_month(month)
    return deleted


def retention_cutoff(now: datetime | None = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    try:
        return now.replace(year=now.year - RETENTION_YEARS)
    except ValueError:
        # Feb 29 -> Feb 28
        return now.replace(year=now.year - RETENTION_YEARS, day=28)
