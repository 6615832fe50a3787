from __future__ import annotations

from typing import Any

from boto3.dynamodb.conditions import Attr, Key

from ..db.dynamodb.table import get_main_table
from .common import new_id, normalize_item, now_iso


def session_key(session_id: str) -> dict[str, str]:
    sid = str(session_id or "").strip()
    if not sid:
        raise ValueError("session_id is required")
    return {"pk": f"IMPERSONATION#{sid}", "sk": "SESSION"}


def _admin_pk(admin_user_id: str) -> str:
    return f"ADMIN#{admin_user_id}#IMPERSONATIONS"


def create_session(
    *,
    admin_user_id: str,
    target_user_id: str,
    reason: str,
    started_at: str,
    expires_at: str,
    ip_address: str | None,
    user_agent: str | None,
) -> dict[str, Any]:
    sid = new_id()
    item: dict[str, Any] = {
        **session_key(sid),
        "entityType": "ImpersonationSession",
        "id": sid,
        "admin_user_id": admin_user_id,
        "target_user_id": target_user_id,
        "reason": reason,
        "started_at": started_at,
        "expires_at": expires_at,
        "ip_address": ip_address or "unknown",
        "user_agent": user_agent or "unknown",
        "gsi1pk": _admin_pk(admin_user_id),
        "gsi1sk": f"{started_at}#{sid}",
    }
    get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    return normalize_item(item) or {}


def get_session(session_id: str) -> dict[str, Any] | None:
    return normalize_item(get_main_table().get_item(key=session_key(session_id), consistent_read=True))


def list_sessions_started_since(admin_user_id: str, since_iso: str) -> list[dict[str, Any]]:
    items = get_main_table().query_all(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(_admin_pk(admin_user_id)) & Key("gsi1sk").gte(since_iso),
    )
    return [s for s in (normalize_item(it) for it in items) if s]


def list_open_sessions(admin_user_id: str) -> list[dict[str, Any]]:
    """Sessions without ``ended_at``, newest first. Expiry is evaluated by the caller."""
    items = get_main_table().query_all(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(_admin_pk(admin_user_id)),
        scan_index_forward=False,
        filter_expression=Attr("ended_at").not_exists(),
        max_items=200,
    )
    return [s for s in (normalize_item(it) for it in items) if s]


def end_session(session_id: str, *, ended_at: str, duration_minutes: int, ended_by: str) -> dict[str, Any] | None:
    """Close a session once; a second close fails the condition with DdbConflict."""
    it = get_main_table().update_item(
        key=session_key(session_id),
        update_expression="SET #end = :end, #dur = :dur, #by = :by, #upd = :now",
        expression_attribute_names={
            "#end": "ended_at",
            "#dur": "duration_minutes",
            "#by": "ended_by",
            "#upd": "updated_at",
        },
        expression_attribute_values={
            ":end": ended_at,
            ":dur": int(duration_minutes),
            ":by": ended_by,
            ":now": now_iso(),
        },
        condition_expression="attribute_exists(pk) AND attribute_not_exists(#end)",
    )
    return normalize_item(it)
