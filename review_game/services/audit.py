from __future__ import annotations

from typing import Any

from ..db.dynamodb.errors import DdbError
from ..observability.logging import get_logger
from ..repositories import audit_log_repo
from .request_utils import sanitize_ip_address, sanitize_user_agent

log = get_logger("admin_audit")


def log_admin_action(
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
    required: bool = False,
) -> dict[str, Any] | None:
    """
    Best-effort audit write.

    A storage failure is logged and swallowed; the admin action itself has
    already been committed by the caller. With ``required=True`` the failure
    is re-raised so the caller can refuse an action that must not happen
    without a trail (revealing personal data).
    """
    try:
        entry = audit_log_repo.append_entry(
            admin_user_id=admin_user_id,
            action_type=action_type,
            target_type=target_type,
            target_id=target_id,
            changes=changes,
            reason=reason,
            notes=notes,
            ip_address=sanitize_ip_address(ip_address),
            user_agent=sanitize_user_agent(user_agent),
        )
    except DdbError as e:
        log.error(
            "admin_audit_write_failed",
            action_type=action_type,
            target_type=target_type,
            target_id=target_id,
            admin_user_id=admin_user_id,
            required=required,
            error=str(e),
        )
        if required:
            raise
        return None

    log.info(
        "admin_action",
        action_type=action_type,
        target_type=target_type,
        target_id=target_id,
        admin_user_id=admin_user_id,
    )
    return entry
