from __future__ import annotations

import hmac

from fastapi import APIRouter, HTTPException, Request

from ..observability.logging import get_logger
from ..repositories import audit_log_repo
from ..settings import settings

router = APIRouter(tags=["cron"])

log = get_logger("cron")


def _require_cron_secret(request: Request) -> None:
    secret = str(settings.cron_secret or "").strip()
    if not secret:
        log.error("cron_secret_not_configured")
        raise HTTPException(status_code=500, detail="Server configuration error")
    provided = request.headers.get("authorization") or ""
    if not hmac.compare_digest(provided.encode("utf-8"), f"Bearer {secret}".encode("utf-8")):
        log.warning("cron_unauthorized", path=request.url.path)
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.get("/cron/cleanup-audit-logs")
@router.post("/cron/cleanup-audit-logs")
def cleanup_audit_logs(request: Request):
    _require_cron_secret(request)
    cutoff = audit_log_repo.retention_cutoff()
    deleted = audit_log_repo.cleanup_older_than(cutoff)
    log.info("audit_log_cleanup_completed", deleted_count=deleted, cutoff=cutoff.isoformat())
    return {
        "success": True,
        "deletedCount": deleted,
        "message": f"Deleted {deleted} audit log entries older than {audit_log_repo.RETENTION_YEARS} years",
    }
