from __future__ import annotations

from typing import Any

from fastapi import HTTPException

from ..db.dynamodb.errors import DdbConflict
from ..observability.logging import get_logger
from ..repositories import games_repo
from .request_utils import is_uuid

log = get_logger("team_claim")


def _conflict(message: str, code: str) -> HTTPException:
    return HTTPException(status_code=409, detail={"error": message, "message": message, "code": code})


def claim_team(game_id: str, team_id: str, body: dict[str, Any]) -> dict[str, Any]:
    """Bind a student device to a team. Only the first device wins."""
    if not is_uuid(game_id) or not is_uuid(team_id):
        raise HTTPException(status_code=400, detail="Invalid ID format")

    device_id = body.get("deviceId")
    if not device_id:
        raise HTTPException(status_code=400, detail="deviceId is required")
    if not is_uuid(device_id):
        raise HTTPException(status_code=400, detail="Invalid deviceId format")

    team = games_repo.get_team(game_id, team_id)
    if not team:
        raise HTTPException(status_code=404, detail="Team not found")

    holder = team.get("device_id")
    if holder == device_id:
        return {"success": True, "message": "Team already claimed by this device", "teamName": team.get("team_name")}
    if holder:
        log.info("team_claim_rejected", game_id=game_id, team_id=team_id, code="TEAM_ALREADY_CLAIMED")
        raise _conflict("Team is already claimed by another device", "TEAM_ALREADY_CLAIMED")

    try:
        claimed = games_repo.claim_team(game_id, team_id, device_id=device_id) or team
    except DdbConflict:
        log.info("team_claim_rejected", game_id=game_id, team_id=team_id, code="RACE_CONDITION")
        raise _conflict("Team was just claimed by another device", "RACE_CONDITION")

    log.info("team_claimed", game_id=game_id, team_id=team_id)
    return {"success": True, "message": "Team claimed successfully", "teamName": claimed.get("team_name")}
