from __future__ import annotations

import random
import re
from typing import Any

from fastapi import HTTPException

from ..auth.context import RequestContext
from ..db.dynamodb.errors import DdbConflict, DdbError
from ..db.dynamodb.pagination import decode_next_token, encode_next_token
from ..observability.logging import get_logger
from ..repositories import games_repo, profiles_repo, question_banks_repo
from ..repositories.common import now_iso
from . import feature_access
from .request_utils import is_uuid

log = get_logger("games")

BOARD_SIZE = 25
DAILY_DOUBLE_COUNT = 2
MIN_TEAMS = 2

TIMER_DEFAULT_SECONDS = 30
TIMER_MIN_SECONDS = 5
TIMER_MAX_SECONDS = 120

GAME_STATUSES = ("setup", "in_progress", "completed")
LIST_SORTS = ("created_at", "bank_title", "status")

NAME_RE = re.compile(r"^[\w\s\-'.,!?@()\[\]]+$")
QUESTION_RE = re.compile(r"^[\w\s\-'.,!?@()\[\]:;\"/]+$")


def default_team_name(n: int) -> str:
    return f"Team {n}"


def require_game_id(game_id: str) -> str:
    gid = str(game_id or "").strip()
    if not is_uuid(gid):
        raise HTTPException(status_code=400, detail="Invalid game ID format")
    return gid


def load_owned_game(game_id: str, owner_id: str) -> dict[str, Any]:
    game = games_repo.get_game(game_id)
    # Not-owned reads as not-found so other teachers' game ids stay hidden.
    if not game or game.get("teacher_id") != owner_id:
        raise HTTPException(status_code=404, detail="Game not found")
    return game


def random_daily_doubles() -> list[int]:
    return random.sample(range(BOARD_SIZE), DAILY_DOUBLE_COUNT)


def _is_int(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


# --- validation ---

def validate_daily_doubles(value: Any) -> list[int]:
    if not isinstance(value, list) or len(value) != DAILY_DOUBLE_COUNT or not all(_is_int(p) for p in value):
        raise HTTPException(
            status_code=400,
            detail=f"daily_double_positions must be an array of {DAILY_DOUBLE_COUNT} numbers",
        )
    if any(p < 0 or p >= BOARD_SIZE for p in value):
        raise HTTPException(
            status_code=400,
            detail=f"daily_double_positions must contain numbers between 0 and {BOARD_SIZE - 1}",
        )
    if len(set(value)) != len(value):
        raise HTTPException(status_code=400, detail="daily_double_positions must be unique")
    return list(value)


def _check_text(value: Any, *, field: str, max_len: int, pattern: re.Pattern[str]) -> str:
    if not isinstance(value, str) or not (1 <= len(value.strip()) <= max_len):
        raise HTTPException(
            status_code=400,
            detail=f"final_jeopardy_question.{field} must be a string (1-{max_len} chars)",
        )
    v = value.strip()
    if not pattern.match(v):
        raise HTTPException(status_code=400, detail=f"final_jeopardy_question.{field} contains invalid characters")
    return v


def validate_final_jeopardy_question(value: Any) -> dict[str, str] | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise HTTPException(status_code=400, detail="final_jeopardy_question must be an object")
    return {
        "category": _check_text(value.get("category"), field="category", max_len=100, pattern=NAME_RE),
        "question": _check_text(value.get("question"), field="question", max_len=500, pattern=QUESTION_RE),
        "answer": _check_text(value.get("answer"), field="answer", max_len=200, pattern=NAME_RE),
    }


def validate_team_names(value: Any) -> list[str]:
    if not isinstance(value, list):
        raise HTTPException(status_code=400, detail="team_names must be an array")
    out: list[str] = []
    for name in value:
        if not isinstance(name, str):
            raise HTTPException(status_code=400, detail="All team names must be strings")
        n = name.strip()
        if not (1 <= len(n) <= 50):
            raise HTTPException(status_code=400, detail="Team names must be between 1 and 50 characters")
        if not NAME_RE.match(n):
            raise HTTPException(
                status_code=400,
                detail=(
                    "Team names can only contain letters, numbers, spaces, and common punctuation "
                    "(- _ ' . , ! ? @ ( ) [ ])"
                ),
            )
        out.append(n)
    return out


def _uses_custom_names(names: list[str]) -> bool:
    return any(n != default_team_name(i + 1) for i, n in enumerate(names))


def validate_timer_seconds(value: Any) -> int:
    if not _is_int(value) or not (TIMER_MIN_SECONDS <= value <= TIMER_MAX_SECONDS):
        raise HTTPException(
            status_code=400,
            detail=f"timer_seconds must be an integer between {TIMER_MIN_SECONDS} and {TIMER_MAX_SECONDS}",
        )
    return int(value)


def _check_num_teams(value: Any, profile: dict[str, Any]) -> int:
    if not _is_int(value) or value < MIN_TEAMS:
        raise HTTPException(status_code=400, detail="num_teams must be a number greater than or equal to 2")
    max_teams = feature_access.get_max_teams(profile)
    if value > max_teams:
        raise HTTPException(
            status_code=403,
            detail=f"Your plan allows up to {max_teams} teams. Upgrade to add more teams.",
        )
    return int(value)


# --- quota ---

def _quota_denied(user_id: str, *, operation: str) -> HTTPException:
    profile = profiles_repo.get_profile(user_id) or {}
    tier = feature_access.get_tier(profile)
    status = feature_access.get_status(profile)
    created = int(profile.get("games_created_count") or 0)

    message = "Unable to create game"
    upgrade_required = False
    if tier == "FREE" and created >= profiles_repo.FREE_TIER_GAME_LIMIT:
        message = "Free tier limited to 3 games. Upgrade to create unlimited games."
        upgrade_required = True
    elif status not in profiles_repo.GAME_CREATION_STATUSES:
        message = "Active subscription required to create games."
        upgrade_required = True

    log.info(
        "game_creation_denied",
        operation=operation,
        user_id=user_id,
        tier=tier,
        games_created=created,
        subscription_status=status,
    )
    return HTTPException(
        status_code=403,
        detail={
            "error": message,
            "message": message,
            "upgrade_url": "/pricing",
            "upgrade_required": upgrade_required,
            "games_created": created,
            "limit": profiles_repo.FREE_TIER_GAME_LIMIT if tier == "FREE" else None,
        },
    )


def _create_with_quota(
    user_id: str,
    *,
    operation: str,
    bank_id: str,
    num_teams: int,
    team_names: list[str],
    timer_enabled: bool,
    timer_seconds: int | None,
    daily_double_positions: list[int],
) -> dict[str, Any]:
    if not profiles_repo.increment_game_count_if_allowed(user_id):
        raise _quota_denied(user_id, operation=operation)

    try:
        game = games_repo.create_game_with_teams(
            teacher_id=user_id,
            bank_id=bank_id,
            num_teams=num_teams,
            team_names=team_names,
            timer_enabled=timer_enabled,
            timer_seconds=timer_seconds,
            daily_double_positions=daily_double_positions,
        )
    except DdbError:
        # Game and teams are written together, so only the quota needs undoing.
        log.exception("game_create_failed", operation=operation, user_id=user_id, bank_id=bank_id)
        profiles_repo.decrement_game_count(user_id)
        raise HTTPException(status_code=500, detail="Failed to create game")

    log.info("game_created", operation=operation, user_id=user_id, game_id=game["id"])
    return game


# --- operations ---

def create_game(ctx: RequestContext, body: dict[str, Any]) -> dict[str, Any]:
    user_id = ctx.effective_user_id
    bank_id = body.get("bank_id")
    num_teams = body.get("num_teams")
    daily_doubles = body.get("daily_double_positions")
    if not bank_id or not num_teams or not daily_doubles:
        raise HTTPException(
            status_code=400,
            detail="Missing required fields: bank_id, num_teams, daily_double_positions",
        )
    if not _is_int(num_teams) or num_teams < MIN_TEAMS:
        raise HTTPException(status_code=400, detail="num_teams must be a number greater than or equal to 2")
    daily_doubles = validate_daily_doubles(daily_doubles)

    raw_names = body.get("team_names")
    names = validate_team_names(raw_names) if raw_names is not None else []
    team_names = [names[i] if i < len(names) else default_team_name(i + 1) for i in range(num_teams)]

    timer_enabled = body.get("timer_enabled")
    timer_enabled = True if timer_enabled is None else bool(timer_enabled)
    timer_seconds: int | None = None
    if timer_enabled:
        raw = body.get("timer_seconds")
        timer_seconds = TIMER_DEFAULT_SECONDS if raw is None else validate_timer_seconds(raw)

    game = _create_with_quota(
        user_id,
        operation="createGame",
        bank_id=str(bank_id),
        num_teams=int(num_teams),
        team_names=team_names,
        timer_enabled=timer_enabled,
        timer_seconds=timer_seconds,
        daily_double_positions=daily_doubles,
    )
    return {"game_id": game["id"], "status": game["status"], "message": "Game created successfully"}


def _bank_titles(bank_ids: set[str]) -> dict[str, dict[str, Any]]:
    out: dict[str, dict[str, Any]] = {}
    for bid in bank_ids:
        bank = question_banks_repo.get_bank(bid) if bid else None
        if bank:
            out[bid] = bank
    return out


def list_games(
    ctx: RequestContext,
    *,
    limit: int = 20,
    status: str | None = None,
    search: str | None = None,
    sort: str = "created_at",
    order: str = "desc",
    next_token: str | None = None,
) -> dict[str, Any]:
    if status and status not in GAME_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid status filter")
    if sort not in LIST_SORTS:
        raise HTTPException(status_code=400, detail="Invalid sort field")
    if order not in ("asc", "desc"):
        raise HTTPException(status_code=400, detail="Invalid sort order")
    lim = max(1, min(100, int(limit or 20)))

    start = 0
    if next_token:
        cursor = decode_next_token(next_token) or {}
        start = max(0, int(cursor.get("offset") or 0))

    games = games_repo.list_games_for_teacher(ctx.effective_user_id, status=status)
    banks = _bank_titles({str(g.get("bank_id") or "") for g in games})
    for g in games:
        g["bank_title"] = (banks.get(str(g.get("bank_id") or "")) or {}).get("title") or "Unknown"

    needle = str(search or "").strip().lower()
    if needle:
        games = [g for g in games if needle in str(g["bank_title"]).lower()]

    games.sort(key=lambda g: (str(g.get(sort) or "").lower(), str(g.get("created_at") or "")), reverse=(order == "desc"))

    page = games[start : start + lim]
    more = start + lim < len(games)
    return {
        "data": page,
        "nextToken": encode_next_token({"offset": start + lim}) if more else None,
    }


def get_game_detail(ctx: RequestContext, game_id: str) -> dict[str, Any]:
    gid = require_game_id(game_id)
    game, teams, _wagers = games_repo.get_game_items(gid)
    if not game or game.get("teacher_id") != ctx.effective_user_id:
        raise HTTPException(status_code=404, detail="Game not found")
    bank = question_banks_repo.get_bank(str(game.get("bank_id") or "")) if game.get("bank_id") else None
    return {
        **game,
        "bank_title": (bank or {}).get("title") or "Unknown",
        "bank_subject": (bank or {}).get("subject") or "Unknown",
        "teams": teams,
    }


def update_game(ctx: RequestContext, game_id: str, body: dict[str, Any]) -> dict[str, Any]:
    gid = require_game_id(game_id)
    game = load_owned_game(gid, ctx.effective_user_id)
    profile = ctx.acting_profile
    updates: dict[str, Any] = {}

    bank_id = body.get("bank_id")
    if bank_id is not None and bank_id != game.get("bank_id"):
        if game.get("started_at"):
            raise HTTPException(status_code=400, detail="Cannot change question bank after game has started")
        if not is_uuid(bank_id):
            raise HTTPException(status_code=400, detail="Invalid question bank ID format")
        bank = question_banks_repo.get_bank(bank_id)
        if not bank:
            raise HTTPException(status_code=404, detail="Question bank not found")
        if not feature_access.can_access_bank(profile, bank):
            raise HTTPException(status_code=403, detail="You do not have access to this question bank")
        updates["bank_id"] = bank_id

    num_teams: int | None = None
    if "num_teams" in body and body.get("num_teams") is not None:
        num_teams = _check_num_teams(body.get("num_teams"), profile)
        updates["num_teams"] = num_teams

    if "daily_double_positions" in body and body.get("daily_double_positions") is not None:
        updates["daily_double_positions"] = validate_daily_doubles(body.get("daily_double_positions"))

    if "final_jeopardy_question" in body:
        updates["final_jeopardy_question"] = validate_final_jeopardy_question(body.get("final_jeopardy_question"))

    team_names: list[str] | None = None
    if "team_names" in body and body.get("team_names") is not None:
        team_names = validate_team_names(body.get("team_names"))
        if _uses_custom_names(team_names) and not feature_access.can_access_feature(profile, "custom_team_names"):
            raise HTTPException(status_code=403, detail="Custom team names require BASIC or PREMIUM subscription")
        if num_teams is not None and len(team_names) != num_teams:
            raise HTTPException(status_code=400, detail="team_names length must match num_teams")
        updates["team_names"] = team_names

    timer_enabled = body.get("timer_enabled")
    if timer_enabled is not None:
        updates["timer_enabled"] = bool(timer_enabled)
        if not timer_enabled:
            updates["timer_seconds"] = None
    if body.get("timer_seconds") is not None and timer_enabled is not False:
        updates["timer_seconds"] = validate_timer_seconds(body.get("timer_seconds"))

    status = body.get("status")
    if status is not None:
        if status not in GAME_STATUSES:
            raise HTTPException(status_code=400, detail="Invalid status")
        updates["status"] = status
        if status == "in_progress" and not game.get("started_at"):
            updates["started_at"] = now_iso()
        if status == "completed" and not game.get("completed_at"):
            updates["completed_at"] = now_iso()

    if not updates:
        raise HTTPException(status_code=400, detail="No valid fields to update")

    add, remove, rename = _team_sync_plan(gid, num_teams=num_teams, team_names=team_names)
    games_repo.update_game_and_teams(gid, updates, add_teams=add, remove_team_ids=remove, rename_teams=rename)
    log.info(
        "game_updated",
        user_id=ctx.effective_user_id,
        game_id=gid,
        fields=sorted(updates.keys()),
        teams_added=len(add),
        teams_removed=len(remove),
    )
    return games_repo.get_game(gid) or {}


def _team_sync_plan(
    game_id: str,
    *,
    num_teams: int | None,
    team_names: list[str] | None,
) -> tuple[list[dict[str, Any]], list[str], dict[str, str]]:
    """Team items to add, ids to remove and renames so teams match num_teams/team_names."""
    if num_teams is None and team_names is None:
        return [], [], {}

    teams = games_repo.list_teams(game_id)
    target = num_teams if num_teams is not None else len(teams)

    def name_for(n: int) -> str:
        if team_names and n - 1 < len(team_names):
            return team_names[n - 1]
        return default_team_name(n)

    keep = [t for t in teams if int(t.get("team_number") or 0) <= target]
    remove = [str(t["id"]) for t in teams if int(t.get("team_number") or 0) > target]
    existing_numbers = {int(t.get("team_number") or 0) for t in keep}
    add = [
        games_repo.new_team_item(game_id=game_id, team_number=n, team_name=name_for(n))
        for n in range(1, target + 1)
        if n not in existing_numbers
    ]
    rename: dict[str, str] = {}
    if team_names is not None:
        for t in keep:
            want = name_for(int(t.get("team_number") or 0))
            if t.get("team_name") != want:
                rename[str(t["id"])] = want
    return add, remove, rename


def delete_game(ctx: RequestContext, game_id: str) -> None:
    gid = require_game_id(game_id)
    load_owned_game(gid, ctx.effective_user_id)
    removed = games_repo.delete_game(gid)
    profiles_repo.decrement_game_count(ctx.effective_user_id)
    log.info("game_deleted", user_id=ctx.effective_user_id, game_id=gid, items_removed=removed)


def duplicate_game(ctx: RequestContext, game_id: str) -> dict[str, Any]:
    gid = require_game_id(game_id)
    original = load_owned_game(gid, ctx.effective_user_id)
    num_teams = int(original.get("num_teams") or MIN_TEAMS)
    names = list(original.get("team_names") or [])
    team_names = [names[i] if i < len(names) and names[i] else default_team_name(i + 1) for i in range(num_teams)]

    game = _create_with_quota(
        ctx.effective_user_id,
        operation="duplicateGame",
        bank_id=str(original.get("bank_id") or ""),
        num_teams=num_teams,
        team_names=team_names,
        timer_enabled=bool(original.get("timer_enabled", True)),
        timer_seconds=original.get("timer_seconds"),
        daily_double_positions=random_daily_doubles(),
    )
    return {"game_id": game["id"], "status": game["status"], "message": "Game duplicated successfully"}


def end_game(ctx: RequestContext, game_id: str) -> dict[str, Any]:
    gid = require_game_id(game_id)
    game = load_owned_game(gid, ctx.effective_user_id)
    if game.get("status") == "completed":
        return {"success": True, "already_completed": True, "game_id": gid}

    teams = games_repo.list_teams(gid)
    try:
        games_repo.end_game(gid, [str(t["id"]) for t in teams])
    except DdbConflict:
        return {"success": True, "already_completed": True, "game_id": gid}

    log.info("game_ended", user_id=ctx.effective_user_id, game_id=gid, teams_disconnected=len(teams))
    return {"success": True, "game_id": gid, "teams_disconnected": len(teams), "already_completed": False}


def update_team_score(ctx: RequestContext, game_id: str, team_id: str, score_change: Any) -> dict[str, Any]:
    gid = require_game_id(game_id)
    tid = str(team_id or "").strip()
    if not is_uuid(tid):
        raise HTTPException(status_code=400, detail="Invalid team ID format")
    if not _is_int(score_change):
        raise HTTPException(status_code=400, detail="score_change must be an integer")
    load_owned_game(gid, ctx.effective_user_id)
    try:
        new_score = games_repo.add_to_team_score(gid, tid, int(score_change))
    except DdbConflict:
        raise HTTPException(status_code=404, detail="Team not found")
    log.info("team_score_updated", game_id=gid, team_id=tid, score_change=int(score_change), new_score=new_score)
    return {"team_id": tid, "new_score": new_score}
