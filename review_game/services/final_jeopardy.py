from __future__ import annotations

from typing import Any

from fastapi import HTTPException

from ..auth.context import RequestContext
from ..db.dynamodb.errors import DdbConflict
from ..observability.logging import get_logger
from ..repositories import games_repo
from ..repositories.common import now_iso
from ..repositories.games_repo import PHASE_ANSWER, PHASE_REGULAR, PHASE_REVEAL, PHASE_WAGER
from .games import require_game_id
from .request_utils import is_uuid

log = get_logger("final_jeopardy")

MAX_ANSWER_LEN = 500
DEFAULT_CATEGORY = "Final Jeopardy"

# current phase -> next phase
_ADVANCE = {
    PHASE_WAGER: PHASE_ANSWER,
    PHASE_ANSWER: PHASE_REVEAL,
    PHASE_REVEAL: PHASE_REGULAR,
}


def _is_int(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def _fj_wager_sks(wagers: list[dict[str, Any]], game_id: str) -> list[str]:
    out: list[str] = []
    for w in wagers:
        if w.get("wager_type") == games_repo.FJ_WAGER_TYPE and w.get("team_id"):
            out.append(games_repo.wager_key(game_id, str(w["team_id"]))["sk"])
    return out


def _load_game_as_owner(game_id: str, ctx: RequestContext, *, not_owner_status: int) -> tuple[dict[str, Any], list, list]:
    game, teams, wagers = games_repo.get_game_items(game_id)
    if not game:
        raise HTTPException(status_code=404, detail="Game not found")
    if game.get("teacher_id") != ctx.effective_user_id:
        if not_owner_status == 404:
            raise HTTPException(status_code=404, detail="Game not found")
        raise HTTPException(status_code=not_owner_status, detail="Unauthorized")
    return game, teams, wagers


def start(ctx: RequestContext, game_id: str) -> dict[str, Any]:
    gid = require_game_id(game_id)
    game, teams, wagers = _load_game_as_owner(gid, ctx, not_owner_status=403)

    question = game.get("final_jeopardy_question")
    if not question:
        raise HTTPException(status_code=400, detail="Final Jeopardy question not configured")
    if not isinstance(question, dict) or not all(question.get(k) for k in ("category", "question", "answer")):
        raise HTTPException(status_code=400, detail="Invalid Final Jeopardy question data")

    games_repo.fj_start(gid, [str(t["id"]) for t in teams], _fj_wager_sks(wagers, gid))
    log.info("final_jeopardy_started", game_id=gid, user_id=ctx.effective_user_id, teams=len(teams))
    return {"success": True, "phase": PHASE_WAGER, "question": question}


def submit_wager(game_id: str, body: dict[str, Any]) -> dict[str, Any]:
    gid = require_game_id(game_id)
    team_id = body.get("teamId")
    wager = body.get("wager")
    if team_id is None or team_id == "" or wager is None:
        raise HTTPException(status_code=400, detail="teamId and wager are required")
    if not is_uuid(team_id):
        raise HTTPException(status_code=400, detail="Invalid team ID format")
    if not _is_int(wager):
        raise HTTPException(status_code=400, detail="Wager must be an integer")
    if wager < 0:
        raise HTTPException(status_code=400, detail="Wager cannot be negative")

    team = games_repo.get_team(gid, team_id)
    if not team:
        raise HTTPException(status_code=400, detail="Team not found")
    game = games_repo.get_game(gid)
    if not game or game.get("current_phase") != PHASE_WAGER:
        raise HTTPException(status_code=400, detail="Not in wagering phase")

    score = int(team.get("score") or 0)
    max_wager = max(score, 0)
    if wager > max_wager:
        log.info("final_jeopardy_wager_rejected", game_id=gid, team_id=team_id, wager=wager, max_wager=max_wager)
        raise HTTPException(status_code=400, detail=f"Wager cannot exceed {max_wager}")

    question = game.get("final_jeopardy_question") or {}
    submitted_at = now_iso()
    try:
        games_repo.fj_submit_wager(
            gid,
            team_id,
            wager=int(wager),
            expected_score=score,
            category=str(question.get("category") or DEFAULT_CATEGORY),
            submitted_at=submitted_at,
        )
    except DdbConflict:
        current = games_repo.get_game(gid) or {}
        if current.get("current_phase") != PHASE_WAGER:
            raise HTTPException(status_code=400, detail="Not in wagering phase")
        log.info("final_jeopardy_wager_score_changed", game_id=gid, team_id=team_id)
        raise HTTPException(status_code=409, detail="Team score changed, please resubmit wager")

    log.info("final_jeopardy_wager_submitted", game_id=gid, team_id=team_id, wager=int(wager))
    return {"success": True, "teamId": team_id, "wager": int(wager), "submittedAt": submitted_at}


def submit_answer(game_id: str, body: dict[str, Any]) -> dict[str, Any]:
    gid = require_game_id(game_id)
    team_id = body.get("teamId")
    answer = body.get("answer")
    if not team_id or answer is None:
        raise HTTPException(status_code=400, detail="teamId and answer are required")
    if not is_uuid(team_id):
        raise HTTPException(status_code=400, detail="Invalid team ID format")
    if not isinstance(answer, str):
        raise HTTPException(status_code=400, detail="Answer must be a string")
    if len(answer) > MAX_ANSWER_LEN:
        raise HTTPException(status_code=400, detail=f"Answer must be {MAX_ANSWER_LEN} characters or less")

    team = games_repo.get_team(gid, team_id)
    if not team:
        raise HTTPException(status_code=404, detail="Team not found")
    game = games_repo.get_game(gid)
    if not game:
        raise HTTPException(status_code=404, detail="Game not found")
    if game.get("current_phase") != PHASE_ANSWER:
        raise HTTPException(status_code=400, detail="Not in answering phase")
    if team.get("final_jeopardy_wager") is None:
        raise HTTPException(status_code=400, detail="Must submit wager before answering")

    submitted_at = now_iso()
    try:
        games_repo.fj_submit_answer(gid, team_id, answer=answer, submitted_at=submitted_at)
    except DdbConflict:
        raise HTTPException(status_code=400, detail="Not in answering phase")

    log.info("final_jeopardy_answer_submitted", game_id=gid, team_id=team_id)
    return {"success": True, "teamId": team_id, "submittedAt": submitted_at}


def reveal(ctx: RequestContext, game_id: str, body: dict[str, Any]) -> dict[str, Any]:
    gid = require_game_id(game_id)
    team_id = body.get("teamId")
    is_correct = body.get("isCorrect")
    if not team_id or not isinstance(is_correct, bool):
        raise HTTPException(status_code=400, detail="teamId and isCorrect (boolean) are required")
    if not is_uuid(team_id):
        raise HTTPException(status_code=400, detail="Invalid team ID format")

    game = games_repo.get_game(gid)
    if not game or game.get("teacher_id") != ctx.effective_user_id:
        raise HTTPException(status_code=404, detail="Game not found")
    if game.get("current_phase") != PHASE_REVEAL:
        raise HTTPException(status_code=400, detail="Not in reveal phase")

    team = games_repo.get_team(gid, team_id)
    if not team:
        raise HTTPException(status_code=404, detail="Team not found")
    wager = team.get("final_jeopardy_wager")
    if wager is None:
        raise HTTPException(status_code=400, detail="Team has not submitted a wager")
    if team.get("final_jeopardy_answer") is None:
        raise HTTPException(status_code=400, detail="Team has not submitted an answer")
    if team.get("final_jeopardy_revealed"):
        raise HTTPException(status_code=409, detail="Answer already revealed for this team")

    score_change = int(wager) if is_correct else -int(wager)
    try:
        games_repo.fj_reveal(gid, team_id, is_correct=is_correct, score_change=score_change)
    except DdbConflict:
        current = games_repo.get_game(gid) or {}
        if current.get("current_phase") != PHASE_REVEAL:
            raise HTTPException(status_code=400, detail="Not in reveal phase")
        raise HTTPException(status_code=409, detail="Answer already revealed for this team")

    updated = games_repo.get_team(gid, team_id) or {}
    new_score = int(updated.get("score") or 0)
    log.info(
        "final_jeopardy_revealed",
        game_id=gid,
        team_id=team_id,
        is_correct=is_correct,
        score_change=score_change,
        new_score=new_score,
    )
    return {
        "success": True,
        "teamId": team_id,
        "isCorrect": is_correct,
        "scoreChange": score_change,
        "newScore": new_score,
        "wager": int(wager),
    }


def skip(ctx: RequestContext, game_id: str) -> dict[str, Any]:
    gid = require_game_id(game_id)
    game, teams, wagers = _load_game_as_owner(gid, ctx, not_owner_status=403)
    games_repo.fj_skip(gid, [str(t["id"]) for t in teams], _fj_wager_sks(wagers, gid))
    log.info("final_jeopardy_skipped", game_id=gid, user_id=ctx.effective_user_id, previous_phase=game.get("current_phase"))
    return {"success": True, "phase": PHASE_REGULAR}


def advance(ctx: RequestContext, game_id: str) -> dict[str, Any]:
    gid = require_game_id(game_id)
    game = games_repo.get_game(gid)
    if not game or game.get("teacher_id") != ctx.effective_user_id:
        raise HTTPException(status_code=404, detail="Game not found")

    current = str(game.get("current_phase") or PHASE_REGULAR)
    nxt = _ADVANCE.get(current)
    if not nxt:
        raise HTTPException(status_code=400, detail="Not in a Final Jeopardy phase")

    completed = current == PHASE_REVEAL
    try:
        games_repo.fj_advance(gid, from_phase=current, to_phase=nxt, complete=completed)
    except DdbConflict:
        raise HTTPException(status_code=409, detail="Game phase changed, please retry")

    log.info("final_jeopardy_advanced", game_id=gid, previous_phase=current, current_phase=nxt, completed=completed)
    return {"success": True, "previousPhase": current, "currentPhase": nxt, "completed": completed}
