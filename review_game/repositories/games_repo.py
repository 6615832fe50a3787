from __future__ import annotations

from typing import Any

from boto3.dynamodb.conditions import Attr, Key

from ..db.dynamodb.table import get_main_table
from .common import new_id, normalize_item, now_iso, set_clause

FJ_WAGER_TYPE = "final_jeopardy"

PHASE_REGULAR = "regular"
PHASE_WAGER = "final_jeopardy_wager"
PHASE_ANSWER = "final_jeopardy_answer"
PHASE_REVEAL = "final_jeopardy_reveal"

# Team attributes reset whenever Final Jeopardy starts over or is skipped.
_FJ_TEAM_FIELDS = (
    "final_jeopardy_wager",
    "final_jeopardy_answer",
    "final_jeopardy_submitted_at",
)


def game_key(game_id: str) -> dict[str, str]:
    gid = str(game_id or "").strip()
    if not gid:
        raise ValueError("game_id is required")
    return {"pk": f"GAME#{gid}", "sk": "GAME"}


def team_key(game_id: str, team_id: str) -> dict[str, str]:
    tid = str(team_id or "").strip()
    if not tid:
        raise ValueError("team_id is required")
    return {"pk": game_key(game_id)["pk"], "sk": f"TEAM#{tid}"}


def wager_key(game_id: str, team_id: str, wager_type: str = FJ_WAGER_TYPE) -> dict[str, str]:
    return {"pk": game_key(game_id)["pk"], "sk": f"WAGER#{team_id}#{wager_type}"}


def _teacher_pk(teacher_id: str) -> str:
    return f"TEACHER#{teacher_id}#GAMES"


def _bank_pk(bank_id: str) -> str:
    return f"BANK#{bank_id}#GAMES"


def team_out(item: dict[str, Any] | None) -> dict[str, Any] | None:
    t = normalize_item(item)
    if not t:
        return None
    t.setdefault("connection_status", None)
    t.setdefault("device_id", None)
    for k in _FJ_TEAM_FIELDS:
        t.setdefault(k, None)
    t.setdefault("final_jeopardy_revealed", False)
    return t


def game_out(item: dict[str, Any] | None) -> dict[str, Any] | None:
    g = normalize_item(item)
    if not g:
        return None
    for k in ("final_jeopardy_question", "started_at", "completed_at", "timer_seconds"):
        g.setdefault(k, None)
    g.setdefault("selected_questions", [])
    return g


def new_team_item(*, game_id: str, team_number: int, team_name: str) -> dict[str, Any]:
    tid = new_id()
    now = now_iso()
    return {
        **team_key(game_id, tid),
        "entityType": "Team",
        "id": tid,
        "game_id": game_id,
        "team_number": int(team_number),
        "team_name": team_name,
        "score": 0,
        "connection_status": "pending",
        "final_jeopardy_revealed": False,
        "created_at": now,
        "updated_at": now,
    }


def create_game_with_teams(
    *,
    teacher_id: str,
    bank_id: str,
    num_teams: int,
    team_names: list[str],
    timer_enabled: bool,
    timer_seconds: int | None,
    daily_double_positions: list[int],
) -> dict[str, Any]:
    """Write the game and its teams in a single transaction."""
    table = get_main_table()
    gid = new_id()
    now = now_iso()
    game: dict[str, Any] = {
        **game_key(gid),
        "entityType": "Game",
        "id": gid,
        "teacher_id": teacher_id,
        "bank_id": bank_id,
        "num_teams": int(num_teams),
        "team_names": list(team_names),
        "timer_enabled": bool(timer_enabled),
        "daily_double_positions": [int(p) for p in daily_double_positions],
        "status": "setup",
        "current_phase": PHASE_REGULAR,
        "selected_questions": [],
        "created_at": now,
        "updated_at": now,
        "gsi1pk": _teacher_pk(teacher_id),
        "gsi1sk": f"{now}#{gid}",
        "gsi2pk": _bank_pk(bank_id),
        "gsi2sk": f"{now}#{gid}",
    }
    if timer_enabled and timer_seconds is not None:
        game["timer_seconds"] = int(timer_seconds)

    teams = [
        new_team_item(game_id=gid, team_number=i + 1, team_name=team_names[i])
        for i in range(int(num_teams))
    ]
    puts = [table.tx_put(item=game, condition_expression="attribute_not_exists(pk)")]
    puts.extend(table.tx_put(item=t) for t in teams)
    table.transact_write(puts=puts)
    return game_out(game) or {}


def get_game(game_id: str) -> dict[str, Any] | None:
    return game_out(get_main_table().get_item(key=game_key(game_id), consistent_read=True))


def get_game_items(game_id: str) -> tuple[dict[str, Any] | None, list[dict[str, Any]], list[dict[str, Any]]]:
    """Read the whole game partition: (game, teams ordered by number, wagers)."""
    items = get_main_table().query_all(
        key_condition_expression=Key("pk").eq(game_key(game_id)["pk"]),
        consistent_read=True,
    )
    game: dict[str, Any] | None = None
    teams: list[dict[str, Any]] = []
    wagers: list[dict[str, Any]] = []
    for it in items:
        sk = str(it.get("sk") or "")
        if sk == "GAME":
            game = game_out(it)
        elif sk.startswith("TEAM#"):
            t = team_out(it)
            if t:
                teams.append(t)
        elif sk.startswith("WAGER#"):
            w = normalize_item(it)
            if w:
                wagers.append(w)
    teams.sort(key=lambda t: int(t.get("team_number") or 0))
    return game, teams, wagers


def list_teams(game_id: str) -> list[dict[str, Any]]:
    items = get_main_table().query_all(
        key_condition_expression=Key("pk").eq(game_key(game_id)["pk"]) & Key("sk").begins_with("TEAM#"),
        consistent_read=True,
    )
    teams = [t for t in (team_out(it) for it in items) if t]
    teams.sort(key=lambda t: int(t.get("team_number") or 0))
    return teams


def get_team(game_id: str, team_id: str) -> dict[str, Any] | None:
    return team_out(get_main_table().get_item(key=team_key(game_id, team_id), consistent_read=True))


def list_games_for_teacher(teacher_id: str, *, status: str | None = None, max_items: int = 2000) -> list[dict[str, Any]]:
    items = get_main_table().query_all(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(_teacher_pk(teacher_id)),
        scan_index_forward=False,
        filter_expression=Attr("status").eq(status) if status else None,
        max_items=max_items,
    )
    return [g for g in (game_out(it) for it in items) if g]


def bank_has_games(bank_id: str) -> bool:
    pg = get_main_table().query_page(
        index_name="GSI2",
        key_condition_expression=Key("gsi2pk").eq(_bank_pk(bank_id)),
        limit=1,
    )
    return bool(pg.items)


def update_game_and_teams(
    game_id: str,
    fields: dict[str, Any],
    *,
    add_teams: list[dict[str, Any]] | None = None,
    remove_team_ids: list[str] | None = None,
    rename_teams: dict[str, str] | None = None,
) -> None:
    """
    Apply a game update together with team additions, removals and renames.

    ``bank_id`` changes also move the game's bank index entry.
    """
    table = get_main_table()
    changes = dict(fields)
    if "bank_id" in changes and changes["bank_id"]:
        game = table.get_required(key=game_key(game_id), message="Game not found")
        changes["gsi2pk"] = _bank_pk(changes["bank_id"])
        changes["gsi2sk"] = game.get("gsi2sk") or f"{game.get('created_at')}#{game_id}"
    changes["updated_at"] = now_iso()

    expr, names, values = set_clause(changes)
    updates = [
        table.tx_update(
            key=game_key(game_id),
            update_expression=expr,
            expression_attribute_names=names,
            expression_attribute_values=values or None,
            condition_expression="attribute_exists(pk)",
        )
    ]
    for tid, name in (rename_teams or {}).items():
        updates.append(
            table.tx_update(
                key=team_key(game_id, tid),
                update_expression="SET #n = :n, #upd = :now",
                expression_attribute_names={"#n": "team_name", "#upd": "updated_at"},
                expression_attribute_values={":n": name, ":now": changes["updated_at"]},
                condition_expression="attribute_exists(pk)",
            )
        )
    puts = [table.tx_put(item=t) for t in (add_teams or [])]
    deletes = [table.tx_delete(key=team_key(game_id, tid)) for tid in (remove_team_ids or [])]
    table.transact_write(puts=puts, deletes=deletes, updates=updates)


def delete_game(game_id: str) -> int:
    """Delete the game item with all teams and wagers in its partition."""
    table = get_main_table()
    items = table.query_all(key_condition_expression=Key("pk").eq(game_key(game_id)["pk"]))
    return table.batch_delete(keys=[{"pk": it["pk"], "sk": it["sk"]} for it in items])


def claim_team(game_id: str, team_id: str, *, device_id: str) -> dict[str, Any] | None:
    """Bind a device to an unclaimed team; raises DdbConflict if another device won the race."""
    it = get_main_table().update_item(
        key=team_key(game_id, team_id),
        update_expression="SET #dev = :dev, #cs = :connected, #upd = :now",
        expression_attribute_names={"#dev": "device_id", "#cs": "connection_status", "#upd": "updated_at"},
        expression_attribute_values={":dev": device_id, ":connected": "connected", ":now": now_iso()},
        condition_expression="attribute_exists(pk) AND attribute_not_exists(#dev)",
    )
    return team_out(it)


def add_to_team_score(game_id: str, team_id: str, delta: int) -> int:
    it = get_main_table().update_item(
        key=team_key(game_id, team_id),
        update_expression="ADD #score :d SET #upd = :now",
        expression_attribute_names={"#score": "score", "#upd": "updated_at"},
        expression_attribute_values={":d": int(delta), ":now": now_iso()},
        condition_expression="attribute_exists(pk)",
    )
    return int((team_out(it) or {}).get("score") or 0)


def end_game(game_id: str, team_ids: list[str]) -> None:
    """
    Mark the game completed and disconnect every team.

    Conditioned on the game not already being completed; a DdbConflict means
    another request completed it first.
    """
    table = get_main_table()
    now = now_iso()
    updates = [
        table.tx_update(
            key=game_key(game_id),
            update_expression="SET #st = :done, #ca = :now, #upd = :now",
            expression_attribute_names={"#st": "status", "#ca": "completed_at", "#upd": "updated_at"},
            expression_attribute_values={":done": "completed", ":now": now},
            condition_expression="attribute_exists(pk) AND #st <> :done",
        )
    ]
    for tid in team_ids:
        updates.append(
            table.tx_update(
                key=team_key(game_id, tid),
                update_expression="SET #upd = :now REMOVE #cs",
                expression_attribute_names={"#cs": "connection_status", "#upd": "updated_at"},
                expression_attribute_values={":now": now},
                condition_expression="attribute_exists(pk)",
            )
        )
    table.transact_write(updates=updates)


# --- Final Jeopardy ---

def fj_start(game_id: str, team_ids: list[str], wager_sks: list[str]) -> None:
    """Enter the wager phase and clear every team's previous Final Jeopardy state."""
    table = get_main_table()
    now = now_iso()
    updates = [
        table.tx_update(
            key=game_key(game_id),
            update_expression="SET #ph = :ph, #upd = :now",
            expression_attribute_names={"#ph": "current_phase", "#upd": "updated_at"},
            expression_attribute_values={":ph": PHASE_WAGER, ":now": now},
            condition_expression="attribute_exists(pk)",
        )
    ]
    updates.extend(_fj_team_reset(table, game_id, tid, now) for tid in team_ids)
    deletes = [table.tx_delete(key={"pk": game_key(game_id)["pk"], "sk": sk}) for sk in wager_sks]
    table.transact_write(updates=updates, deletes=deletes)


def _fj_team_reset(table, game_id: str, team_id: str, now: str) -> dict[str, Any]:
    return table.tx_update(
        key=team_key(game_id, team_id),
        update_expression="SET #rev = :false, #upd = :now REMOVE #w, #a, #s",
        expression_attribute_names={
            "#rev": "final_jeopardy_revealed",
            "#upd": "updated_at",
            "#w": "final_jeopardy_wager",
            "#a": "final_jeopardy_answer",
            "#s": "final_jeopardy_submitted_at",
        },
        expression_attribute_values={":false": False, ":now": now},
        condition_expression="attribute_exists(pk)",
    )


def _phase_check(table, game_id: str, phase: str) -> dict[str, Any]:
    return table.tx_condition_check(
        key=game_key(game_id),
        condition_expression="#ph = :ph",
        expression_attribute_names={"#ph": "current_phase"},
        expression_attribute_values={":ph": phase},
    )


def fj_submit_wager(
    game_id: str,
    team_id: str,
    *,
    wager: int,
    expected_score: int,
    category: str,
    submitted_at: str,
) -> None:
    """
    Record a wager while the game is in the wager phase.

    The team's score must still equal ``expected_score`` so the cap checked
    by the caller cannot be bypassed by a concurrent score change. A repeat
    submission during the phase overwrites the earlier wager.
    """
    table = get_main_table()
    wk = wager_key(game_id, team_id)
    wager_row = {
        **wk,
        "entityType": "Wager",
        "id": new_id(),
        "game_id": game_id,
        "team_id": team_id,
        "wager_amount": int(wager),
        "wager_type": FJ_WAGER_TYPE,
        "question_category": category,
        "question_value": 0,
        "revealed": False,
        "created_at": submitted_at,
    }
    table.transact_write(
        condition_checks=[_phase_check(table, game_id, PHASE_WAGER)],
        puts=[table.tx_put(item=wager_row)],
        updates=[
            table.tx_update(
                key=team_key(game_id, team_id),
                update_expression="SET #w = :w, #s = :at, #upd = :at",
                expression_attribute_names={
                    "#w": "final_jeopardy_wager",
                    "#s": "final_jeopardy_submitted_at",
                    "#upd": "updated_at",
                    "#score": "score",
                },
                expression_attribute_values={":w": int(wager), ":at": submitted_at, ":score": int(expected_score)},
                condition_expression="attribute_exists(pk) AND #score = :score",
            )
        ],
    )


def fj_submit_answer(game_id: str, team_id: str, *, answer: str, submitted_at: str) -> None:
    table = get_main_table()
    table.transact_write(
        condition_checks=[_phase_check(table, game_id, PHASE_ANSWER)],
        updates=[
            table.tx_update(
                key=team_key(game_id, team_id),
                update_expression="SET #a = :a, #s = :at, #upd = :at",
                expression_attribute_names={
                    "#a": "final_jeopardy_answer",
                    "#s": "final_jeopardy_submitted_at",
                    "#upd": "updated_at",
                    "#w": "final_jeopardy_wager",
                },
                expression_attribute_values={":a": answer, ":at": submitted_at},
                condition_expression="attribute_exists(pk) AND attribute_exists(#w)",
            ),
            table.tx_update(
                key=wager_key(game_id, team_id),
                update_expression="SET #t = :a",
                expression_attribute_names={"#t": "answer_text"},
                expression_attribute_values={":a": answer},
                condition_expression="attribute_exists(pk)",
            ),
        ],
    )


def fj_reveal(game_id: str, team_id: str, *, is_correct: bool, score_change: int) -> None:
    """Apply the wager to the score exactly once per team."""
    table = get_main_table()
    now = now_iso()
    table.transact_write(
        condition_checks=[_phase_check(table, game_id, PHASE_REVEAL)],
        updates=[
            table.tx_update(
                key=team_key(game_id, team_id),
                update_expression="ADD #score :d SET #rev = :true, #upd = :now",
                expression_attribute_names={
                    "#score": "score",
                    "#rev": "final_jeopardy_revealed",
                    "#upd": "updated_at",
                },
                expression_attribute_values={":d": int(score_change), ":true": True, ":now": now},
                condition_expression="attribute_exists(pk) AND (attribute_not_exists(#rev) OR #rev <> :true)",
            ),
            table.tx_update(
                key=wager_key(game_id, team_id),
                update_expression="SET #ok = :ok, #rev = :true",
                expression_attribute_names={"#ok": "is_correct", "#rev": "revealed"},
                expression_attribute_values={":ok": bool(is_correct), ":true": True},
                condition_expression="attribute_exists(pk)",
            ),
        ],
    )


def fj_skip(game_id: str, team_ids: list[str], wager_sks: list[str]) -> None:
    table = get_main_table()
    now = now_iso()
    updates = [
        table.tx_update(
            key=game_key(game_id),
            update_expression="SET #ph = :ph, #upd = :now",
            expression_attribute_names={"#ph": "current_phase", "#upd": "updated_at"},
            expression_attribute_values={":ph": PHASE_REGULAR, ":now": now},
            condition_expression="attribute_exists(pk)",
        )
    ]
    updates.extend(_fj_team_reset(table, game_id, tid, now) for tid in team_ids)
    deletes = [table.tx_delete(key={"pk": game_key(game_id)["pk"], "sk": sk}) for sk in wager_sks]
    table.transact_write(updates=updates, deletes=deletes)


def fj_advance(game_id: str, *, from_phase: str, to_phase: str, complete: bool) -> dict[str, Any] | None:
    """Move one phase forward; DdbConflict when the phase changed underneath."""
    now = now_iso()
    names = {"#ph": "current_phase", "#upd": "updated_at"}
    values: dict[str, Any] = {":from": from_phase, ":to": to_phase, ":now": now}
    expr = "SET #ph = :to, #upd = :now"
    if complete:
        names.update({"#st": "status", "#ca": "completed_at"})
        values[":done"] = "completed"
        expr += ", #st = :done, #ca = :now"
    it = get_main_table().update_item(
        key=game_key(game_id),
        update_expression=expr,
        expression_attribute_names=names,
        expression_attribute_values=values,
        condition_expression="attribute_exists(pk) AND #ph = :from",
    )
    return game_out(it)
