from __future__ import annotations

import re
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Ensure the repo root is on sys.path so `import review_game.*` works in tests.
ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))


class FakeUser:
    def __init__(self, sub: str, email: str | None = None):
        self.sub = sub
        self.email = email or f"{sub[:8]}@example.com"
        self.username = None
        self.claims = {"sub": sub}


def make_profile(user_id: str, **overrides):
    profile = {
        "id": user_id,
        "email": f"{user_id[:8]}@example.com",
        "role": "user",
        "is_active": True,
        "subscription_tier": "FREE",
        "subscription_status": "FREE",
        "games_created_count": 0,
        "custom_bank_count": 0,
        "custom_bank_limit": 15,
        "accessible_prebuilt_bank_ids": [],
    }
    profile.update(overrides)
    return profile


@pytest.fixture
def profiles(monkeypatch):
    """In-memory profile store behind profiles_repo.get_profile / ensure_profile."""
    from review_game.repositories import profiles_repo

    store: dict[str, dict] = {}

    def _ensure(*, user_id, email, full_name=None):
        return store.setdefault(user_id, make_profile(user_id, email=email or ""))

    monkeypatch.setattr(profiles_repo, "ensure_profile", _ensure)
    monkeypatch.setattr(profiles_repo, "get_profile", lambda uid: store.get(uid))
    return store


@pytest.fixture
def client(monkeypatch, profiles) -> TestClient:
    """App client where the bearer token is the caller's user id."""
    from review_game.main import create_app
    from review_game.middleware import auth as auth_mw

    monkeypatch.setattr(auth_mw, "verify_bearer_token", lambda tok: FakeUser(tok))
    return TestClient(create_app())


@pytest.fixture
def audit_entries(monkeypatch):
    from review_game.repositories import audit_log_repo

    entries: list[dict] = []

    def _append(**kwargs):
        entries.append(kwargs)
        return kwargs

    monkeypatch.setattr(audit_log_repo, "append_entry", _append)
    return entries


@pytest.fixture
def profile_factory():
    return make_profile


class FakeGameStore:
    """In-memory stand-in for the games repository functions used by the services."""

    def __init__(self):
        self.games: dict[str, dict] = {}
        self.teams: dict[str, dict[str, dict]] = {}
        self.wagers: dict[str, dict[str, dict]] = {}

    # --- seeding ---
    def add_game(self, game_id: str, teacher_id: str, *, num_teams: int = 2, **fields) -> dict:
        from review_game.repositories import games_repo

        game = {
            "id": game_id,
            "teacher_id": teacher_id,
            "bank_id": fields.pop("bank_id", "bank-1"),
            "num_teams": num_teams,
            "status": "setup",
            "current_phase": "regular",
            "final_jeopardy_question": None,
            "started_at": None,
            "completed_at": None,
            "created_at": "2026-01-01T00:00:00Z",
            **fields,
        }
        self.games[game_id] = game
        self.teams[game_id] = {}
        self.wagers[game_id] = {}
        for n in range(1, num_teams + 1):
            item = games_repo.new_team_item(game_id=game_id, team_number=n, team_name=f"Team {n}")
            self.teams[game_id][item["id"]] = games_repo.team_out(item)
        return game

    def team_ids(self, game_id: str) -> list[str]:
        return [t["id"] for t in sorted(self.teams[game_id].values(), key=lambda t: t["team_number"])]

    def _conflict(self, op: str):
        from review_game.db.dynamodb.errors import DdbConflict

        return DdbConflict(message="Conditional check failed", operation=op)

    # --- repo surface ---
    def create_game_with_teams(self, *, teacher_id, bank_id, num_teams, team_names, timer_enabled, timer_seconds, daily_double_positions):
        import uuid

        gid = str(uuid.uuid4())
        game = self.add_game(
            gid,
            teacher_id,
            num_teams=num_teams,
            bank_id=bank_id,
            team_names=team_names,
            timer_enabled=timer_enabled,
            timer_seconds=timer_seconds,
            daily_double_positions=daily_double_positions,
        )
        for t in self.teams[gid].values():
            t["team_name"] = team_names[t["team_number"] - 1]
        return dict(game)

    def get_game(self, game_id):
        g = self.games.get(game_id)
        return dict(g) if g else None

    def list_teams(self, game_id):
        return [dict(self.teams[game_id][tid]) for tid in self.team_ids(game_id)] if game_id in self.teams else []

    def get_game_items(self, game_id):
        return self.get_game(game_id), self.list_teams(game_id), list(self.wagers.get(game_id, {}).values())

    def get_team(self, game_id, team_id):
        t = self.teams.get(game_id, {}).get(team_id)
        return dict(t) if t else None

    def list_games_for_teacher(self, teacher_id, *, status=None, max_items=2000):
        return [
            dict(g)
            for g in self.games.values()
            if g["teacher_id"] == teacher_id and (status is None or g["status"] == status)
        ]

    def update_game_and_teams(self, game_id, fields, *, add_teams=None, remove_team_ids=None, rename_teams=None):
        self.games[game_id].update(fields)
        for item in add_teams or []:
            self.teams[game_id][item["id"]] = dict(item)
        for tid in remove_team_ids or []:
            self.teams[game_id].pop(tid, None)
        for tid, name in (rename_teams or {}).items():
            self.teams[game_id][tid]["team_name"] = name

    def delete_game(self, game_id):
        n = 1 + len(self.teams.pop(game_id, {})) + len(self.wagers.pop(game_id, {}))
        self.games.pop(game_id, None)
        return n

    def claim_team(self, game_id, team_id, *, device_id):
        t = self.teams[game_id][team_id]
        if t.get("device_id"):
            raise self._conflict("UpdateItem")
        t.update({"device_id": device_id, "connection_status": "connected"})
        return dict(t)

    def add_to_team_score(self, game_id, team_id, delta):
        t = self.teams.get(game_id, {}).get(team_id)
        if not t:
            raise self._conflict("UpdateItem")
        t["score"] = int(t.get("score") or 0) + int(delta)
        return t["score"]

    def end_game(self, game_id, team_ids):
        g = self.games[game_id]
        if g["status"] == "completed":
            raise self._conflict("TransactWriteItems")
        g.update({"status": "completed", "completed_at": "2026-01-02T00:00:00Z"})
        for tid in team_ids:
            self.teams[game_id][tid]["connection_status"] = None

    def _reset_fj(self, game_id):
        for t in self.teams[game_id].values():
            t.update(
                {
                    "final_jeopardy_wager": None,
                    "final_jeopardy_answer": None,
                    "final_jeopardy_submitted_at": None,
                    "final_jeopardy_revealed": False,
                }
            )

    def fj_start(self, game_id, team_ids, wager_sks):
        self.games[game_id]["current_phase"] = "final_jeopardy_wager"
        self._reset_fj(game_id)

    def fj_submit_wager(self, game_id, team_id, *, wager, expected_score, category, submitted_at):
        t = self.teams[game_id][team_id]
        if self.games[game_id]["current_phase"] != "final_jeopardy_wager" or int(t["score"]) != expected_score:
            raise self._conflict("TransactWriteItems")
        t.update({"final_jeopardy_wager": wager, "final_jeopardy_submitted_at": submitted_at})
        self.wagers[game_id][team_id] = {
            "team_id": team_id,
            "wager_type": "final_jeopardy",
            "wager_amount": wager,
            "question_category": category,
        }

    def fj_submit_answer(self, game_id, team_id, *, answer, submitted_at):
        if self.games[game_id]["current_phase"] != "final_jeopardy_answer":
            raise self._conflict("TransactWriteItems")
        self.teams[game_id][team_id].update({"final_jeopardy_answer": answer, "final_jeopardy_submitted_at": submitted_at})
        self.wagers[game_id][team_id]["answer_text"] = answer

    def fj_reveal(self, game_id, team_id, *, is_correct, score_change):
        t = self.teams[game_id][team_id]
        if self.games[game_id]["current_phase"] != "final_jeopardy_reveal" or t.get("final_jeopardy_revealed"):
            raise self._conflict("TransactWriteItems")
        t["score"] = int(t["score"]) + int(score_change)
        t["final_jeopardy_revealed"] = True
        self.wagers[game_id][team_id].update({"is_correct": is_correct, "revealed": True})

    def fj_skip(self, game_id, team_ids, wager_sks):
        self.games[game_id]["current_phase"] = "regular"
        self._reset_fj(game_id)
        self.wagers[game_id] = {}

    def fj_advance(self, game_id, *, from_phase, to_phase, complete):
        g = self.games[game_id]
        if g["current_phase"] != from_phase:
            raise self._conflict("UpdateItem")
        g["current_phase"] = to_phase
        if complete:
            g.update({"status": "completed", "completed_at": "2026-01-02T00:00:00Z"})
        return dict(g)


@pytest.fixture
def game_store(monkeypatch) -> FakeGameStore:
    from review_game.repositories import games_repo

    store = FakeGameStore()
    for name in (
        "create_game_with_teams",
        "get_game",
        "get_game_items",
        "list_teams",
        "get_team",
        "list_games_for_teacher",
        "update_game_and_teams",
        "delete_game",
        "claim_team",
        "add_to_team_score",
        "end_game",
        "fj_start",
        "fj_submit_wager",
        "fj_submit_answer",
        "fj_reveal",
        "fj_skip",
        "fj_advance",
    ):
        monkeypatch.setattr(games_repo, name, getattr(store, name))
    monkeypatch.setattr(games_repo, "bank_has_games", lambda bank_id: any(g["bank_id"] == bank_id for g in store.games.values()))
    return store


# --- in-memory DynamoTable ---

_MISSING = object()
_TOKEN_RE = re.compile(r"\s*(<>|<=|>=|[=<>(),]|[#:]?[A-Za-z_][A-Za-z0-9_]*)")
_SORT_ATTR = {None: "sk", "GSI1": "gsi1sk", "GSI2": "gsi2sk"}


def _split_top(s: str) -> list[str]:
    """Split on commas that are not inside parentheses."""
    out, depth, cur = [], 0, ""
    for ch in s:
        if ch == "," and depth == 0:
            out.append(cur.strip())
            cur = ""
            continue
        depth += ch == "("
        depth -= ch == ")"
        cur += ch
    if cur.strip():
        out.append(cur.strip())
    return out


class _Condition:
    """Evaluates the ConditionExpression subset the repositories use."""

    def __init__(self, expr: str, names: dict | None, values: dict | None, item: dict | None):
        self.toks = _TOKEN_RE.findall(expr)
        self.i = 0
        self.names = names or {}
        self.values = values or {}
        self.item = item or {}

    def _peek(self):
        return self.toks[self.i] if self.i < len(self.toks) else None

    def _take(self):
        tok = self.toks[self.i]
        self.i += 1
        return tok

    def _attr_name(self, tok: str) -> str:
        return self.names[tok] if tok.startswith("#") else tok

    def _operand(self, tok: str):
        if tok.startswith(":"):
            return self.values[tok]
        return self.item.get(self._attr_name(tok), _MISSING)

    def evaluate(self) -> bool:
        ok = self._or()
        assert self._peek() is None, f"unparsed condition tail: {self.toks[self.i:]}"
        return ok

    def _or(self) -> bool:
        v = self._and()
        while self._peek() == "OR":
            self._take()
            rhs = self._and()
            v = v or rhs
        return v

    def _and(self) -> bool:
        v = self._not()
        while self._peek() == "AND":
            self._take()
            rhs = self._not()
            v = v and rhs
        return v

    def _not(self) -> bool:
        tok = self._take()
        if tok == "NOT":
            return not self._not()
        if tok == "(":
            v = self._or()
            assert self._take() == ")"
            return v
        if tok in ("attribute_exists", "attribute_not_exists"):
            assert self._take() == "("
            present = self._operand(self._take()) is not _MISSING
            assert self._take() == ")"
            return present if tok == "attribute_exists" else not present

        left = self._operand(tok)
        op = self._take()
        if op == "IN":
            assert self._take() == "("
            options = []
            while self._peek() != ")":
                t = self._take()
                if t != ",":
                    options.append(self._operand(t))
            self._take()
            return left is not _MISSING and left in options
        right = self._operand(self._take())
        if left is _MISSING or right is _MISSING:
            return False
        return {
            "=": left == right,
            "<>": left != right,
            "<": left < right,
            "<=": left <= right,
            ">": left > right,
            ">=": left >= right,
        }[op]


def _update_value(rhs: str, item: dict, names: dict, values: dict):
    def operand(tok: str):
        tok = tok.strip()
        if tok.startswith("if_not_exists("):
            path, default = _split_top(tok[len("if_not_exists("):-1])
            return item.get(names.get(path, path), values[default])
        if tok.startswith(":"):
            return values[tok]
        return item[names.get(tok, tok)]

    m = re.fullmatch(r"(.+?)\s*([+-])\s*(:\w+)", rhs.strip())
    if not m:
        return operand(rhs)
    left, op, right = operand(m.group(1)), m.group(2), operand(m.group(3))
    return left + right if op == "+" else left - right


def _apply_update(item: dict, expr: str, names: dict | None, values: dict | None) -> None:
    names, values = names or {}, values or {}
    action = None
    for part in re.split(r"\b(SET|ADD|REMOVE)\b", expr):
        part = part.strip()
        if part in ("SET", "ADD", "REMOVE"):
            action = part
            continue
        for clause in _split_top(part) if part else []:
            if action == "SET":
                path, rhs = clause.split("=", 1)
                item[names.get(path.strip(), path.strip())] = _update_value(rhs, item, names, values)
            elif action == "ADD":
                path, v = clause.split()
                attr = names.get(path, path)
                item[attr] = item.get(attr, 0) + values[v]
            elif action == "REMOVE":
                item.pop(names.get(clause, clause), None)


def _match(cond, item: dict) -> bool:
    """Evaluate a boto3 Key/Attr condition object against an item."""
    e = cond.get_expression()
    op, vals = e["operator"], e["values"]
    if op == "AND":
        return all(_match(v, item) for v in vals)
    if op == "OR":
        return any(_match(v, item) for v in vals)
    cur = item.get(vals[0].name, _MISSING)
    if op == "attribute_not_exists":
        return cur is _MISSING
    if op == "attribute_exists":
        return cur is not _MISSING
    if cur is _MISSING:
        return False
    if op == "begins_with":
        return str(cur).startswith(vals[1])
    if op == "BETWEEN":
        return vals[1] <= cur <= vals[2]
    return {
        "=": lambda: cur == vals[1],
        "<>": lambda: cur != vals[1],
        "<": lambda: cur < vals[1],
        "<=": lambda: cur <= vals[1],
        ">": lambda: cur > vals[1],
        ">=": lambda: cur >= vals[1],
    }[op]()


class FakeTable:
    """
    In-memory stand-in for DynamoTable that evaluates condition and update
    expressions, so repository invariants hold or fail the way they would
    against DynamoDB. ``calls`` records every write for shape assertions.
    """

    table_name = "Fake"

    def __init__(self):
        self.items: dict[tuple[str, str], dict] = {}
        self.calls: list[tuple[str, dict]] = []
        self.fail_next: dict[str, Exception] = {}

    # --- helpers ---

    def seed(self, *items: dict) -> None:
        for it in items:
            self.items[(it["pk"], it["sk"])] = dict(it)

    def item(self, pk: str, sk: str) -> dict | None:
        return self.items.get((pk, sk))

    def _maybe_fail(self, op: str) -> None:
        exc = self.fail_next.pop(op, None)
        if exc:
            raise exc

    @staticmethod
    def _k(key: dict) -> tuple[str, str]:
        return key["pk"], key["sk"]

    def _check(self, op: str, key: dict, cond: str | None, names, values) -> None:
        from review_game.db.dynamodb.errors import DdbConflict

        if cond and not _Condition(cond, names, values, self.items.get(self._k(key))).evaluate():
            raise DdbConflict(message="The conditional request failed", operation=op, table_name=self.table_name, key=key)

    # --- single-item ops ---

    def get_item(self, *, key: dict, consistent_read: bool = False) -> dict | None:
        it = self.items.get(self._k(key))
        return dict(it) if it else None

    def get_required(self, *, key: dict, message: str = "Item not found") -> dict:
        from review_game.db.dynamodb.errors import DdbNotFound

        it = self.get_item(key=key)
        if not it:
            raise DdbNotFound(message=message, operation="GetItem", table_name=self.table_name, key=key)
        return it

    def put_item(self, *, item: dict, condition_expression=None, expression_attribute_names=None, expression_attribute_values=None):
        self.calls.append(("put_item", {"item": item, "condition_expression": condition_expression}))
        self._maybe_fail("put_item")
        self._check("PutItem", item, condition_expression, expression_attribute_names, expression_attribute_values)
        self.items[self._k(item)] = dict(item)
        return item

    def delete_item(self, *, key: dict, condition_expression=None, expression_attribute_names=None, expression_attribute_values=None):
        self.calls.append(("delete_item", {"key": key, "condition_expression": condition_expression}))
        self._maybe_fail("delete_item")
        self._check("DeleteItem", key, condition_expression, expression_attribute_names, expression_attribute_values)
        self.items.pop(self._k(key), None)

    def update_item(
        self,
        *,
        key: dict,
        update_expression: str,
        expression_attribute_names,
        expression_attribute_values,
        condition_expression=None,
        return_values: str = "ALL_NEW",
    ):
        self.calls.append(
            (
                "update_item",
                {
                    "key": key,
                    "update_expression": update_expression,
                    "condition_expression": condition_expression,
                    "expression_attribute_values": expression_attribute_values,
                },
            )
        )
        self._maybe_fail("update_item")
        self._check("UpdateItem", key, condition_expression, expression_attribute_names, expression_attribute_values)
        it = self.items.setdefault(self._k(key), dict(key))
        _apply_update(it, update_expression, expression_attribute_names, expression_attribute_values)
        return dict(it) if return_values != "NONE" else None

    # --- batch / query ---

    def batch_put(self, *, items) -> int:
        item_list = list(items)
        self.calls.append(("batch_put", {"items": item_list}))
        self._maybe_fail("batch_put")
        for it in item_list:
            self.items[self._k(it)] = dict(it)
        return len(item_list)

    def batch_delete(self, *, keys) -> int:
        key_list = list(keys)
        self.calls.append(("batch_delete", {"keys": key_list}))
        for k in key_list:
            self.items.pop(self._k(k), None)
        return len(key_list)

    def _query(self, key_condition_expression, index_name, scan_index_forward, filter_expression) -> list[dict]:
        out = [dict(it) for it in self.items.values() if _match(key_condition_expression, it)]
        if filter_expression is not None:
            out = [it for it in out if _match(filter_expression, it)]
        sort_attr = _SORT_ATTR.get(index_name, "sk")
        out.sort(key=lambda it: str(it.get(sort_attr, "")), reverse=not scan_index_forward)
        return out

    def query_page(
        self,
        *,
        key_condition_expression,
        index_name=None,
        limit: int = 50,
        scan_index_forward: bool = False,
        filter_expression=None,
        next_token=None,
        consistent_read: bool = False,
    ):
        from review_game.db.dynamodb.table import Page

        items = self._query(key_condition_expression, index_name, scan_index_forward, filter_expression)
        return Page(items=items[: int(limit)], next_token=None)

    def query_all(
        self,
        *,
        key_condition_expression,
        index_name=None,
        scan_index_forward: bool = True,
        filter_expression=None,
        consistent_read: bool = False,
        max_items: int = 5000,
    ) -> list[dict]:
        return self._query(key_condition_expression, index_name, scan_index_forward, filter_expression)[:max_items]

    # --- transactions (plain-value builders; no AttributeValue serialization) ---

    @staticmethod
    def _tx(out: dict, condition_expression, expression_attribute_names, expression_attribute_values) -> dict:
        if condition_expression:
            out["ConditionExpression"] = condition_expression
        if expression_attribute_names:
            out["ExpressionAttributeNames"] = expression_attribute_names
        if expression_attribute_values:
            out["ExpressionAttributeValues"] = expression_attribute_values
        return out

    def tx_put(self, *, item, condition_expression=None, expression_attribute_names=None, expression_attribute_values=None):
        return self._tx({"Item": dict(item)}, condition_expression, expression_attribute_names, expression_attribute_values)

    def tx_delete(self, *, key, condition_expression=None, expression_attribute_names=None, expression_attribute_values=None):
        return self._tx({"Key": dict(key)}, condition_expression, expression_attribute_names, expression_attribute_values)

    def tx_update(self, *, key, update_expression, expression_attribute_names=None, expression_attribute_values=None, condition_expression=None):
        return self._tx(
            {"Key": dict(key), "UpdateExpression": update_expression},
            condition_expression,
            expression_attribute_names,
            expression_attribute_values,
        )

    def tx_condition_check(self, *, key, condition_expression, expression_attribute_names=None, expression_attribute_values=None):
        return self._tx({"Key": dict(key)}, condition_expression, expression_attribute_names, expression_attribute_values)

    def transact_write(self, *, puts=(), deletes=(), updates=(), condition_checks=(), retry_policy=None):
        from review_game.db.dynamodb.errors import DdbConflict

        entries = (
            [("ConditionCheck", c) for c in condition_checks]
            + [("Put", p) for p in puts]
            + [("Delete", d) for d in deletes]
            + [("Update", u) for u in updates]
        )
        self.calls.append(("transact_write", {"entries": entries}))
        self._maybe_fail("transact_write")

        codes: list[str] = []
        for _kind, e in entries:
            key = e.get("Key") or e["Item"]
            cond = e.get("ConditionExpression")
            ok = not cond or _Condition(
                cond, e.get("ExpressionAttributeNames"), e.get("ExpressionAttributeValues"), self.items.get(self._k(key))
            ).evaluate()
            codes.append("None" if ok else "ConditionalCheckFailed")
        if any(c != "None" for c in codes):
            raise DdbConflict(
                message="Transaction cancelled",
                operation="TransactWriteItems",
                table_name=self.table_name,
                cancellation_codes=codes,
            )

        for kind, e in entries:
            if kind == "Put":
                self.items[self._k(e["Item"])] = dict(e["Item"])
            elif kind == "Delete":
                self.items.pop(self._k(e["Key"]), None)
            elif kind == "Update":
                it = self.items.setdefault(self._k(e["Key"]), dict(e["Key"]))
                _apply_update(it, e["UpdateExpression"], e.get("ExpressionAttributeNames"), e.get("ExpressionAttributeValues"))
        return {"ok": True}


@pytest.fixture
def fake_table(monkeypatch) -> FakeTable:
    """Route every repository's get_main_table() to one in-memory table."""
    from review_game.repositories import (
        audit_log_repo,
        games_repo,
        impersonation_repo,
        profiles_repo,
        question_banks_repo,
        refunds_repo,
        stripe_events_repo,
    )

    table = FakeTable()
    for mod in (
        audit_log_repo,
        games_repo,
        impersonation_repo,
        profiles_repo,
        question_banks_repo,
        refunds_repo,
        stripe_events_repo,
    ):
        monkeypatch.setattr(mod, "get_main_table", lambda: table)
    return table
