from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

ADMIN = "aaaaaaaa-0000-4000-8000-000000000001"
TEACHER = "11111111-1111-4111-8111-111111111111"
OTHER_ADMIN = "aaaaaaaa-0000-4000-8000-000000000002"

AS_ADMIN = {"Authorization": f"Bearer {ADMIN}"}
AS_TEACHER = {"Authorization": f"Bearer {TEACHER}"}


def _iso(ts: datetime) -> str:
    return ts.isoformat().replace("+00:00", "Z")


class FakeSessions:
    def __init__(self):
        self.sessions: dict[str, dict] = {}

    def create_session(self, *, admin_user_id, target_user_id, reason, started_at, expires_at, ip_address, user_agent):
        sid = str(uuid.uuid4())
        s = {
            "id": sid,
            "admin_user_id": admin_user_id,
            "target_user_id": target_user_id,
            "reason": reason,
            "started_at": started_at,
            "expires_at": expires_at,
            "ip_address": ip_address,
            "user_agent": user_agent,
        }
        self.sessions[sid] = s
        return dict(s)

    def get_session(self, session_id):
        s = self.sessions.get(session_id)
        return dict(s) if s else None

    def list_sessions_started_since(self, admin_user_id, since_iso):
        return [s for s in self.sessions.values() if s["admin_user_id"] == admin_user_id and s["started_at"] >= since_iso]

    def list_open_sessions(self, admin_user_id):
        return [dict(s) for s in self.sessions.values() if s["admin_user_id"] == admin_user_id and not s.get("ended_at")]

    def end_session(self, session_id, *, ended_at, duration_minutes, ended_by):
        from review_game.db.dynamodb.errors import DdbConflict

        s = self.sessions[session_id]
        if s.get("ended_at"):
            raise DdbConflict(message="already ended", operation="UpdateItem")
        s.update({"ended_at": ended_at, "duration_minutes": duration_minutes, "ended_by": ended_by})
        return dict(s)


@pytest.fixture
def sessions(monkeypatch):
    from review_game.repositories import impersonation_repo

    store = FakeSessions()
    for name in ("create_session", "get_session", "list_sessions_started_since", "list_open_sessions", "end_session"):
        monkeypatch.setattr(impersonation_repo, name, getattr(store, name))
    return store


@pytest.fixture
def people(profiles, profile_factory, monkeypatch):
    from review_game.repositories import profiles_repo

    profiles[ADMIN] = profile_factory(ADMIN, role="admin", email="root@example.com")
    profiles[OTHER_ADMIN] = profile_factory(OTHER_ADMIN, role="admin")
    profiles[TEACHER] = profile_factory(TEACHER, email="jane.doe@school.org", full_name="Jane Doe")

    def _suspend(uid, *, reason):
        profiles[uid].update({"is_active": False, "suspension_reason": reason})
        return dict(profiles[uid])

    def _activate(uid):
        profiles[uid]["is_active"] = True
        profiles[uid].pop("suspension_reason", None)
        return dict(profiles[uid])

    monkeypatch.setattr(profiles_repo, "suspend_profile", _suspend)
    monkeypatch.setattr(profiles_repo, "activate_profile", _activate)
    return profiles


# --- admin users ---

def test_admin_routes_reject_non_admins(client, people):
    r = client.get("/api/admin/users", headers=AS_TEACHER)
    assert r.status_code == 401
    assert r.json()["detail"] == "Unauthorized: Admin access required"


def test_list_users_masks_emails_and_paginates(client, people, audit_entries, monkeypatch):
    from review_game.repositories import profiles_repo

    seen = {}

    def _list(*, limit, next_token, ascending):
        seen.update(limit=limit, next_token=next_token, ascending=ascending)
        return {"data": [people[TEACHER]], "nextToken": "next-page"}

    monkeypatch.setattr(profiles_repo, "list_profiles", _list)

    r = client.get("/api/admin/users", headers=AS_ADMIN, params={"limit": 50, "sortOrder": "asc"})
    assert r.status_code == 200
    body = r.json()
    assert body["data"][0]["email_masked"] == "j***@school.org"
    assert "email" not in body["data"][0]
    assert body["pagination"] == {"limit": 50, "nextToken": "next-page", "hasNextPage": True}
    assert seen == {"limit": 50, "next_token": None, "ascending": True}
    assert audit_entries[-1]["action_type"] == "list_users"

    r = client.get("/api/admin/users", headers=AS_ADMIN, params={"limit": 30})
    assert r.status_code == 400


def test_user_detail(client, people, audit_entries, game_store, monkeypatch):
    from review_game.repositories import audit_log_repo

    game_store.add_game("33333333-3333-4333-8333-333333333333", TEACHER)
    monkeypatch.setattr(
        audit_log_repo,
        "list_for_target",
        lambda target_id, *, limit=50, next_token=None: {"data": [{"action_type": "suspend_user"}] * limit, "nextToken": None},
    )

    r = client.get(f"/api/admin/users/{TEACHER}", headers=AS_ADMIN)
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["game_count"] == 1
    assert len(data["recent_activity"]) == 5
    assert data["email"] == "jane.doe@school.org"


def test_suspend_and_activate_user(client, people, audit_entries):
    url = f"/api/admin/users/{TEACHER}"

    r = client.post(f"{url}/suspend", headers=AS_ADMIN, json={"reason": "spam"})
    assert r.status_code == 400

    r = client.post(f"{url}/suspend", headers=AS_ADMIN, json={"reason": "abuse", "notes": "<script>x</script>"})
    assert r.json()["detail"] == "Notes contain invalid characters or patterns"

    r = client.post(f"{url}/suspend", headers=AS_ADMIN, json={"reason": "abuse", "notes": "Repeated spam"})
    assert r.status_code == 200
    assert people[TEACHER]["suspension_reason"] == "abuse: Repeated spam"
    assert audit_entries[-1]["action_type"] == "suspend_user"
    assert audit_entries[-1]["target_id"] == TEACHER

    r = client.post(f"{url}/suspend", headers=AS_ADMIN, json={"reason": "abuse"})
    assert r.json()["detail"] == "User is already suspended"

    # Suspended users are locked out of the app.
    r = client.get("/api/games", headers=AS_TEACHER)
    assert r.status_code == 403
    assert r.json()["detail"] == "Account suspended"

    r = client.post(f"{url}/activate", headers=AS_ADMIN)
    assert r.status_code == 200
    assert people[TEACHER]["is_active"] is True
    assert audit_entries[-1]["action_type"] == "activate_user"

    r = client.post(f"{url}/activate", headers=AS_ADMIN)
    assert r.json()["detail"] == "User is already active"


def test_admin_cannot_suspend_self(client, people, audit_entries):
    r = client.post(f"/api/admin/users/{ADMIN}/suspend", headers=AS_ADMIN, json={"reason": "other"})
    assert r.status_code == 400
    assert r.json()["detail"] == "You cannot suspend your own account"

    r = client.post("/api/admin/users/nope/suspend", headers=AS_ADMIN, json={"reason": "other"})
    assert r.json()["detail"] == "Invalid user ID format"


def test_audit_write_failure_does_not_fail_action(client, people, monkeypatch):
    from review_game.db.dynamodb.errors import DdbUnavailable
    from review_game.repositories import audit_log_repo

    def _down(**_kw):
        raise DdbUnavailable(message="down", operation="PutItem")

    monkeypatch.setattr(audit_log_repo, "append_entry", _down)

    r = client.post(f"/api/admin/users/{TEACHER}/suspend", headers=AS_ADMIN, json={"reason": "other"})
    assert r.status_code == 200


def test_admin_rate_limit_returns_429():
    from fastapi import FastAPI
    from fastapi.testclient import TestClient

    from review_game.middleware import AdminRateLimitMiddleware

    app = FastAPI()
    app.add_middleware(AdminRateLimitMiddleware, max_requests=2, window_seconds=60)

    @app.get("/api/admin/ping")
    def ping():
        return {"ok": True}

    @app.get("/api/other")
    def other():
        return {"ok": True}

    c = TestClient(app)
    assert c.get("/api/admin/ping").status_code == 200
    assert c.get("/api/admin/ping").status_code == 200
    r = c.get("/api/admin/ping")
    assert r.status_code == 429
    assert int(r.headers["Retry-After"]) >= 1
    assert r.headers["content-type"].startswith("application/problem+json")
    assert c.get("/api/other").status_code == 200


@pytest.fixture
def profile_writes(people, monkeypatch):
    """Profile writes land in `people`; the optimistic update checks `updated_at`."""
    from review_game.db.dynamodb.errors import DdbConflict
    from review_game.repositories import profiles_repo

    writes: list[tuple[str, dict]] = []

    def _update(uid, fields):
        writes.append((uid, dict(fields)))
        people[uid].update(fields)
        return dict(people[uid])

    def _update_if_unchanged(uid, fields, *, expected_updated_at):
        if people[uid].get("updated_at") != expected_updated_at:
            raise DdbConflict(message="stale", operation="UpdateItem")
        return _update(uid, {**fields, "updated_at": "2026-10-02T00:00:00Z"})

    monkeypatch.setattr(profiles_repo, "update_profile_fields", _update)
    monkeypatch.setattr(profiles_repo, "update_profile_if_unchanged", _update_if_unchanged)
    monkeypatch.setattr(profiles_repo, "list_all_profiles", lambda **_kw: list(people.values()))
    return writes


def test_search_users(client, people, profile_writes, audit_entries):
    r = client.post("/api/admin/users/search", headers=AS_ADMIN, json={"query": "   "})
    assert r.status_code == 400
    assert r.json()["detail"] == "Search query cannot be empty"

    r = client.post("/api/admin/users/search", headers=AS_ADMIN, json={"query": "JANE", "limit": 7})
    assert r.status_code == 200
    body = r.json()
    assert [u["id"] for u in body["data"]] == [TEACHER]
    assert body["pagination"]["limit"] == 25
    assert body["pagination"]["totalCount"] == 1
    assert audit_entries[-1]["action_type"] == "search_users"
    assert audit_entries[-1]["target_type"] == "users"

    r = client.post("/api/admin/users/search", headers=AS_ADMIN, json={"query": ADMIN})
    assert [u["id"] for u in r.json()["data"]] == [ADMIN]


def test_edit_user_profile(client, people, profile_writes, audit_entries):
    people[TEACHER].update(updated_at="2026-10-01T00:00:00Z", email_verified_manually=True)

    r = client.patch(f"/api/admin/users/{TEACHER}", headers=AS_ADMIN, json={})
    assert r.status_code == 400
    assert r.json()["detail"] == "At least one field must be provided for update"

    r = client.patch(f"/api/admin/users/{TEACHER}", headers=AS_ADMIN, json={"email": "root@example.com"})
    assert r.status_code == 409
    assert r.json()["detail"] == "Email is already in use by another user"

    r = client.patch(
        f"/api/admin/users/{TEACHER}",
        headers=AS_ADMIN,
        json={"full_name": "Jane Q. Doe", "email": "JQD@School.org"},
    )
    assert r.status_code == 200
    assert r.json()["message"] == "User profile updated successfully"
    assert people[TEACHER]["email"] == "jqd@school.org"
    assert people[TEACHER]["email_verified_manually"] is False
    entry = audit_entries[-1]
    assert entry["action_type"] == "edit_user_profile"
    assert set(entry["changes"]) == {"full_name", "email"}


def test_edit_user_profile_detects_concurrent_edit(client, people, profile_writes, monkeypatch):
    from review_game.db.dynamodb.errors import DdbConflict
    from review_game.repositories import profiles_repo

    people[TEACHER]["updated_at"] = "2026-10-01T00:00:00Z"

    def _stale(uid, fields, *, expected_updated_at):
        raise DdbConflict(message="stale", operation="UpdateItem")

    monkeypatch.setattr(profiles_repo, "update_profile_if_unchanged", _stale)
    r = client.patch(f"/api/admin/users/{TEACHER}", headers=AS_ADMIN, json={"admin_notes": "called school office"})
    assert r.status_code == 409
    assert r.json()["detail"] == "User was modified by another admin. Please refresh and try again."


def test_list_user_banks(client, people, audit_entries, monkeypatch):
    from review_game.repositories import question_banks_repo

    banks = [
        {"id": "b-old", "title": "Fractions", "created_at": "2026-01-01T00:00:00Z"},
        {"id": "b-new", "title": "Decimals", "created_at": "2026-02-01T00:00:00Z"},
    ]
    monkeypatch.setattr(question_banks_repo, "list_owned_banks", lambda owner_id: list(banks))
    monkeypatch.setattr(question_banks_repo, "list_questions", lambda bank_id: [{}] * (3 if bank_id == "b-new" else 1))

    r = client.get(f"/api/admin/users/{TEACHER}/banks", headers=AS_ADMIN, params={"limit": 1})
    assert r.status_code == 200
    body = r.json()
    assert [(b["id"], b["question_count"]) for b in body["data"]] == [("b-new", 3)]
    assert body["pagination"]["totalCount"] == 2
    assert body["pagination"]["hasNextPage"] is True
    assert audit_entries[-1]["action_type"] == "view_user_banks"


def test_reveal_email_is_audited(client, people, audit_entries):
    r = client.post(f"/api/admin/users/{TEACHER}/reveal-email", headers=AS_ADMIN)
    assert r.status_code == 200
    assert r.json() == {"userId": TEACHER, "email": "jane.doe@school.org", "full_name": "Jane Doe"}
    assert audit_entries[-1]["action_type"] == "reveal_email"

    r = client.post("/api/admin/users/not-a-uuid/reveal-email", headers=AS_ADMIN)
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid user ID"


def test_reveal_email_refused_when_audit_write_fails(client, people, monkeypatch):
    from review_game.db.dynamodb.errors import DdbUnavailable
    from review_game.repositories import audit_log_repo

    def _down(**_kw):
        raise DdbUnavailable(message="down", operation="PutItem")

    monkeypatch.setattr(audit_log_repo, "append_entry", _down)
    r = client.post(f"/api/admin/users/{TEACHER}/reveal-email", headers=AS_ADMIN)
    assert r.status_code == 500
    assert "jane.doe@school.org" not in r.text


@pytest.fixture
def cognito(monkeypatch):
    from review_game.auth import cognito_idp

    state = {"verified": False, "fail": None, "marked": []}

    def _mark(username):
        if state["fail"]:
            raise state["fail"]
        state["marked"].append(username)

    monkeypatch.setattr(cognito_idp, "is_email_verified", lambda username: state["verified"])
    monkeypatch.setattr(cognito_idp, "mark_email_verified", _mark)
    return state


def test_verify_email(client, people, profile_writes, audit_entries, cognito):
    r = client.post(f"/api/admin/users/{TEACHER}/verify-email", headers=AS_ADMIN)
    assert r.status_code == 200
    assert r.json()["data"]["verifiedBy"] == "root@example.com"
    assert cognito["marked"] == [TEACHER]
    assert people[TEACHER]["email_verified_manually"] is True
    assert audit_entries[-1]["action_type"] == "verify_email_manually"

    r = client.post(f"/api/admin/users/{TEACHER}/verify-email", headers=AS_ADMIN)
    assert r.status_code == 400
    assert r.json()["extensions"]["details"] == {"authVerified": False, "manuallyVerified": True}


def test_verify_email_rolls_back_flag_when_cognito_fails(client, people, profile_writes, audit_entries, cognito):
    from botocore.exceptions import ClientError

    cognito["fail"] = ClientError({"Error": {"Code": "InternalErrorException", "Message": "down"}}, "AdminUpdateUserAttributes")
    r = client.post(f"/api/admin/users/{TEACHER}/verify-email", headers=AS_ADMIN)
    assert r.status_code == 500
    assert [fields for _uid, fields in profile_writes] == [
        {"email_verified_manually": True},
        {"email_verified_manually": False},
    ]
    assert people[TEACHER]["email_verified_manually"] is False
    assert audit_entries == []


# --- impersonation ---

def test_impersonation_validation(client, people, sessions, audit_entries):
    url = f"/api/admin/users/{TEACHER}/impersonate"
    assert client.post(url, headers=AS_ADMIN, json={}).json()["detail"] == "Reason is required"
    assert client.post(url, headers=AS_ADMIN, json={"reason": "short"}).json()["detail"] == "Reason must be at least 10 characters"
    assert client.post(url, headers=AS_ADMIN, json={"reason": "x" * 501}).json()["detail"] == "Reason must be 500 characters or less"

    reason = {"reason": "Investigating a support ticket"}
    r = client.post(f"/api/admin/users/{ADMIN}/impersonate", headers=AS_ADMIN, json=reason)
    assert r.json()["detail"] == "Cannot impersonate yourself"
    r = client.post(f"/api/admin/users/{OTHER_ADMIN}/impersonate", headers=AS_ADMIN, json=reason)
    assert r.status_code == 403
    assert r.json()["detail"] == "Cannot impersonate admin users"
    r = client.post("/api/admin/users/99999999-9999-4999-8999-999999999999/impersonate", headers=AS_ADMIN, json=reason)
    assert r.status_code == 404


def test_impersonation_lifecycle(client, people, sessions, audit_entries):
    r = client.post(
        f"/api/admin/users/{TEACHER}/impersonate",
        headers=AS_ADMIN,
        json={"reason": "Investigating a support ticket"},
    )
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["targetUserEmail"] == "jane.doe@school.org"
    assert data["targetUserName"] == "Jane Doe"
    assert data["startedBy"] == ADMIN
    started = datetime.fromisoformat(data["startedAt"].replace("Z", "+00:00"))
    expires = datetime.fromisoformat(data["expiresAt"].replace("Z", "+00:00"))
    assert expires - started == timedelta(minutes=15)
    assert audit_entries[-1]["action_type"] == "start_impersonation"

    r = client.get("/api/user/context", headers=AS_ADMIN)
    assert r.json() == {
        "effectiveUserId": TEACHER,
        "effectiveUserEmail": "jane.doe@school.org",
        "adminUserId": ADMIN,
        "isImpersonating": True,
        "impersonatedUserId": TEACHER,
        "sessionId": data["sessionId"],
    }

    r = client.get("/api/admin/impersonate/status", headers=AS_ADMIN)
    assert r.json()["active"] is True
    assert r.json()["session"]["targetUserId"] == TEACHER

    r = client.post("/api/admin/impersonate/end", headers={"Authorization": f"Bearer {OTHER_ADMIN}"}, json={"sessionId": data["sessionId"]})
    assert r.status_code == 403

    r = client.post("/api/admin/impersonate/end", headers=AS_ADMIN, json={"sessionId": data["sessionId"]})
    assert r.status_code == 200
    assert r.json()["data"]["endedBy"] == "admin"
    assert audit_entries[-1]["action_type"] == "end_impersonation"

    r = client.post("/api/admin/impersonate/end", headers=AS_ADMIN, json={"sessionId": data["sessionId"]})
    assert r.json()["detail"] == "Session has already ended"

    r = client.get("/api/admin/impersonate/status", headers=AS_ADMIN)
    assert r.json() == {"active": False, "session": None}

    r = client.get("/api/user/context", headers=AS_ADMIN)
    assert r.json()["isImpersonating"] is False
    assert "sessionId" not in r.json()


def test_new_session_auto_ends_the_previous_one(client, people, sessions, audit_entries, profile_factory):
    second = "55555555-5555-4555-8555-555555555555"
    people[second] = profile_factory(second)
    body = {"reason": "Investigating a support ticket"}

    first = client.post(f"/api/admin/users/{TEACHER}/impersonate", headers=AS_ADMIN, json=body).json()["data"]
    client.post(f"/api/admin/users/{second}/impersonate", headers=AS_ADMIN, json=body)

    assert sessions.sessions[first["sessionId"]]["ended_by"] == "system"
    assert "end_impersonation_auto" in [e["action_type"] for e in audit_entries]


def test_impersonation_rate_limit(client, people, sessions, audit_entries):
    now = datetime.now(timezone.utc)
    for i in range(5):
        sid = str(uuid.uuid4())
        sessions.sessions[sid] = {
            "id": sid,
            "admin_user_id": ADMIN,
            "target_user_id": TEACHER,
            "started_at": _iso(now - timedelta(minutes=10 + i)),
            "expires_at": _iso(now - timedelta(minutes=1)),
            "ended_at": _iso(now - timedelta(minutes=2)),
        }

    r = client.post(
        f"/api/admin/users/{TEACHER}/impersonate",
        headers=AS_ADMIN,
        json={"reason": "Investigating a support ticket"},
    )
    assert r.status_code == 429
    assert r.json()["detail"] == "Rate limit exceeded: Maximum 5 impersonations per hour"


def test_expired_session_is_not_active():
    from review_game.services.impersonation import is_session_active

    now = datetime.now(timezone.utc)
    assert is_session_active({"expires_at": _iso(now + timedelta(minutes=1))}, now=now)
    assert not is_session_active({"expires_at": _iso(now - timedelta(seconds=1))}, now=now)
    assert not is_session_active({"expires_at": _iso(now + timedelta(minutes=1)), "ended_at": _iso(now)}, now=now)


# --- cron ---

def test_cron_cleanup_requires_secret(client, monkeypatch):
    from review_game.repositories import audit_log_repo
    from review_game.routers import cron

    monkeypatch.setattr(cron.settings, "cron_secret", None)
    r = client.post("/api/cron/cleanup-audit-logs")
    assert r.status_code == 500
    assert r.json()["detail"] == "Server configuration error"

    monkeypatch.setattr(cron.settings, "cron_secret", "s3cret")
    r = client.post("/api/cron/cleanup-audit-logs", headers={"Authorization": "Bearer wrong"})
    assert r.status_code == 401

    cutoffs = []
    monkeypatch.setattr(audit_log_repo, "cleanup_older_than", lambda cutoff: cutoffs.append(cutoff) or 42)
    r = client.get("/api/cron/cleanup-audit-logs", headers={"Authorization": "Bearer s3cret"})
    assert r.status_code == 200
    assert r.json()["deletedCount"] == 42
    assert r.json()["success"] is True
    assert cutoffs[0].year == datetime.now(timezone.utc).year - 7
