from __future__ import annotations

import re
from typing import Any

from fastapi import HTTPException

from ..auth.context import RequestContext
from ..db.dynamodb.errors import DdbConflict, DdbError
from ..observability.logging import get_logger
from ..repositories import games_repo, question_banks_repo
from . import feature_access
from .request_utils import is_uuid

log = get_logger("question_banks")

TITLE_MAX = 200
SUBJECT_MAX = 100
DESCRIPTION_MAX = 1000
DIFFICULTIES = ("easy", "medium", "hard")

CATEGORY_MAX = 100
QUESTION_TEXT_MAX = 500
ANSWER_TEXT_MAX = 300
TEACHER_NOTES_MAX = 1000
POINT_VALUES = (100, 200, 300, 400, 500)

URL_RE = re.compile(r"^https?://.+", re.IGNORECASE)


def _bad(msg: str) -> HTTPException:
    return HTTPException(status_code=400, detail=msg)


def _required_text(value: Any, *, label: str, max_len: int, required: bool) -> str:
    if not isinstance(value, str):
        raise _bad(f"{label} is required and must be a string" if required else f"{label} must be a string")
    v = value.strip()
    if not (1 <= len(v) <= max_len):
        raise _bad(f"{label} must be between 1 and {max_len} characters")
    return v


def _optional_text(value: Any, *, label: str, max_len: int) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise _bad(f"{label} must be a string or null")
    if len(value) > max_len:
        raise _bad(f"{label} must not exceed {max_len} characters")
    return value.strip() or None


def require_bank_id(bank_id: str) -> str:
    bid = str(bank_id or "").strip()
    if not is_uuid(bid):
        raise _bad("Invalid question bank ID format")
    return bid


def _load_bank(bank_id: str) -> dict[str, Any]:
    bank = question_banks_repo.get_bank(require_bank_id(bank_id))
    if not bank:
        raise HTTPException(status_code=404, detail="Question bank not found")
    return bank


def _summary(bank: dict[str, Any], *, with_owner: bool) -> dict[str, Any]:
    out = {
        "id": bank.get("id"),
        "title": bank.get("title"),
        "subject": bank.get("subject"),
        "is_custom": bool(bank.get("is_custom")),
        "is_public": bool(bank.get("is_public")),
    }
    if with_owner:
        out["owner_id"] = bank.get("owner_id")
    return out


def _visible_banks(user_id: str) -> list[dict[str, Any]]:
    seen: dict[str, dict[str, Any]] = {}
    for b in question_banks_repo.list_public_banks() + question_banks_repo.list_owned_banks(user_id):
        seen[str(b.get("id"))] = b
    return sorted(seen.values(), key=lambda b: str(b.get("title") or "").lower())


# --- bank validation ---

def validate_bank_fields(body: dict[str, Any], *, partial: bool) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if "title" in body or not partial:
        if not isinstance(body.get("title"), str):
            raise _bad("Title must be a string")
        title = body["title"].strip()
        if not (1 <= len(title) <= TITLE_MAX):
            raise _bad(f"Title must be between 1 and {TITLE_MAX} characters")
        out["title"] = title
    if "subject" in body or not partial:
        if not isinstance(body.get("subject"), str):
            raise _bad("Subject must be a string")
        subject = body["subject"].strip()
        if not (1 <= len(subject) <= SUBJECT_MAX):
            raise _bad(f"Subject must be between 1 and {SUBJECT_MAX} characters")
        out["subject"] = subject
    if "description" in body:
        d = body.get("description")
        if d is not None and not isinstance(d, str):
            raise _bad("Description must be a string or null")
        if isinstance(d, str) and len(d) > DESCRIPTION_MAX:
            raise _bad(f"Description must not exceed {DESCRIPTION_MAX} characters")
        out["description"] = d.strip() if isinstance(d, str) and d.strip() else None
    if "difficulty" in body and body.get("difficulty") is not None:
        if body.get("difficulty") not in DIFFICULTIES:
            raise _bad(f"Difficulty must be one of: {', '.join(DIFFICULTIES)}")
        out["difficulty"] = body["difficulty"]
    return out


# --- question validation ---

def validate_question_fields(body: dict[str, Any], *, partial: bool, profile: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    required = not partial
    if "category" in body or required:
        out["category"] = _required_text(body.get("category"), label="Category", max_len=CATEGORY_MAX, required=required)
    if "point_value" in body or required:
        pv = body.get("point_value")
        if not isinstance(pv, int) or isinstance(pv, bool):
            raise _bad("Point value is required and must be a number" if required else "Point value must be a number")
        if pv not in POINT_VALUES:
            raise _bad(f"Point value must be one of: {', '.join(str(p) for p in POINT_VALUES)}")
        out["point_value"] = pv
    if "question_text" in body or required:
        out["question_text"] = _required_text(
            body.get("question_text"), label="Question text", max_len=QUESTION_TEXT_MAX, required=required
        )
    if "answer_text" in body or required:
        out["answer_text"] = _required_text(
            body.get("answer_text"), label="Answer text", max_len=ANSWER_TEXT_MAX, required=required
        )
    if "teacher_notes" in body:
        out["teacher_notes"] = _optional_text(body.get("teacher_notes"), label="Teacher notes", max_len=TEACHER_NOTES_MAX)
    if "image_url" in body:
        url = body.get("image_url")
        if url is not None and url != "":
            if not feature_access.can_access_feature(profile, "video_images"):
                raise HTTPException(status_code=403, detail="Image URLs require BASIC or PREMIUM subscription")
            if not isinstance(url, str):
                raise _bad("Image URL must be a string")
            if not URL_RE.match(url.strip()):
                raise _bad("Image URL must be a valid HTTP/HTTPS URL")
            out["image_url"] = url.strip()
        else:
            out["image_url"] = None
    return out


def _slot_conflict(category: Any, points: Any) -> HTTPException:
    return HTTPException(
        status_code=409,
        detail=f'A question already exists for category "{category}" with {points} points',
    )


# --- banks ---

def list_banks(ctx: RequestContext) -> dict[str, Any]:
    return {"data": [_summary(b, with_owner=True) for b in _visible_banks(ctx.effective_user_id)]}


def list_accessible(ctx: RequestContext) -> dict[str, Any]:
    profile = ctx.acting_profile
    banks = [b for b in _visible_banks(ctx.effective_user_id) if feature_access.can_access_bank(profile, b)]
    log.info("accessible_banks_listed", user_id=ctx.effective_user_id, count=len(banks))
    return {"data": [_summary(b, with_owner=False) for b in banks]}


def can_create(ctx: RequestContext) -> dict[str, Any]:
    profile = ctx.acting_profile
    slots = feature_access.remaining_custom_bank_slots(profile)
    allowed = feature_access.can_access_feature(profile, "custom_question_banks") and (slots is None or slots > 0)
    return {
        "canCreate": bool(allowed),
        "slotsRemaining": slots,
        "currentTier": feature_access.get_tier(profile),
        "currentCount": int(profile.get("custom_bank_count") or 0),
        "maxLimit": feature_access.custom_bank_limit(profile),
    }


def _reserve_bank(ctx: RequestContext, fields: dict[str, Any]) -> dict[str, Any]:
    profile = ctx.acting_profile
    slots = feature_access.remaining_custom_bank_slots(profile)
    if slots is not None and slots <= 0:
        raise HTTPException(status_code=403, detail="Custom question bank limit reached")
    try:
        return question_banks_repo.create_custom_bank(
            owner_id=ctx.effective_user_id,
            fields=fields,
            limit=feature_access.custom_bank_limit(profile),
        )
    except DdbConflict:
        raise HTTPException(status_code=403, detail="Custom question bank limit reached")


def create_bank(ctx: RequestContext, body: dict[str, Any]) -> dict[str, Any]:
    if not feature_access.can_access_feature(ctx.acting_profile, "custom_question_banks"):
        raise HTTPException(status_code=403, detail="Custom question banks require BASIC or PREMIUM subscription")
    fields = validate_bank_fields(body, partial=False)
    bank = _reserve_bank(ctx, fields)
    log.info("question_bank_created", user_id=ctx.effective_user_id, bank_id=bank["id"])
    return bank


def update_bank(ctx: RequestContext, bank_id: str, body: dict[str, Any]) -> dict[str, Any]:
    bank = _load_bank(bank_id)
    if bank.get("owner_id") != ctx.effective_user_id:
        raise HTTPException(status_code=403, detail="Only the owner can modify this question bank")
    fields = validate_bank_fields(body, partial=True)
    if not fields:
        raise _bad("No fields to update")
    updated = question_banks_repo.update_bank(bank["id"], fields) or {}
    log.info("question_bank_updated", user_id=ctx.effective_user_id, bank_id=bank["id"], fields=sorted(fields))
    return updated


def delete_bank(ctx: RequestContext, bank_id: str) -> None:
    bank = _load_bank(bank_id)
    if bank.get("owner_id") != ctx.effective_user_id:
        raise HTTPException(status_code=403, detail="Only the owner can delete this question bank")
    if games_repo.bank_has_games(bank["id"]):
        raise HTTPException(status_code=409, detail="Cannot delete question bank that is used in games")
    removed = question_banks_repo.delete_bank(bank["id"], owner_id=ctx.effective_user_id)
    log.info("question_bank_deleted", user_id=ctx.effective_user_id, bank_id=bank["id"], items_removed=removed)


def duplicate_bank(ctx: RequestContext, bank_id: str) -> dict[str, Any]:
    if not feature_access.can_access_feature(ctx.acting_profile, "custom_question_banks"):
        raise HTTPException(
            status_code=403,
            detail="Duplicating question banks requires BASIC or PREMIUM subscription",
        )
    source = _load_bank(bank_id)
    if not feature_access.can_read_bank(ctx.effective_user_id, source):
        raise HTTPException(status_code=403, detail="You do not have access to this question bank")

    fields = {
        "title": f"{source.get('title') or ''} (Copy)"[:TITLE_MAX],
        "subject": source.get("subject"),
        "description": source.get("description"),
        "difficulty": source.get("difficulty"),
    }
    copy = _reserve_bank(ctx, fields)
    try:
        count = question_banks_repo.copy_questions(
            target_bank_id=copy["id"],
            questions=question_banks_repo.list_questions(source["id"]),
        )
    except DdbError:
        # Drop the half-filled copy and give the bank slot back.
        log.warning("question_bank_copy_failed", user_id=ctx.effective_user_id, bank_id=copy["id"])
        question_banks_repo.delete_bank(copy["id"], owner_id=ctx.effective_user_id)
        raise
    log.info(
        "question_bank_duplicated",
        user_id=ctx.effective_user_id,
        source_bank_id=source["id"],
        bank_id=copy["id"],
        question_count=count,
    )
    return {"bank_id": copy["id"], "question_count": count}


# --- questions ---

def list_questions(ctx: RequestContext, bank_id: str) -> dict[str, Any]:
    bank = _load_bank(bank_id)
    if not feature_access.can_read_bank(ctx.effective_user_id, bank):
        raise HTTPException(status_code=403, detail="Access denied")
    return {"data": question_banks_repo.list_questions(bank["id"])}


def create_question(ctx: RequestContext, bank_id: str, body: dict[str, Any]) -> dict[str, Any]:
    bank = _load_bank(bank_id)
    if bank.get("owner_id") != ctx.effective_user_id:
        raise HTTPException(status_code=403, detail="Only the bank owner can add questions")
    fields = validate_question_fields(body, partial=False, profile=ctx.acting_profile)
    fields["position"] = len(question_banks_repo.list_questions(bank["id"])) + 1
    try:
        question = question_banks_repo.create_question(bank["id"], fields)
    except DdbConflict:
        raise _slot_conflict(fields["category"], fields["point_value"])
    log.info("question_created", user_id=ctx.effective_user_id, bank_id=bank["id"], question_id=question["id"])
    return question


def _owned_question(ctx: RequestContext, bank_id: str, question_id: str, *, verb: str) -> tuple[dict, dict]:
    bank = _load_bank(bank_id)
    qid = str(question_id or "").strip()
    if not is_uuid(qid):
        raise _bad("Invalid question ID format")
    question = question_banks_repo.get_question(bank["id"], qid)
    if not question:
        raise HTTPException(status_code=404, detail="Question not found")
    if bank.get("owner_id") != ctx.effective_user_id:
        raise HTTPException(status_code=403, detail=f"Only the bank owner can {verb} questions")
    return bank, question


def update_question(ctx: RequestContext, bank_id: str, question_id: str, body: dict[str, Any]) -> dict[str, Any]:
    bank, question = _owned_question(ctx, bank_id, question_id, verb="modify")
    fields = validate_question_fields(body, partial=True, profile=ctx.acting_profile)
    if not fields:
        raise _bad("No fields to update")
    try:
        question_banks_repo.update_question(bank["id"], question["id"], fields, current=question)
    except DdbConflict:
        raise _slot_conflict(
            fields.get("category", question.get("category")),
            fields.get("point_value", question.get("point_value")),
        )
    log.info("question_updated", user_id=ctx.effective_user_id, bank_id=bank["id"], question_id=question["id"])
    return question_banks_repo.get_question(bank["id"], question["id"]) or {}


def delete_question(ctx: RequestContext, bank_id: str, question_id: str) -> None:
    bank, question = _owned_question(ctx, bank_id, question_id, verb="delete")
    question_banks_repo.delete_question(bank["id"], question)
    log.info("question_deleted", user_id=ctx.effective_user_id, bank_id=bank["id"], question_id=question["id"])
