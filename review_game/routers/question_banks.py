from __future__ import annotations

from fastapi import APIRouter, Body, Request, Response

from ..auth.context import require_user
from ..services import question_banks

router = APIRouter(tags=["question-banks"])


@router.get("/question-banks")
def list_banks(request: Request):
    ctx = require_user(request)
    return question_banks.list_banks(ctx)


# Literal paths are registered before "/question-banks/{bankId}" routes.
@router.get("/question-banks/accessible")
def list_accessible(request: Request):
    ctx = require_user(request)
    return question_banks.list_accessible(ctx)


@router.get("/question-banks/can-create")
def can_create(request: Request):
    ctx = require_user(request)
    return question_banks.can_create(ctx)


@router.post("/question-banks", status_code=201)
def create_bank(request: Request, body: dict = Body(default_factory=dict)):
    ctx = require_user(request)
    return question_banks.create_bank(ctx, body)


@router.patch("/question-banks/{bankId}")
def update_bank(request: Request, bankId: str, body: dict = Body(default_factory=dict)):
    ctx = require_user(request)
    return question_banks.update_bank(ctx, bankId, body)


@router.delete("/question-banks/{bankId}", status_code=204)
def delete_bank(request: Request, bankId: str):
    ctx = require_user(request)
    question_banks.delete_bank(ctx, bankId)
    return Response(status_code=204)


@router.post("/question-banks/{bankId}/duplicate", status_code=201)
def duplicate_bank(request: Request, bankId: str):
    ctx = require_user(request)
    return question_banks.duplicate_bank(ctx, bankId)


@router.get("/question-banks/{bankId}/questions")
def list_questions(request: Request, bankId: str):
    ctx = require_user(request)
    return question_banks.list_questions(ctx, bankId)


@router.post("/question-banks/{bankId}/questions", status_code=201)
def create_question(request: Request, bankId: str, body: dict = Body(default_factory=dict)):
    ctx = require_user(request)
    return question_banks.create_question(ctx, bankId, body)


@router.patch("/questions/{questionId}")
def update_question(request: Request, questionId: str, bank_id: str = "", body: dict = Body(default_factory=dict)):
    ctx = require_user(request)
    return question_banks.update_question(ctx, bank_id, questionId, body)


@router.delete("/questions/{questionId}", status_code=204)
def delete_question(request: Request, questionId: str, bank_id: str = ""):
    ctx = require_user(request)
    question_banks.delete_question(ctx, bank_id, questionId)
    return Response(status_code=204)
