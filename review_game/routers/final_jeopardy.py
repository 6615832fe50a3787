from __future__ import annotations

from fastapi import APIRouter, Body, Request

from ..auth.context import require_user
from ..services import final_jeopardy

router = APIRouter(tags=["final-jeopardy"])


@router.post("/games/{gameId}/final-jeopardy/start")
def start(request: Request, gameId: str):
    ctx = require_user(request)
    return final_jeopardy.start(ctx, gameId)


@router.post("/games/{gameId}/final-jeopardy/wager")
def submit_wager(gameId: str, body: dict = Body(default_factory=dict)):
    return final_jeopardy.submit_wager(gameId, body)


@router.post("/games/{gameId}/final-jeopardy/answer")
def submit_answer(gameId: str, body: dict = Body(default_factory=dict)):
    return final_jeopardy.submit_answer(gameId, body)


@router.post("/games/{gameId}/final-jeopardy/reveal")
def reveal(request: Request, gameId: str, body: dict = Body(default_factory=dict)):
    ctx = require_user(request)
    return final_jeopardy.reveal(ctx, gameId, body)


@router.post("/games/{gameId}/final-jeopardy/skip")
def skip(request: Request, gameId: str):
    ctx = require_user(request)
    return final_jeopardy.skip(ctx, gameId)


@router.post("/games/{gameId}/final-jeopardy/advance")
def advance(request: Request, gameId: str):
    ctx = require_user(request)
    return final_jeopardy.advance(ctx, gameId)
