from __future__ import annotations

from fastapi import APIRouter, Body, Request, Response

from ..auth.context import require_user
from ..services import games as games_service
from ..services import team_claim

router = APIRouter(tags=["games"])


@router.post("/games", status_code=201)
def create_game(request: Request, body: dict = Body(default_factory=dict)):
    ctx = require_user(request)
    return games_service.create_game(ctx, body)


@router.get("/games")
def list_games(
    request: Request,
    limit: int = 20,
    status: str | None = None,
    search: str | None = None,
    sort: str = "created_at",
    order: str = "desc",
    nextToken: str | None = None,
):
    ctx = require_user(request)
    return games_service.list_games(
        ctx,
        limit=limit,
        status=status,
        search=search,
        sort=sort,
        order=order,
        next_token=nextToken,
    )


@router.get("/games/{gameId}")
def get_game(request: Request, gameId: str):
    ctx = require_user(request)
    return games_service.get_game_detail(ctx, gameId)


@router.patch("/games/{gameId}")
def update_game(request: Request, gameId: str, body: dict = Body(default_factory=dict)):
    ctx = require_user(request)
    return games_service.update_game(ctx, gameId, body)


@router.delete("/games/{gameId}", status_code=204)
def delete_game(request: Request, gameId: str):
    ctx = require_user(request)
    games_service.delete_game(ctx, gameId)
    return Response(status_code=204)


@router.post("/games/{gameId}/duplicate", status_code=201)
def duplicate_game(request: Request, gameId: str):
    ctx = require_user(request)
    return games_service.duplicate_game(ctx, gameId)


@router.post("/games/{gameId}/end")
def end_game(request: Request, gameId: str):
    ctx = require_user(request)
    return games_service.end_game(ctx, gameId)


@router.post("/games/{gameId}/teams/{teamId}/score")
def update_team_score(request: Request, gameId: str, teamId: str, body: dict = Body(default_factory=dict)):
    ctx = require_user(request)
    return games_service.update_team_score(ctx, gameId, teamId, body.get("score_change"))


# Public: students claim a team from their own device.
@router.post("/games/{gameId}/teams/{teamId}/claim")
def claim_team(gameId: str, teamId: str, body: dict = Body(default_factory=dict)):
    return team_claim.claim_team(gameId, teamId, body)
