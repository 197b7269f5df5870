"""Statistics API endpoints — leaderboards, member stats, and round results."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Query

from musicleague.api.deps import RepoDep
from musicleague.auth.deps import PrincipalDep
from musicleague.core import statistics

router = APIRouter(prefix="/api/stats", tags=["stats"])


@router.get("/leaderboard")
async def leaderboard(
    league_id: str, repo: RepoDep, principal: PrincipalDep, season_id: str | None = None
) -> dict:
    entries = await statistics.get_leaderboard(repo, league_id, principal.user_id, season_id)
    return {"data": [e.model_dump() for e in entries]}


@router.get("/members/{user_id}")
async def member_stats(
    user_id: str,
    league_id: str,
    repo: RepoDep,
    principal: PrincipalDep,
    season_id: str | None = None,
) -> dict:
    stats, history = await statistics.get_member_stats(
        repo, league_id, principal.user_id, user_id, season_id
    )
    return {
        "data": {
            **stats.model_dump(),
            "submission_history": [h.model_dump() for h in history],
        }
    }


@router.get("/compare")
async def compare(
    league_id: str,
    user1: str,
    user2: str,
    repo: RepoDep,
    principal: PrincipalDep,
    season_id: str | None = None,
) -> dict:
    result = await statistics.compare_members(
        repo, league_id, principal.user_id, user1, user2, season_id
    )
    return {"data": {key: value.model_dump() for key, value in result.items()}}


@router.get("/controversial")
async def controversial(
    league_id: str,
    repo: RepoDep,
    principal: PrincipalDep,
    season_id: str | None = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
) -> dict:
    found = await statistics.get_controversial_submissions(
        repo, league_id, principal.user_id, season_id, limit
    )
    return {"data": [c.model_dump() for c in found]}


@router.get("/rounds/{round_id}")
async def round_results(round_id: str, repo: RepoDep, principal: PrincipalDep) -> dict:
    placements = await statistics.get_round_results(repo, round_id, principal.user_id)
    return {"data": [p.model_dump() for p in placements]}


@router.get("/summary")
async def summary(
    league_id: str, repo: RepoDep, principal: PrincipalDep, season_id: str | None = None
) -> dict:
    result = await statistics.get_league_summary(repo, league_id, principal.user_id, season_id)
    return {"data": result.model_dump()}


@router.get("/top-artists")
async def artists(
    league_id: str,
    repo: RepoDep,
    principal: PrincipalDep,
    season_id: str | None = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> dict:
    found = await statistics.get_top_artists(
        repo, league_id, principal.user_id, season_id, limit
    )
    return {"data": [a.model_dump() for a in found]}


@router.get("/top-songs")
async def songs(
    league_id: str,
    repo: RepoDep,
    principal: PrincipalDep,
    season_id: str | None = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> dict:
    found = await statistics.get_top_songs(repo, league_id, principal.user_id, season_id, limit)
    return {"data": [s.model_dump() for s in found]}


@router.get("/search")
async def search(
    league_id: str,
    q: Annotated[str, Query(min_length=1, max_length=200)],
    repo: RepoDep,
    principal: PrincipalDep,
    season_id: str | None = None,
) -> dict:
    hits = await statistics.search_league_submissions(
        repo, league_id, principal.user_id, q, season_id
    )
    return {"data": [h.model_dump() for h in hits]}


@router.post("/refresh")
async def refresh(league_id: str, repo: RepoDep, principal: PrincipalDep) -> dict:
    written = await statistics.refresh_statistics(repo, league_id, principal.user_id)
    return {"data": {"league_id": league_id, "rows": written}}
