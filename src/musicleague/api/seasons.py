"""Season management API endpoints."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel, Field

from musicleague.api.deps import RepoDep
from musicleague.auth.deps import PrincipalDep
from musicleague.core import seasons
from musicleague.core.clock import isoformat
from musicleague.db.models import SeasonRow

router = APIRouter(prefix="/api/seasons", tags=["seasons"])


class CreateSeasonRequest(BaseModel):
    """Request body for creating a new season."""

    league_id: str
    name: str = Field(min_length=1, max_length=100)
    start_date: datetime | None = None
    end_date: datetime | None = None


class UpdateSeasonRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    start_date: datetime | None = None
    end_date: datetime | None = None


class SeasonStatusRequest(BaseModel):
    status: seasons.SeasonStatus


def season_payload(season: SeasonRow) -> dict:
    return {
        "id": season.id,
        "league_id": season.league_id,
        "name": season.name,
        "number": season.number,
        "status": season.status,
        "start_date": isoformat(season.start_date),
        "end_date": isoformat(season.end_date),
    }


@router.post("")
async def create_season(body: CreateSeasonRequest, repo: RepoDep, principal: PrincipalDep) -> dict:
    season = await seasons.create_season(
        repo,
        body.league_id,
        principal.user_id,
        body.name,
        start_date=body.start_date,
        end_date=body.end_date,
    )
    return {"data": season_payload(season)}


@router.get("")
async def list_seasons(league_id: str, repo: RepoDep, principal: PrincipalDep) -> dict:
    rows = await seasons.list_seasons(repo, league_id, principal.user_id)
    return {"data": [season_payload(s) for s in rows]}


@router.get("/active")
async def active_season(league_id: str, repo: RepoDep, principal: PrincipalDep) -> dict:
    season = await seasons.get_active_season(repo, league_id, principal.user_id)
    return {"data": season_payload(season) if season else None}


@router.post("/{season_id}/status")
async def set_season_status(
    season_id: str, body: SeasonStatusRequest, repo: RepoDep, principal: PrincipalDep
) -> dict:
    season = await seasons.transition_season(repo, season_id, principal.user_id, body.status)
    return {"data": season_payload(season)}


@router.get("/{season_id}")
async def get_season(season_id: str, repo: RepoDep, principal: PrincipalDep) -> dict:
    season, round_count = await seasons.get_season(repo, season_id, principal.user_id)
    return {"data": {**season_payload(season), "round_count": round_count}}


@router.patch("/{season_id}")
async def update_season(
    season_id: str, body: UpdateSeasonRequest, repo: RepoDep, principal: PrincipalDep
) -> dict:
    season = await seasons.update_season(
        repo,
        season_id,
        principal.user_id,
        name=body.name,
        start_date=body.start_date,
        end_date=body.end_date,
    )
    return {"data": season_payload(season)}


@router.delete("/{season_id}")
async def delete_season(season_id: str, repo: RepoDep, principal: PrincipalDep) -> dict:
    await seasons.delete_season(repo, season_id, principal.user_id)
    return {"data": {"id": season_id, "deleted": True}}
