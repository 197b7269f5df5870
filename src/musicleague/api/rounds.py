"""Round API endpoints: administration, transitions and queries."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel, Field

from musicleague.api.deps import RepoDep, SettingsDep
from musicleague.auth.deps import PrincipalDep
from musicleague.core import rounds
from musicleague.core.clock import isoformat
from musicleague.db.models import RoundRow

router = APIRouter(prefix="/api/rounds", tags=["rounds"])


class CreateRoundRequest(BaseModel):
    league_id: str
    theme: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)
    season_id: str | None = None
    submission_start: datetime | None = None
    submission_end: datetime | None = None
    voting_start: datetime | None = None
    voting_end: datetime | None = None


class UpdateRoundRequest(BaseModel):
    theme: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    season_id: str | None = None
    submission_start: datetime | None = None
    submission_end: datetime | None = None
    voting_start: datetime | None = None
    voting_end: datetime | None = None


class RoundStatusRequest(BaseModel):
    status: str


def round_payload(round_row: RoundRow, submission_count: int | None = None) -> dict:
    payload = {
        "id": round_row.id,
        "league_id": round_row.league_id,
        "season_id": round_row.season_id,
        "theme": round_row.theme,
        "description": round_row.description,
        "status": round_row.status,
        "submission_start": isoformat(round_row.submission_start),
        "submission_end": isoformat(round_row.submission_end),
        "voting_start": isoformat(round_row.voting_start),
        "voting_end": isoformat(round_row.voting_end),
        "revealed_at": isoformat(round_row.revealed_at),
        "created_at": isoformat(round_row.created_at),
    }
    if submission_count is not None:
        payload["submission_count"] = submission_count
    return payload


@router.post("")
async def create_round(body: CreateRoundRequest, repo: RepoDep, principal: PrincipalDep) -> dict:
    round_row = await rounds.create_round(
        repo,
        body.league_id,
        principal.user_id,
        theme=body.theme,
        description=body.description,
        season_id=body.season_id,
        submission_start=body.submission_start,
        submission_end=body.submission_end,
        voting_start=body.voting_start,
        voting_end=body.voting_end,
    )
    return {"data": round_payload(round_row)}


@router.get("")
async def list_rounds(
    league_id: str,
    repo: RepoDep,
    principal: PrincipalDep,
    settings: SettingsDep,
    season_id: str | None = None,
    status: str | None = None,
) -> dict:
    rows = await rounds.list_rounds(
        repo,
        league_id,
        principal.user_id,
        season_id=season_id,
        status=status,
        empty_round_policy=settings.musicleague_empty_round_policy,
    )
    return {"data": [round_payload(r, count) for r, count in rows]}


@router.get("/active")
async def active_round(
    league_id: str, repo: RepoDep, principal: PrincipalDep, settings: SettingsDep
) -> dict:
    round_row = await rounds.get_active_round(
        repo,
        league_id,
        principal.user_id,
        empty_round_policy=settings.musicleague_empty_round_policy,
    )
    return {"data": round_payload(round_row) if round_row else None}


@router.post("/sweep")
async def sweep(
    league_id: str, repo: RepoDep, principal: PrincipalDep, settings: SettingsDep
) -> dict:
    """Run the deadline sweep for one league now instead of waiting for the scheduler."""
    moved = await rounds.sweep_league(
        repo,
        league_id,
        principal.user_id,
        empty_round_policy=settings.musicleague_empty_round_policy,
    )
    return {
        "data": [
            {"round_id": round_id, "from": before, "to": after}
            for round_id, before, after in moved
        ]
    }


@router.get("/{round_id}")
async def get_round(
    round_id: str, repo: RepoDep, principal: PrincipalDep, settings: SettingsDep
) -> dict:
    round_row = await rounds.view_round(
        repo,
        round_id,
        principal.user_id,
        empty_round_policy=settings.musicleague_empty_round_policy,
    )
    return {"data": round_payload(round_row)}


@router.patch("/{round_id}")
async def update_round(
    round_id: str, body: UpdateRoundRequest, repo: RepoDep, principal: PrincipalDep
) -> dict:
    round_row = await rounds.update_round(
        repo, round_id, principal.user_id, body.model_dump(exclude_unset=True)
    )
    return {"data": round_payload(round_row)}


@router.delete("/{round_id}")
async def cancel_round(round_id: str, repo: RepoDep, principal: PrincipalDep) -> dict:
    await rounds.cancel_round(repo, round_id, principal.user_id)
    return {"data": {"id": round_id, "cancelled": True}}


@router.post("/{round_id}/advance")
async def advance_round(round_id: str, repo: RepoDep, principal: PrincipalDep) -> dict:
    round_row = await rounds.advance_round(repo, round_id, principal.user_id)
    return {"data": round_payload(round_row)}


@router.post("/{round_id}/revert")
async def revert_round(round_id: str, repo: RepoDep, principal: PrincipalDep) -> dict:
    round_row = await rounds.revert_round(repo, round_id, principal.user_id)
    return {"data": round_payload(round_row)}


@router.post("/{round_id}/status")
async def set_round_status(
    round_id: str, body: RoundStatusRequest, repo: RepoDep, principal: PrincipalDep
) -> dict:
    round_row = await rounds.set_round_status(repo, round_id, principal.user_id, body.status)
    return {"data": round_payload(round_row)}
