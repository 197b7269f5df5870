"""Vote API endpoints — ballots are replaced whole."""

from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel, Field

from musicleague.api.deps import RepoDep
from musicleague.auth.deps import PrincipalDep
from musicleague.core import submissions
from musicleague.db.models import VoteRow
from musicleague.models.round import BallotEntry

router = APIRouter(prefix="/api/votes", tags=["votes"])


class CastVotesRequest(BaseModel):
    round_id: str
    votes: list[BallotEntry] = Field(min_length=1, max_length=50)


def vote_payload(vote: VoteRow) -> dict:
    return {
        "submission_id": vote.submission_id,
        "user_id": vote.user_id,
        "vote_type": vote.vote_type,
        "points": vote.points,
    }


@router.post("")
async def cast_votes(body: CastVotesRequest, repo: RepoDep, principal: PrincipalDep) -> dict:
    votes = await submissions.cast_votes(repo, body.round_id, principal.user_id, body.votes)
    return {"data": [vote_payload(v) for v in votes]}


@router.delete("")
async def clear_votes(round_id: str, repo: RepoDep, principal: PrincipalDep) -> dict:
    removed = await submissions.clear_votes(repo, round_id, principal.user_id)
    return {"data": {"round_id": round_id, "removed": removed}}


@router.get("/mine")
async def my_votes(round_id: str, repo: RepoDep, principal: PrincipalDep) -> dict:
    votes = await submissions.get_my_votes(repo, round_id, principal.user_id)
    return {"data": [vote_payload(v) for v in votes]}


@router.get("")
async def round_votes(round_id: str, repo: RepoDep, principal: PrincipalDep) -> dict:
    votes = await submissions.list_round_votes(repo, round_id, principal.user_id)
    return {"data": [vote_payload(v) for v in votes]}
