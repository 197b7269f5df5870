"""Submission API endpoints."""

from __future__ import annotations

from fastapi import APIRouter

from musicleague.api.deps import RepoDep, SettingsDep
from musicleague.auth.deps import PrincipalDep
from musicleague.core import submissions
from musicleague.core.clock import isoformat
from musicleague.db.models import SubmissionRow
from musicleague.models.round import TrackInput

router = APIRouter(prefix="/api/submissions", tags=["submissions"])


class SubmitTrackRequest(TrackInput):
    round_id: str


def submission_payload(submission: SubmissionRow, hide_submitter: bool = False) -> dict:
    return {
        "id": submission.id,
        "round_id": submission.round_id,
        "user_id": None if hide_submitter else submission.user_id,
        "track_name": submission.track_name,
        "artist": submission.artist,
        "album": submission.album,
        "provider": submission.provider,
        "provider_track_id": submission.provider_track_id,
        "artwork_url": submission.artwork_url,
        "preview_url": submission.preview_url,
        "duration_ms": submission.duration_ms,
        "genres": submission.genres or [],
        "note": submission.note,
        "created_at": isoformat(submission.created_at),
    }


@router.post("")
async def submit_track(body: SubmitTrackRequest, repo: RepoDep, principal: PrincipalDep) -> dict:
    track = TrackInput.model_validate(body.model_dump(exclude={"round_id"}))
    submission = await submissions.submit_track(repo, body.round_id, principal.user_id, track)
    return {"data": submission_payload(submission)}


@router.get("")
async def list_submissions(
    round_id: str, repo: RepoDep, principal: PrincipalDep, settings: SettingsDep
) -> dict:
    rows, hide = await submissions.list_submissions(
        repo,
        round_id,
        principal.user_id,
        empty_round_policy=settings.musicleague_empty_round_policy,
    )
    return {
        "data": [
            {
                **submission_payload(s, hide_submitter=hide),
                "is_mine": s.user_id == principal.user_id,
            }
            for s in rows
        ]
    }


@router.put("/{submission_id}")
async def update_submission(
    submission_id: str, body: TrackInput, repo: RepoDep, principal: PrincipalDep
) -> dict:
    submission = await submissions.update_submission(
        repo, submission_id, principal.user_id, body
    )
    return {"data": submission_payload(submission)}


@router.delete("/{submission_id}")
async def delete_submission(submission_id: str, repo: RepoDep, principal: PrincipalDep) -> dict:
    await submissions.delete_submission(repo, submission_id, principal.user_id)
    return {"data": {"id": submission_id, "deleted": True}}
