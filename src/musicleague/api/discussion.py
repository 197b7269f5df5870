"""Reaction and comment API endpoints."""

from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel, Field

from musicleague.api.deps import RepoDep
from musicleague.auth.deps import PrincipalDep
from musicleague.core import submissions
from musicleague.core.clock import isoformat
from musicleague.db.models import CommentRow

reactions_router = APIRouter(prefix="/api/reactions", tags=["reactions"])
comments_router = APIRouter(prefix="/api/comments", tags=["comments"])


class ToggleReactionRequest(BaseModel):
    submission_id: str
    emoji: str = Field(min_length=1, max_length=32)


class AddCommentRequest(BaseModel):
    submission_id: str
    content: str = Field(min_length=1, max_length=submissions.MAX_COMMENT_LENGTH)


class HideCommentRequest(BaseModel):
    hidden: bool = True


def comment_payload(comment: CommentRow) -> dict:
    return {
        "id": comment.id,
        "submission_id": comment.submission_id,
        "user_id": comment.user_id,
        "content": comment.content,
        "hidden": comment.hidden,
        "created_at": isoformat(comment.created_at),
    }


@reactions_router.post("")
async def toggle_reaction(
    body: ToggleReactionRequest, repo: RepoDep, principal: PrincipalDep
) -> dict:
    added = await submissions.toggle_reaction(
        repo, body.submission_id, principal.user_id, body.emoji
    )
    return {"data": {"submission_id": body.submission_id, "emoji": body.emoji, "added": added}}


@reactions_router.get("")
async def list_reactions(submission_id: str, repo: RepoDep, principal: PrincipalDep) -> dict:
    return {"data": await submissions.list_reactions(repo, submission_id, principal.user_id)}


@comments_router.post("")
async def add_comment(body: AddCommentRequest, repo: RepoDep, principal: PrincipalDep) -> dict:
    comment = await submissions.add_comment(
        repo, body.submission_id, principal.user_id, body.content
    )
    return {"data": comment_payload(comment)}


@comments_router.get("")
async def list_comments(submission_id: str, repo: RepoDep, principal: PrincipalDep) -> dict:
    comments = await submissions.list_comments(repo, submission_id, principal.user_id)
    return {"data": [comment_payload(c) for c in comments]}


@comments_router.delete("/{comment_id}")
async def delete_comment(comment_id: str, repo: RepoDep, principal: PrincipalDep) -> dict:
    await submissions.delete_comment(repo, comment_id, principal.user_id)
    return {"data": {"id": comment_id, "deleted": True}}


@comments_router.post("/{comment_id}/hide")
async def hide_comment(
    comment_id: str, body: HideCommentRequest, repo: RepoDep, principal: PrincipalDep
) -> dict:
    comment = await submissions.hide_comment(
        repo, comment_id, principal.user_id, hidden=body.hidden
    )
    return {"data": comment_payload(comment)}
