"""Invite API endpoints."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel, Field

from musicleague.api.deps import RepoDep, SettingsDep
from musicleague.auth.deps import PrincipalDep
from musicleague.core import invites
from musicleague.core.clock import isoformat
from musicleague.db.models import InviteRow

router = APIRouter(prefix="/api/invites", tags=["invites"])


class CreateInviteRequest(BaseModel):
    league_id: str
    expires_at: datetime | None = None
    max_uses: int | None = Field(default=None, ge=1, le=invites.MAX_INVITE_USES)


class RedeemRequest(BaseModel):
    """Either the short code or the link token."""

    code: str = Field(min_length=1, max_length=64)


def invite_payload(invite: InviteRow) -> dict:
    return {
        "id": invite.id,
        "league_id": invite.league_id,
        "code": invite.code,
        "link_token": invite.link_token,
        "expires_at": isoformat(invite.expires_at),
        "max_uses": invite.max_uses,
        "uses": invite.uses,
        "created_by": invite.created_by,
        "created_at": isoformat(invite.created_at),
    }


@router.post("")
async def create_invite(
    body: CreateInviteRequest, repo: RepoDep, principal: PrincipalDep, settings: SettingsDep
) -> dict:
    invite = await invites.create_invite(
        repo,
        body.league_id,
        principal.user_id,
        expires_at=body.expires_at,
        max_uses=body.max_uses,
        code_bytes=settings.musicleague_invite_code_bytes,
    )
    return {"data": invite_payload(invite)}


@router.get("")
async def list_invites(league_id: str, repo: RepoDep, principal: PrincipalDep) -> dict:
    rows = await invites.list_invites(repo, league_id, principal.user_id)
    return {"data": [invite_payload(i) for i in rows]}


@router.delete("/{invite_id}")
async def revoke_invite(invite_id: str, repo: RepoDep, principal: PrincipalDep) -> dict:
    await invites.revoke_invite(repo, invite_id, principal.user_id)
    return {"data": {"id": invite_id, "revoked": True}}


@router.get("/preview/{token}")
async def preview_invite(token: str, repo: RepoDep) -> dict:
    """Public: no session required."""
    return {"data": await invites.preview_invite(repo, token)}


@router.post("/redeem")
async def redeem_invite(body: RedeemRequest, repo: RepoDep, principal: PrincipalDep) -> dict:
    member = await invites.redeem_invite(repo, body.code, principal.user_id)
    return {
        "data": {
            "league_id": member.league_id,
            "user_id": member.user_id,
            "role": member.role,
            "joined_at": isoformat(member.joined_at),
        }
    }
