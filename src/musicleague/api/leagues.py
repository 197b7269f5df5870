"""League, membership, and moderation API endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from musicleague.api.deps import RepoDep, SettingsDep
from musicleague.auth.deps import PrincipalDep
from musicleague.core import membership
from musicleague.core.clock import isoformat
from musicleague.db.models import LeagueMemberRow, LeagueRow, ModerationLogRow
from musicleague.models.league import LeagueSettings, Visibility

router = APIRouter(prefix="/api/leagues", tags=["leagues"])


class CreateLeagueRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str = Field(default="", max_length=1000)
    visibility: Visibility = "private"
    settings: LeagueSettings | None = None


class UpdateLeagueRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=1000)
    visibility: Visibility | None = None
    settings: LeagueSettings | None = None


class RoleRequest(BaseModel):
    role: str


class ModerationRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


def league_payload(league: LeagueRow) -> dict:
    return {
        "id": league.id,
        "name": league.name,
        "description": league.description,
        "visibility": league.visibility,
        "owner_id": league.owner_id,
        "settings": membership.league_settings(league).model_dump(),
        "created_at": isoformat(league.created_at),
    }


def member_payload(member: LeagueMemberRow) -> dict:
    return {
        "id": member.id,
        "user_id": member.user_id,
        "role": member.role,
        "joined_at": isoformat(member.joined_at),
        "banned_at": isoformat(member.banned_at),
    }


def log_payload(row: ModerationLogRow) -> dict:
    return membership.to_log_entry(row).model_dump(mode="json")


@router.post("")
async def create_league(body: CreateLeagueRequest, repo: RepoDep, principal: PrincipalDep) -> dict:
    league = await membership.create_league(
        repo,
        owner_id=principal.user_id,
        name=body.name,
        description=body.description,
        visibility=body.visibility,
        settings=body.settings,
    )
    return {"data": league_payload(league)}


@router.get("/mine")
async def my_leagues(repo: RepoDep, principal: PrincipalDep) -> dict:
    leagues = await repo.list_leagues_for_user(principal.user_id)
    return {"data": [league_payload(league) for league in leagues]}


@router.get("/{league_id}")
async def get_league(league_id: str, repo: RepoDep, principal: PrincipalDep) -> dict:
    league = await membership.view_league(repo, league_id, principal.user_id)
    return {"data": league_payload(league)}


@router.patch("/{league_id}")
async def update_league(
    league_id: str, body: UpdateLeagueRequest, repo: RepoDep, principal: PrincipalDep
) -> dict:
    league = await membership.update_league(
        repo,
        league_id,
        principal.user_id,
        name=body.name,
        description=body.description,
        visibility=body.visibility,
        settings=body.settings,
    )
    return {"data": league_payload(league)}


@router.get("/{league_id}/members")
async def list_members(league_id: str, repo: RepoDep, principal: PrincipalDep) -> dict:
    members = await membership.list_members(repo, league_id, principal.user_id)
    return {"data": [member_payload(m) for m in members]}


@router.get("/{league_id}/banned")
async def list_banned(league_id: str, repo: RepoDep, principal: PrincipalDep) -> dict:
    banned = await membership.list_banned(repo, league_id, principal.user_id)
    return {"data": [member_payload(m) for m in banned]}


@router.post("/{league_id}/members/{user_id}/role")
async def change_role(
    league_id: str, user_id: str, body: RoleRequest, repo: RepoDep, principal: PrincipalDep
) -> dict:
    member = await membership.change_role(
        repo, league_id, principal.user_id, user_id, body.role
    )
    return {"data": member_payload(member)}


@router.post("/{league_id}/members/{user_id}/kick")
async def kick_member(
    league_id: str, user_id: str, body: ModerationRequest, repo: RepoDep, principal: PrincipalDep
) -> dict:
    entry = await membership.kick_member(
        repo, league_id, principal.user_id, user_id, reason=body.reason
    )
    return {"data": log_payload(entry)}


@router.post("/{league_id}/members/{user_id}/ban")
async def ban_member(
    league_id: str, user_id: str, body: ModerationRequest, repo: RepoDep, principal: PrincipalDep
) -> dict:
    entry = await membership.ban_member(
        repo, league_id, principal.user_id, user_id, reason=body.reason
    )
    return {"data": log_payload(entry)}


@router.post("/{league_id}/members/{user_id}/unban")
async def unban_member(
    league_id: str, user_id: str, body: ModerationRequest, repo: RepoDep, principal: PrincipalDep
) -> dict:
    entry = await membership.unban_member(
        repo, league_id, principal.user_id, user_id, reason=body.reason
    )
    return {"data": log_payload(entry)}


@router.get("/{league_id}/moderation-log")
async def moderation_log(
    league_id: str,
    repo: RepoDep,
    principal: PrincipalDep,
    settings: SettingsDep,
    limit: Annotated[int | None, Query(ge=1, le=100)] = None,
    cursor: int | None = None,
) -> dict:
    entries, next_cursor = await membership.list_moderation_log(
        repo,
        league_id,
        principal.user_id,
        limit=limit or settings.musicleague_moderation_page_size,
        cursor=cursor,
    )
    return {
        "data": [e.model_dump(mode="json") for e in entries],
        "next_cursor": next_cursor,
    }
