"""Invite ledger with exactly-once redemption.

Redemption order of checks:

1. invite exists                       -> NotFound
2. not expired                         -> FailedPrecondition
3. principal not currently banned      -> Forbidden
4. principal not already a member      -> FailedPrecondition
5. capacity observed available         -> FailedPrecondition
6. claim one use (conditional UPDATE)  -> Conflict if another redeemer won
7. insert the active membership row    -> FailedPrecondition on duplicate

Steps 1-5 are advisory reads that give a clean error in the common case.
Step 6 is the only capacity decision: the increment carries its own
``uses < max_uses`` predicate, so it cannot overshoot no matter how many
callers passed step 5 together. Any failure after step 6 rolls the whole
session back, taking the claimed use with it.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime

from sqlalchemy.exc import IntegrityError, OperationalError

from musicleague.core.clock import as_utc, has_passed, resolve_now
from musicleague.core.errors import (
    Conflict,
    FailedPrecondition,
    Forbidden,
    NotFound,
    is_lock_contention,
)
from musicleague.core.membership import get_league, require_role
from musicleague.db.models import InviteRow, LeagueMemberRow
from musicleague.db.repository import Repository
from musicleague.models.league import MemberRole

logger = logging.getLogger(__name__)

MAX_INVITE_USES = 100
DEFAULT_CODE_BYTES = 4


def generate_code(num_bytes: int = DEFAULT_CODE_BYTES) -> str:
    """Short, human-typeable hex code."""
    return secrets.token_hex(num_bytes)


def generate_link_token() -> str:
    """Opaque, URL-safe, unguessable token for invite links."""
    return secrets.token_urlsafe(24)


def is_exhausted(invite: InviteRow) -> bool:
    return invite.max_uses is not None and invite.uses >= invite.max_uses


async def create_invite(
    repo: Repository,
    league_id: str,
    actor_id: str,
    expires_at: datetime | None = None,
    max_uses: int | None = None,
    code_bytes: int = DEFAULT_CODE_BYTES,
    now: datetime | None = None,
) -> InviteRow:
    await get_league(repo, league_id)
    await require_role(repo, league_id, actor_id)
    if max_uses is not None and not 1 <= max_uses <= MAX_INVITE_USES:
        raise FailedPrecondition(f"max_uses must be between 1 and {MAX_INVITE_USES}")
    if expires_at is not None and has_passed(expires_at, resolve_now(now)):
        raise FailedPrecondition("expires_at must be in the future")

    invite = await repo.create_invite(
        league_id=league_id,
        code=generate_code(code_bytes),
        link_token=generate_link_token(),
        created_by=actor_id,
        expires_at=as_utc(expires_at),
        max_uses=max_uses,
    )
    logger.info(
        "invite_created league=%s invite=%s max_uses=%s expires_at=%s by=%s",
        league_id,
        invite.id,
        max_uses,
        expires_at,
        actor_id,
    )
    return invite


async def list_invites(repo: Repository, league_id: str, actor_id: str) -> list[InviteRow]:
    await get_league(repo, league_id)
    await require_role(repo, league_id, actor_id)
    return await repo.list_invites(league_id)


async def revoke_invite(repo: Repository, invite_id: str, actor_id: str) -> None:
    invite = await repo.get_invite(invite_id)
    if invite is None:
        raise NotFound(f"Invite {invite_id} not found")
    await require_role(repo, invite.league_id, actor_id)
    await repo.delete_invite(invite)
    logger.info("invite_revoked league=%s invite=%s by=%s", invite.league_id, invite_id, actor_id)


async def preview_invite(repo: Repository, token: str, now: datetime | None = None) -> dict:
    """Public preview of the league behind an invite link. Short codes are not accepted."""
    invite = await repo.get_invite_by_token(token)
    if invite is None or has_passed(invite.expires_at, resolve_now(now)):
        raise NotFound("Invite not found or expired")
    league = await get_league(repo, invite.league_id)
    return {
        "league_id": league.id,
        "name": league.name,
        "description": league.description,
        "exhausted": is_exhausted(invite),
    }


async def redeem_invite(
    repo: Repository,
    code_or_token: str,
    user_id: str,
    now: datetime | None = None,
) -> LeagueMemberRow:
    """Admit *user_id* to the invite's league, consuming exactly one use.

    Safe to retry after a timeout: if the first attempt committed, the
    retry fails with "already a member" instead of joining twice.
    """
    invite = await repo.find_invite(code_or_token)
    if invite is None:
        raise NotFound("Invite not found")
    if has_passed(invite.expires_at, resolve_now(now)):
        raise FailedPrecondition("This invite has expired")
    if await repo.get_current_ban(invite.league_id, user_id) is not None:
        raise Forbidden("You are banned from this league")
    if await repo.get_active_member(invite.league_id, user_id) is not None:
        raise FailedPrecondition("You are already a member of this league")
    if is_exhausted(invite):
        raise FailedPrecondition("This invite has reached its maximum number of uses")

    try:
        if not await repo.claim_invite_use(invite):
            logger.info(
                "invite_redeem_race_lost invite=%s user=%s", invite.id, user_id
            )
            raise Conflict("This invite was used up by a concurrent redemption")
        member = await repo.add_member(invite.league_id, user_id, role=MemberRole.MEMBER)
    except IntegrityError as exc:
        raise FailedPrecondition("You are already a member of this league") from exc
    except OperationalError as exc:
        if is_lock_contention(exc):
            raise Conflict("The invite is busy; try again") from exc
        raise

    logger.info(
        "invite_redeemed league=%s invite=%s user=%s uses=%s max_uses=%s",
        invite.league_id,
        invite.id,
        user_id,
        invite.uses,
        invite.max_uses,
    )
    return member
