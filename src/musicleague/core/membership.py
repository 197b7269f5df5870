"""Membership guard, league administration, and the moderation ledger.

Every league-scoped command starts here: ``require_member`` and
``require_role`` answer "is this principal an active, non-banned member
with at least this role?". Moderation actions (role change, kick, ban,
unban) append exactly one ledger entry in the same transaction as their
effect; if either write fails the session rolls both back.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from musicleague.core.clock import resolve_now
from musicleague.core.errors import Conflict, FailedPrecondition, Forbidden, NotFound
from musicleague.db.models import LeagueMemberRow, LeagueRow, ModerationLogRow
from musicleague.db.repository import Repository
from musicleague.models.league import (
    ADMIN_ROLES,
    LeagueSettings,
    MemberRole,
    ModerationLogEntry,
)

logger = logging.getLogger(__name__)

MAX_MODERATION_PAGE = 100


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


async def get_league(repo: Repository, league_id: str) -> LeagueRow:
    league = await repo.get_league(league_id)
    if league is None:
        raise NotFound(f"League {league_id} not found")
    return league


async def require_member(repo: Repository, league_id: str, user_id: str) -> LeagueMemberRow:
    """Return the caller's active membership or raise ``Forbidden``."""
    member = await repo.get_active_member(league_id, user_id)
    if member is None:
        raise Forbidden("You are not a member of this league")
    return member


async def require_role(
    repo: Repository,
    league_id: str,
    user_id: str,
    roles: Iterable[str] = ADMIN_ROLES,
) -> LeagueMemberRow:
    """Like ``require_member`` but also checks the member's role."""
    member = await require_member(repo, league_id, user_id)
    allowed = {str(r) for r in roles}
    if member.role not in allowed:
        raise Forbidden(f"Requires role: {', '.join(sorted(allowed))}")
    return member


def league_settings(league: LeagueRow) -> LeagueSettings:
    return LeagueSettings.model_validate(league.settings or {})


# ---------------------------------------------------------------------------
# Leagues
# ---------------------------------------------------------------------------


async def create_league(
    repo: Repository,
    owner_id: str,
    name: str,
    description: str = "",
    visibility: str = "private",
    settings: LeagueSettings | None = None,
) -> LeagueRow:
    """Create a league; the creator becomes its single owner."""
    league = await repo.create_league(
        name=name,
        owner_id=owner_id,
        description=description,
        visibility=visibility,
        settings=(settings or LeagueSettings()).model_dump(),
    )
    await repo.add_member(league.id, owner_id, role=MemberRole.OWNER)
    logger.info("league_created league=%s owner=%s", league.id, owner_id)
    return league


async def view_league(repo: Repository, league_id: str, user_id: str) -> LeagueRow:
    """Members can read their league; anyone authenticated can read a public one."""
    league = await get_league(repo, league_id)
    if league.visibility != "public":
        await require_member(repo, league_id, user_id)
    return league


async def update_league(
    repo: Repository,
    league_id: str,
    actor_id: str,
    name: str | None = None,
    description: str | None = None,
    visibility: str | None = None,
    settings: LeagueSettings | None = None,
) -> LeagueRow:
    league = await get_league(repo, league_id)
    await require_role(repo, league_id, actor_id)
    fields: dict[str, object] = {}
    if name is not None:
        fields["name"] = name
    if description is not None:
        fields["description"] = description
    if visibility is not None:
        fields["visibility"] = visibility
    if settings is not None:
        fields["settings"] = settings.model_dump()
    await repo.update_league(league, **fields)
    logger.info("league_updated league=%s by=%s fields=%s", league_id, actor_id, sorted(fields))
    return league


async def list_members(repo: Repository, league_id: str, actor_id: str) -> list[LeagueMemberRow]:
    await get_league(repo, league_id)
    await require_member(repo, league_id, actor_id)
    return await repo.list_active_members(league_id)


async def list_banned(repo: Repository, league_id: str, actor_id: str) -> list[LeagueMemberRow]:
    await get_league(repo, league_id)
    await require_role(repo, league_id, actor_id)
    return await repo.list_banned_members(league_id)


# ---------------------------------------------------------------------------
# Moderation
# ---------------------------------------------------------------------------


def _check_target(actor: LeagueMemberRow, target: LeagueMemberRow, action: str) -> None:
    if target.user_id == actor.user_id:
        raise FailedPrecondition(f"You cannot {action} yourself")
    if target.role == MemberRole.OWNER:
        raise Forbidden(f"Cannot {action} the league owner")
    if actor.role == MemberRole.ADMIN and target.role == MemberRole.ADMIN:
        raise Forbidden(f"Admins cannot {action} other admins")


async def _require_target(repo: Repository, league_id: str, user_id: str) -> LeagueMemberRow:
    target = await repo.get_active_member(league_id, user_id)
    if target is None:
        raise NotFound(f"User {user_id} is not a member of this league")
    return target


async def _append_entry(repo: Repository, **entry: object) -> ModerationLogRow:
    try:
        return await repo.append_moderation_entry(**entry)  # type: ignore[arg-type]
    except IntegrityError as exc:
        raise Conflict(
            "Another moderation action was recorded at the same time; try again"
        ) from exc


async def change_role(
    repo: Repository,
    league_id: str,
    actor_id: str,
    target_user_id: str,
    new_role: str,
) -> LeagueMemberRow:
    """Promote a member to admin or demote an admin. Owner only."""
    await get_league(repo, league_id)
    actor = await require_role(repo, league_id, actor_id, {MemberRole.OWNER})
    if new_role not in (MemberRole.ADMIN, MemberRole.MEMBER):
        raise FailedPrecondition("Role must be 'admin' or 'member'")
    target = await _require_target(repo, league_id, target_user_id)
    _check_target(actor, target, "change the role of")
    old_role = target.role
    if old_role == new_role:
        raise FailedPrecondition(f"User already has role {new_role}")

    await repo.set_member_role(target, new_role)
    await _append_entry(
        repo,
        league_id=league_id,
        performed_by=actor_id,
        target_user_id=target_user_id,
        action="role_change",
        details={"old_role": old_role, "new_role": new_role},
    )
    logger.info(
        "member_role_changed league=%s target=%s from=%s to=%s by=%s",
        league_id,
        target_user_id,
        old_role,
        new_role,
        actor_id,
    )
    return target


async def kick_member(
    repo: Repository,
    league_id: str,
    actor_id: str,
    target_user_id: str,
    reason: str | None = None,
) -> ModerationLogRow:
    """Remove a member. They may rejoin with a fresh invite."""
    await get_league(repo, league_id)
    actor = await require_role(repo, league_id, actor_id)
    target = await _require_target(repo, league_id, target_user_id)
    _check_target(actor, target, "kick")

    await repo.delete_member(target)
    entry = await _append_entry(
        repo,
        league_id=league_id,
        performed_by=actor_id,
        target_user_id=target_user_id,
        action="kick",
        reason=reason,
    )
    logger.info("member_kicked league=%s target=%s by=%s", league_id, target_user_id, actor_id)
    return entry


async def ban_member(
    repo: Repository,
    league_id: str,
    actor_id: str,
    target_user_id: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> ModerationLogRow:
    """Ban a member. The membership row is kept, stamped with ``banned_at``."""
    await get_league(repo, league_id)
    actor = await require_role(repo, league_id, actor_id)
    target = await _require_target(repo, league_id, target_user_id)
    _check_target(actor, target, "ban")

    await repo.mark_banned(target, resolve_now(now))
    entry = await _append_entry(
        repo,
        league_id=league_id,
        performed_by=actor_id,
        target_user_id=target_user_id,
        action="ban",
        reason=reason,
    )
    logger.info("member_banned league=%s target=%s by=%s", league_id, target_user_id, actor_id)
    return entry


async def unban_member(
    repo: Repository,
    league_id: str,
    actor_id: str,
    target_user_id: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> ModerationLogRow:
    """Lift a ban.

    The ban row stays as history (``unbanned_at`` is stamped). Membership is
    not restored: the user must redeem an invite, which creates a new row.
    """
    await get_league(repo, league_id)
    await require_role(repo, league_id, actor_id)
    ban = await repo.get_current_ban(league_id, target_user_id)
    if ban is None:
        raise FailedPrecondition(f"User {target_user_id} is not banned")

    await repo.mark_unbanned(ban, resolve_now(now))
    entry = await _append_entry(
        repo,
        league_id=league_id,
        performed_by=actor_id,
        target_user_id=target_user_id,
        action="unban",
        reason=reason,
    )
    logger.info("member_unbanned league=%s target=%s by=%s", league_id, target_user_id, actor_id)
    return entry


def to_log_entry(row: ModerationLogRow) -> ModerationLogEntry:
    return ModerationLogEntry(
        id=row.id,
        league_id=row.league_id,
        sequence_number=row.sequence_number,
        performed_by=row.performed_by,
        target_user_id=row.target_user_id,
        action=row.action,
        reason=row.reason,
        metadata=row.details,
        created_at=row.created_at,
    )


async def list_moderation_log(
    repo: Repository,
    league_id: str,
    actor_id: str,
    limit: int = 50,
    cursor: int | None = None,
) -> tuple[list[ModerationLogEntry], int | None]:
    """Return one page of the ledger, newest first, and the cursor for the next page."""
    await get_league(repo, league_id)
    await require_role(repo, league_id, actor_id)
    limit = max(1, min(limit, MAX_MODERATION_PAGE))
    rows = await repo.list_moderation_log(league_id, limit=limit + 1, before_sequence=cursor)
    next_cursor = None
    if len(rows) > limit:
        rows = rows[:limit]
        next_cursor = rows[-1].sequence_number
    return [to_log_entry(r) for r in rows], next_cursor
