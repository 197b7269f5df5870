"""Tests for the membership guard, league administration, and moderation ledger."""

import asyncio

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from musicleague.core import membership
from musicleague.core.errors import Conflict, FailedPrecondition, Forbidden, NotFound
from musicleague.db.engine import get_session
from musicleague.db.models import LeagueRow
from musicleague.db.repository import Repository
from musicleague.models.league import LeagueSettings


class TestGuard:
    async def test_require_member(self, repo: Repository, league: LeagueRow):
        member = await membership.require_member(repo, league.id, "alice")
        assert member.role == "member"
        with pytest.raises(Forbidden):
            await membership.require_member(repo, league.id, "stranger")

    async def test_require_role(self, repo: Repository, league: LeagueRow):
        owner = await membership.require_role(repo, league.id, "owner")
        assert owner.role == "owner"
        with pytest.raises(Forbidden, match="Requires role"):
            await membership.require_role(repo, league.id, "alice")

    async def test_banned_member_fails_guard(self, repo: Repository, league: LeagueRow):
        await membership.ban_member(repo, league.id, "owner", "alice")
        with pytest.raises(Forbidden):
            await membership.require_member(repo, league.id, "alice")

    async def test_unknown_league(self, repo: Repository):
        with pytest.raises(NotFound):
            await membership.get_league(repo, "missing")


class TestLeagues:
    async def test_creator_is_owner(self, repo: Repository):
        league = await membership.create_league(repo, owner_id="zoe", name="Zoe's League")
        members = await membership.list_members(repo, league.id, "zoe")
        assert [(m.user_id, m.role) for m in members] == [("zoe", "owner")]
        assert membership.league_settings(league) == LeagueSettings()

    async def test_private_league_hidden_from_strangers(self, repo: Repository, league: LeagueRow):
        with pytest.raises(Forbidden):
            await membership.view_league(repo, league.id, "stranger")

    async def test_public_league_visible(self, repo: Repository, league: LeagueRow):
        await membership.update_league(repo, league.id, "owner", visibility="public")
        viewed = await membership.view_league(repo, league.id, "stranger")
        assert viewed.id == league.id

    async def test_update_settings(self, repo: Repository, league: LeagueRow):
        settings = LeagueSettings(anonymous_submissions=True, downvoting_enabled=True)
        await membership.update_league(repo, league.id, "owner", settings=settings)
        assert membership.league_settings(league).anonymous_submissions is True

    async def test_members_cannot_update(self, repo: Repository, league: LeagueRow):
        with pytest.raises(Forbidden):
            await membership.update_league(repo, league.id, "alice", name="Mine now")


class TestRoleChange:
    async def test_owner_promotes_and_demotes(self, repo: Repository, league: LeagueRow):
        await membership.change_role(repo, league.id, "owner", "alice", "admin")
        assert (await repo.get_active_member(league.id, "alice")).role == "admin"
        await membership.change_role(repo, league.id, "owner", "alice", "member")

        entries, _ = await membership.list_moderation_log(repo, league.id, "owner")
        assert [e.action for e in entries] == ["role_change", "role_change"]
        assert entries[0].metadata == {"old_role": "admin", "new_role": "member"}
        assert entries[1].metadata == {"old_role": "member", "new_role": "admin"}

    async def test_admin_cannot_change_roles(self, repo: Repository, league: LeagueRow):
        await membership.change_role(repo, league.id, "owner", "alice", "admin")
        with pytest.raises(Forbidden):
            await membership.change_role(repo, league.id, "alice", "bob", "admin")

    async def test_owner_role_cannot_be_granted(self, repo: Repository, league: LeagueRow):
        with pytest.raises(FailedPrecondition):
            await membership.change_role(repo, league.id, "owner", "alice", "owner")

    async def test_same_role_rejected(self, repo: Repository, league: LeagueRow):
        with pytest.raises(FailedPrecondition, match="already has role"):
            await membership.change_role(repo, league.id, "owner", "alice", "member")

    async def test_owner_cannot_change_own_role(self, repo: Repository, league: LeagueRow):
        with pytest.raises(FailedPrecondition, match="yourself"):
            await membership.change_role(repo, league.id, "owner", "owner", "member")


class TestKickAndBan:
    async def test_kick_removes_membership(self, repo: Repository, league: LeagueRow):
        entry = await membership.kick_member(repo, league.id, "owner", "bob", reason="spam")
        assert entry.action == "kick"
        assert entry.reason == "spam"
        assert await repo.get_active_member(league.id, "bob") is None
        assert await repo.list_member_rows(league.id, "bob") == []

    async def test_ban_keeps_row(self, repo: Repository, league: LeagueRow):
        await membership.ban_member(repo, league.id, "owner", "bob")
        banned = await membership.list_banned(repo, league.id, "owner")
        assert [m.user_id for m in banned] == ["bob"]
        active = await membership.list_members(repo, league.id, "owner")
        assert "bob" not in {m.user_id for m in active}

    async def test_cannot_target_owner(self, repo: Repository, league: LeagueRow):
        await membership.change_role(repo, league.id, "owner", "alice", "admin")
        with pytest.raises(Forbidden, match="owner"):
            await membership.ban_member(repo, league.id, "alice", "owner")

    async def test_admin_cannot_target_admin(self, repo: Repository, league: LeagueRow):
        await membership.change_role(repo, league.id, "owner", "alice", "admin")
        await membership.change_role(repo, league.id, "owner", "bob", "admin")
        with pytest.raises(Forbidden, match="other admins"):
            await membership.kick_member(repo, league.id, "alice", "bob")

    async def test_admin_can_ban_member(self, repo: Repository, league: LeagueRow):
        await membership.change_role(repo, league.id, "owner", "alice", "admin")
        entry = await membership.ban_member(repo, league.id, "alice", "carol")
        assert entry.performed_by == "alice"

    async def test_member_cannot_kick(self, repo: Repository, league: LeagueRow):
        with pytest.raises(Forbidden):
            await membership.kick_member(repo, league.id, "alice", "bob")

    async def test_cannot_kick_non_member(self, repo: Repository, league: LeagueRow):
        with pytest.raises(NotFound):
            await membership.kick_member(repo, league.id, "owner", "stranger")

    async def test_unban(self, repo: Repository, league: LeagueRow):
        await membership.ban_member(repo, league.id, "owner", "bob")
        entry = await membership.unban_member(repo, league.id, "owner", "bob", reason="appeal")
        assert entry.action == "unban"
        assert await membership.list_banned(repo, league.id, "owner") == []
        (row,) = await repo.list_member_rows(league.id, "bob")
        assert row.banned_at is not None
        assert row.unbanned_at is not None

    async def test_unban_requires_ban(self, repo: Repository, league: LeagueRow):
        with pytest.raises(FailedPrecondition, match="not banned"):
            await membership.unban_member(repo, league.id, "owner", "bob")


class TestModerationLog:
    async def test_every_action_logged_once(self, repo: Repository, league: LeagueRow):
        await membership.change_role(repo, league.id, "owner", "alice", "admin")
        await membership.kick_member(repo, league.id, "owner", "bob")
        await membership.ban_member(repo, league.id, "alice", "carol")
        await membership.unban_member(repo, league.id, "alice", "carol")

        entries, cursor = await membership.list_moderation_log(repo, league.id, "owner")
        assert cursor is None
        assert [(e.sequence_number, e.action, e.target_user_id) for e in entries] == [
            (4, "unban", "carol"),
            (3, "ban", "carol"),
            (2, "kick", "bob"),
            (1, "role_change", "alice"),
        ]

    async def test_rejected_action_not_logged(self, repo: Repository, league: LeagueRow):
        with pytest.raises(FailedPrecondition):
            await membership.unban_member(repo, league.id, "owner", "bob")
        entries, _ = await membership.list_moderation_log(repo, league.id, "owner")
        assert entries == []

    async def test_pagination(self, repo: Repository, league: LeagueRow):
        for user_id in ("alice", "bob", "carol"):
            await membership.ban_member(repo, league.id, "owner", user_id)

        first, cursor = await membership.list_moderation_log(repo, league.id, "owner", limit=2)
        assert [e.target_user_id for e in first] == ["carol", "bob"]
        assert cursor == 2
        rest, cursor = await membership.list_moderation_log(
            repo, league.id, "owner", limit=2, cursor=cursor
        )
        assert [e.target_user_id for e in rest] == ["alice"]
        assert cursor is None

    async def test_members_cannot_read_log(self, repo: Repository, league: LeagueRow):
        with pytest.raises(Forbidden):
            await membership.list_moderation_log(repo, league.id, "alice")


class _StaleSequenceRepository(Repository):
    """Hands out a sequence number another writer already took."""

    async def next_moderation_sequence(self, league_id: str) -> int:
        return 1


class TestModerationSequence:
    async def test_taken_sequence_is_a_conflict(self, repo: Repository, league: LeagueRow):
        league_id = league.id
        await membership.kick_member(repo, league_id, "owner", "bob")
        await repo.session.commit()

        stale = _StaleSequenceRepository(repo.session)
        with pytest.raises(Conflict):
            await membership.ban_member(stale, league_id, "owner", "alice")
        await repo.session.rollback()

        assert await repo.get_current_ban(league_id, "alice") is None
        entries, _ = await membership.list_moderation_log(repo, league_id, "owner")
        assert [e.action for e in entries] == ["kick"]

    async def test_parallel_actions_get_distinct_numbers(self, file_engine: AsyncEngine):
        async with get_session(file_engine) as session:
            repo = Repository(session)
            league = await membership.create_league(repo, owner_id="owner", name="Busy")
            await repo.add_member(league.id, "admin", role="admin")
            for user_id in ("alice", "bob"):
                await repo.add_member(league.id, user_id)
            league_id = league.id

        async def _ban(actor_id: str, target_id: str) -> None:
            async with get_session(file_engine) as session:
                await membership.ban_member(Repository(session), league_id, actor_id, target_id)

        await asyncio.gather(_ban("owner", "alice"), _ban("admin", "bob"))

        async with get_session(file_engine) as session:
            entries, _ = await membership.list_moderation_log(
                Repository(session), league_id, "owner"
            )
        assert sorted(e.sequence_number for e in entries) == [1, 2]
        assert {e.target_user_id for e in entries} == {"alice", "bob"}
