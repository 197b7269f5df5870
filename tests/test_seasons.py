"""Tests for season lifecycle management."""

from datetime import UTC, datetime

import pytest

from musicleague.core import rounds, seasons
from musicleague.core.errors import FailedPrecondition, Forbidden, NotFound
from musicleague.core.seasons import ALLOWED_TRANSITIONS, SeasonStatus
from musicleague.db.models import LeagueRow
from musicleague.db.repository import Repository


class TestTransitionMap:
    def test_upcoming_only_activates(self):
        assert ALLOWED_TRANSITIONS[SeasonStatus.UPCOMING] == {SeasonStatus.ACTIVE}

    def test_completed_is_terminal(self):
        assert ALLOWED_TRANSITIONS[SeasonStatus.COMPLETED] == set()


class TestCreateSeason:
    async def test_numbers_increase(self, repo: Repository, league: LeagueRow):
        first = await seasons.create_season(repo, league.id, "owner", "Spring")
        second = await seasons.create_season(repo, league.id, "owner", "Summer")
        assert (first.number, second.number) == (1, 2)
        assert first.status == "upcoming"
        listed = await seasons.list_seasons(repo, league.id, "alice")
        assert [s.name for s in listed] == ["Summer", "Spring"]

    async def test_start_after_end_rejected(self, repo: Repository, league: LeagueRow):
        with pytest.raises(FailedPrecondition, match="start_date"):
            await seasons.create_season(
                repo,
                league.id,
                "owner",
                "Backwards",
                start_date=datetime(2026, 6, 1, tzinfo=UTC),
                end_date=datetime(2026, 5, 1, tzinfo=UTC),
            )

    async def test_members_cannot_create(self, repo: Repository, league: LeagueRow):
        with pytest.raises(Forbidden):
            await seasons.create_season(repo, league.id, "alice", "Mine")


class TestTransitionSeason:
    async def test_activate_and_complete(self, repo: Repository, league: LeagueRow):
        season = await seasons.create_season(repo, league.id, "owner", "Spring")
        await seasons.transition_season(repo, season.id, "owner", SeasonStatus.ACTIVE)
        active = await seasons.get_active_season(repo, league.id, "bob")
        assert active is not None
        assert active.id == season.id

        await seasons.transition_season(repo, season.id, "owner", SeasonStatus.COMPLETED)
        assert season.status == "completed"
        assert await seasons.get_active_season(repo, league.id, "bob") is None

    async def test_activation_completes_previous(self, repo: Repository, league: LeagueRow):
        spring = await seasons.create_season(repo, league.id, "owner", "Spring")
        summer = await seasons.create_season(repo, league.id, "owner", "Summer")
        await seasons.transition_season(repo, spring.id, "owner", SeasonStatus.ACTIVE)
        await seasons.transition_season(repo, summer.id, "owner", SeasonStatus.ACTIVE)

        assert spring.status == "completed"
        assert summer.status == "active"

    async def test_skipping_activation_rejected(self, repo: Repository, league: LeagueRow):
        season = await seasons.create_season(repo, league.id, "owner", "Spring")
        with pytest.raises(FailedPrecondition, match="Invalid season transition"):
            await seasons.transition_season(repo, season.id, "owner", SeasonStatus.COMPLETED)

    async def test_completed_cannot_reopen(self, repo: Repository, league: LeagueRow):
        season = await seasons.create_season(repo, league.id, "owner", "Spring")
        await seasons.transition_season(repo, season.id, "owner", SeasonStatus.ACTIVE)
        await seasons.transition_season(repo, season.id, "owner", SeasonStatus.COMPLETED)
        with pytest.raises(FailedPrecondition):
            await seasons.transition_season(repo, season.id, "owner", SeasonStatus.ACTIVE)

    async def test_unknown_season(self, repo: Repository, league: LeagueRow):
        with pytest.raises(NotFound):
            await seasons.transition_season(repo, "missing", "owner", SeasonStatus.ACTIVE)

    async def test_members_cannot_transition(self, repo: Repository, league: LeagueRow):
        season = await seasons.create_season(repo, league.id, "owner", "Spring")
        with pytest.raises(Forbidden):
            await seasons.transition_season(repo, season.id, "alice", SeasonStatus.ACTIVE)


class TestSeasonDetail:
    async def test_get_counts_rounds(self, repo: Repository, league: LeagueRow):
        season = await seasons.create_season(repo, league.id, "owner", "Spring")
        await rounds.create_round(repo, league.id, "owner", theme="Rain", season_id=season.id)
        found, round_count = await seasons.get_season(repo, season.id, "alice")
        assert found.id == season.id
        assert round_count == 1

    async def test_get_requires_membership(self, repo: Repository, league: LeagueRow):
        season = await seasons.create_season(repo, league.id, "owner", "Spring")
        with pytest.raises(Forbidden):
            await seasons.get_season(repo, season.id, "stranger")

    async def test_get_unknown(self, repo: Repository, league: LeagueRow):
        with pytest.raises(NotFound):
            await seasons.get_season(repo, "missing", "alice")


class TestUpdateSeason:
    async def test_rename_and_reschedule(self, repo: Repository, league: LeagueRow):
        season = await seasons.create_season(
            repo, league.id, "owner", "Spring", start_date=datetime(2026, 3, 1, tzinfo=UTC)
        )
        updated = await seasons.update_season(
            repo,
            season.id,
            "owner",
            name="Early Spring",
            end_date=datetime(2026, 4, 1, tzinfo=UTC),
        )
        assert updated.name == "Early Spring"
        assert updated.end_date is not None

    async def test_dates_checked_against_stored_values(
        self, repo: Repository, league: LeagueRow
    ):
        season = await seasons.create_season(
            repo, league.id, "owner", "Spring", end_date=datetime(2026, 4, 1, tzinfo=UTC)
        )
        with pytest.raises(FailedPrecondition, match="start_date"):
            await seasons.update_season(
                repo, season.id, "owner", start_date=datetime(2026, 5, 1, tzinfo=UTC)
            )

    async def test_completed_season_frozen(self, repo: Repository, league: LeagueRow):
        season = await seasons.create_season(repo, league.id, "owner", "Spring")
        await seasons.transition_season(repo, season.id, "owner", SeasonStatus.ACTIVE)
        await seasons.transition_season(repo, season.id, "owner", SeasonStatus.COMPLETED)
        with pytest.raises(FailedPrecondition):
            await seasons.update_season(repo, season.id, "owner", name="Redo")

    async def test_members_cannot_update(self, repo: Repository, league: LeagueRow):
        season = await seasons.create_season(repo, league.id, "owner", "Spring")
        with pytest.raises(Forbidden):
            await seasons.update_season(repo, season.id, "alice", name="Mine")


class TestDeleteSeason:
    async def test_delete_empty_upcoming(self, repo: Repository, league: LeagueRow):
        season = await seasons.create_season(repo, league.id, "owner", "Spring")
        await seasons.delete_season(repo, season.id, "owner")
        assert await repo.get_season(season.id) is None

    async def test_season_with_rounds_kept(self, repo: Repository, league: LeagueRow):
        season = await seasons.create_season(repo, league.id, "owner", "Spring")
        await rounds.create_round(repo, league.id, "owner", theme="Rain", season_id=season.id)
        with pytest.raises(FailedPrecondition, match="has rounds"):
            await seasons.delete_season(repo, season.id, "owner")

    async def test_active_season_kept(self, repo: Repository, league: LeagueRow):
        season = await seasons.create_season(repo, league.id, "owner", "Spring")
        await seasons.transition_season(repo, season.id, "owner", SeasonStatus.ACTIVE)
        with pytest.raises(FailedPrecondition, match="upcoming"):
            await seasons.delete_season(repo, season.id, "owner")

    async def test_members_cannot_delete(self, repo: Repository, league: LeagueRow):
        season = await seasons.create_season(repo, league.id, "owner", "Spring")
        with pytest.raises(Forbidden):
            await seasons.delete_season(repo, season.id, "alice")
