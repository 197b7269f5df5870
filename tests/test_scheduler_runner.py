"""Tests for the scheduled round-deadline sweep."""

import logging
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from musicleague.core import membership, rounds, scheduler_runner
from musicleague.core.errors import FailedPrecondition
from musicleague.core.scheduler_runner import sweep_round_deadlines
from musicleague.db.engine import get_session
from musicleague.db.repository import Repository

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=UTC)


async def _setup_round(
    engine: AsyncEngine, name: str, submitters: tuple[str, ...] = ("alice",)
) -> tuple[str, str]:
    """Create a league with one submitting round closing an hour after NOW.

    Returns ``(league_id, round_id)``.
    """
    async with get_session(engine) as session:
        repo = Repository(session)
        league = await membership.create_league(repo, owner_id="owner", name=name)
        round_row = await rounds.create_round(
            repo, league.id, "owner", theme="Sweep", submission_end=NOW + timedelta(hours=1)
        )
        await rounds.advance_round(repo, round_row.id, "owner", now=NOW)
        for user_id in submitters:
            await repo.add_member(league.id, user_id)
            await repo.create_submission(
                round_row.id, user_id, 1, track_name=f"{user_id} track", artist="Artist"
            )
        return league.id, round_row.id


async def _status(engine: AsyncEngine, round_id: str) -> str:
    async with get_session(engine) as session:
        round_row = await Repository(session).get_round(round_id)
        return round_row.status


class TestSweepRoundDeadlines:
    async def test_moves_due_rounds(self, engine: AsyncEngine):
        _, round_id = await _setup_round(engine, "One")
        moved = await sweep_round_deadlines(engine, now=NOW + timedelta(hours=2))
        assert moved == 1
        assert await _status(engine, round_id) == "voting"

    async def test_nothing_due(self, engine: AsyncEngine):
        _, round_id = await _setup_round(engine, "One")
        assert await sweep_round_deadlines(engine, now=NOW) == 0
        assert await _status(engine, round_id) == "submitting"

    async def test_second_sweep_is_noop(self, engine: AsyncEngine):
        await _setup_round(engine, "One")
        later = NOW + timedelta(hours=2)
        assert await sweep_round_deadlines(engine, now=later) == 1
        assert await sweep_round_deadlines(engine, now=later) == 0

    async def test_empty_round_policy(self, engine: AsyncEngine):
        _, held = await _setup_round(engine, "Held", submitters=())
        later = NOW + timedelta(hours=2)
        assert await sweep_round_deadlines(engine, empty_round_policy="hold", now=later) == 0
        assert await _status(engine, held) == "submitting"

        assert await sweep_round_deadlines(engine, empty_round_policy="archive", now=later) == 1
        assert await _status(engine, held) == "archived"

    async def test_failing_league_is_isolated(
        self,
        engine: AsyncEngine,
        monkeypatch: pytest.MonkeyPatch,
        caplog: pytest.LogCaptureFixture,
    ):
        broken_league, broken_round = await _setup_round(engine, "Broken")
        _, healthy_round = await _setup_round(engine, "Healthy")
        real_sweep = scheduler_runner.sweep_deadlines

        async def _flaky_sweep(repo, now=None, empty_round_policy="hold", league_id=None):
            if league_id == broken_league:
                raise FailedPrecondition("boom")
            return await real_sweep(
                repo, now=now, empty_round_policy=empty_round_policy, league_id=league_id
            )

        monkeypatch.setattr(scheduler_runner, "sweep_deadlines", _flaky_sweep)
        with caplog.at_level(logging.ERROR, logger="musicleague.core.scheduler_runner"):
            moved = await sweep_round_deadlines(engine, now=NOW + timedelta(hours=2))

        assert moved == 1
        assert await _status(engine, healthy_round) == "voting"
        assert await _status(engine, broken_round) == "submitting"
        assert f"league={broken_league}" in caplog.text
