"""Season lifecycle: upcoming -> active -> completed.

A league has at most one active season; activating a season completes
whichever season was active before it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import StrEnum

from musicleague.core.clock import as_utc
from musicleague.core.errors import FailedPrecondition, NotFound
from musicleague.core.membership import get_league, require_member, require_role
from musicleague.db.models import SeasonRow
from musicleague.db.repository import Repository

logger = logging.getLogger(__name__)


class SeasonStatus(StrEnum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    COMPLETED = "completed"


ALLOWED_TRANSITIONS: dict[SeasonStatus, set[SeasonStatus]] = {
    SeasonStatus.UPCOMING: {SeasonStatus.ACTIVE},
    SeasonStatus.ACTIVE: {SeasonStatus.COMPLETED},
    SeasonStatus.COMPLETED: set(),  # terminal state
}


async def create_season(
    repo: Repository,
    league_id: str,
    actor_id: str,
    name: str,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> SeasonRow:
    await get_league(repo, league_id)
    await require_role(repo, league_id, actor_id)
    start, end = as_utc(start_date), as_utc(end_date)
    if start is not None and end is not None and start > end:
        raise FailedPrecondition("start_date must not be after end_date")
    season = await repo.create_season(league_id, name, start_date=start, end_date=end)
    logger.info("season_created league=%s season=%s number=%d", league_id, season.id, season.number)
    return season


async def list_seasons(repo: Repository, league_id: str, actor_id: str) -> list[SeasonRow]:
    await get_league(repo, league_id)
    await require_member(repo, league_id, actor_id)
    return await repo.list_seasons(league_id)


async def get_active_season(repo: Repository, league_id: str, actor_id: str) -> SeasonRow | None:
    await get_league(repo, league_id)
    await require_member(repo, league_id, actor_id)
    return await repo.get_active_season(league_id)


async def _load_season(repo: Repository, season_id: str) -> SeasonRow:
    season = await repo.get_season(season_id)
    if season is None:
        raise NotFound(f"Season {season_id} not found")
    return season


async def get_season(repo: Repository, season_id: str, actor_id: str) -> tuple[SeasonRow, int]:
    """A season and the number of rounds filed under it."""
    season = await _load_season(repo, season_id)
    await require_member(repo, season.league_id, actor_id)
    return season, await repo.count_season_rounds(season.id)


async def update_season(
    repo: Repository,
    season_id: str,
    actor_id: str,
    name: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> SeasonRow:
    season = await _load_season(repo, season_id)
    await require_role(repo, season.league_id, actor_id)
    if season.status == SeasonStatus.COMPLETED:
        raise FailedPrecondition("A completed season cannot be edited")

    fields: dict[str, object] = {}
    if name is not None:
        fields["name"] = name
    if start_date is not None:
        fields["start_date"] = as_utc(start_date)
    if end_date is not None:
        fields["end_date"] = as_utc(end_date)
    start = fields.get("start_date", as_utc(season.start_date))
    end = fields.get("end_date", as_utc(season.end_date))
    if start is not None and end is not None and start > end:
        raise FailedPrecondition("start_date must not be after end_date")

    await repo.update_season(season, **fields)
    logger.info("season_updated season=%s by=%s fields=%s", season_id, actor_id, sorted(fields))
    return season


async def delete_season(repo: Repository, season_id: str, actor_id: str) -> None:
    """Remove an upcoming season that has no rounds yet."""
    season = await _load_season(repo, season_id)
    await require_role(repo, season.league_id, actor_id)
    if season.status != SeasonStatus.UPCOMING:
        raise FailedPrecondition(
            f"Only upcoming seasons can be deleted, this one is {season.status}"
        )
    if await repo.count_season_rounds(season.id):
        raise FailedPrecondition("Cannot delete a season that has rounds")
    await repo.delete_season(season)
    logger.info("season_deleted season=%s league=%s by=%s", season_id, season.league_id, actor_id)


async def transition_season(
    repo: Repository,
    season_id: str,
    actor_id: str,
    to_status: SeasonStatus,
) -> SeasonRow:
    """Validate and execute a season status transition.

    Raises:
        NotFound: If the season does not exist.
        FailedPrecondition: If the transition is not allowed.
    """
    season = await _load_season(repo, season_id)
    await require_role(repo, season.league_id, actor_id)

    current = SeasonStatus(season.status)
    allowed = ALLOWED_TRANSITIONS[current]
    if to_status not in allowed:
        msg = (
            f"Invalid season transition: {current.value} -> {to_status.value}. "
            f"Allowed: {sorted(s.value for s in allowed)}"
        )
        raise FailedPrecondition(msg)

    if to_status == SeasonStatus.ACTIVE:
        previous = await repo.get_active_season(season.league_id)
        if previous is not None and previous.id != season.id:
            await repo.update_season_status(previous, SeasonStatus.COMPLETED)
            logger.info(
                "season_status_changed season=%s from=active to=completed reason=superseded",
                previous.id,
            )

    await repo.update_season_status(season, to_status)
    logger.info(
        "season_status_changed season=%s from=%s to=%s",
        season_id,
        current.value,
        to_status.value,
    )
    return season
