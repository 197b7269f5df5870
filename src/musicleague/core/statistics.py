"""Statistics service — loads round history and serves derived views.

All numbers come from ``musicleague.core.tally`` applied to revealed and
archived rounds. The ``member_statistics`` table memoizes the per-member
aggregates; it is written only by ``rebuild_statistics_cache``, which
recomputes every scope of a league from history in one pass. Rebuilds run
when a round is revealed and on explicit admin refresh; a league with no
cached rows is rebuilt on first read.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Sequence

from musicleague.core.errors import FailedPrecondition, NotFound
from musicleague.core.membership import get_league, require_member, require_role
from musicleague.core.tally import (
    RoundHistory,
    TallySubmission,
    TallyVote,
    aggregate_member_stats,
    build_leaderboard,
    head_to_head,
    league_summary,
    most_controversial,
    placement_history,
    search_submissions,
    standings_by_round,
    submission_history,
    tally_round,
    top_artists,
    top_songs,
)
from musicleague.db.models import RoundRow, SubmissionRow, VoteRow
from musicleague.db.repository import Repository
from musicleague.models.stats import (
    ArtistCount,
    ControversialSubmission,
    LeaderboardEntry,
    LeagueSummary,
    MemberStats,
    Placement,
    SongCount,
    SubmissionHistoryEntry,
    SubmissionSearchHit,
)

logger = logging.getLogger(__name__)

ALL_TIME_SCOPE = "all"
FINISHED_STATUSES = ("revealed", "archived")


def _to_submission(row: SubmissionRow) -> TallySubmission:
    return TallySubmission(
        id=row.id,
        user_id=row.user_id,
        created_at=row.created_at,
        genres=tuple(row.genres or ()),
        track_name=row.track_name,
        artist=row.artist,
        album=row.album,
    )


def _to_vote(row: VoteRow) -> TallyVote:
    return TallyVote(
        submission_id=row.submission_id,
        user_id=row.user_id,
        vote_type=row.vote_type,
        points=row.points,
    )


async def _histories_for(repo: Repository, rounds: Sequence[RoundRow]) -> list[RoundHistory]:
    ids = [r.id for r in rounds]
    submissions: dict[str, list[TallySubmission]] = defaultdict(list)
    votes: dict[str, list[TallyVote]] = defaultdict(list)
    for sub in await repo.list_submissions_for_rounds(ids):
        submissions[sub.round_id].append(_to_submission(sub))
    for vote in await repo.list_votes_for_rounds(ids):
        votes[vote.round_id].append(_to_vote(vote))
    return [
        RoundHistory(round_id=r.id, submissions=submissions[r.id], votes=votes[r.id])
        for r in rounds
    ]


async def load_round_histories(
    repo: Repository, league_id: str, season_id: str | None = None
) -> list[RoundHistory]:
    """Finished rounds of a league (optionally one season), oldest first."""
    rounds = await repo.list_finished_rounds(league_id, season_id)
    return await _histories_for(repo, rounds)


async def rebuild_statistics_cache(repo: Repository, league_id: str) -> int:
    """Recompute all-time and per-season aggregates and replace the cache.

    Returns the number of cached rows written.
    """
    rounds = await repo.list_finished_rounds(league_id)
    histories = await _histories_for(repo, rounds)

    by_season: dict[str, list[RoundHistory]] = defaultdict(list)
    for round_row, history in zip(rounds, histories, strict=True):
        if round_row.season_id is not None:
            by_season[round_row.season_id].append(history)

    def _dump(subset: Sequence[RoundHistory]) -> dict[str, dict]:
        return {
            user_id: stats.model_dump(mode="json")
            for user_id, stats in aggregate_member_stats(subset).items()
        }

    scopes = {ALL_TIME_SCOPE: _dump(histories)}
    for season_id, subset in by_season.items():
        scopes[season_id] = _dump(subset)

    written = await repo.replace_member_statistics(league_id, scopes)
    logger.info(
        "statistics_rebuilt league=%s rounds=%d scopes=%d rows=%d",
        league_id,
        len(rounds),
        len(scopes),
        written,
    )
    return written


async def _check_season(repo: Repository, league_id: str, season_id: str | None) -> None:
    if season_id is None:
        return
    season = await repo.get_season(season_id)
    if season is None or season.league_id != league_id:
        raise NotFound(f"Season {season_id} not found in this league")


async def cached_member_stats(
    repo: Repository, league_id: str, season_id: str | None = None
) -> dict[str, MemberStats]:
    if not await repo.has_member_statistics(league_id):
        await rebuild_statistics_cache(repo, league_id)
    rows = await repo.list_member_statistics(league_id, season_id or ALL_TIME_SCOPE)
    return {row.user_id: MemberStats.model_validate(row.payload) for row in rows}


async def _authorize(
    repo: Repository, league_id: str, actor_id: str, season_id: str | None
) -> None:
    await get_league(repo, league_id)
    await require_member(repo, league_id, actor_id)
    await _check_season(repo, league_id, season_id)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def get_leaderboard(
    repo: Repository, league_id: str, actor_id: str, season_id: str | None = None
) -> list[LeaderboardEntry]:
    await _authorize(repo, league_id, actor_id, season_id)
    stats = await cached_member_stats(repo, league_id, season_id)
    return build_leaderboard(stats.values())


async def get_member_stats(
    repo: Repository,
    league_id: str,
    actor_id: str,
    user_id: str,
    season_id: str | None = None,
) -> tuple[MemberStats, list[SubmissionHistoryEntry]]:
    """A member's aggregates plus their per-submission history."""
    await _authorize(repo, league_id, actor_id, season_id)
    stats = await cached_member_stats(repo, league_id, season_id)
    histories = await load_round_histories(repo, league_id, season_id)
    return (
        stats.get(user_id, MemberStats(user_id=user_id)),
        submission_history(histories, user_id),
    )


async def compare_members(
    repo: Repository,
    league_id: str,
    actor_id: str,
    user1_id: str,
    user2_id: str,
    season_id: str | None = None,
) -> dict:
    await _authorize(repo, league_id, actor_id, season_id)
    if user1_id == user2_id:
        raise FailedPrecondition("Pick two different members to compare")
    stats = await cached_member_stats(repo, league_id, season_id)
    history = placement_history(await load_round_histories(repo, league_id, season_id))
    h2h = head_to_head(
        standings_by_round(history.get(user1_id, [])),
        standings_by_round(history.get(user2_id, [])),
    )
    return {
        "user1": stats.get(user1_id, MemberStats(user_id=user1_id)),
        "user2": stats.get(user2_id, MemberStats(user_id=user2_id)),
        "head_to_head": h2h,
    }


async def get_controversial_submissions(
    repo: Repository,
    league_id: str,
    actor_id: str,
    season_id: str | None = None,
    limit: int = 10,
) -> list[ControversialSubmission]:
    await _authorize(repo, league_id, actor_id, season_id)
    histories = await load_round_histories(repo, league_id, season_id)
    return most_controversial(histories, limit=max(1, min(limit, 100)))


async def get_round_results(repo: Repository, round_id: str, actor_id: str) -> list[Placement]:
    """Final placements of one round. Hidden until the round is revealed."""
    round_row = await repo.get_round(round_id)
    if round_row is None:
        raise NotFound(f"Round {round_id} not found")
    await require_member(repo, round_row.league_id, actor_id)
    if round_row.status not in FINISHED_STATUSES:
        raise FailedPrecondition("Results are available once the round is revealed")
    (history,) = await _histories_for(repo, [round_row])
    return tally_round(history.submissions, history.votes)


async def get_league_summary(
    repo: Repository, league_id: str, actor_id: str, season_id: str | None = None
) -> LeagueSummary:
    await _authorize(repo, league_id, actor_id, season_id)
    histories = await load_round_histories(repo, league_id, season_id)
    return league_summary(histories, await repo.count_active_members(league_id))


async def get_top_artists(
    repo: Repository,
    league_id: str,
    actor_id: str,
    season_id: str | None = None,
    limit: int = 20,
) -> list[ArtistCount]:
    await _authorize(repo, league_id, actor_id, season_id)
    histories = await load_round_histories(repo, league_id, season_id)
    return top_artists(histories, limit=max(1, min(limit, 100)))


async def get_top_songs(
    repo: Repository,
    league_id: str,
    actor_id: str,
    season_id: str | None = None,
    limit: int = 20,
) -> list[SongCount]:
    await _authorize(repo, league_id, actor_id, season_id)
    histories = await load_round_histories(repo, league_id, season_id)
    return top_songs(histories, limit=max(1, min(limit, 100)))


async def search_league_submissions(
    repo: Repository,
    league_id: str,
    actor_id: str,
    query: str,
    season_id: str | None = None,
) -> list[SubmissionSearchHit]:
    """Track and artist search over revealed and archived rounds, newest first."""
    await _authorize(repo, league_id, actor_id, season_id)
    if not query.strip():
        raise FailedPrecondition("Search query must not be empty")
    histories = await load_round_histories(repo, league_id, season_id)
    return search_submissions(histories, query)


async def refresh_statistics(repo: Repository, league_id: str, actor_id: str) -> int:
    """Admin action: rebuild the cache from history."""
    await get_league(repo, league_id)
    await require_role(repo, league_id, actor_id)
    return await rebuild_statistics_cache(repo, league_id)
