"""Tally and leaderboard engine — pure functions over round history.

Nothing in this module touches the database. Callers load submissions and
votes (see ``musicleague.core.statistics``) and hand them over as plain
records; every result is a deterministic function of that input.

Scoring:
    score = sum(upvote points) - sum(downvote points)

Vote points are stored as positive magnitudes, so a reaction-style vote
worth one point per direction reduces to ``upvotes - downvotes``.

Ranking:
    score descending, then earliest submission timestamp, then submission
    id. Placements are distinct (1..n) even when scores tie; ``standing``
    keeps the pre-tie-break competition rank for head-to-head comparisons.
"""

from __future__ import annotations

import math
from collections import Counter, defaultdict
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from musicleague.core.clock import as_utc
from musicleague.models.stats import (
    ArtistCount,
    ControversialSubmission,
    GenreCount,
    HeadToHead,
    LeaderboardEntry,
    LeagueSummary,
    MemberStats,
    MostActiveSubmitter,
    Placement,
    SongCount,
    SubmissionHistoryEntry,
    SubmissionSearchHit,
)

FAVORITE_GENRE_LIMIT = 50
TOP_LIMIT = 20
SEARCH_LIMIT = 50


@dataclass(frozen=True)
class TallySubmission:
    id: str
    user_id: str
    created_at: datetime
    genres: tuple[str, ...] = ()
    track_name: str = ""
    artist: str = ""
    album: str | None = None


@dataclass(frozen=True)
class TallyVote:
    submission_id: str
    user_id: str
    vote_type: str = "upvote"
    points: int = 1


@dataclass
class RoundHistory:
    """Everything the engine needs to know about one finished round."""

    round_id: str
    submissions: list[TallySubmission]
    votes: list[TallyVote] = field(default_factory=list)


@dataclass
class MemberRoundResult:
    """A member's result in one round, folded over all their submissions."""

    round_id: str
    user_id: str
    placement: int
    standing: int
    points: int = 0
    upvotes: int = 0
    downvotes: int = 0
    submissions: int = 0


@dataclass
class _Score:
    upvotes: int = 0
    downvotes: int = 0
    upvote_points: int = 0
    downvote_points: int = 0

    @property
    def value(self) -> int:
        return self.upvote_points - self.downvote_points

    def apply(self, vote: TallyVote, sign: int = 1) -> None:
        if vote.vote_type == "downvote":
            self.downvotes += sign
            self.downvote_points += sign * vote.points
        else:
            self.upvotes += sign
            self.upvote_points += sign * vote.points


# ---------------------------------------------------------------------------
# Per-round tally
# ---------------------------------------------------------------------------


def _rank(
    submissions: Iterable[TallySubmission], scores: Mapping[str, _Score]
) -> list[Placement]:
    ordered = sorted(
        submissions,
        key=lambda s: (-scores[s.id].value, as_utc(s.created_at), s.id),
    )
    placements: list[Placement] = []
    standing = 0
    previous: int | None = None
    for index, submission in enumerate(ordered, start=1):
        score = scores[submission.id]
        if score.value != previous:
            standing = index
            previous = score.value
        placements.append(
            Placement(
                submission_id=submission.id,
                user_id=submission.user_id,
                score=score.value,
                upvotes=score.upvotes,
                downvotes=score.downvotes,
                upvote_points=score.upvote_points,
                downvote_points=score.downvote_points,
                placement=index,
                standing=standing,
            )
        )
    return placements


def tally_round(
    submissions: Sequence[TallySubmission], votes: Iterable[TallyVote]
) -> list[Placement]:
    """Rank a round's submissions in a single pass over its votes.

    Raises:
        ValueError: If a vote references a submission outside the round.
    """
    received: dict[str, list[TallyVote]] = {s.id: [] for s in submissions}
    for vote in votes:
        if vote.submission_id not in received:
            raise ValueError(f"Vote for unknown submission {vote.submission_id}")
        received[vote.submission_id].append(vote)

    scores: dict[str, _Score] = {}
    for submission_id, cast in received.items():
        ups = [v for v in cast if v.vote_type != "downvote"]
        downs = [v for v in cast if v.vote_type == "downvote"]
        scores[submission_id] = _Score(
            upvotes=len(ups),
            downvotes=len(downs),
            upvote_points=sum(v.points for v in ups),
            downvote_points=sum(v.points for v in downs),
        )
    return _rank(submissions, scores)


class RoundTally:
    """Incremental tally, updated one vote at a time.

    ``ranking()`` always equals ``tally_round`` over the votes currently
    held, regardless of the order they were added or removed in.
    """

    def __init__(self, submissions: Iterable[TallySubmission]) -> None:
        self._submissions = {s.id: s for s in submissions}
        self._scores = {sid: _Score() for sid in self._submissions}
        self._votes: dict[tuple[str, str], TallyVote] = {}

    def add_vote(self, vote: TallyVote) -> None:
        if vote.submission_id not in self._submissions:
            raise ValueError(f"Vote for unknown submission {vote.submission_id}")
        key = (vote.submission_id, vote.user_id)
        if key in self._votes:
            raise ValueError(
                f"User {vote.user_id} already voted on submission {vote.submission_id}"
            )
        self._votes[key] = vote
        self._scores[vote.submission_id].apply(vote)

    def remove_vote(self, vote: TallyVote) -> None:
        existing = self._votes.pop((vote.submission_id, vote.user_id), None)
        if existing is None:
            raise ValueError(
                f"No vote by {vote.user_id} on submission {vote.submission_id}"
            )
        self._scores[existing.submission_id].apply(existing, sign=-1)

    def replace_ballot(self, user_id: str, ballot: Iterable[TallyVote]) -> None:
        """Swap every vote *user_id* holds for *ballot*."""
        for key in [k for k in self._votes if k[1] == user_id]:
            self.remove_vote(self._votes[key])
        for vote in ballot:
            self.add_vote(vote)

    @property
    def votes(self) -> list[TallyVote]:
        return list(self._votes.values())

    def ranking(self) -> list[Placement]:
        return _rank(self._submissions.values(), self._scores)


def member_results(round_id: str, placements: Iterable[Placement]) -> dict[str, MemberRoundResult]:
    """Fold submission placements into one result per member.

    A member's placement and standing are those of their best submission;
    points and vote counts are summed over all their submissions.
    """
    results: dict[str, MemberRoundResult] = {}
    for p in placements:
        current = results.get(p.user_id)
        if current is None:
            current = results[p.user_id] = MemberRoundResult(
                round_id=round_id,
                user_id=p.user_id,
                placement=p.placement,
                standing=p.standing,
            )
        current.placement = min(current.placement, p.placement)
        current.standing = min(current.standing, p.standing)
        current.points += p.score
        current.upvotes += p.upvotes
        current.downvotes += p.downvotes
        current.submissions += 1
    return results


def placement_history(histories: Iterable[RoundHistory]) -> dict[str, list[MemberRoundResult]]:
    """Per-member results in the order the rounds were given."""
    history: dict[str, list[MemberRoundResult]] = defaultdict(list)
    for rnd in histories:
        placements = tally_round(rnd.submissions, rnd.votes)
        for user_id, result in member_results(rnd.round_id, placements).items():
            history[user_id].append(result)
    return dict(history)


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


def _longest_win_streak(results: Iterable[MemberRoundResult]) -> int:
    longest = current = 0
    for result in results:
        if result.placement == 1:
            current += 1
            longest = max(longest, current)
        else:
            current = 0
    return longest


def aggregate_member_stats(histories: Sequence[RoundHistory]) -> dict[str, MemberStats]:
    """Compute every member's aggregates over *histories*.

    *histories* must be in chronological order; ``win_streak`` is the
    longest run of consecutive wins among the rounds a member entered.
    Members who only voted still get an entry (``rounds_played == 0``).
    """
    by_member = placement_history(histories)
    genres: dict[str, Counter[str]] = defaultdict(Counter)
    submissions: Counter[str] = Counter()
    cast: dict[str, Counter[str]] = defaultdict(Counter)

    for rnd in histories:
        for sub in rnd.submissions:
            submissions[sub.user_id] += 1
            genres[sub.user_id].update(sub.genres)
        for vote in rnd.votes:
            cast[vote.user_id][vote.vote_type] += 1

    stats: dict[str, MemberStats] = {}
    for user_id in sorted(set(by_member) | set(cast)):
        results = by_member.get(user_id, [])
        placements = [r.placement for r in results]
        ranked_genres = sorted(genres[user_id].items(), key=lambda item: (-item[1], item[0]))
        stats[user_id] = MemberStats(
            user_id=user_id,
            total_points=sum(r.points for r in results),
            wins=sum(1 for r in results if r.placement == 1),
            rounds_played=len(results),
            total_submissions=submissions[user_id],
            avg_placement=sum(placements) / len(placements) if placements else None,
            best_placement=min(placements) if placements else None,
            worst_placement=max(placements) if placements else None,
            upvotes_received=sum(r.upvotes for r in results),
            downvotes_received=sum(r.downvotes for r in results),
            votes_cast=sum(cast[user_id].values()),
            upvotes_cast=cast[user_id]["upvote"],
            downvotes_cast=cast[user_id]["downvote"],
            win_streak=_longest_win_streak(results),
            favorite_genres=[
                GenreCount(genre=g, count=c) for g, c in ranked_genres[:FAVORITE_GENRE_LIMIT]
            ],
        )
    return stats


def build_leaderboard(stats: Iterable[MemberStats]) -> list[LeaderboardEntry]:
    """Order members who entered at least one round.

    Total points descending, then wins descending, then average placement
    ascending, then user id.
    """
    entrants = [s for s in stats if s.rounds_played > 0]
    entrants.sort(
        key=lambda s: (
            -s.total_points,
            -s.wins,
            s.avg_placement if s.avg_placement is not None else math.inf,
            s.user_id,
        )
    )
    return [
        LeaderboardEntry(
            rank=rank,
            user_id=s.user_id,
            total_points=s.total_points,
            wins=s.wins,
            rounds_played=s.rounds_played,
            avg_placement=s.avg_placement,
            upvotes_received=s.upvotes_received,
            downvotes_received=s.downvotes_received,
        )
        for rank, s in enumerate(entrants, start=1)
    ]


def head_to_head(standings_1: Mapping[str, int], standings_2: Mapping[str, int]) -> HeadToHead:
    """Compare two members over the rounds both entered.

    Each mapping is round id -> standing. The lower standing wins a round;
    equal standings (equal scores) are a tie.
    """
    result = HeadToHead()
    for round_id in standings_1.keys() & standings_2.keys():
        result.common_rounds += 1
        a, b = standings_1[round_id], standings_2[round_id]
        if a < b:
            result.user1_wins += 1
        elif b < a:
            result.user2_wins += 1
        else:
            result.ties += 1
    return result


def standings_by_round(results: Iterable[MemberRoundResult]) -> dict[str, int]:
    return {r.round_id: r.standing for r in results}


def controversy_score(upvotes: int, downvotes: int) -> int:
    """``upvotes * downvotes`` — zero unless a submission drew both reactions.

    Symmetric in its arguments and non-decreasing in each of them.
    """
    return max(upvotes, 0) * max(downvotes, 0)


def most_controversial(
    histories: Iterable[RoundHistory], limit: int = 10
) -> list[ControversialSubmission]:
    """Submissions with at least one upvote and one downvote, most divisive first."""
    found: list[ControversialSubmission] = []
    for rnd in histories:
        for p in tally_round(rnd.submissions, rnd.votes):
            if p.upvotes >= 1 and p.downvotes >= 1:
                found.append(
                    ControversialSubmission(
                        submission_id=p.submission_id,
                        round_id=rnd.round_id,
                        user_id=p.user_id,
                        upvotes=p.upvotes,
                        downvotes=p.downvotes,
                        controversy_score=controversy_score(p.upvotes, p.downvotes),
                    )
                )
    found.sort(key=lambda c: (-c.controversy_score, c.submission_id))
    return found[:limit]


def submission_history(
    histories: Iterable[RoundHistory], user_id: str
) -> list[SubmissionHistoryEntry]:
    entries: list[SubmissionHistoryEntry] = []
    for rnd in histories:
        for p in tally_round(rnd.submissions, rnd.votes):
            if p.user_id == user_id:
                entries.append(
                    SubmissionHistoryEntry(
                        round_id=rnd.round_id,
                        submission_id=p.submission_id,
                        placement=p.placement,
                        standing=p.standing,
                        points=p.score,
                    )
                )
    return entries


def league_summary(histories: Sequence[RoundHistory], member_count: int) -> LeagueSummary:
    """League-wide participation figures over *histories*."""
    per_user: Counter[str] = Counter()
    votes = 0
    for rnd in histories:
        per_user.update(s.user_id for s in rnd.submissions)
        votes += len(rnd.votes)

    total_rounds = len(histories)
    total_submissions = sum(per_user.values())
    most_active = None
    if per_user:
        user_id, count = min(per_user.items(), key=lambda item: (-item[1], item[0]))
        most_active = MostActiveSubmitter(user_id=user_id, count=count)

    return LeagueSummary(
        total_rounds=total_rounds,
        total_submissions=total_submissions,
        unique_participants=len(per_user),
        total_votes_cast=votes,
        avg_submissions_per_round=total_submissions / total_rounds if total_rounds else 0.0,
        participation_rate=len(per_user) / member_count if member_count else 0.0,
        most_active_submitter=most_active,
    )


# ---------------------------------------------------------------------------
# Catalogue analytics
# ---------------------------------------------------------------------------


def _all_submissions(histories: Iterable[RoundHistory]) -> list[tuple[str, TallySubmission]]:
    return [(rnd.round_id, sub) for rnd in histories for sub in rnd.submissions]


def top_artists(histories: Iterable[RoundHistory], limit: int = TOP_LIMIT) -> list[ArtistCount]:
    """Artists by number of submissions, most submitted first, ties by name."""
    counts = Counter(sub.artist for _, sub in _all_submissions(histories))
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [ArtistCount(artist=a, submission_count=c) for a, c in ranked[:limit]]


def top_songs(histories: Iterable[RoundHistory], limit: int = TOP_LIMIT) -> list[SongCount]:
    """Tracks submitted more than once, matched on exact track name and artist."""
    counts = Counter((sub.track_name, sub.artist) for _, sub in _all_submissions(histories))
    repeated = [(key, c) for key, c in counts.items() if c > 1]
    repeated.sort(key=lambda item: (-item[1], item[0]))
    return [
        SongCount(track_name=track, artist=artist, submission_count=c)
        for (track, artist), c in repeated[:limit]
    ]


def search_submissions(
    histories: Iterable[RoundHistory], query: str, limit: int = SEARCH_LIMIT
) -> list[SubmissionSearchHit]:
    """Case-insensitive substring match on track name or artist, newest first."""
    needle = query.strip().casefold()
    if not needle:
        return []
    hits = [
        (round_id, sub)
        for round_id, sub in _all_submissions(histories)
        if needle in sub.track_name.casefold() or needle in sub.artist.casefold()
    ]
    hits.sort(key=lambda item: (as_utc(item[1].created_at), item[1].id), reverse=True)
    return [
        SubmissionSearchHit(
            submission_id=sub.id,
            round_id=round_id,
            user_id=sub.user_id,
            track_name=sub.track_name,
            artist=sub.artist,
            album=sub.album,
        )
        for round_id, sub in hits[:limit]
    ]
