"""Tally and statistics models.

Everything here is derived from round history and can be recomputed at
any time. See ``musicleague.core.tally`` for the rules that produce them.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class Placement(BaseModel):
    """A submission's result within one round.

    ``placement`` is the distinct 1-based position after tie-breaking.
    ``standing`` is the competition rank before tie-breaking: one plus the
    number of submissions with a strictly higher score, so equal scores
    share a standing.
    """

    submission_id: str
    user_id: str
    score: int = 0
    upvotes: int = 0
    downvotes: int = 0
    upvote_points: int = 0
    downvote_points: int = 0
    placement: int
    standing: int


class GenreCount(BaseModel):
    genre: str
    count: int


class MemberStats(BaseModel):
    """Aggregate statistics for one member over a set of rounds."""

    user_id: str
    total_points: int = 0
    wins: int = 0
    rounds_played: int = 0
    total_submissions: int = 0
    avg_placement: float | None = None
    best_placement: int | None = None
    worst_placement: int | None = None
    upvotes_received: int = 0
    downvotes_received: int = 0
    votes_cast: int = 0
    upvotes_cast: int = 0
    downvotes_cast: int = 0
    win_streak: int = 0
    favorite_genres: list[GenreCount] = Field(default_factory=list)


class LeaderboardEntry(BaseModel):
    rank: int
    user_id: str
    total_points: int
    wins: int
    rounds_played: int
    avg_placement: float | None = None
    upvotes_received: int = 0
    downvotes_received: int = 0


class HeadToHead(BaseModel):
    user1_wins: int = 0
    user2_wins: int = 0
    ties: int = 0
    common_rounds: int = 0


class ControversialSubmission(BaseModel):
    submission_id: str
    round_id: str
    user_id: str
    upvotes: int
    downvotes: int
    controversy_score: int


class MostActiveSubmitter(BaseModel):
    user_id: str
    count: int


class LeagueSummary(BaseModel):
    total_rounds: int = 0
    total_submissions: int = 0
    unique_participants: int = 0
    total_votes_cast: int = 0
    avg_submissions_per_round: float = 0.0
    participation_rate: float = 0.0
    most_active_submitter: MostActiveSubmitter | None = None


class SubmissionHistoryEntry(BaseModel):
    round_id: str
    submission_id: str
    placement: int
    standing: int
    points: int


class ArtistCount(BaseModel):
    artist: str
    submission_count: int


class SongCount(BaseModel):
    track_name: str
    artist: str
    submission_count: int


class SubmissionSearchHit(BaseModel):
    submission_id: str
    round_id: str
    user_id: str
    track_name: str
    artist: str
    album: str | None = None
