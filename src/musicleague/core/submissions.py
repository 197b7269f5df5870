"""Submission and vote store — tracks, ballots, reactions, and comments.

Every write here follows the same sequence: resolve the round, check the
caller's membership, consult the round gate, take the round's write lock,
then mutate. The lock makes the write and any concurrent status change
mutually exclusive, so a vote can never land in a round that has already
been revealed.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Mapping, Sequence
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from musicleague.core.clock import resolve_now
from musicleague.core.errors import Conflict, FailedPrecondition, Forbidden, NotFound
from musicleague.core.membership import league_settings, require_member
from musicleague.core.rounds import (
    FINISHED_STATUSES,
    SUBMISSION_STATUSES,
    VOTING_STATUSES,
    RoundStatus,
    ensure_can_discuss,
    ensure_can_submit,
    ensure_can_vote,
    get_round,
    lock_round,
    refresh_round,
)
from musicleague.db.models import (
    CommentRow,
    LeagueMemberRow,
    RoundRow,
    SubmissionRow,
    VoteRow,
)
from musicleague.db.repository import Repository
from musicleague.models.league import ADMIN_ROLES, LeagueSettings
from musicleague.models.round import BallotEntry, TrackInput

logger = logging.getLogger(__name__)

MAX_COMMENT_LENGTH = 2000


async def _league_settings(repo: Repository, league_id: str) -> LeagueSettings:
    league = await repo.get_league(league_id)
    if league is None:
        raise NotFound(f"League {league_id} not found")
    return league_settings(league)


# ---------------------------------------------------------------------------
# Submissions
# ---------------------------------------------------------------------------


async def submit_track(
    repo: Repository,
    round_id: str,
    user_id: str,
    track: TrackInput,
    now: datetime | None = None,
) -> SubmissionRow:
    """Enter a track into a round that is accepting submissions."""
    round_row = await get_round(repo, round_id)
    await require_member(repo, round_row.league_id, user_id)
    ensure_can_submit(round_row, now)
    settings = await _league_settings(repo, round_row.league_id)
    await lock_round(repo, round_row, SUBMISSION_STATUSES)

    existing = await repo.list_user_submissions(round_id, user_id)
    if len(existing) >= settings.max_submissions_per_member:
        raise FailedPrecondition(
            "You have already submitted to this round"
            if settings.max_submissions_per_member == 1
            else f"You can submit at most {settings.max_submissions_per_member} tracks"
        )
    taken = {s.slot for s in existing}
    slot = next(n for n in range(1, settings.max_submissions_per_member + 1) if n not in taken)

    try:
        submission = await repo.create_submission(round_id, user_id, slot, **track.model_dump())
    except IntegrityError as exc:
        raise FailedPrecondition("You have already submitted to this round") from exc

    logger.info(
        "submission_created round=%s submission=%s user=%s slot=%d",
        round_id,
        submission.id,
        user_id,
        slot,
    )
    return submission


async def _own_submission(
    repo: Repository, submission_id: str, user_id: str
) -> tuple[SubmissionRow, RoundRow]:
    submission = await repo.get_submission(submission_id)
    if submission is None:
        raise NotFound(f"Submission {submission_id} not found")
    round_row = await get_round(repo, submission.round_id)
    await require_member(repo, round_row.league_id, user_id)
    if submission.user_id != user_id:
        raise Forbidden("You can only change your own submission")
    return submission, round_row


async def update_submission(
    repo: Repository,
    submission_id: str,
    user_id: str,
    track: TrackInput,
    now: datetime | None = None,
) -> SubmissionRow:
    submission, round_row = await _own_submission(repo, submission_id, user_id)
    ensure_can_submit(round_row, now)
    await lock_round(repo, round_row, SUBMISSION_STATUSES)
    await repo.update_submission(submission, **track.model_dump())
    logger.info("submission_updated submission=%s user=%s", submission_id, user_id)
    return submission


async def delete_submission(
    repo: Repository, submission_id: str, user_id: str, now: datetime | None = None
) -> None:
    submission, round_row = await _own_submission(repo, submission_id, user_id)
    ensure_can_submit(round_row, now)
    await lock_round(repo, round_row, SUBMISSION_STATUSES)
    await repo.delete_submission(submission)
    logger.info("submission_deleted submission=%s user=%s", submission_id, user_id)


async def list_submissions(
    repo: Repository,
    round_id: str,
    user_id: str,
    now: datetime | None = None,
    empty_round_policy: str = "hold",
) -> tuple[list[SubmissionRow], bool]:
    """Submissions visible to *user_id*, and whether submitters must be masked.

    Before voting a member sees only their own entries. During voting
    everyone's entries are visible, with submitters hidden when the league
    plays anonymously. After reveal everything is public to members.
    """
    round_row = await get_round(repo, round_id)
    await require_member(repo, round_row.league_id, user_id)
    await refresh_round(repo, round_row, now, empty_round_policy)
    if round_row.status in (RoundStatus.DRAFT, RoundStatus.SUBMITTING):
        return await repo.list_user_submissions(round_id, user_id), False
    submissions = await repo.list_submissions(round_id)
    hide = round_row.status == RoundStatus.VOTING and (
        (await _league_settings(repo, round_row.league_id)).anonymous_submissions
    )
    return submissions, hide


# ---------------------------------------------------------------------------
# Votes
# ---------------------------------------------------------------------------


def validate_ballot(
    ballot: Sequence[BallotEntry],
    submissions: Mapping[str, SubmissionRow],
    voter_id: str,
    settings: LeagueSettings,
) -> None:
    """Check a whole ballot against the round and the league's voting rules."""
    if not ballot:
        raise FailedPrecondition("A ballot needs at least one vote")
    counts = Counter(entry.submission_id for entry in ballot)
    if any(n > 1 for n in counts.values()):
        raise FailedPrecondition("You can vote on each submission only once")

    for entry in ballot:
        submission = submissions.get(entry.submission_id)
        if submission is None:
            raise FailedPrecondition(
                f"Submission {entry.submission_id} is not part of this round"
            )
        if submission.user_id == voter_id:
            raise FailedPrecondition("You cannot vote for your own submission")

    ups = [e for e in ballot if e.vote_type == "upvote"]
    downs = [e for e in ballot if e.vote_type == "downvote"]

    if len(ups) > settings.max_upvotes:
        raise FailedPrecondition(f"You can cast at most {settings.max_upvotes} upvotes")
    if downs and not settings.downvoting_enabled:
        raise FailedPrecondition("Downvoting is not enabled in this league")
    if len(downs) > settings.max_downvotes:
        raise FailedPrecondition(f"You can cast at most {settings.max_downvotes} downvotes")

    if settings.voting_style == "single_pick":
        if len(ups) > 1 or any(e.points != 1 for e in ups):
            raise FailedPrecondition("Single pick voting allows one upvote worth 1 point")
    elif settings.voting_style == "rank":
        given = sorted((e.points for e in ups), reverse=True)
        if given != settings.upvote_points[: len(ups)]:
            raise FailedPrecondition(
                f"Ranked votes must use points {settings.upvote_points[: len(ups)]}"
            )
    else:
        allowed = set(settings.upvote_points)
        if any(e.points not in allowed for e in ups):
            raise FailedPrecondition(f"Upvote points must be one of {sorted(allowed)}")

    allowed_down = set(settings.downvote_points)
    if any(e.points not in allowed_down for e in downs):
        raise FailedPrecondition(f"Downvote points must be one of {sorted(allowed_down)}")


async def cast_votes(
    repo: Repository,
    round_id: str,
    user_id: str,
    ballot: Sequence[BallotEntry],
    now: datetime | None = None,
) -> list[VoteRow]:
    """Replace the caller's whole ballot for a round."""
    round_row = await get_round(repo, round_id)
    await require_member(repo, round_row.league_id, user_id)
    ensure_can_vote(round_row, now)
    settings = await _league_settings(repo, round_row.league_id)
    await lock_round(repo, round_row, VOTING_STATUSES)

    submissions = {s.id: s for s in await repo.list_submissions(round_id)}
    validate_ballot(ballot, submissions, user_id, settings)

    await repo.delete_user_votes(round_id, user_id)
    votes = [
        VoteRow(
            round_id=round_id,
            submission_id=entry.submission_id,
            user_id=user_id,
            vote_type=entry.vote_type,
            points=entry.points,
        )
        for entry in ballot
    ]
    try:
        await repo.add_votes(votes)
    except IntegrityError as exc:
        raise Conflict("Your ballot changed concurrently; try again") from exc

    logger.info(
        "ballot_cast round=%s user=%s upvotes=%d downvotes=%d",
        round_id,
        user_id,
        sum(1 for v in votes if v.vote_type == "upvote"),
        sum(1 for v in votes if v.vote_type == "downvote"),
    )
    return votes


async def clear_votes(
    repo: Repository, round_id: str, user_id: str, now: datetime | None = None
) -> int:
    round_row = await get_round(repo, round_id)
    await require_member(repo, round_row.league_id, user_id)
    ensure_can_vote(round_row, now)
    await lock_round(repo, round_row, VOTING_STATUSES)
    removed = await repo.delete_user_votes(round_id, user_id)
    logger.info("ballot_cleared round=%s user=%s removed=%d", round_id, user_id, removed)
    return removed


async def get_my_votes(repo: Repository, round_id: str, user_id: str) -> list[VoteRow]:
    round_row = await get_round(repo, round_id)
    await require_member(repo, round_row.league_id, user_id)
    return await repo.list_user_votes(round_id, user_id)


async def list_round_votes(repo: Repository, round_id: str, user_id: str) -> list[VoteRow]:
    """Every vote of a round. Ballots stay secret until reveal."""
    round_row = await get_round(repo, round_id)
    await require_member(repo, round_row.league_id, user_id)
    if round_row.status not in FINISHED_STATUSES:
        raise FailedPrecondition("Votes are visible once the round is revealed")
    return await repo.list_votes(round_id)


# ---------------------------------------------------------------------------
# Reactions and comments
# ---------------------------------------------------------------------------


async def _discussion_context(
    repo: Repository, submission_id: str, user_id: str
) -> tuple[SubmissionRow, RoundRow, LeagueMemberRow]:
    submission = await repo.get_submission(submission_id)
    if submission is None:
        raise NotFound(f"Submission {submission_id} not found")
    round_row = await get_round(repo, submission.round_id)
    member = await require_member(repo, round_row.league_id, user_id)
    return submission, round_row, member


async def toggle_reaction(
    repo: Repository, submission_id: str, user_id: str, emoji: str
) -> bool:
    """Add the reaction if absent, remove it if present. Returns True when added.

    Not idempotent on its own: a client retrying after a timeout must know
    whether the first call landed.
    """
    _, round_row, _ = await _discussion_context(repo, submission_id, user_id)
    ensure_can_discuss(round_row)
    existing = await repo.get_reaction(submission_id, user_id, emoji)
    if existing is not None:
        await repo.delete_reaction(existing)
        logger.info("reaction_removed submission=%s user=%s", submission_id, user_id)
        return False
    try:
        await repo.add_reaction(submission_id, user_id, emoji)
    except IntegrityError as exc:
        raise Conflict("Reaction changed concurrently; refresh and try again") from exc
    logger.info("reaction_added submission=%s user=%s", submission_id, user_id)
    return True


async def list_reactions(repo: Repository, submission_id: str, user_id: str) -> list[dict]:
    """Reaction counts per emoji, most used first."""
    await _discussion_context(repo, submission_id, user_id)
    counts: Counter[str] = Counter()
    mine: set[str] = set()
    for reaction in await repo.list_reactions(submission_id):
        counts[reaction.emoji] += 1
        if reaction.user_id == user_id:
            mine.add(reaction.emoji)
    return [
        {"emoji": emoji, "count": count, "user_reacted": emoji in mine}
        for emoji, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    ]


async def add_comment(
    repo: Repository, submission_id: str, user_id: str, content: str
) -> CommentRow:
    _, round_row, _ = await _discussion_context(repo, submission_id, user_id)
    ensure_can_discuss(round_row)
    content = content.strip()
    if not content or len(content) > MAX_COMMENT_LENGTH:
        raise FailedPrecondition(f"Comments must be 1 to {MAX_COMMENT_LENGTH} characters")
    comment = await repo.create_comment(submission_id, user_id, content)
    logger.info("comment_added submission=%s comment=%s user=%s", submission_id, comment.id, user_id)
    return comment


async def list_comments(repo: Repository, submission_id: str, user_id: str) -> list[CommentRow]:
    """Comments oldest first. Hidden comments are shown to owners and admins only."""
    _, _, member = await _discussion_context(repo, submission_id, user_id)
    return await repo.list_comments(submission_id, include_hidden=member.role in ADMIN_ROLES)


async def _comment_context(
    repo: Repository, comment_id: str, user_id: str
) -> tuple[CommentRow, LeagueMemberRow]:
    comment = await repo.get_comment(comment_id)
    if comment is None:
        raise NotFound(f"Comment {comment_id} not found")
    _, _, member = await _discussion_context(repo, comment.submission_id, user_id)
    return comment, member


async def delete_comment(repo: Repository, comment_id: str, user_id: str) -> None:
    comment, member = await _comment_context(repo, comment_id, user_id)
    if comment.user_id != user_id and member.role not in ADMIN_ROLES:
        raise Forbidden("You can only delete your own comments")
    await repo.delete_comment(comment)
    logger.info("comment_deleted comment=%s by=%s", comment_id, user_id)


async def hide_comment(
    repo: Repository, comment_id: str, user_id: str, hidden: bool = True
) -> CommentRow:
    comment, member = await _comment_context(repo, comment_id, user_id)
    if member.role not in ADMIN_ROLES:
        raise Forbidden("Only league owners and admins can hide comments")
    await repo.set_comment_hidden(comment, hidden)
    logger.info("comment_visibility comment=%s hidden=%s by=%s", comment_id, hidden, user_id)
    return comment
