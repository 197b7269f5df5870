"""Round lifecycle — the state machine, its write gates, and the deadline sweep.

State graph::

    draft -> submitting -> voting -> revealed -> archived
                  ^           |
                  +-----------+   (admin revert; discards every vote)

``can_transition`` is the only authority on legal edges. Every status
change goes through ``transition_round``, which writes with a
compare-and-set on the stored status: if two admins (or an admin and the
sweep) race on the same round, exactly one wins and the other gets
``Conflict``.

The gates (``ensure_can_submit``, ``ensure_can_vote``,
``ensure_can_discuss``) read only the round's status and the clock. Write
paths call them, then take the round's write lock with ``lock_round`` so a
transition committed in between is detected instead of ignored.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from enum import StrEnum

from musicleague.core.clock import as_utc, has_passed, resolve_now
from musicleague.core.errors import Conflict, FailedPrecondition, NotFound
from musicleague.core.membership import get_league, require_member, require_role
from musicleague.core.statistics import rebuild_statistics_cache
from musicleague.db.models import RoundRow
from musicleague.db.repository import Repository

logger = logging.getLogger(__name__)


class RoundStatus(StrEnum):
    """Round lifecycle states.

    The str mixin allows direct comparison with the raw status strings
    stored in the database.
    """

    DRAFT = "draft"
    SUBMITTING = "submitting"
    VOTING = "voting"
    REVEALED = "revealed"
    ARCHIVED = "archived"


ALLOWED_TRANSITIONS: dict[RoundStatus, frozenset[RoundStatus]] = {
    RoundStatus.DRAFT: frozenset({RoundStatus.SUBMITTING}),
    RoundStatus.SUBMITTING: frozenset({RoundStatus.VOTING}),
    RoundStatus.VOTING: frozenset({RoundStatus.REVEALED, RoundStatus.SUBMITTING}),
    RoundStatus.REVEALED: frozenset({RoundStatus.ARCHIVED}),
    RoundStatus.ARCHIVED: frozenset(),  # terminal
}

# The single forward successor of each non-terminal state.
NEXT_STATUS: dict[RoundStatus, RoundStatus] = {
    RoundStatus.DRAFT: RoundStatus.SUBMITTING,
    RoundStatus.SUBMITTING: RoundStatus.VOTING,
    RoundStatus.VOTING: RoundStatus.REVEALED,
    RoundStatus.REVEALED: RoundStatus.ARCHIVED,
}

SUBMISSION_STATUSES = frozenset({RoundStatus.SUBMITTING})
VOTING_STATUSES = frozenset({RoundStatus.VOTING})
DISCUSSION_STATUSES = frozenset({RoundStatus.VOTING, RoundStatus.REVEALED, RoundStatus.ARCHIVED})
FINISHED_STATUSES = frozenset({RoundStatus.REVEALED, RoundStatus.ARCHIVED})
CANCELLABLE_STATUSES = frozenset({RoundStatus.DRAFT, RoundStatus.SUBMITTING})

DEADLINE_FIELDS = ("submission_start", "submission_end", "voting_start", "voting_end")
EDITABLE_FIELDS = frozenset({"theme", "description", "season_id", *DEADLINE_FIELDS})


def can_transition(from_status: str, to_status: str) -> bool:
    """Return True if ``from_status -> to_status`` is an edge of the round graph."""
    try:
        current = RoundStatus(from_status)
        target = RoundStatus(to_status)
    except ValueError:
        return False
    return target in ALLOWED_TRANSITIONS[current]


def validate_deadlines(
    submission_start: datetime | None = None,
    submission_end: datetime | None = None,
    voting_start: datetime | None = None,
    voting_end: datetime | None = None,
) -> None:
    """Require ``submission_start <= submission_end <= voting_start <= voting_end``.

    Missing boundaries are skipped; the present ones must still be ordered.
    """
    present = [
        (name, as_utc(value))
        for name, value in zip(
            DEADLINE_FIELDS,
            (submission_start, submission_end, voting_start, voting_end),
            strict=True,
        )
        if value is not None
    ]
    for (earlier_name, earlier), (later_name, later) in zip(present, present[1:], strict=False):
        if earlier > later:  # type: ignore[operator]
            raise FailedPrecondition(f"{earlier_name} must not be after {later_name}")


# ---------------------------------------------------------------------------
# Gates
# ---------------------------------------------------------------------------


def ensure_can_submit(round_row: RoundRow, now: datetime | None = None) -> None:
    """Submissions are legal only while submitting, inside the submission window."""
    now = resolve_now(now)
    if round_row.status not in SUBMISSION_STATUSES:
        raise FailedPrecondition(
            f"Round is not accepting submissions (status: {round_row.status})"
        )
    start = as_utc(round_row.submission_start)
    if start is not None and now < start:
        raise FailedPrecondition("Submissions for this round have not opened yet")
    if has_passed(round_row.submission_end, now):
        raise FailedPrecondition("The submission deadline has passed")


def ensure_can_vote(round_row: RoundRow, now: datetime | None = None) -> None:
    """Votes are legal only while voting and before the voting deadline."""
    now = resolve_now(now)
    if round_row.status not in VOTING_STATUSES:
        raise FailedPrecondition(f"Round is not in voting phase (status: {round_row.status})")
    if has_passed(round_row.voting_end, now):
        raise FailedPrecondition("The voting deadline has passed")


def ensure_can_discuss(round_row: RoundRow) -> None:
    """Comments and reactions open once voting starts and never close."""
    if round_row.status not in DISCUSSION_STATUSES:
        raise FailedPrecondition(
            f"Comments and reactions open once voting starts (status: {round_row.status})"
        )


async def lock_round(
    repo: Repository, round_row: RoundRow, statuses: Iterable[str]
) -> None:
    """Serialize a write with the round's transitions, or fail if it already moved."""
    if not await repo.lock_round(round_row, statuses):
        await repo.session.refresh(round_row)
        raise FailedPrecondition(
            f"Round changed state while the request was processed (status: {round_row.status})"
        )


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


async def get_round(repo: Repository, round_id: str) -> RoundRow:
    round_row = await repo.get_round(round_id)
    if round_row is None:
        raise NotFound(f"Round {round_id} not found")
    return round_row


async def transition_round(
    repo: Repository,
    round_row: RoundRow,
    to_status: RoundStatus,
    trigger: str = "manual",
    now: datetime | None = None,
) -> RoundRow:
    """Validate and execute one edge of the round graph.

    Raises:
        FailedPrecondition: If the edge is not in ``ALLOWED_TRANSITIONS``.
        Conflict: If the stored status changed under us.
    """
    now = resolve_now(now)
    current = RoundStatus(round_row.status)
    if not can_transition(current, to_status):
        allowed = sorted(s.value for s in ALLOWED_TRANSITIONS[current])
        raise FailedPrecondition(
            f"Invalid round transition: {current.value} -> {to_status.value}. "
            f"Allowed: {allowed}"
        )

    is_revert = current == RoundStatus.VOTING and to_status == RoundStatus.SUBMITTING
    values: dict[str, object] = {}
    if to_status == RoundStatus.REVEALED:
        values["revealed_at"] = now
    if is_revert:
        # Deadlines already behind us would send the round straight back.
        for name in ("submission_end", "voting_start", "voting_end"):
            if has_passed(getattr(round_row, name), now):
                values[name] = None

    if not await repo.compare_and_set_round_status(
        round_row, current.value, to_status.value, **values
    ):
        raise Conflict(
            f"Round {round_row.id} changed state concurrently; expected {current.value}"
        )

    if is_revert:
        discarded = await repo.delete_round_votes(round_row.id)
        logger.info("round_votes_discarded round=%s count=%d", round_row.id, discarded)
    if to_status == RoundStatus.REVEALED:
        await rebuild_statistics_cache(repo, round_row.league_id)

    logger.info(
        "round_transition round=%s league=%s from=%s to=%s trigger=%s",
        round_row.id,
        round_row.league_id,
        current.value,
        to_status.value,
        trigger,
    )
    return round_row


async def advance_round(
    repo: Repository, round_id: str, actor_id: str, now: datetime | None = None
) -> RoundRow:
    """Admin action: move a round to its forward successor."""
    round_row = await get_round(repo, round_id)
    await require_role(repo, round_row.league_id, actor_id)
    current = RoundStatus(round_row.status)
    if current not in NEXT_STATUS:
        raise FailedPrecondition(f"Round is {current.value}; there is no next phase")
    return await transition_round(repo, round_row, NEXT_STATUS[current], trigger="admin", now=now)


async def revert_round(
    repo: Repository, round_id: str, actor_id: str, now: datetime | None = None
) -> RoundRow:
    """Admin action: send a voting round back to submitting, discarding all votes."""
    round_row = await get_round(repo, round_id)
    await require_role(repo, round_row.league_id, actor_id)
    return await transition_round(
        repo, round_row, RoundStatus.SUBMITTING, trigger="admin_revert", now=now
    )


async def set_round_status(
    repo: Repository,
    round_id: str,
    actor_id: str,
    status: str,
    now: datetime | None = None,
) -> RoundRow:
    """Admin action with an explicit target; only adjacent edges are accepted."""
    round_row = await get_round(repo, round_id)
    await require_role(repo, round_row.league_id, actor_id)
    try:
        target = RoundStatus(status)
    except ValueError as exc:
        raise FailedPrecondition(f"Unknown round status: {status}") from exc
    return await transition_round(repo, round_row, target, trigger="admin", now=now)


# ---------------------------------------------------------------------------
# Deadline sweep
# ---------------------------------------------------------------------------


def due_transition(
    round_row: RoundRow,
    submission_count: int,
    now: datetime,
    empty_round_policy: str = "hold",
) -> RoundStatus | None:
    """Decide where the sweep should take a round, or None to leave it.

    A closed submission window with zero submissions is held in
    ``submitting`` under the ``hold`` policy and taken all the way to
    ``archived`` under ``archive``.
    """
    status = round_row.status
    if status == RoundStatus.SUBMITTING and has_passed(round_row.submission_end, now):
        if round_row.voting_start is not None and not has_passed(round_row.voting_start, now):
            return None
        if submission_count == 0:
            return RoundStatus.ARCHIVED if empty_round_policy == "archive" else None
        return RoundStatus.VOTING
    if status == RoundStatus.VOTING and has_passed(round_row.voting_end, now):
        return RoundStatus.REVEALED
    return None


async def _walk_to(
    repo: Repository, round_row: RoundRow, target: RoundStatus, now: datetime
) -> None:
    while round_row.status != target:
        step = NEXT_STATUS[RoundStatus(round_row.status)]
        await transition_round(repo, round_row, step, trigger="sweep", now=now)


async def refresh_round(
    repo: Repository,
    round_row: RoundRow,
    now: datetime | None = None,
    empty_round_policy: str = "hold",
) -> RoundRow:
    """Lazy check-on-read: apply any deadline transition that is already due."""
    if round_row.status not in (RoundStatus.SUBMITTING, RoundStatus.VOTING):
        return round_row
    now = resolve_now(now)
    counts = await repo.count_submissions([round_row.id])
    target = due_transition(round_row, counts.get(round_row.id, 0), now, empty_round_policy)
    if target is not None:
        try:
            await _walk_to(repo, round_row, target, now)
        except Conflict:
            await repo.session.refresh(round_row)
    return round_row


async def sweep_deadlines(
    repo: Repository,
    now: datetime | None = None,
    empty_round_policy: str = "hold",
    league_id: str | None = None,
) -> list[tuple[str, str, str]]:
    """Advance every round whose deadline has passed.

    Returns ``(round_id, from_status, to_status)`` for each round moved.
    Rounds another writer moved first are skipped.
    """
    now = resolve_now(now)
    rounds = await repo.list_rounds_due_for_sweep(league_id)
    counts = await repo.count_submissions([r.id for r in rounds])
    moved: list[tuple[str, str, str]] = []
    for round_row in rounds:
        count = counts.get(round_row.id, 0)
        target = due_transition(round_row, count, now, empty_round_policy)
        if target is None:
            if round_row.status == RoundStatus.SUBMITTING and count == 0 and has_passed(
                round_row.submission_end, now
            ):
                logger.info("round_held_empty round=%s", round_row.id)
            continue
        before = round_row.status
        try:
            await _walk_to(repo, round_row, target, now)
        except Conflict:
            logger.info("sweep_skipped round=%s reason=concurrent_transition", round_row.id)
            continue
        moved.append((round_row.id, before, round_row.status))
    return moved


async def sweep_league(
    repo: Repository,
    league_id: str,
    actor_id: str,
    empty_round_policy: str = "hold",
    now: datetime | None = None,
) -> list[tuple[str, str, str]]:
    """Admin action: run the deadline sweep for one league right away."""
    await get_league(repo, league_id)
    await require_role(repo, league_id, actor_id)
    return await sweep_deadlines(
        repo, now=now, empty_round_policy=empty_round_policy, league_id=league_id
    )


# ---------------------------------------------------------------------------
# Round administration and queries
# ---------------------------------------------------------------------------


async def _check_season(repo: Repository, league_id: str, season_id: str | None) -> None:
    if season_id is None:
        return
    season = await repo.get_season(season_id)
    if season is None or season.league_id != league_id:
        raise NotFound(f"Season {season_id} not found in this league")


async def create_round(
    repo: Repository,
    league_id: str,
    actor_id: str,
    theme: str,
    description: str = "",
    season_id: str | None = None,
    submission_start: datetime | None = None,
    submission_end: datetime | None = None,
    voting_start: datetime | None = None,
    voting_end: datetime | None = None,
) -> RoundRow:
    await get_league(repo, league_id)
    await require_role(repo, league_id, actor_id)
    await _check_season(repo, league_id, season_id)
    validate_deadlines(submission_start, submission_end, voting_start, voting_end)
    round_row = await repo.create_round(
        league_id=league_id,
        theme=theme,
        created_by=actor_id,
        description=description,
        season_id=season_id,
        submission_start=as_utc(submission_start),
        submission_end=as_utc(submission_end),
        voting_start=as_utc(voting_start),
        voting_end=as_utc(voting_end),
    )
    logger.info("round_created round=%s league=%s by=%s", round_row.id, league_id, actor_id)
    return round_row


async def update_round(
    repo: Repository, round_id: str, actor_id: str, changes: dict[str, object]
) -> RoundRow:
    """Edit a round's theme, season or deadlines. Draft rounds only."""
    round_row = await get_round(repo, round_id)
    await require_role(repo, round_row.league_id, actor_id)
    if round_row.status != RoundStatus.DRAFT:
        raise FailedPrecondition("Rounds can only be edited while in draft")
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise FailedPrecondition(f"Fields cannot be edited: {sorted(unknown)}")
    if "season_id" in changes:
        await _check_season(repo, round_row.league_id, changes["season_id"])  # type: ignore[arg-type]

    merged = {name: changes.get(name, getattr(round_row, name)) for name in DEADLINE_FIELDS}
    validate_deadlines(**merged)  # type: ignore[arg-type]
    for name in DEADLINE_FIELDS:
        if name in changes:
            changes[name] = as_utc(changes[name])  # type: ignore[arg-type]
    await repo.update_round(round_row, **changes)
    logger.info("round_updated round=%s by=%s fields=%s", round_id, actor_id, sorted(changes))
    return round_row


async def cancel_round(repo: Repository, round_id: str, actor_id: str) -> None:
    """Delete a round that has not reached voting, with its submissions."""
    round_row = await get_round(repo, round_id)
    await require_role(repo, round_row.league_id, actor_id)
    if round_row.status not in CANCELLABLE_STATUSES:
        raise FailedPrecondition(
            f"Only draft or submitting rounds can be cancelled (status: {round_row.status})"
        )
    await lock_round(repo, round_row, CANCELLABLE_STATUSES)
    await repo.delete_round(round_row)
    logger.info("round_cancelled round=%s by=%s", round_id, actor_id)


async def view_round(
    repo: Repository,
    round_id: str,
    actor_id: str,
    now: datetime | None = None,
    empty_round_policy: str = "hold",
) -> RoundRow:
    round_row = await get_round(repo, round_id)
    await require_member(repo, round_row.league_id, actor_id)
    return await refresh_round(repo, round_row, now, empty_round_policy)


async def list_rounds(
    repo: Repository,
    league_id: str,
    actor_id: str,
    season_id: str | None = None,
    status: str | None = None,
    now: datetime | None = None,
    empty_round_policy: str = "hold",
) -> list[tuple[RoundRow, int]]:
    """Rounds of a league, newest first, with their submission counts."""
    await get_league(repo, league_id)
    await require_member(repo, league_id, actor_id)
    await sweep_deadlines(repo, now, empty_round_policy, league_id=league_id)
    rounds = await repo.list_rounds(
        league_id, season_id=season_id, statuses=[status] if status else None
    )
    counts = await repo.count_submissions([r.id for r in rounds])
    return [(r, counts.get(r.id, 0)) for r in rounds]


async def get_active_round(
    repo: Repository,
    league_id: str,
    actor_id: str,
    now: datetime | None = None,
    empty_round_policy: str = "hold",
) -> RoundRow | None:
    await get_league(repo, league_id)
    await require_member(repo, league_id, actor_id)
    await sweep_deadlines(repo, now, empty_round_policy, league_id=league_id)
    return await repo.get_open_round(league_id)
