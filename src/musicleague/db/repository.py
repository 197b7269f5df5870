"""Repository pattern for database access.

Wraps SQLAlchemy async sessions. The moderation log is append-only: there
is no method to update or delete an entry. Invite capacity and round status
change only through conditional UPDATEs (``claim_invite_use``,
``compare_and_set_round_status``, ``lock_round``) so two concurrent
writers can never both act on the same observed state.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime

from sqlalchemy import Delete, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from musicleague.db.models import (
    CommentRow,
    InviteRow,
    LeagueMemberRow,
    LeagueRow,
    MemberStatisticsRow,
    ModerationLogRow,
    ReactionRow,
    RoundRow,
    SeasonRow,
    SubmissionRow,
    VoteRow,
)


class Repository:
    """Async repository for all database operations."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # --- Leagues ---

    async def create_league(
        self,
        name: str,
        owner_id: str,
        description: str = "",
        visibility: str = "private",
        settings: dict | None = None,
    ) -> LeagueRow:
        row = LeagueRow(
            name=name,
            owner_id=owner_id,
            description=description,
            visibility=visibility,
            settings=settings or {},
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_league(self, league_id: str) -> LeagueRow | None:
        return await self.session.get(LeagueRow, league_id)

    async def list_leagues_for_user(self, user_id: str) -> list[LeagueRow]:
        """Leagues where *user_id* holds an active membership, newest first."""
        stmt = (
            select(LeagueRow)
            .join(LeagueMemberRow, LeagueMemberRow.league_id == LeagueRow.id)
            .where(
                LeagueMemberRow.user_id == user_id,
                LeagueMemberRow.banned_at.is_(None),
            )
            .order_by(LeagueRow.created_at.desc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def update_league(self, league: LeagueRow, **fields: object) -> LeagueRow:
        for key, value in fields.items():
            setattr(league, key, value)
        await self.session.flush()
        return league

    # --- Members ---

    async def add_member(self, league_id: str, user_id: str, role: str = "member") -> LeagueMemberRow:
        row = LeagueMemberRow(league_id=league_id, user_id=user_id, role=role)
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_active_member(self, league_id: str, user_id: str) -> LeagueMemberRow | None:
        stmt = select(LeagueMemberRow).where(
            LeagueMemberRow.league_id == league_id,
            LeagueMemberRow.user_id == user_id,
            LeagueMemberRow.banned_at.is_(None),
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_current_ban(self, league_id: str, user_id: str) -> LeagueMemberRow | None:
        """The ban row still in force for *user_id*, if any."""
        stmt = (
            select(LeagueMemberRow)
            .where(
                LeagueMemberRow.league_id == league_id,
                LeagueMemberRow.user_id == user_id,
                LeagueMemberRow.banned_at.is_not(None),
                LeagueMemberRow.unbanned_at.is_(None),
            )
            .order_by(LeagueMemberRow.banned_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_member_rows(self, league_id: str, user_id: str) -> list[LeagueMemberRow]:
        """Every membership row for a user in a league, including ban history."""
        stmt = (
            select(LeagueMemberRow)
            .where(
                LeagueMemberRow.league_id == league_id,
                LeagueMemberRow.user_id == user_id,
            )
            .order_by(LeagueMemberRow.joined_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_active_members(self, league_id: str) -> list[LeagueMemberRow]:
        stmt = (
            select(LeagueMemberRow)
            .where(
                LeagueMemberRow.league_id == league_id,
                LeagueMemberRow.banned_at.is_(None),
            )
            .order_by(LeagueMemberRow.joined_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_banned_members(self, league_id: str) -> list[LeagueMemberRow]:
        stmt = (
            select(LeagueMemberRow)
            .where(
                LeagueMemberRow.league_id == league_id,
                LeagueMemberRow.banned_at.is_not(None),
                LeagueMemberRow.unbanned_at.is_(None),
            )
            .order_by(LeagueMemberRow.banned_at.desc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_active_members(self, league_id: str) -> int:
        stmt = select(func.count(LeagueMemberRow.id)).where(
            LeagueMemberRow.league_id == league_id,
            LeagueMemberRow.banned_at.is_(None),
        )
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def set_member_role(self, member: LeagueMemberRow, role: str) -> None:
        member.role = role
        await self.session.flush()

    async def mark_banned(self, member: LeagueMemberRow, when: datetime) -> None:
        member.banned_at = when
        await self.session.flush()

    async def mark_unbanned(self, member: LeagueMemberRow, when: datetime) -> None:
        member.unbanned_at = when
        await self.session.flush()

    async def delete_member(self, member: LeagueMemberRow) -> None:
        await self.session.delete(member)
        await self.session.flush()

    # --- Moderation log (append-only) ---

    async def next_moderation_sequence(self, league_id: str) -> int:
        await self.session.execute(
            select(LeagueRow.id).where(LeagueRow.id == league_id).with_for_update()
        )
        stmt = select(func.coalesce(func.max(ModerationLogRow.sequence_number), 0)).where(
            ModerationLogRow.league_id == league_id
        )
        result = await self.session.execute(stmt)
        return result.scalar_one() + 1

    async def append_moderation_entry(
        self,
        league_id: str,
        performed_by: str,
        target_user_id: str,
        action: str,
        reason: str | None = None,
        details: dict | None = None,
    ) -> ModerationLogRow:
        """Append the next entry of a league's ledger.

        The league row is locked first on backends that support
        ``SELECT ... FOR UPDATE``; two writers that still pick the same
        sequence number hit ``uq_moderation_sequence`` and the second one
        gets an ``IntegrityError``.
        """
        row = ModerationLogRow(
            league_id=league_id,
            sequence_number=await self.next_moderation_sequence(league_id),
            performed_by=performed_by,
            target_user_id=target_user_id,
            action=action,
            reason=reason,
            details=details,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def list_moderation_log(
        self,
        league_id: str,
        limit: int = 50,
        before_sequence: int | None = None,
    ) -> list[ModerationLogRow]:
        """Newest entries first, optionally only those older than a cursor."""
        stmt = select(ModerationLogRow).where(ModerationLogRow.league_id == league_id)
        if before_sequence is not None:
            stmt = stmt.where(ModerationLogRow.sequence_number < before_sequence)
        stmt = stmt.order_by(ModerationLogRow.sequence_number.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # --- Invites ---

    async def create_invite(
        self,
        league_id: str,
        code: str,
        link_token: str,
        created_by: str,
        expires_at: datetime | None = None,
        max_uses: int | None = None,
    ) -> InviteRow:
        row = InviteRow(
            league_id=league_id,
            code=code,
            link_token=link_token,
            created_by=created_by,
            expires_at=expires_at,
            max_uses=max_uses,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_invite(self, invite_id: str) -> InviteRow | None:
        return await self.session.get(InviteRow, invite_id)

    async def get_invite_by_token(self, link_token: str) -> InviteRow | None:
        stmt = select(InviteRow).where(InviteRow.link_token == link_token)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_invite(self, code_or_token: str) -> InviteRow | None:
        """Look an invite up by its short code or its link token."""
        stmt = select(InviteRow).where(
            or_(InviteRow.code == code_or_token, InviteRow.link_token == code_or_token)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def list_invites(self, league_id: str) -> list[InviteRow]:
        stmt = (
            select(InviteRow)
            .where(InviteRow.league_id == league_id)
            .order_by(InviteRow.created_at.desc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def delete_invite(self, invite: InviteRow) -> None:
        await self.session.delete(invite)
        await self.session.flush()

    async def claim_invite_use(self, invite: InviteRow) -> bool:
        """Consume one use of *invite* if capacity remains.

        A single conditional UPDATE: the capacity check and the increment
        happen in one statement, so at most ``max_uses`` callers ever see
        ``True``. Returns False when the invite is exhausted.
        """
        stmt = (
            update(InviteRow)
            .where(
                InviteRow.id == invite.id,
                or_(InviteRow.max_uses.is_(None), InviteRow.uses < InviteRow.max_uses),
            )
            .values(uses=InviteRow.uses + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            return False
        await self.session.refresh(invite)
        return True

    # --- Seasons ---

    async def create_season(
        self,
        league_id: str,
        name: str,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> SeasonRow:
        stmt = select(func.coalesce(func.max(SeasonRow.number), 0)).where(
            SeasonRow.league_id == league_id
        )
        result = await self.session.execute(stmt)
        row = SeasonRow(
            league_id=league_id,
            name=name,
            number=result.scalar_one() + 1,
            start_date=start_date,
            end_date=end_date,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_season(self, season_id: str) -> SeasonRow | None:
        return await self.session.get(SeasonRow, season_id)

    async def list_seasons(self, league_id: str) -> list[SeasonRow]:
        stmt = (
            select(SeasonRow)
            .where(SeasonRow.league_id == league_id)
            .order_by(SeasonRow.number.desc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_active_season(self, league_id: str) -> SeasonRow | None:
        stmt = (
            select(SeasonRow)
            .where(SeasonRow.league_id == league_id, SeasonRow.status == "active")
            .order_by(SeasonRow.number.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def update_season_status(self, season: SeasonRow, status: str) -> None:
        season.status = status
        await self.session.flush()

    async def update_season(self, season: SeasonRow, **fields: object) -> SeasonRow:
        for key, value in fields.items():
            setattr(season, key, value)
        await self.session.flush()
        return season

    async def delete_season(self, season: SeasonRow) -> None:
        await self.session.delete(season)
        await self.session.flush()

    async def count_season_rounds(self, season_id: str) -> int:
        stmt = select(func.count(RoundRow.id)).where(RoundRow.season_id == season_id)
        result = await self.session.execute(stmt)
        return result.scalar_one()

    # --- Rounds ---

    async def create_round(self, league_id: str, theme: str, created_by: str, **fields: object) -> RoundRow:
        row = RoundRow(league_id=league_id, theme=theme, created_by=created_by, **fields)
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_round(self, round_id: str) -> RoundRow | None:
        return await self.session.get(RoundRow, round_id)

    async def list_rounds(
        self,
        league_id: str,
        season_id: str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[RoundRow]:
        stmt = select(RoundRow).where(RoundRow.league_id == league_id)
        if season_id is not None:
            stmt = stmt.where(RoundRow.season_id == season_id)
        if statuses is not None:
            stmt = stmt.where(RoundRow.status.in_(list(statuses)))
        stmt = stmt.order_by(RoundRow.created_at.desc())
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_open_round(self, league_id: str) -> RoundRow | None:
        """The most recent round accepting submissions or votes."""
        stmt = (
            select(RoundRow)
            .where(
                RoundRow.league_id == league_id,
                RoundRow.status.in_(["submitting", "voting"]),
            )
            .order_by(RoundRow.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_rounds_due_for_sweep(self, league_id: str | None = None) -> list[RoundRow]:
        stmt = select(RoundRow).where(RoundRow.status.in_(["submitting", "voting"]))
        if league_id is not None:
            stmt = stmt.where(RoundRow.league_id == league_id)
        stmt = stmt.order_by(RoundRow.created_at)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_finished_rounds(
        self, league_id: str, season_id: str | None = None
    ) -> list[RoundRow]:
        """Revealed and archived rounds in chronological order."""
        stmt = select(RoundRow).where(
            RoundRow.league_id == league_id,
            RoundRow.status.in_(["revealed", "archived"]),
        )
        if season_id is not None:
            stmt = stmt.where(RoundRow.season_id == season_id)
        stmt = stmt.order_by(RoundRow.revealed_at, RoundRow.created_at, RoundRow.id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def update_round(self, round_row: RoundRow, **fields: object) -> RoundRow:
        for key, value in fields.items():
            setattr(round_row, key, value)
        await self.session.flush()
        return round_row

    async def compare_and_set_round_status(
        self,
        round_row: RoundRow,
        expected: str,
        new_status: str,
        **values: object,
    ) -> bool:
        """Move a round from *expected* to *new_status* if nobody else moved it first.

        Returns False (and changes nothing) when the stored status is no
        longer *expected*. On success *round_row* is refreshed.
        """
        stmt = (
            update(RoundRow)
            .where(RoundRow.id == round_row.id, RoundRow.status == expected)
            .values(status=new_status, lock_version=RoundRow.lock_version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            return False
        await self.session.refresh(round_row)
        return True

    async def lock_round(self, round_row: RoundRow, statuses: Iterable[str]) -> bool:
        """Take the round's write lock, provided it is still in one of *statuses*.

        Bumps ``lock_version`` so writes to a round's submissions and votes
        serialize with its status transitions for the rest of the
        transaction.
        """
        stmt = (
            update(RoundRow)
            .where(RoundRow.id == round_row.id, RoundRow.status.in_(list(statuses)))
            .values(lock_version=RoundRow.lock_version + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            return False
        await self.session.refresh(round_row)
        return True

    async def _bulk_delete(self, stmt: Delete) -> int:
        result = await self.session.execute(stmt.execution_options(synchronize_session=False))
        return result.rowcount

    async def delete_round(self, round_row: RoundRow) -> None:
        submission_ids = select(SubmissionRow.id).where(SubmissionRow.round_id == round_row.id)
        await self._bulk_delete(
            delete(ReactionRow).where(ReactionRow.submission_id.in_(submission_ids))
        )
        await self._bulk_delete(
            delete(CommentRow).where(CommentRow.submission_id.in_(submission_ids))
        )
        await self._bulk_delete(delete(VoteRow).where(VoteRow.round_id == round_row.id))
        await self._bulk_delete(delete(SubmissionRow).where(SubmissionRow.round_id == round_row.id))
        await self.session.delete(round_row)
        await self.session.flush()

    # --- Submissions ---

    async def create_submission(
        self, round_id: str, user_id: str, slot: int, **track: object
    ) -> SubmissionRow:
        row = SubmissionRow(round_id=round_id, user_id=user_id, slot=slot, **track)
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_submission(self, submission_id: str) -> SubmissionRow | None:
        return await self.session.get(SubmissionRow, submission_id)

    async def list_submissions(self, round_id: str) -> list[SubmissionRow]:
        stmt = (
            select(SubmissionRow)
            .where(SubmissionRow.round_id == round_id)
            .order_by(SubmissionRow.created_at, SubmissionRow.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_submissions_for_rounds(self, round_ids: Sequence[str]) -> list[SubmissionRow]:
        if not round_ids:
            return []
        stmt = select(SubmissionRow).where(SubmissionRow.round_id.in_(round_ids))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_user_submissions(self, round_id: str, user_id: str) -> list[SubmissionRow]:
        stmt = (
            select(SubmissionRow)
            .where(SubmissionRow.round_id == round_id, SubmissionRow.user_id == user_id)
            .order_by(SubmissionRow.slot)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_submissions(self, round_ids: Sequence[str]) -> dict[str, int]:
        """Submission counts keyed by round id (rounds with none are omitted)."""
        if not round_ids:
            return {}
        stmt = (
            select(SubmissionRow.round_id, func.count(SubmissionRow.id))
            .where(SubmissionRow.round_id.in_(round_ids))
            .group_by(SubmissionRow.round_id)
        )
        result = await self.session.execute(stmt)
        return {round_id: count for round_id, count in result.all()}

    async def update_submission(self, submission: SubmissionRow, **fields: object) -> SubmissionRow:
        for key, value in fields.items():
            setattr(submission, key, value)
        await self.session.flush()
        return submission

    async def delete_submission(self, submission: SubmissionRow) -> None:
        await self._bulk_delete(delete(VoteRow).where(VoteRow.submission_id == submission.id))
        await self._bulk_delete(
            delete(ReactionRow).where(ReactionRow.submission_id == submission.id)
        )
        await self._bulk_delete(
            delete(CommentRow).where(CommentRow.submission_id == submission.id)
        )
        await self.session.delete(submission)
        await self.session.flush()

    # --- Votes ---

    async def add_votes(self, votes: Iterable[VoteRow]) -> None:
        self.session.add_all(list(votes))
        await self.session.flush()

    async def list_votes(self, round_id: str) -> list[VoteRow]:
        stmt = select(VoteRow).where(VoteRow.round_id == round_id).order_by(VoteRow.created_at)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_votes_for_rounds(self, round_ids: Sequence[str]) -> list[VoteRow]:
        if not round_ids:
            return []
        stmt = select(VoteRow).where(VoteRow.round_id.in_(round_ids))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_user_votes(self, round_id: str, user_id: str) -> list[VoteRow]:
        stmt = select(VoteRow).where(VoteRow.round_id == round_id, VoteRow.user_id == user_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def delete_user_votes(self, round_id: str, user_id: str) -> int:
        return await self._bulk_delete(
            delete(VoteRow).where(VoteRow.round_id == round_id, VoteRow.user_id == user_id)
        )

    async def delete_round_votes(self, round_id: str) -> int:
        return await self._bulk_delete(delete(VoteRow).where(VoteRow.round_id == round_id))

    # --- Reactions ---

    async def get_reaction(self, submission_id: str, user_id: str, emoji: str) -> ReactionRow | None:
        stmt = select(ReactionRow).where(
            ReactionRow.submission_id == submission_id,
            ReactionRow.user_id == user_id,
            ReactionRow.emoji == emoji,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_reaction(self, submission_id: str, user_id: str, emoji: str) -> ReactionRow:
        row = ReactionRow(submission_id=submission_id, user_id=user_id, emoji=emoji)
        self.session.add(row)
        await self.session.flush()
        return row

    async def delete_reaction(self, reaction: ReactionRow) -> None:
        await self.session.delete(reaction)
        await self.session.flush()

    async def list_reactions(self, submission_id: str) -> list[ReactionRow]:
        stmt = (
            select(ReactionRow)
            .where(ReactionRow.submission_id == submission_id)
            .order_by(ReactionRow.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # --- Comments ---

    async def create_comment(self, submission_id: str, user_id: str, content: str) -> CommentRow:
        row = CommentRow(submission_id=submission_id, user_id=user_id, content=content)
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_comment(self, comment_id: str) -> CommentRow | None:
        return await self.session.get(CommentRow, comment_id)

    async def list_comments(self, submission_id: str, include_hidden: bool = False) -> list[CommentRow]:
        stmt = select(CommentRow).where(CommentRow.submission_id == submission_id)
        if not include_hidden:
            stmt = stmt.where(CommentRow.hidden.is_(False))
        stmt = stmt.order_by(CommentRow.created_at)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def set_comment_hidden(self, comment: CommentRow, hidden: bool) -> None:
        comment.hidden = hidden
        await self.session.flush()

    async def delete_comment(self, comment: CommentRow) -> None:
        await self.session.delete(comment)
        await self.session.flush()

    # --- Statistics cache ---

    async def replace_member_statistics(
        self, league_id: str, scopes: dict[str, dict[str, dict]]
    ) -> int:
        """Replace every cached statistics row of a league.

        *scopes* maps scope (``"all"`` or a season id) to user id to payload.
        Returns the number of rows written.
        """
        await self._bulk_delete(
            delete(MemberStatisticsRow).where(MemberStatisticsRow.league_id == league_id)
        )
        rows = [
            MemberStatisticsRow(league_id=league_id, scope=scope, user_id=user_id, payload=payload)
            for scope, members in scopes.items()
            for user_id, payload in members.items()
        ]
        self.session.add_all(rows)
        await self.session.flush()
        return len(rows)

    async def list_member_statistics(self, league_id: str, scope: str) -> list[MemberStatisticsRow]:
        stmt = select(MemberStatisticsRow).where(
            MemberStatisticsRow.league_id == league_id,
            MemberStatisticsRow.scope == scope,
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def has_member_statistics(self, league_id: str) -> bool:
        stmt = (
            select(MemberStatisticsRow.id)
            .where(MemberStatisticsRow.league_id == league_id)
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None
