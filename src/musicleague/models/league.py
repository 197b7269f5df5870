"""League models."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field, model_validator

Visibility = Literal["private", "public"]
VotingStyle = Literal["points", "rank", "single_pick"]
ModerationAction = Literal["kick", "ban", "unban", "role_change"]


class MemberRole(StrEnum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


ADMIN_ROLES: frozenset[MemberRole] = frozenset({MemberRole.OWNER, MemberRole.ADMIN})


class LeagueSettings(BaseModel):
    """Per-league game rules, stored as JSON on the league row.

    Point values are positive magnitudes for both directions; a downvote of
    ``1`` subtracts one point from the submission's score.
    """

    anonymous_submissions: bool = False
    voting_style: VotingStyle = "points"
    max_upvotes: int = Field(default=3, ge=1, le=20)
    upvote_points: list[int] = Field(default_factory=lambda: [3, 2, 1])
    downvoting_enabled: bool = False
    max_downvotes: int = Field(default=1, ge=0, le=20)
    downvote_points: list[int] = Field(default_factory=lambda: [1])
    max_submissions_per_member: int = Field(default=1, ge=1, le=5)

    @model_validator(mode="after")
    def _check_points(self) -> LeagueSettings:
        if not self.upvote_points or any(p <= 0 for p in self.upvote_points):
            raise ValueError("upvote_points must be a non-empty list of positive integers")
        if not self.downvote_points or any(p <= 0 for p in self.downvote_points):
            raise ValueError("downvote_points must be a non-empty list of positive integers")
        if self.voting_style == "rank" and len(self.upvote_points) < self.max_upvotes:
            raise ValueError("rank voting needs one upvote_points entry per allowed upvote")
        if self.voting_style == "rank" and any(
            a <= b for a, b in zip(self.upvote_points, self.upvote_points[1:])
        ):
            raise ValueError("rank voting needs upvote_points in strictly descending order")
        return self


class ModerationLogEntry(BaseModel):
    """One line of the append-only moderation ledger."""

    id: str
    league_id: str
    sequence_number: int
    performed_by: str
    target_user_id: str
    action: ModerationAction
    reason: str | None = None
    metadata: dict | None = None
    created_at: datetime
