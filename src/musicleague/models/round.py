"""Round-scoped input models: tracks and ballots."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator

VoteType = Literal["upvote", "downvote"]


class TrackInput(BaseModel):
    """A track offered for a round."""

    track_name: str = Field(min_length=1, max_length=300)
    artist: str = Field(min_length=1, max_length=300)
    album: str | None = Field(default=None, max_length=300)
    provider: Literal["spotify", "apple"] | None = None
    provider_track_id: str | None = Field(default=None, max_length=100)
    artwork_url: str | None = None
    preview_url: str | None = None
    duration_ms: int | None = Field(default=None, ge=0)
    genres: list[str] = Field(default_factory=list, max_length=10)
    note: str | None = Field(default=None, max_length=1000)

    @field_validator("genres")
    @classmethod
    def _clean_genres(cls, value: list[str]) -> list[str]:
        cleaned: list[str] = []
        for genre in value:
            genre = genre.strip().lower()
            if genre and genre not in cleaned:
                cleaned.append(genre)
        return cleaned


class BallotEntry(BaseModel):
    """One vote on a ballot. ``points`` is a positive magnitude."""

    submission_id: str
    vote_type: VoteType = "upvote"
    points: int = Field(default=1, ge=1)
