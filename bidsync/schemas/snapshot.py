from __future__ import annotations

from typing import List, Optional

from pydantic import AliasChoices, Field, field_validator

from bidsync.models.enums import RoundStatus
from bidsync.schemas.primitives import NonNegInt, WireModel
from bidsync.schemas.round import Bid, TeamRecord


class SnapshotRound(WireModel):
    round_number: NonNegInt
    title: str = ""
    category: str = ""
    status: RoundStatus = RoundStatus.bidding
    time_left: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("timeLeft", "time_left", "timeLeftSeconds")
    )
    duration_seconds: Optional[NonNegInt] = Field(
        default=None, validation_alias=AliasChoices("durationSeconds", "duration_seconds", "duration")
    )
    bids: List[Bid] = Field(default_factory=list)

    @field_validator("bids", mode="before")
    @classmethod
    def _no_null_bids(cls, v):
        return v or []


class SnapshotPayload(WireModel):
    """
    GET /game/state
    `team` is present only for a participant credential.
    """
    round: Optional[SnapshotRound] = None
    leaderboard: List[TeamRecord] = Field(default_factory=list)
    team: Optional[TeamRecord] = None
    seq: Optional[int] = None

    @field_validator("leaderboard", mode="before")
    @classmethod
    def _no_null_leaderboard(cls, v):
        return v or []
