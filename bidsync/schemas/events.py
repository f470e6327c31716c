"""Push-channel event schemas, one model per event kind."""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, Field, TypeAdapter, ValidationError, model_validator

from bidsync.core.errors import MalformedEvent
from bidsync.models.enums import RoundResult, RoundStatus
from bidsync.schemas.primitives import NonNegInt, WireModel, team_id_fallback
from bidsync.schemas.round import TeamRecord


class ChannelEventBase(WireModel):
    # optional server-assigned ordering, used to break ties within one round
    seq: Optional[int] = None


class RoundStarted(ChannelEventBase):
    event: Literal["round:started"] = "round:started"
    round_number: NonNegInt
    title: str = ""
    category: str = ""
    duration_seconds: NonNegInt = Field(
        default=30, validation_alias=AliasChoices("durationSeconds", "duration_seconds", "duration")
    )


class TimerUpdate(ChannelEventBase):
    event: Literal["timer:update"] = "timer:update"
    # not constrained: clamped by the state machine
    time_left: int


class BidReceived(ChannelEventBase):
    event: Literal["bid:received"] = "bid:received"
    team_id: str = Field(..., min_length=1)
    team_name: Optional[str] = None
    amount: int
    round_number: Optional[NonNegInt] = None

    @model_validator(mode="before")
    @classmethod
    def _team_key(cls, data):
        return team_id_fallback(data)


class BiddingEnded(ChannelEventBase):
    event: Literal["bidding:ended"] = "bidding:ended"
    winner_so_far: Optional[Any] = None


class RoundCompleted(ChannelEventBase):
    event: Literal["round:completed"] = "round:completed"
    result: Optional[RoundResult] = None
    winner_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("winnerName", "winner_name", "winner", "teamName")
    )
    coins_change: Optional[int] = None
    # None means the payload carried no leaderboard; the view must be resynced
    leaderboard: Optional[List[TeamRecord]] = None


class RoundForceReset(ChannelEventBase):
    event: Literal["round:force-reset"] = "round:force-reset"


class GameReset(ChannelEventBase):
    event: Literal["game:reset"] = "game:reset"


class ForceLogout(ChannelEventBase):
    event: Literal["force:logout"] = "force:logout"
    reason: Optional[str] = Field(default=None, validation_alias=AliasChoices("reason", "message"))


class RoundStatusChanged(ChannelEventBase):
    event: Literal["round:status"] = "round:status"
    status: RoundStatus


class TeamsOnline(ChannelEventBase):
    event: Literal["teams:online"] = "teams:online"
    count: NonNegInt = 0


ChannelEvent = Annotated[
    Union[
        RoundStarted,
        TimerUpdate,
        BidReceived,
        BiddingEnded,
        RoundCompleted,
        RoundForceReset,
        GameReset,
        ForceLogout,
        RoundStatusChanged,
        TeamsOnline,
    ],
    Field(discriminator="event"),
]

_adapter: TypeAdapter = TypeAdapter(ChannelEvent)

EVENT_NAMES = (
    "round:started",
    "timer:update",
    "bid:received",
    "bidding:ended",
    "round:completed",
    "round:force-reset",
    "game:reset",
    "force:logout",
    "round:status",
    "teams:online",
)


def parse_event(name: str, payload: Any) -> ChannelEvent:
    if name not in EVENT_NAMES:
        raise MalformedEvent(f"Unknown channel event {name!r}.")
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise MalformedEvent(f"Payload for {name!r} is not an object.")

    data: Dict[str, Any] = dict(payload)
    data["event"] = name
    try:
        return _adapter.validate_python(data)
    except ValidationError as e:
        raise MalformedEvent(f"Invalid {name!r} payload: {e.error_count()} error(s).") from e
