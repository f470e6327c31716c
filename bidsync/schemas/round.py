from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

from pydantic import Field, computed_field, model_validator

from bidsync.models.enums import Role, RoundResult, RoundStatus
from bidsync.schemas.primitives import NonNegInt, PosInt, ViewModel, team_id_fallback


class Bid(ViewModel):
    """
    One team's sealed bid. `arrival` is the local acceptance order within the
    round and only breaks ties for highest_bid.
    """
    team_id: str = Field(..., min_length=1)
    team_name: Optional[str] = None
    amount: PosInt
    arrival: NonNegInt = 0

    @model_validator(mode="before")
    @classmethod
    def _team_key(cls, data):
        return team_id_fallback(data)


class RoundView(ViewModel):
    """
    Reconciled state of the current round.
    roundNumber=0 with status idle means no round has been seen yet.
    """
    round_number: NonNegInt = 0
    status: RoundStatus = RoundStatus.idle
    title: str = ""
    category: str = ""
    duration_seconds: NonNegInt = 0
    time_left_seconds: NonNegInt = 0
    bids: Tuple[Bid, ...] = ()

    @computed_field
    @property
    def highest_bid(self) -> Optional[Bid]:
        if not self.bids:
            return None
        # max amount; earliest arrival wins ties
        return max(self.bids, key=lambda b: (b.amount, -b.arrival))

    def bid_for(self, team_id: Optional[str]) -> Optional[Bid]:
        if not team_id:
            return None
        for b in self.bids:
            if b.team_id == team_id:
                return b
        return None


class TeamRecord(ViewModel):
    team_id: str = Field(..., min_length=1)
    team_name: str = ""
    coins: NonNegInt = 0
    correct_answers: NonNegInt = 0
    wrong_answers: NonNegInt = 0

    @model_validator(mode="before")
    @classmethod
    def _team_key(cls, data):
        return team_id_fallback(data)


class LeaderboardEntry(ViewModel):
    rank: PosInt
    team_id: str
    team_name: str = ""
    coins: NonNegInt = 0
    correct_answers: NonNegInt = 0
    wrong_answers: NonNegInt = 0


class RoundOutcome(ViewModel):
    round_number: NonNegInt
    result: Optional[RoundResult] = None
    winner_name: Optional[str] = None
    coins_change: Optional[int] = None


class GameView(ViewModel):
    """
    The single consumer-facing state of a session.

    viewer_* are fixed at login and let the reducer apply visibility rules
    without reaching for the credential.
    `epoch` counts game resets.
    `event_mark` counts applied lifecycle events; snapshots compare against it.
    `snapshot_ordinal` is the request number of the last applied snapshot.
    `renumber_pending` is set by a game reset: the next applied snapshot of the
    new epoch may restart round numbering, nothing else may lower it.
    """
    round: RoundView = Field(default_factory=RoundView)
    leaderboard: Tuple[LeaderboardEntry, ...] = ()
    team: Optional[TeamRecord] = None
    last_result: Optional[RoundOutcome] = None

    viewer_role: Optional[Role] = None
    viewer_team_id: Optional[str] = None

    epoch: NonNegInt = 0
    sequence: Optional[int] = None
    event_mark: NonNegInt = 0
    snapshot_ordinal: NonNegInt = 0
    renumber_pending: bool = False
    connected: bool = False
    stale: bool = True
    teams_online: Optional[NonNegInt] = None

    @classmethod
    def initial(cls, role: Optional[Role] = None, team_id: Optional[str] = None) -> "GameView":
        return cls(viewer_role=role, viewer_team_id=team_id)

    @property
    def own_bid(self) -> Optional[Bid]:
        return self.round.bid_for(self.viewer_team_id)


def rank_leaderboard(rows: Sequence[TeamRecord]) -> Tuple[LeaderboardEntry, ...]:
    """
    Coins descending, ties broken by team id ascending; ranks 1..n.
    Values are taken verbatim from the authoritative rows, never recomputed.
    """
    ordered: List[TeamRecord] = sorted(rows, key=lambda r: (-r.coins, r.team_id))
    seen = set()
    out: List[LeaderboardEntry] = []
    for r in ordered:
        if r.team_id in seen:
            continue
        seen.add(r.team_id)
        out.append(
            LeaderboardEntry(
                rank=len(out) + 1,
                team_id=r.team_id,
                team_name=r.team_name,
                coins=r.coins,
                correct_answers=r.correct_answers,
                wrong_answers=r.wrong_answers,
            )
        )
    return tuple(out)
