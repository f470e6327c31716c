# bidsync/services/round_state_machine.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, NamedTuple, Optional, Set

from bidsync.models.enums import Role, RoundStatus
from bidsync.policies.rbac import can_see_all_bids
from bidsync.schemas.events import (
    BiddingEnded,
    BidReceived,
    ForceLogout,
    GameReset,
    RoundCompleted,
    RoundForceReset,
    RoundStarted,
    RoundStatusChanged,
    TeamsOnline,
    TimerUpdate,
)
from bidsync.schemas.round import Bid, GameView, RoundOutcome, RoundView, TeamRecord, rank_leaderboard
from bidsync.schemas.snapshot import SnapshotPayload, SnapshotRound
from bidsync.services.reconciler import reconcile_leaderboard

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────
# NON-CHANNEL INPUTS
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class SnapshotInput:
    """
    A fetched snapshot plus where the view stood when it was requested.
    requested_mark == view.event_mark means no lifecycle event was applied in between.
    `ordinal` numbers requests; a reply to an older request never overrides a newer one.
    """
    payload: SnapshotPayload
    requested_epoch: int
    requested_mark: int
    ordinal: int = 0


@dataclass(frozen=True)
class OwnBidAccepted:
    round_number: int
    team_id: str
    amount: int
    team_name: Optional[str] = None


@dataclass(frozen=True)
class ConnectionChanged:
    connected: bool


@dataclass(frozen=True)
class SnapshotFailed:
    reason: str = ""


class Transition(NamedTuple):
    view: GameView
    applied: bool
    desync: bool = False
    resync: bool = False
    note: str = ""


ALLOWED_STATUS: Dict[RoundStatus, Set[RoundStatus]] = {
    RoundStatus.idle: {RoundStatus.bidding},
    RoundStatus.bidding: {RoundStatus.reviewing},
    RoundStatus.reviewing: {RoundStatus.completed},
    RoundStatus.completed: {RoundStatus.idle},
}

_ACTIVE = (RoundStatus.bidding, RoundStatus.reviewing)

_LIFECYCLE_ORDER = {
    RoundStatus.idle: 0,
    RoundStatus.bidding: 1,
    RoundStatus.reviewing: 2,
    RoundStatus.completed: 3,
}

_STRUCTURAL = (
    RoundStarted,
    BiddingEnded,
    RoundCompleted,
    RoundForceReset,
    GameReset,
    RoundStatusChanged,
)


class RoundStateMachine:
    """
    Pure reducer: reduce(view, input) -> Transition.

    Never mutates its argument (views are frozen) and never raises on bad input:
    anything it cannot apply comes back as applied=False with a note.
    desync=True marks stale/out-of-order input; resync=True asks for a snapshot.
    """

    def __init__(self, tick_seconds: float = 1.0, starting_coins: int = 2000):
        self.tick_seconds = float(tick_seconds)
        self.starting_coins = int(starting_coins)

    def apply(self, view: GameView, item: Any) -> GameView:
        return self.reduce(view, item).view

    def reduce(self, view: GameView, item: Any) -> Transition:
        try:
            return self._dispatch(view, item)
        except Exception:
            logger.exception("[reducer] failed on %s; input dropped", type(item).__name__)
            return Transition(view, False, note="reducer error")

    # ---------------------------
    # DISPATCH
    # ---------------------------

    def _dispatch(self, view: GameView, item: Any) -> Transition:
        if isinstance(item, SnapshotInput):
            return self._snapshot(view, item)
        if isinstance(item, ConnectionChanged):
            return self._connection(view, item)
        if isinstance(item, SnapshotFailed):
            # last good view stays visible, flagged stale
            return Transition(view.model_copy(update={"stale": True}), not view.stale, note=item.reason)
        if isinstance(item, OwnBidAccepted):
            return self._own_bid(view, item)

        if isinstance(item, RoundStarted):
            t = self._round_started(view, item)
        elif isinstance(item, TimerUpdate):
            t = self._timer(view, item)
        elif isinstance(item, BidReceived):
            t = self._bid_received(view, item)
        elif isinstance(item, BiddingEnded):
            t = self._bidding_ended(view, item)
        elif isinstance(item, RoundCompleted):
            t = self._round_completed(view, item)
        elif isinstance(item, RoundForceReset):
            t = self._round_reset(view)
        elif isinstance(item, GameReset):
            t = self._game_reset(view)
        elif isinstance(item, RoundStatusChanged):
            t = self._round_status(view, item)
        elif isinstance(item, TeamsOnline):
            t = Transition(view.model_copy(update={"teams_online": item.count}), True)
        elif isinstance(item, ForceLogout):
            # handled by the channel/session; nothing to reduce
            t = Transition(view, False, note="force logout")
        else:
            logger.warning("[reducer] unknown input %r dropped", type(item).__name__)
            return Transition(view, False, note="unknown input")

        if t.applied and getattr(item, "seq", None) is not None:
            t = t._replace(view=t.view.model_copy(update={"sequence": item.seq}))
        if isinstance(item, _STRUCTURAL):
            t = self._mark(t)
        return t

    @staticmethod
    def _mark(t: Transition) -> Transition:
        # lifecycle changes move the watermark snapshots are compared against;
        # ticks and bids do not (bids merge, ticks self-correct)
        if not t.applied:
            return t
        return t._replace(view=t.view.model_copy(update={"event_mark": t.view.event_mark + 1}))

    # ---------------------------
    # ROUND LIFECYCLE
    # ---------------------------

    def _round_started(self, view: GameView, ev: RoundStarted) -> Transition:
        cur = view.round
        if ev.round_number < cur.round_number:
            return Transition(view, False, desync=True, note=f"stale round {ev.round_number} < {cur.round_number}")
        if ev.round_number == cur.round_number and cur.status != RoundStatus.idle:
            return Transition(view, False, desync=True, note=f"duplicate round {ev.round_number}")

        new_round = RoundView(
            round_number=ev.round_number,
            status=RoundStatus.bidding,
            title=ev.title,
            category=ev.category,
            duration_seconds=ev.duration_seconds,
            time_left_seconds=ev.duration_seconds,
            bids=(),
        )
        return Transition(view.model_copy(update={"round": new_round, "last_result": None}), True)

    def _timer(self, view: GameView, ev: TimerUpdate) -> Transition:
        cur = view.round
        if cur.status not in _ACTIVE:
            return Transition(view, False, note=f"tick ignored while {cur.status.value}")

        time_left = max(0, ev.time_left)
        if time_left > cur.time_left_seconds + self.tick_seconds:
            return Transition(
                view, False, resync=True,
                note=f"timer rose {cur.time_left_seconds} -> {time_left}",
            )
        if time_left == cur.time_left_seconds:
            return Transition(view, False, note="tick unchanged")
        return Transition(self._with_round(view, time_left_seconds=time_left), True)

    def _bid_received(self, view: GameView, ev: BidReceived) -> Transition:
        cur = view.round
        if cur.status != RoundStatus.bidding:
            return Transition(view, False, note=f"bid ignored while {cur.status.value}")

        round_number = ev.round_number if ev.round_number is not None else cur.round_number
        if round_number != cur.round_number:
            return Transition(
                view, False, desync=round_number < cur.round_number,
                resync=round_number > cur.round_number,
                note=f"bid for round {round_number}, current {cur.round_number}",
            )
        if ev.amount < 1:
            return Transition(view, False, note="non-positive bid amount")
        if view.viewer_role is not None and not can_see_all_bids(view.viewer_role) and ev.team_id != view.viewer_team_id:
            return Transition(view, False, note="other team's bid hidden from participant")
        if cur.bid_for(ev.team_id) is not None:
            return Transition(view, False, note=f"duplicate bid from {ev.team_id}")

        bid = Bid(team_id=ev.team_id, team_name=ev.team_name, amount=ev.amount, arrival=len(cur.bids))
        return Transition(self._with_round(view, bids=cur.bids + (bid,)), True)

    def _own_bid(self, view: GameView, item: OwnBidAccepted) -> Transition:
        cur = view.round
        if item.round_number != cur.round_number or cur.status not in _ACTIVE:
            return Transition(view, False, note="own bid ack for a round no longer current")
        if cur.bid_for(item.team_id) is not None:
            return Transition(view, False, note="own bid already recorded")
        bid = Bid(team_id=item.team_id, team_name=item.team_name, amount=item.amount, arrival=len(cur.bids))
        return Transition(self._with_round(view, bids=cur.bids + (bid,)), True)

    def _bidding_ended(self, view: GameView, ev: BiddingEnded) -> Transition:
        status = view.round.status
        if status == RoundStatus.bidding:
            return Transition(self._with_round(view, status=RoundStatus.reviewing, time_left_seconds=0), True)
        if status == RoundStatus.reviewing:
            return Transition(view, False, note="bidding already ended")
        # we never saw this round open
        return Transition(view, False, resync=True, note=f"bidding ended while {status.value}")

    def _round_completed(self, view: GameView, ev: RoundCompleted) -> Transition:
        cur = view.round
        update: Dict[str, Any] = {
            "last_result": RoundOutcome(
                round_number=cur.round_number,
                result=ev.result,
                winner_name=ev.winner_name,
                coins_change=ev.coins_change,
            )
        }
        resync = False
        note = ""

        if cur.status in _ACTIVE:
            update["round"] = cur.model_copy(update={"status": RoundStatus.completed, "time_left_seconds": 0})
        elif cur.status == RoundStatus.idle:
            resync = True
            note = "round completed while idle"

        if ev.leaderboard is None:
            resync = True
            note = "completion without leaderboard"
        else:
            # wholesale replacement: the judged payload is the only source of coin changes
            update["leaderboard"] = reconcile_leaderboard(ev.leaderboard)
            update["team"] = self._own_team_from(view, ev.leaderboard)

        return Transition(view.model_copy(update=update), True, resync=resync, note=note)

    def _round_reset(self, view: GameView) -> Transition:
        cur = view.round
        cleared = RoundView(round_number=cur.round_number, status=RoundStatus.idle)
        # coins are untouched; only game:reset zeroes them
        return Transition(view.model_copy(update={"round": cleared, "last_result": None}), True)

    def _game_reset(self, view: GameView) -> Transition:
        leaderboard = rank_leaderboard([
            TeamRecord(
                team_id=e.team_id,
                team_name=e.team_name,
                coins=self.starting_coins,
                correct_answers=0,
                wrong_answers=0,
            )
            for e in view.leaderboard
        ])
        team = view.team
        if team is not None:
            team = team.model_copy(update={"coins": self.starting_coins, "correct_answers": 0, "wrong_answers": 0})

        # the observed round number never moves backwards on an event; a restarted
        # numbering is only taken from the new epoch's snapshot
        cleared = RoundView(round_number=view.round.round_number, status=RoundStatus.idle)
        return Transition(
            view.model_copy(update={
                "round": cleared,
                "leaderboard": leaderboard,
                "team": team,
                "last_result": None,
                "sequence": None,
                "epoch": view.epoch + 1,
                "renumber_pending": True,
            }),
            True,
            resync=True,
            note="game reset",
        )

    def _round_status(self, view: GameView, ev: RoundStatusChanged) -> Transition:
        cur = view.round
        if ev.status == cur.status:
            return Transition(view, False, note="status unchanged")
        if ev.status not in ALLOWED_STATUS[cur.status]:
            return Transition(
                view, False, desync=True,
                note=f"illegal status change {cur.status.value} -> {ev.status.value}",
            )
        if ev.status == RoundStatus.idle:
            return self._round_reset(view)
        update: Dict[str, Any] = {"status": ev.status}
        if ev.status != RoundStatus.bidding:
            update["time_left_seconds"] = 0
        return Transition(self._with_round(view, **update), True)

    # ---------------------------
    # SNAPSHOT
    # ---------------------------

    def _snapshot(self, view: GameView, item: SnapshotInput) -> Transition:
        snap = item.payload
        cur = view.round

        if item.requested_epoch != view.epoch:
            return Transition(view, False, desync=True, note="snapshot from a previous game epoch")
        if item.ordinal and item.ordinal < view.snapshot_ordinal:
            return Transition(view, False, note="superseded by a later snapshot")

        intervening = item.requested_mark != view.event_mark
        snap_rn = snap.round.round_number if snap.round is not None else None

        renumbered = view.renumber_pending and snap_rn is not None and snap_rn < cur.round_number
        if snap_rn is not None and snap_rn < cur.round_number and not renumbered:
            return Transition(view, False, desync=True, note=f"snapshot round {snap_rn} < {cur.round_number}")

        if intervening and not renumbered:
            # events landed while the request was in flight; only a strictly newer snapshot wins
            newer = snap_rn is not None and snap_rn > cur.round_number
            if not newer and snap_rn == cur.round_number and snap.seq is not None and view.sequence is not None:
                newer = snap.seq >= view.sequence
            if not newer:
                return Transition(view, False, note="snapshot older than applied events")

        team = self._snapshot_team(view, snap)
        viewer_team_id = view.viewer_team_id
        if view.viewer_role == Role.TEAM and team is not None:
            viewer_team_id = team.team_id

        if snap.round is None:
            new_round = RoundView(round_number=cur.round_number, status=RoundStatus.idle)
        else:
            new_round = self._round_from_snapshot(view, snap.round, team, viewer_team_id)

        update: Dict[str, Any] = {
            "round": new_round,
            "leaderboard": reconcile_leaderboard(snap.leaderboard),
            "team": team,
            "viewer_team_id": viewer_team_id,
            "stale": False,
            "snapshot_ordinal": max(view.snapshot_ordinal, item.ordinal),
            "renumber_pending": False,
        }
        if snap.seq is not None:
            update["sequence"] = snap.seq
        return Transition(view.model_copy(update=update), True, note="snapshot applied")

    def _round_from_snapshot(
        self,
        view: GameView,
        sr: SnapshotRound,
        team: Optional[TeamRecord],
        viewer_team_id: Optional[str],
    ) -> RoundView:
        cur = view.round
        same_round = sr.round_number == cur.round_number and cur.status != RoundStatus.idle

        participant = view.viewer_role == Role.TEAM
        own_names = {viewer_team_id}
        if team is not None:
            own_names.update({team.team_id, team.team_name})
        own_names.discard(None)
        own_names.discard("")

        # bids are immutable within a round: what we already hold (own acknowledged
        # bid included) stays, in its arrival order, even if the snapshot predates it
        bids: List[Bid] = []
        seen_ids: Set[str] = set()
        seen_names: Set[str] = set()

        def take(b: Bid, team_id: str) -> None:
            if team_id in seen_ids or (b.team_name and b.team_name in seen_names):
                return
            seen_ids.add(team_id)
            if b.team_name:
                seen_names.add(b.team_name)
            bids.append(Bid(team_id=team_id, team_name=b.team_name, amount=b.amount, arrival=len(bids)))

        if same_round:
            for b in cur.bids:
                take(b, b.team_id)

        for b in sr.bids:
            is_own = b.team_id in own_names or (b.team_name in own_names if b.team_name else False)
            if participant and not is_own:
                continue
            take(b, viewer_team_id if (participant and viewer_team_id) else b.team_id)

        status = sr.status
        if same_round and _LIFECYCLE_ORDER[cur.status] > _LIFECYCLE_ORDER[status]:
            status = cur.status

        duration = sr.duration_seconds if sr.duration_seconds is not None else (
            cur.duration_seconds if same_round else 0
        )
        if status == RoundStatus.bidding:
            if sr.time_left is not None:
                time_left = max(0, sr.time_left)
            elif same_round:
                time_left = cur.time_left_seconds
            else:
                time_left = duration
        else:
            time_left = 0

        return RoundView(
            round_number=sr.round_number,
            status=status,
            title=cur.title if same_round else sr.title,
            category=cur.category if same_round else sr.category,
            duration_seconds=duration,
            time_left_seconds=time_left,
            bids=tuple(bids),
        )

    @staticmethod
    def _snapshot_team(view: GameView, snap: SnapshotPayload) -> Optional[TeamRecord]:
        if snap.team is not None:
            return snap.team
        if view.viewer_role == Role.TEAM:
            return view.team
        return None

    # ---------------------------
    # CONNECTION
    # ---------------------------

    @staticmethod
    def _connection(view: GameView, item: ConnectionChanged) -> Transition:
        if item.connected == view.connected:
            return Transition(view, False)
        update: Dict[str, Any] = {"connected": item.connected}
        if not item.connected:
            update["stale"] = True
        # reconnecting does not clear `stale`; only the post-reconnect snapshot does
        return Transition(view.model_copy(update=update), True)

    # ---------------------------
    # HELPERS
    # ---------------------------

    @staticmethod
    def _with_round(view: GameView, **changes: Any) -> GameView:
        return view.model_copy(update={"round": view.round.model_copy(update=changes)})

    @staticmethod
    def _own_team_from(view: GameView, rows: List[TeamRecord]) -> Optional[TeamRecord]:
        team = view.team
        if team is None:
            return None
        for r in rows:
            if r.team_id == team.team_id or (r.team_name and r.team_name == team.team_name):
                return team.model_copy(update={
                    "coins": r.coins,
                    "correct_answers": r.correct_answers,
                    "wrong_answers": r.wrong_answers,
                })
        return team
