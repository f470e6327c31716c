from bidsync.schemas.primitives import NonNegInt, PosInt, WireModel, ViewModel
from bidsync.schemas.round import Bid, RoundView, TeamRecord, LeaderboardEntry, RoundOutcome, GameView, rank_leaderboard
from bidsync.schemas.snapshot import SnapshotRound, SnapshotPayload
from bidsync.schemas.events import ChannelEvent, EVENT_NAMES, parse_event
from bidsync.schemas.actions import StartRoundRequest, BidRequest, ResultRequest, LoginRequest, ActionAck
