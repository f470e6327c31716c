#bidsync/models/enums.py
from __future__ import annotations
from enum import Enum


class Role(str, Enum):
    TEAM = "team"
    ADMIN = "admin"
    SPECTATOR = "spectator"


class RoundStatus(str, Enum):
    # lifecycle: idle -> bidding -> reviewing -> completed -> idle
    idle = "idle"
    bidding = "bidding"
    reviewing = "reviewing"
    completed = "completed"


class RoundResult(str, Enum):
    correct = "correct"
    wrong = "wrong"


class RejectionReason(str, Enum):
    DUPLICATE_BID = "DUPLICATE_BID"
    ROUND_CLOSED = "ROUND_CLOSED"
    INSUFFICIENT_STATE = "INSUFFICIENT_STATE"
