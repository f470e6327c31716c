# bidsync/api/v1/view.py
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends

from bidsync.api.deps import get_session
from bidsync.schemas.round import GameView, LeaderboardEntry
from bidsync.services.sync_session import SyncSession

router = APIRouter()


@router.get("/view", response_model=GameView)
def current_view(session: SyncSession = Depends(get_session)):
    view = session.view
    # the countdown keeps running between server ticks
    return view.model_copy(update={"round": view.round.model_copy(update={"time_left_seconds": session.time_left()})})


@router.get("/leaderboard", response_model=List[LeaderboardEntry])
def leaderboard(session: SyncSession = Depends(get_session)):
    return list(session.view.leaderboard)
