# bidsync/api/v1/rounds.py
from __future__ import annotations

from typing import Any, Callable, Dict, List

from fastapi import APIRouter, Depends

from bidsync.api.deps import get_session, http_error
from bidsync.core.errors import SyncError
from bidsync.schemas.actions import ActionAck, ResultRequest, StartRoundRequest
from bidsync.services.sync_session import SyncSession

router = APIRouter()


def _run(fn: Callable[[], Any]) -> Any:
    try:
        return fn()
    except (SyncError, PermissionError) as e:
        raise http_error(e)


# ─────────────────────────────────────────────────────────────
# ROUND CONTROL (operator)
# ─────────────────────────────────────────────────────────────

@router.post("/rounds/start", response_model=ActionAck)
def start_round(req: StartRoundRequest, session: SyncSession = Depends(get_session)):
    return _run(lambda: session.start_round(req.title, req.category, req.duration_seconds))


@router.post("/rounds/end-bidding", response_model=ActionAck)
def end_bidding(session: SyncSession = Depends(get_session)):
    return _run(session.end_bidding)


@router.post("/rounds/result", response_model=ActionAck)
def mark_result(req: ResultRequest, session: SyncSession = Depends(get_session)):
    return _run(lambda: session.mark_result(req.result))


@router.post("/rounds/force-reset", response_model=ActionAck)
def force_reset(session: SyncSession = Depends(get_session)):
    return _run(session.force_reset)


# ─────────────────────────────────────────────────────────────
# GAME
# ─────────────────────────────────────────────────────────────

@router.post("/game/reset", response_model=ActionAck)
def reset_game(session: SyncSession = Depends(get_session)):
    return _run(session.reset_game)


@router.get("/game/history", response_model=List[Dict[str, Any]])
def history(session: SyncSession = Depends(get_session)):
    return _run(session.history)
