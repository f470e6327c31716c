# bidsync/api/v1/bids.py
from __future__ import annotations

from fastapi import APIRouter, Depends

from bidsync.api.deps import get_session, http_error
from bidsync.core.errors import SyncError
from bidsync.schemas.actions import ActionAck, BidRequest
from bidsync.services.sync_session import SyncSession

router = APIRouter(prefix="/bids")


@router.post("", response_model=ActionAck)
def submit_bid(req: BidRequest, session: SyncSession = Depends(get_session)):
    """
    Team console submits its sealed bid for the current round.
    Local preconditions fail before any coordinator call.
    """
    try:
        return session.submit_bid(req.amount)
    except (SyncError, PermissionError) as e:
        raise http_error(e)
