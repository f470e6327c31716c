# bidsync/api/deps.py
from __future__ import annotations

from fastapi import HTTPException, Request

from bidsync.core.errors import (
    AlreadyBid,
    InvalidAmount,
    InvalidInput,
    Rejected,
    RoundNotOpen,
    SyncError,
    Unauthorized,
    Unreachable,
)
from bidsync.services.sync_session import SyncSession


def get_session(request: Request) -> SyncSession:
    return request.app.state.session


def http_error(e: Exception) -> HTTPException:
    """
    Engine failures -> console status codes.
    Rejections carry the coordinator's reason so the UI can show it verbatim.
    """
    if isinstance(e, InvalidAmount):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, (RoundNotOpen, AlreadyBid)):
        return HTTPException(status_code=409, detail={"reason": type(e).__name__, "message": str(e)})
    if isinstance(e, InvalidInput):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, Rejected):
        return HTTPException(status_code=409, detail={"reason": e.reason, "message": e.message})
    if isinstance(e, Unauthorized):
        return HTTPException(status_code=401, detail=str(e))
    if isinstance(e, PermissionError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, Unreachable):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, SyncError):
        return HTTPException(status_code=409, detail=str(e))
    raise e
