from fastapi import APIRouter, Depends, Request

from bidsync.api.deps import get_session
from bidsync.services.sync_session import SyncSession

router = APIRouter()


@router.get("/health")
def health(request: Request, session: SyncSession = Depends(get_session)):
    rid = getattr(request.state, "request_id", None)
    view = session.view
    return {
        "status": "ok",
        "request_id": rid,
        "authenticated": session.store.get() is not None,
        "connected": view.connected,
        "stale": view.stale,
    }
