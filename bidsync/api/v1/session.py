# bidsync/api/v1/session.py
from __future__ import annotations

from fastapi import APIRouter, Depends

from bidsync.api.deps import get_session, http_error
from bidsync.core.errors import SyncError
from bidsync.schemas.actions import LoginRequest
from bidsync.services.sync_session import SyncSession

router = APIRouter(prefix="/session")


@router.post("/login")
def login(req: LoginRequest, session: SyncSession = Depends(get_session)):
    try:
        cred = session.login(req.token)
    except SyncError as e:
        raise http_error(e)
    return {"role": cred.role.value, "teamId": cred.subject, "teamName": cred.display_name}


@router.post("/logout")
def logout(session: SyncSession = Depends(get_session)):
    return {"loggedOut": session.logout()}
