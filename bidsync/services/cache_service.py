# bidsync/services/cache_service.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from bidsync.db.session import make_engine, make_sessionmaker
from bidsync.models.session_cache import CachedCredential, CachedSnapshot

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SessionCache:
    """
    Local persistence for the only state that survives a restart:
    the last credential and the last applied snapshot.
    """
    def __init__(self, session_factory: sessionmaker):
        self._sessions = session_factory

    @classmethod
    def from_url(cls, cache_url: str) -> "SessionCache":
        return cls(make_sessionmaker(make_engine(cache_url)))

    # ---------------------------
    # CREDENTIAL
    # ---------------------------

    def save_credential(self, token: str, role: str) -> None:
        with self._sessions() as db:
            row = db.get(CachedCredential, 1)
            if row is None:
                row = CachedCredential(id=1, token=token, role=role)
                db.add(row)
            else:
                row.token = token
                row.role = role
                row.saved_at = _now()
            db.commit()

    def load_credential(self) -> Optional[Tuple[str, str]]:
        with self._sessions() as db:
            row = db.get(CachedCredential, 1)
            if row is None:
                return None
            return row.token, row.role

    def clear_credential(self) -> None:
        """
        A cached snapshot belongs to the credential that fetched it; drop both.
        """
        with self._sessions() as db:
            db.execute(delete(CachedCredential))
            db.execute(delete(CachedSnapshot))
            db.commit()
        logger.info("[cache] credential and snapshot cleared")

    # ---------------------------
    # SNAPSHOT
    # ---------------------------

    def save_snapshot(self, payload: Dict[str, Any], round_number: int) -> None:
        with self._sessions() as db:
            row = db.get(CachedSnapshot, 1)
            if row is None:
                row = CachedSnapshot(id=1, payload_json=payload, round_number=round_number)
                db.add(row)
            else:
                row.payload_json = payload
                row.round_number = round_number
                row.saved_at = _now()
            db.commit()

    def load_snapshot(self) -> Optional[Dict[str, Any]]:
        with self._sessions() as db:
            row = db.execute(select(CachedSnapshot).where(CachedSnapshot.id == 1)).scalar_one_or_none()
            if row is None:
                return None
            return dict(row.payload_json or {})
