#bidsync/models/session_cache.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import JSON, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from bidsync.db.base import Base


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CachedCredential(Base):
    """
    Last credential handed to the Credential Store.
    Single row (id=1); replaced on every set, deleted on clear.
    """
    __tablename__ = "cached_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    token: Mapped[str] = mapped_column(String(4096), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    saved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class CachedSnapshot(Base):
    """
    Last snapshot applied to the view, as received (wire JSON).
    Lets a restarted client render something before the first fetch lands.
    """
    __tablename__ = "cached_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    round_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload_json: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    saved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
