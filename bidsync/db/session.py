from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from bidsync.db.base import Base


def make_engine(cache_url: str) -> Engine:
    kwargs = {"future": True}
    if cache_url.startswith("sqlite"):
        # the cache is touched from the consumer thread and the console API thread
        kwargs["connect_args"] = {"check_same_thread": False}
        if cache_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(cache_url, **kwargs)


def make_sessionmaker(engine: Engine) -> sessionmaker:
    # FORCE model registration before create_all
    import bidsync.models.session_cache  # noqa

    Base.metadata.create_all(bind=engine)
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
    )
