import pytest
from fastapi.testclient import TestClient

from bidsync.core.config import Settings
from bidsync.services.credential_store import CredentialStore
from bidsync.services.sync_session import SyncSession
from bidsync.tests.support import (
    Coordinator,
    FakeClock,
    InlineExecutor,
    SocketFactory,
    build_coordinator_app,
)


# ─────────────────────────────────────────────
# FIXTURES
# ─────────────────────────────────────────────

@pytest.fixture
def settings():
    return Settings(
        server_url="http://coordinator",
        backoff_base_seconds=0.01,
        backoff_max_seconds=0.05,
        backoff_jitter=0.0,
        snapshot_max_attempts=3,
        channel_max_reconnect_attempts=3,
        cache_url="sqlite://",
    )


@pytest.fixture
def coordinator():
    return Coordinator()


@pytest.fixture
def http(coordinator):
    with TestClient(build_coordinator_app(coordinator), base_url="http://coordinator") as client:
        yield client


@pytest.fixture
def store():
    return CredentialStore()


@pytest.fixture
def sockets():
    return SocketFactory()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session(settings, http, sockets, clock):
    s = SyncSession(
        settings,
        http=http,
        client_factory=sockets,
        executor=InlineExecutor(),
        clock=clock,
        sleep=lambda _s: None,
    )
    yield s
    s.stop()
