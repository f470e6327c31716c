import pytest
from sqlalchemy.exc import OperationalError

from bidsync.models.enums import Role, RoundStatus
from bidsync.services.cache_service import SessionCache
from bidsync.services.sync_session import SyncSession
from bidsync.tests.support import DeferredExecutor, FakeClock, InlineExecutor, make_token

ADMIN = {"role": "admin", "team_id": None, "team_name": None, "id": "op"}


def _connect(session, sockets):
    session.channel.connect_once()
    session.drain()
    return sockets.last


def test_login_loads_snapshot_then_channel_resyncs(session, coordinator, sockets):
    session.login(make_token(role="spectator", team_id=None, team_name=None))
    session.drain()
    assert session.view.stale is False
    assert coordinator.calls["state"] == 1

    _connect(session, sockets)

    assert coordinator.calls["state"] == 2
    assert session.view.connected is True
    assert session.view.viewer_role == Role.SPECTATOR


def test_end_to_end_leaderboard_is_payload_verbatim(session, coordinator, sockets):
    session.login(make_token(role="admin", team_id=None, team_name=None, id="op"))
    client = _connect(session, sockets)
    assert session.view.round.status == RoundStatus.idle

    client.push("round:started", {"roundNumber": 1, "title": "Q1", "category": "Easy", "durationSeconds": 30})
    client.push("bid:received", {"teamId": "t1", "teamName": "Alpha", "amount": 100})
    client.push("bid:received", {"teamId": "t2", "teamName": "Beta", "amount": 300})
    client.push("bid:received", {"teamId": "t3", "teamName": "Gamma", "amount": 200})
    client.push("bidding:ended", {"winnerSoFar": "Beta"})
    judged = [
        {"teamId": "t1", "teamName": "Alpha", "coins": 1950, "correctAnswers": 0, "wrongAnswers": 1},
        {"teamId": "t2", "teamName": "Beta", "coins": 2000, "correctAnswers": 0, "wrongAnswers": 0},
        {"teamId": "t3", "teamName": "Gamma", "coins": 2075, "correctAnswers": 1, "wrongAnswers": 0},
    ]
    client.push("round:completed", {"result": "wrong", "winnerName": "Beta", "coinsChange": -300, "leaderboard": judged})
    session.drain()

    view = session.view
    assert view.round.status == RoundStatus.completed
    assert len(view.round.bids) == 3
    assert [
        {"teamId": e.team_id, "teamName": e.team_name, "coins": e.coins,
         "correctAnswers": e.correct_answers, "wrongAnswers": e.wrong_answers}
        for e in view.leaderboard
    ] == [judged[2], judged[1], judged[0]]
    assert [e.rank for e in view.leaderboard] == [1, 2, 3]


def test_timer_through_reconciler(session, coordinator, sockets):
    session.login(make_token(role="admin", team_id=None, team_name=None, id="op"))
    client = _connect(session, sockets)

    client.push("round:started", {"roundNumber": 1, "title": "Q1", "durationSeconds": 30})
    for left in (30, 25, 0):
        client.push("timer:update", {"timeLeft": left})
    client.push("bidding:ended")
    session.drain()

    assert session.view.round.status == RoundStatus.reviewing
    assert session.view.round.time_left_seconds == 0
    assert session.time_left() == 0


def test_local_countdown_between_ticks(session, sockets, clock):
    session.login(make_token(role="admin", team_id=None, team_name=None, id="op"))
    client = _connect(session, sockets)
    client.push("round:started", {"roundNumber": 1, "title": "Q1", "durationSeconds": 30})
    session.drain()

    clock.advance(4.2)

    assert session.time_left() == 26


def test_force_logout_blocks_prior_channel_events(session, coordinator, sockets):
    session.login(make_token())
    client = _connect(session, sockets)
    client.push("round:started", {"roundNumber": 1, "title": "Q1", "durationSeconds": 30})
    # queued but not yet applied when the logout lands
    client.push("timer:update", {"timeLeft": 20})

    client.push("force:logout", {"reason": "duplicate login"})
    client.push("round:started", {"roundNumber": 2, "title": "Q2", "durationSeconds": 30})
    session.drain()

    assert session.store.get() is None
    assert session.view.round.round_number == 0
    assert session.view.viewer_role is None

    # a new login starts clean; nothing from the old connection leaks in
    coordinator.round = None
    session.login(make_token(team_id="t2", team_name="Beta"))
    session.drain()
    client.push("round:started", {"roundNumber": 3, "title": "Q3", "durationSeconds": 30})
    session.drain()

    assert session.view.round.round_number == 0
    assert session.view.viewer_team_id == "t2"


def test_reconnect_forces_snapshot_baseline(session, coordinator, sockets):
    session.login(make_token(role="admin", team_id=None, team_name=None, id="op"))
    client = _connect(session, sockets)
    client.push("round:started", {"roundNumber": 1, "title": "Q1", "durationSeconds": 30})
    session.drain()

    client.drop()
    session.channel.stop()
    session.drain()
    assert session.view.stale is True

    # missed while disconnected: round 2 opened and is already in review
    coordinator.round = {"roundNumber": 2, "title": "Q2", "status": "reviewing", "bids": []}
    client = _connect(session, sockets)

    assert session.view.round.round_number == 2
    assert session.view.round.status == RoundStatus.reviewing
    assert session.view.stale is False


def test_repeated_desync_schedules_resync(session, coordinator, sockets, settings):
    session.login(make_token(role="admin", team_id=None, team_name=None, id="op"))
    client = _connect(session, sockets)
    client.push("round:started", {"roundNumber": 5, "title": "Q5", "durationSeconds": 30})
    session.drain()
    fetched = coordinator.calls["state"]

    for _ in range(settings.desync_resync_threshold):
        client.push("round:started", {"roundNumber": 4, "title": "old", "durationSeconds": 30})
    session.drain()

    assert coordinator.calls["state"] == fetched + 1
    assert session.view.round.round_number == 5


def test_snapshot_failure_keeps_last_view_marked_stale(session, coordinator):
    coordinator.round = {"roundNumber": 3, "title": "Q3", "status": "bidding", "bids": []}
    session.login(make_token(role="admin", team_id=None, team_name=None, id="op"))
    session.drain()

    coordinator.state_failures = [503, 503, 503]
    session.resync("manual")
    session.drain()

    assert session.view.stale is True
    assert session.view.round.round_number == 3


def test_unauthorized_snapshot_logs_out(session, coordinator):
    coordinator.state_failures = [401]
    session.login(make_token())
    session.drain()

    assert session.store.get() is None
    assert session.view.viewer_role is None


def test_view_listeners_and_disposal(session, sockets):
    seen = []
    dispose = session.subscribe(seen.append)
    session.login(make_token(role="admin", team_id=None, team_name=None, id="op"))
    session.drain()
    assert seen and seen[-1].stale is False

    dispose()
    count = len(seen)
    _connect(session, sockets)
    assert len(seen) == count


def test_operator_actions_are_role_checked(session, coordinator):
    session.login(make_token())
    with pytest.raises(PermissionError):
        session.start_round("Q1")
    assert coordinator.calls["start"] == 0


def test_restart_seeds_from_cache(settings, http, coordinator, sockets):
    cache = SessionCache.from_url("sqlite://")
    coordinator.round = {"roundNumber": 4, "title": "Q4", "status": "bidding", "timeLeft": 10, "bids": []}

    first = SyncSession(settings, cache=cache, http=http, client_factory=sockets, executor=InlineExecutor(),
                        clock=FakeClock(), sleep=lambda _s: None)
    first.login(make_token(role="admin", team_id=None, team_name=None, id="op"))
    first.drain()
    first.stop()

    coordinator.state_failures = [503, 503, 503]
    sockets.failures = 100
    second = SyncSession(settings, cache=cache, http=http, client_factory=sockets, executor=InlineExecutor(),
                         clock=FakeClock(), sleep=lambda _s: None)
    second.start(consume=False)
    second.drain()

    try:
        assert second.store.get() is not None
        assert second.view.round.round_number == 4
        assert second.view.stale is True
    finally:
        second.stop()


# ─────────────────────────────────────────────
# DEFERRED SNAPSHOTS
# ─────────────────────────────────────────────

@pytest.fixture
def deferred():
    return DeferredExecutor()


@pytest.fixture
def slow_session(settings, http, sockets, clock, deferred):
    s = SyncSession(settings, http=http, client_factory=sockets, executor=deferred, clock=clock,
                    sleep=lambda _s: None)
    yield s
    s.stop()


def _settle(session, executor):
    executor.run_pending()
    session.drain()


def test_reconnect_holds_events_until_baseline_lands(slow_session, deferred, coordinator, sockets):
    coordinator.round = {"roundNumber": 1, "title": "Q1", "status": "bidding", "timeLeft": 30, "bids": []}
    slow_session.login(make_token(**ADMIN))
    slow_session.channel.connect_once()
    _settle(slow_session, deferred)
    assert slow_session.view.round.round_number == 1

    sockets.last.drop()
    slow_session.channel.stop()
    slow_session.drain()

    # round 2 opened while we were away; its first bid arrives before the snapshot does
    coordinator.round = {"roundNumber": 2, "title": "Q2", "status": "bidding", "timeLeft": 30, "bids": []}
    slow_session.channel.connect_once()
    sockets.last.push("bid:received", {"teamId": "t9", "teamName": "Zeta", "amount": 999})
    slow_session.drain()

    assert slow_session.view.round.round_number == 1
    assert slow_session.view.round.bids == ()
    assert slow_session.view.stale is True

    _settle(slow_session, deferred)

    view = slow_session.view
    assert view.round.round_number == 2
    assert [(b.team_id, b.amount) for b in view.round.bids] == [("t9", 999)]
    assert view.stale is False


def test_failed_baseline_releases_held_events(slow_session, deferred, coordinator, sockets):
    slow_session.login(make_token(**ADMIN))
    _settle(slow_session, deferred)

    coordinator.state_failures = [503, 503, 503]
    slow_session.channel.connect_once()
    sockets.last.push("round:started", {"roundNumber": 1, "title": "Q1", "durationSeconds": 30})
    slow_session.drain()
    assert slow_session.view.round.round_number == 0

    _settle(slow_session, deferred)

    assert slow_session.view.round.round_number == 1
    assert slow_session.view.stale is True


def test_rejected_timer_rise_leaves_local_countdown_alone(slow_session, deferred, sockets, clock):
    slow_session.login(make_token(**ADMIN))
    slow_session.channel.connect_once()
    _settle(slow_session, deferred)
    client = sockets.last

    client.push("round:started", {"roundNumber": 1, "title": "Q1", "durationSeconds": 30})
    slow_session.drain()
    clock.advance(1.0)
    client.push("timer:update", {"timeLeft": 29})
    slow_session.drain()
    assert slow_session.view.round.time_left_seconds == 29

    clock.advance(1.0)
    client.push("timer:update", {"timeLeft": 60})
    slow_session.drain()

    assert slow_session.view.round.time_left_seconds == 29
    assert deferred.pending
    assert slow_session.reconciler.remaining() == 29


# ─────────────────────────────────────────────
# FAILURES ARE NOT FATAL
# ─────────────────────────────────────────────

class _LockedCache(SessionCache):
    def save_snapshot(self, payload, round_number):
        raise OperationalError("UPDATE cached_snapshots", {}, Exception("database is locked"))


def test_cache_write_failure_keeps_session_running(settings, http, coordinator, sockets, clock):
    coordinator.round = {"roundNumber": 3, "title": "Q3", "status": "bidding", "timeLeft": 20, "bids": []}
    session = SyncSession(settings, cache=_LockedCache.from_url("sqlite://"), http=http, client_factory=sockets,
                          executor=InlineExecutor(), clock=clock, sleep=lambda _s: None)
    try:
        session.login(make_token(**ADMIN))
        session.drain()
        assert session.view.round.round_number == 3
        assert session.view.stale is False

        client = _connect(session, sockets)
        client.push("bidding:ended")
        session.drain()
        assert session.view.round.status == RoundStatus.reviewing
    finally:
        session.stop()


def test_failing_input_does_not_stop_later_ones(session, sockets, monkeypatch):
    session.login(make_token(**ADMIN))
    client = _connect(session, sockets)

    seeded = []

    def broken_seed(duration):
        seeded.append(duration)
        raise RuntimeError("clock unavailable")

    monkeypatch.setattr(session.reconciler, "seed", broken_seed)
    client.push("round:started", {"roundNumber": 1, "title": "Q1", "durationSeconds": 30})
    client.push("bid:received", {"teamId": "t2", "teamName": "Beta", "amount": 10})
    session.drain()

    assert seeded == [30]
    assert session.view.round.round_number == 1
    assert [b.team_id for b in session.view.round.bids] == ["t2"]


def test_game_reset_keeps_round_number_until_new_snapshot(session, coordinator, sockets):
    session.login(make_token(**ADMIN))
    client = _connect(session, sockets)
    client.push("round:started", {"roundNumber": 5, "title": "Q5", "durationSeconds": 30})
    session.drain()
    fetched = coordinator.calls["state"]

    coordinator.round = {"roundNumber": 1, "title": "Q1", "status": "bidding", "timeLeft": 30, "bids": []}
    client.push("game:reset")
    session.drain()

    # the reset asks for the new game's baseline, which restarts numbering
    assert coordinator.calls["state"] == fetched + 1
    assert session.view.epoch == 1
    assert session.view.round.round_number == 1
    assert session.view.renumber_pending is False
