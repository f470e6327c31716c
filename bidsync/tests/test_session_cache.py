from bidsync.services.cache_service import SessionCache


def test_credential_roundtrip_and_replace():
    cache = SessionCache.from_url("sqlite://")
    assert cache.load_credential() is None

    cache.save_credential("tok-1", "team")
    cache.save_credential("tok-2", "admin")

    assert cache.load_credential() == ("tok-2", "admin")


def test_clearing_credential_drops_snapshot():
    cache = SessionCache.from_url("sqlite://")
    cache.save_credential("tok", "team")
    cache.save_snapshot({"round": {"roundNumber": 3}, "leaderboard": []}, round_number=3)
    assert cache.load_snapshot()["round"]["roundNumber"] == 3

    cache.clear_credential()

    assert cache.load_credential() is None
    assert cache.load_snapshot() is None


def test_snapshot_overwritten_in_place():
    cache = SessionCache.from_url("sqlite://")
    cache.save_snapshot({"round": None}, round_number=0)
    cache.save_snapshot({"round": {"roundNumber": 8}}, round_number=8)
    assert cache.load_snapshot() == {"round": {"roundNumber": 8}}
