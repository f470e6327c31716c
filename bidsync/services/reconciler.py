# bidsync/services/reconciler.py
from __future__ import annotations

import logging
import math
import threading
import time
from typing import Callable, Optional, Sequence, Tuple

from bidsync.schemas.round import LeaderboardEntry, TeamRecord, rank_leaderboard

logger = logging.getLogger(__name__)


class TimerReconciler:
    """
    Local countdown anchored to the last trusted server value.

    Rules:
    - Between ticks the countdown runs on the local monotonic clock.
    - On each tick, drift = (locally elapsed since last tick) - tick interval.
      If |drift| or the local/server disagreement exceeds the tolerance, the
      countdown is re-anchored to the server value instead of decrementing locally.
    - A frozen countdown (bidding ended, round over) does not move.
    """

    def __init__(
        self,
        tick_seconds: float = 1.0,
        tolerance: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.tick_seconds = float(tick_seconds)
        self.tolerance = float(tolerance)
        self._clock = clock
        self._lock = threading.Lock()

        self._anchor_value = 0
        self._anchor_at: Optional[float] = None
        self._last_tick_at: Optional[float] = None
        self._running = False
        self.resyncs = 0

    def seed(self, duration: int) -> None:
        with self._lock:
            now = self._clock()
            self._anchor_value = max(0, int(duration))
            self._anchor_at = now
            self._last_tick_at = now
            self._running = True

    def freeze(self, value: int = 0) -> None:
        with self._lock:
            self._anchor_value = max(0, int(value))
            self._anchor_at = None
            self._last_tick_at = None
            self._running = False

    def remaining(self) -> int:
        with self._lock:
            return self._local(self._clock())

    def observe(self, time_left: int) -> int:
        """
        Feed one server tick; returns the value the view should show.
        """
        server = max(0, int(time_left))
        with self._lock:
            now = self._clock()
            if not self._running:
                self._reanchor(server, now)
                return server

            elapsed = now - self._last_tick_at
            drift = elapsed - self.tick_seconds
            local = self._local(now)
            self._last_tick_at = now

            if abs(drift) > self.tolerance or abs(local - server) > self.tolerance:
                logger.info(
                    "[timer] resync local=%s server=%s drift=%.2fs",
                    local, server, drift,
                )
                self._reanchor(server, now)
                self.resyncs += 1
                return server
            return local

    # ---------------------------
    # INTERNAL
    # ---------------------------

    def _local(self, now: float) -> int:
        if not self._running or self._anchor_at is None:
            return self._anchor_value
        elapsed = max(0.0, now - self._anchor_at)
        return max(0, self._anchor_value - int(math.floor(elapsed)))

    def _reanchor(self, value: int, now: float) -> None:
        self._anchor_value = value
        self._anchor_at = now
        self._last_tick_at = now
        self._running = True


def reconcile_leaderboard(rows: Sequence[TeamRecord]) -> Tuple[LeaderboardEntry, ...]:
    """
    Only wholesale payloads (round:completed, snapshot) are ranked.
    Individual bid/result events never feed the ranking.
    """
    if rows is None:
        raise ValueError("Leaderboard payload is required; partial updates are not ranked.")
    return rank_leaderboard(list(rows))
