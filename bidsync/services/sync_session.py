# bidsync/services/sync_session.py
from __future__ import annotations

import itertools
import logging
import queue
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from bidsync.core.config import Settings, get_settings
from bidsync.core.errors import DuplicateBid, RoundClosed, Unauthorized, Unreachable
from bidsync.core.security import Credential
from bidsync.models.enums import RoundResult, RoundStatus
from bidsync.policies.rbac import (
    ACTION_END_BIDDING,
    ACTION_FORCE_RESET,
    ACTION_MARK_RESULT,
    ACTION_RESET_GAME,
    ACTION_START_ROUND,
    ACTION_VIEW_HISTORY,
    principal_for,
    require_action,
)
from bidsync.schemas.actions import ActionAck
from bidsync.schemas.events import (
    BiddingEnded,
    GameReset,
    RoundCompleted,
    RoundForceReset,
    RoundStarted,
    RoundStatusChanged,
    TimerUpdate,
)
from bidsync.schemas.round import GameView
from bidsync.schemas.snapshot import SnapshotPayload
from bidsync.services.action_client import ActionClient
from bidsync.services.bid_guard import BidGuard
from bidsync.services.cache_service import SessionCache
from bidsync.services.credential_store import CredentialStore
from bidsync.services.event_channel import ChannelDelivery, EventChannel, default_client_factory
from bidsync.services.reconciler import TimerReconciler
from bidsync.services.round_state_machine import (
    ConnectionChanged,
    OwnBidAccepted,
    RoundStateMachine,
    SnapshotFailed,
    SnapshotInput,
    Transition,
)
from bidsync.services.snapshot_client import SnapshotClient, SnapshotResult

logger = logging.getLogger(__name__)

ViewListener = Callable[[GameView], None]

_STOP = object()

# inputs after which the local countdown is re-seeded or frozen from the view
_TIMER_INPUTS = (
    RoundStarted,
    BiddingEnded,
    RoundCompleted,
    RoundForceReset,
    GameReset,
    RoundStatusChanged,
    SnapshotInput,
)

# a (re)connect baseline; resolves the hold on that connection's events
_BASELINE_INPUTS = (SnapshotInput, SnapshotFailed)


@dataclass(frozen=True)
class InboxItem:
    item: Any
    credential: Credential
    # session generation: bumped on login and on every credential clear
    generation: int
    # channel generation for pushed events and connect baselines; None otherwise
    channel_generation: Optional[int] = None


class SyncSession:
    """
    Explicit context object for one client process.

    Everything that used to be module-level (socket, credential, cached round)
    lives here and is torn down with it.

    Rules:
    - One ordered inbox, one consumer: the reducer is never entered concurrently.
    - An inbox item applies only if its credential is still current and its
      generation matches; anything else is a stale response and is dropped.
    - Snapshot fetches run on the executor and never block event delivery.
    - A (re)connected channel is not trusted until its own snapshot lands: its
      events are held until then and replayed in arrival order afterwards.
    - Nothing here is fatal: failures flag the view stale and schedule recovery.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        cache: Optional[SessionCache] = None,
        store: Optional[CredentialStore] = None,
        http: Optional[requests.Session] = None,
        client_factory: Callable[[], Any] = default_client_factory,
        executor: Optional[Executor] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.settings = settings or get_settings()
        self.cache = cache
        self.store = store or CredentialStore(cache)

        self.snapshots = SnapshotClient(self.store, self.settings, http=http, sleep=sleep)
        self.actions = ActionClient(self.store, self.settings, http=http)
        self.reducer = RoundStateMachine(self.settings.timer_tick_seconds, self.settings.starting_coins)
        self.reconciler = TimerReconciler(
            self.settings.timer_tick_seconds,
            self.settings.timer_drift_tolerance_seconds,
            clock=clock,
        )
        self.channel = EventChannel(
            self.store,
            self.settings,
            on_connected=self._on_channel_connected,
            on_status=self._on_channel_status,
            client_factory=client_factory,
        )
        self.bids = BidGuard(self.store, self.actions, lambda: self.view, self._apply_own_bid)

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="bidsync-snapshot")

        self._inbox: "queue.Queue[Any]" = queue.Queue()
        self._apply_lock = threading.RLock()
        self._view = GameView.initial()
        self._generation = 0
        self._desyncs = 0
        # last channel generation whose baseline snapshot has been applied
        self._baseline_generation = 0
        self._held: List[InboxItem] = []

        self._listeners: Dict[int, ViewListener] = {}
        self._listener_ids = itertools.count(1)
        self._snapshot_ids = itertools.count(1)
        self._consumer: Optional[threading.Thread] = None
        self._started = False

        self._disposers: List[Callable[[], None]] = [
            self.store.subscribe(self._on_credential_cleared),
            self.channel.subscribe(self._on_delivery),
        ]

    # ---------------------------
    # LIFECYCLE
    # ---------------------------

    def start(self, consume: bool = True) -> None:
        """
        Restores the cached credential/snapshot (if any), then loads a fresh
        snapshot and opens the channel. consume=False leaves the inbox to drain().
        """
        if self._started:
            return
        self._started = True

        if consume:
            self._consumer = threading.Thread(target=self._consume, name="bidsync-inbox", daemon=True)
            self._consumer.start()

        cred = self.store.get() or self.store.restore()
        if cred is None:
            logger.info("[session] started without a credential")
            return

        self._reset_view(cred)
        self._seed_from_cache(cred)
        self.resync("startup")
        self.channel.start()

    def login(self, token: str) -> Credential:
        cred = self.store.set(token)
        self._reset_view(cred)
        logger.info("[session] login %r", cred)
        self.resync("login")
        if self._started:
            self.channel.start()
        return cred

    def logout(self) -> bool:
        return self.store.clear("logout")

    def stop(self) -> None:
        self.channel.stop()
        for dispose in self._disposers:
            dispose()
        self._disposers = []
        if self._consumer is not None:
            self._inbox.put(_STOP)
            self._consumer.join(5.0)
            self._consumer = None
        if self._owns_executor:
            self._executor.shutdown(wait=False)
        self._started = False
        logger.info("[session] stopped")

    # ---------------------------
    # VIEW
    # ---------------------------

    @property
    def view(self) -> GameView:
        # views are frozen; handing out the current one is handing out a copy
        with self._apply_lock:
            return self._view

    def time_left(self) -> int:
        with self._apply_lock:
            rnd = self._view.round
            if rnd.status == RoundStatus.bidding:
                return min(rnd.time_left_seconds, self.reconciler.remaining())
            return rnd.time_left_seconds

    def subscribe(self, listener: ViewListener) -> Callable[[], None]:
        with self._apply_lock:
            key = next(self._listener_ids)
            self._listeners[key] = listener

        def dispose() -> None:
            with self._apply_lock:
                self._listeners.pop(key, None)

        return dispose

    # ---------------------------
    # SNAPSHOTS
    # ---------------------------

    def resync(self, reason: str, channel_generation: Optional[int] = None) -> Optional[Future]:
        cred = self.store.get()
        if cred is None:
            return None
        with self._apply_lock:
            generation = self._generation
            epoch = self._view.epoch
            mark = self._view.event_mark
            ordinal = next(self._snapshot_ids)
        logger.info("[session] resync #%s requested: %s", ordinal, reason)
        return self._executor.submit(
            self._fetch_snapshot, cred, generation, epoch, mark, ordinal, channel_generation
        )

    def _fetch_snapshot(
        self,
        cred: Credential,
        generation: int,
        epoch: int,
        mark: int,
        ordinal: int,
        channel_generation: Optional[int] = None,
    ) -> Optional[SnapshotResult]:
        try:
            result = self.snapshots.fetch_with_retry()
        except Unauthorized as e:
            logger.warning("[session] snapshot unauthorized: %s", e)
            self._post(SnapshotFailed("unauthorized"), cred, generation, channel_generation)
            return None
        except Unreachable as e:
            logger.warning("[session] snapshot unavailable: %s", e)
            self._post(SnapshotFailed("unreachable"), cred, generation, channel_generation)
            return None

        if result.credential is not cred:
            logger.info("[session] snapshot fetched for another credential; discarded")
            return None
        item = SnapshotInput(result.payload, requested_epoch=epoch, requested_mark=mark, ordinal=ordinal)
        self._post(item, cred, generation, channel_generation)
        return result

    def _seed_from_cache(self, cred: Credential) -> None:
        if self.cache is None:
            return
        cached = self.cache.load_snapshot()
        if not cached:
            return
        try:
            payload = SnapshotPayload.model_validate(cached)
        except ValidationError as e:
            logger.warning("[session] cached snapshot unusable: %s", e)
            return
        with self._apply_lock:
            item = SnapshotInput(payload, requested_epoch=self._view.epoch, requested_mark=self._view.event_mark)
            t = self.reducer.reduce(self._view, item)
            # a cached snapshot is a last-known-good view, never a fresh one
            self._view = t.view.model_copy(update={"stale": True})
            self._sync_timer(self._view)
        logger.info("[session] seeded from cached snapshot round=%s", self._view.round.round_number)
        self._notify(self._view)

    # ---------------------------
    # INBOX
    # ---------------------------

    def drain(self) -> int:
        """Applies everything queued so far on the calling thread."""
        n = 0
        while True:
            try:
                entry = self._inbox.get_nowait()
            except queue.Empty:
                return n
            if entry is _STOP:
                continue
            self._process_safely(entry)
            n += 1

    def _consume(self) -> None:
        while True:
            entry = self._inbox.get()
            if entry is _STOP:
                return
            self._process_safely(entry)

    def _process_safely(self, entry: InboxItem) -> None:
        # one bad input must not take the only consumer down with it
        try:
            self._process(entry)
        except Exception:
            logger.exception("[session] failed to process %s", type(entry.item).__name__)

    def _post(self, item: Any, cred: Credential, generation: int, channel_generation: Optional[int] = None) -> None:
        self._inbox.put(InboxItem(item, cred, generation, channel_generation))

    def _is_live(self, entry: InboxItem) -> bool:
        if not self.store.is_current(entry.credential):
            return False
        if entry.generation != self._generation:
            return False
        if entry.channel_generation is not None and entry.channel_generation != self.channel.generation:
            return False
        return True

    def _awaits_baseline(self, entry: InboxItem) -> bool:
        return (
            entry.channel_generation is not None
            and entry.channel_generation != self._baseline_generation
            and not isinstance(entry.item, _BASELINE_INPUTS)
        )

    def _process(self, entry: InboxItem) -> None:
        with self._apply_lock:
            if not self._is_live(entry):
                logger.debug("[session] stale %s dropped", type(entry.item).__name__)
                return
            if self._awaits_baseline(entry):
                self._held.append(entry)
                return

            applied = self._apply(entry.item)

            if entry.channel_generation is not None and isinstance(entry.item, _BASELINE_INPUTS):
                self._baseline_generation = entry.channel_generation
                held, self._held = self._held, []
                if held:
                    logger.info("[session] replaying %d event(s) held for the baseline", len(held))
                for h in held:
                    if self._is_live(h):
                        applied = self._apply(h.item) or applied
            view = self._view

        if applied:
            self._notify(view)

    def _apply(self, item: Any) -> bool:
        smoothed = isinstance(item, TimerUpdate) and self._view.round.status == RoundStatus.bidding
        if smoothed:
            item = item.model_copy(update={"time_left": self.reconciler.observe(item.time_left)})

        t = self.reducer.reduce(self._view, item)
        self._view = t.view
        if smoothed and not t.applied and t.resync:
            # the countdown followed a value the view refused; put it back
            self._sync_timer(self._view)
        self._after(item, t)
        return t.applied

    def _after(self, item: Any, t: Transition) -> None:
        if t.note and not t.applied:
            logger.info("[session] %s not applied: %s", type(item).__name__, t.note)

        if t.applied:
            if isinstance(item, _TIMER_INPUTS):
                self._sync_timer(t.view)
            if isinstance(item, SnapshotInput):
                self._desyncs = 0
                self._cache_snapshot(item)

        if t.desync:
            self._desyncs += 1
            if self._desyncs >= self.settings.desync_resync_threshold:
                self._desyncs = 0
                self.resync("repeated desync")
        if t.resync:
            self.resync(t.note or "reducer requested resync")

    def _sync_timer(self, view: GameView) -> None:
        rnd = view.round
        if rnd.status == RoundStatus.bidding:
            self.reconciler.seed(rnd.time_left_seconds)
        else:
            self.reconciler.freeze(rnd.time_left_seconds)

    def _cache_snapshot(self, item: SnapshotInput) -> None:
        if self.cache is None:
            return
        payload = item.payload
        round_number = payload.round.round_number if payload.round is not None else 0
        try:
            self.cache.save_snapshot(payload.model_dump(mode="json", by_alias=True), round_number)
        except SQLAlchemyError:
            # the live view is already applied; only the restart seed is lost
            logger.exception("[session] snapshot not cached")

    def _notify(self, view: GameView) -> None:
        with self._apply_lock:
            listeners = list(self._listeners.values())
        for listener in listeners:
            try:
                listener(view)
            except Exception:
                logger.exception("[session] view listener failed")

    # ---------------------------
    # CHANNEL CALLBACKS
    # ---------------------------

    def _on_delivery(self, delivery: ChannelDelivery) -> None:
        with self._apply_lock:
            generation = self._generation
        self._post(delivery.event, delivery.credential, generation, delivery.generation)

    def _on_channel_connected(self, cred: Credential, channel_generation: int) -> None:
        # reconnection does not imply continuity
        self.resync("channel connected", channel_generation=channel_generation)

    def _on_channel_status(self, connected: bool) -> None:
        cred = self.store.get()
        if cred is None:
            return
        with self._apply_lock:
            generation = self._generation
        self._post(ConnectionChanged(connected), cred, generation)

    def _on_credential_cleared(self, old: Credential, reason: str) -> None:
        self.channel.stop()
        with self._apply_lock:
            self._generation += 1
            self._view = GameView.initial()
            self._desyncs = 0
            self._held = []
            self.reconciler.freeze()
            view = self._view
        logger.info("[session] session reset after credential %s", reason)
        self._notify(view)

    def _reset_view(self, cred: Credential) -> None:
        with self._apply_lock:
            self._generation += 1
            self._view = GameView.initial(cred.role, cred.subject)
            self._desyncs = 0
            self._held = []
            self.reconciler.freeze()

    # ---------------------------
    # ACTIONS
    # ---------------------------

    def submit_bid(self, amount) -> ActionAck:
        try:
            return self.bids.submit_bid(amount)
        except (DuplicateBid, RoundClosed):
            # the coordinator knows something the view does not
            self.resync("bid rejected")
            raise

    def _apply_own_bid(self, accepted: OwnBidAccepted, cred: Credential) -> None:
        with self._apply_lock:
            generation = self._generation
        # applied synchronously so the next submit_bid sees it in the live view
        self._process(InboxItem(accepted, cred, generation))

    def _require(self, action: str) -> Credential:
        cred = self.store.get()
        if cred is None:
            raise Unauthorized("No credential.")
        require_action(principal_for(cred), action)
        return cred

    def start_round(self, title: str, category: str = "Easy", duration_seconds: Optional[int] = None) -> ActionAck:
        self._require(ACTION_START_ROUND)
        return self.actions.start_round(title, category, duration_seconds)

    def end_bidding(self) -> ActionAck:
        self._require(ACTION_END_BIDDING)
        return self.actions.end_bidding()

    def mark_result(self, result: RoundResult) -> ActionAck:
        self._require(ACTION_MARK_RESULT)
        return self.actions.mark_result(result)

    def force_reset(self) -> ActionAck:
        self._require(ACTION_FORCE_RESET)
        return self.actions.force_reset()

    def reset_game(self) -> ActionAck:
        self._require(ACTION_RESET_GAME)
        return self.actions.reset_game()

    def history(self) -> List[Dict[str, Any]]:
        self._require(ACTION_VIEW_HISTORY)
        return self.actions.history()
