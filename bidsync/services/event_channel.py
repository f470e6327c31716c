# bidsync/services/event_channel.py
from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import socketio

from bidsync.core.backoff import ExponentialBackoff, backoff_from_settings
from bidsync.core.config import Settings
from bidsync.core.errors import MalformedEvent, Unauthorized, Unreachable
from bidsync.core.security import Credential
from bidsync.schemas.events import EVENT_NAMES, ChannelEvent, ForceLogout, parse_event
from bidsync.services.credential_store import CredentialStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelDelivery:
    event: ChannelEvent
    # credential the connection was authenticated with
    credential: Credential
    # bumped on every (re)connect and teardown
    generation: int


DeliveryHandler = Callable[[ChannelDelivery], None]


def default_client_factory() -> socketio.Client:
    # the channel owns reconnection, so the library's own loop stays off
    return socketio.Client(reconnection=False, logger=False, engineio_logger=False)


class EventChannel:
    """
    One logical Socket.IO subscription per credential.

    Rules:
    - Every connect attempt authenticates with the credential current at that moment.
    - Reconnects back off exponentially with jitter, bounded by
      channel_max_reconnect_attempts consecutive failures; success resets the count.
    - Every successful (re)connect calls on_connected, which must resync from a snapshot
      before later events are trusted.
    - Handlers of a torn-down connection are fenced by the generation counter.
    - force:logout clears the store and stops the channel without reconnecting.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        on_connected: Optional[Callable[[Credential, int], None]] = None,
        on_status: Optional[Callable[[bool], None]] = None,
        client_factory: Callable[[], Any] = default_client_factory,
        backoff: Optional[ExponentialBackoff] = None,
    ):
        self._store = store
        self._settings = settings
        self._on_connected = on_connected
        self._on_status = on_status
        self._client_factory = client_factory
        self._backoff = backoff or backoff_from_settings(settings, settings.channel_max_reconnect_attempts)

        self._lock = threading.RLock()
        # held while delivering so dispose() returning means "never again"
        self._delivery_lock = threading.RLock()
        self._subscribers: Dict[int, DeliveryHandler] = {}
        self._ids = itertools.count(1)

        self._generation = 0
        self._client: Optional[Any] = None
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._lost = threading.Event()
        self._local = threading.local()
        self.connected = False

    # ---------------------------
    # SUBSCRIPTIONS
    # ---------------------------

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def subscribe(self, handler: DeliveryHandler) -> Callable[[], None]:
        with self._delivery_lock:
            key = next(self._ids)
            self._subscribers[key] = handler

        def dispose() -> None:
            with self._delivery_lock:
                self._subscribers.pop(key, None)

        return dispose

    def _deliver(self, delivery: ChannelDelivery) -> None:
        with self._delivery_lock:
            for key in list(self._subscribers):
                handler = self._subscribers.get(key)
                if handler is None:
                    # disposed by an earlier handler in this same pass
                    continue
                try:
                    handler(delivery)
                except Exception:
                    logger.exception("[channel] subscriber failed on %s", delivery.event.event)

    # ---------------------------
    # CONNECTION
    # ---------------------------

    def connect_once(self) -> int:
        """
        One connection attempt with the current credential.
        Returns the new generation.
        """
        cred = self._store.get()
        if cred is None:
            raise Unauthorized("No credential; channel not connected.")

        with self._lock:
            self._generation += 1
            generation = self._generation

        client = self._client_factory()
        self._register(client, cred, generation)

        try:
            client.connect(
                self._settings.socket_url,
                auth={"token": cred.token},
                transports=list(self._settings.channel_transports),
                wait_timeout=self._settings.channel_connect_timeout_seconds,
            )
        except socketio.exceptions.ConnectionError as e:
            raise Unreachable(f"Channel connect failed: {e}") from e

        with self._lock:
            if generation != self._generation or not self._store.is_current(cred):
                # torn down or rotated while the handshake was in flight
                stale = True
            else:
                stale = False
                self._client = client
                self._lost.clear()
        if stale:
            self._safe_disconnect(client)
            raise Unauthorized("Credential changed during channel handshake.")

        logger.info("[channel] connected generation=%s %r", generation, cred)
        self._set_status(True)
        if self._on_connected is not None:
            self._on_connected(cred, generation)
        return generation

    def run(self) -> None:
        """
        Connect/reconnect loop; returns when stopped, logged out or out of attempts.
        """
        failures = 0
        while not self._stop.is_set():
            try:
                self.connect_once()
            except Unauthorized as e:
                logger.info("[channel] not connecting: %s", e)
                break
            except Unreachable as e:
                failures += 1
                if self._backoff.exhausted(failures):
                    logger.error("[channel] giving up after %d failed attempt(s): %s", failures, e)
                    break
                delay = self._backoff.delay(failures)
                logger.info("[channel] attempt %d failed (%s); retrying in %.2fs", failures, e, delay)
                self._stop.wait(delay)
                continue

            failures = 0
            self._lost.wait()
            self._drop_client()
            if self._stop.is_set():
                break
            self._set_status(False)
            # a connection that drops at once must not turn into a hot loop
            self._stop.wait(self._backoff.delay(1))

        self._set_status(False)

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._lost.clear()
            self._thread = threading.Thread(target=self.run, name="bidsync-channel", daemon=True)
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        with self._lock:
            self._generation += 1
            thread = self._thread
            self._thread = None
        self._lost.set()
        self._drop_client()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._set_status(False)

    # ---------------------------
    # HANDLERS
    # ---------------------------

    def _register(self, client: Any, cred: Credential, generation: int) -> None:
        def on_disconnect(*args) -> None:
            if generation == self.generation:
                logger.info("[channel] disconnected generation=%s", generation)
                self._lost.set()

        client.on("disconnect", on_disconnect)

        for name in EVENT_NAMES:
            client.on(name, self._make_handler(name, cred, generation))

        def on_unknown(event, *args) -> None:
            logger.info("[channel] unknown event %r dropped", event)

        client.on("*", on_unknown)

    def _make_handler(self, name: str, cred: Credential, generation: int):
        def handler(*args) -> None:
            if generation != self.generation:
                return
            payload = args[0] if args else None
            try:
                event = parse_event(name, payload)
            except MalformedEvent as e:
                logger.warning("[channel] %s", e)
                return

            self._local.in_handler = True
            try:
                if isinstance(event, ForceLogout):
                    self._force_logout(event, cred)
                else:
                    self._deliver(ChannelDelivery(event=event, credential=cred, generation=generation))
            finally:
                self._local.in_handler = False

        return handler

    def _force_logout(self, event: ForceLogout, cred: Credential) -> None:
        logger.warning("[channel] force logout: %s", event.reason or "no reason given")
        self._stop.set()
        self._store.clear("force_logout", expected=cred)
        self.stop()

    # ---------------------------
    # INTERNAL
    # ---------------------------

    def _drop_client(self) -> None:
        with self._lock:
            client = self._client
            self._client = None
        if client is None:
            return
        if getattr(self._local, "in_handler", False):
            # the client cannot join its own receive thread
            threading.Thread(target=self._safe_disconnect, args=(client,), daemon=True).start()
        else:
            self._safe_disconnect(client)

    @staticmethod
    def _safe_disconnect(client: Any) -> None:
        try:
            client.disconnect()
        except Exception:
            logger.exception("[channel] disconnect failed")

    def _set_status(self, connected: bool) -> None:
        with self._lock:
            changed = connected != self.connected
            self.connected = connected
        if changed and self._on_status is not None:
            self._on_status(connected)
