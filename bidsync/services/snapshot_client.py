# bidsync/services/snapshot_client.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests
from pydantic import ValidationError

from bidsync.core.backoff import ExponentialBackoff, backoff_from_settings
from bidsync.core.config import Settings
from bidsync.core.errors import MalformedResponse, Unauthorized, Unreachable
from bidsync.core.security import Credential
from bidsync.schemas.snapshot import SnapshotPayload
from bidsync.services.credential_store import CredentialStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotResult:
    payload: SnapshotPayload
    raw: Dict[str, Any]
    # identity of the credential the request was made with
    credential: Credential


class SnapshotClient:
    """
    Pulls GET /game/state.

    Failure mapping:
    - 401                -> store cleared (if still the same credential), Unauthorized
    - 403                -> Unauthorized, credential kept
    - transport, 5xx     -> Unreachable
    - bad JSON / schema  -> MalformedResponse (an Unreachable, retried the same way)
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        http: Optional[requests.Session] = None,
        backoff: Optional[ExponentialBackoff] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self._store = store
        self._settings = settings
        self._http = http if http is not None else requests.Session()
        self._backoff = backoff or backoff_from_settings(settings, settings.snapshot_max_attempts)
        # None: wait on the clear signal so a logout cuts the backoff short
        self._sleep = sleep

    @property
    def url(self) -> str:
        return f"{self._settings.coordinator_api}/game/state"

    def fetch_snapshot(self) -> SnapshotResult:
        cred = self._store.get()
        if cred is None:
            raise Unauthorized("No credential; cannot fetch snapshot.")

        try:
            resp = self._http.get(
                self.url,
                headers=cred.bearer,
                timeout=self._settings.request_timeout_seconds,
            )
        except requests.RequestException as e:
            raise Unreachable(f"Snapshot request failed: {e}") from e

        if resp.status_code == 401:
            self._store.clear("unauthorized", expected=cred)
            raise Unauthorized("Coordinator rejected credential (HTTP 401).")
        if resp.status_code == 403:
            raise Unauthorized("Credential not permitted to read game state (HTTP 403).")
        if resp.status_code >= 400:
            raise Unreachable(f"Snapshot request failed with HTTP {resp.status_code}.")

        try:
            raw = resp.json()
        except ValueError as e:
            logger.warning("[snapshot] response is not JSON: %s", e)
            raise MalformedResponse("Snapshot response is not JSON.") from e

        if not isinstance(raw, dict):
            logger.warning("[snapshot] response is %s, expected object", type(raw).__name__)
            raise MalformedResponse("Snapshot response is not an object.")

        try:
            payload = SnapshotPayload.model_validate(raw)
        except ValidationError as e:
            logger.warning("[snapshot] response failed validation: %s", e)
            raise MalformedResponse(f"Snapshot failed validation ({e.error_count()} error(s)).") from e

        return SnapshotResult(payload=payload, raw=raw, credential=cred)

    def fetch_with_retry(self) -> SnapshotResult:
        """
        Retries Unreachable (incl. malformed) with jittered backoff, capped attempts.
        Stops as soon as the credential it started with is no longer current.
        """
        started_with = self._store.get()
        cancelled = threading.Event()

        def on_cleared(old: Credential, reason: str) -> None:
            if old is started_with:
                cancelled.set()

        dispose = self._store.subscribe(on_cleared)
        try:
            attempt = 0
            while True:
                attempt += 1
                try:
                    return self.fetch_snapshot()
                except Unreachable as e:
                    if self._backoff.exhausted(attempt):
                        logger.warning("[snapshot] giving up after %d attempt(s): %s", attempt, e)
                        raise
                    delay = self._backoff.delay(attempt)
                    logger.info("[snapshot] attempt %d failed (%s); retrying in %.2fs", attempt, e, delay)
                    self._wait(cancelled, delay)
                    if cancelled.is_set() or not self._store.is_current(started_with):
                        raise Unauthorized("Credential changed while retrying snapshot.")
        finally:
            dispose()

    def _wait(self, cancelled: threading.Event, delay: float) -> None:
        if self._sleep is not None:
            self._sleep(delay)
        else:
            cancelled.wait(delay)
