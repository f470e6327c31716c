# bidsync/services/credential_store.py
from __future__ import annotations

import itertools
import logging
import threading
from typing import Callable, Dict, Optional, Union

from bidsync.core.errors import Unauthorized
from bidsync.core.security import Credential, credential_from_token
from bidsync.services.cache_service import SessionCache

logger = logging.getLogger(__name__)

ClearListener = Callable[[Credential, str], None]


class CredentialStore:
    """
    Sole owner of the bearer credential.

    Rules:
    - Other components receive the Credential object per operation and never keep it
      beyond that operation; staleness is checked with is_current() (identity).
    - clear() runs every listener synchronously before returning, so in-flight work
      keyed to the old credential is invalidated by the time the caller continues.
    """

    def __init__(self, cache: Optional[SessionCache] = None):
        self._lock = threading.RLock()
        self._current: Optional[Credential] = None
        self._listeners: Dict[int, ClearListener] = {}
        self._ids = itertools.count(1)
        self._cache = cache

    # ---------------------------
    # READS
    # ---------------------------

    def get(self) -> Optional[Credential]:
        with self._lock:
            return self._current

    def is_current(self, cred: Optional[Credential]) -> bool:
        with self._lock:
            return cred is not None and cred is self._current

    # ---------------------------
    # MUTATIONS
    # ---------------------------

    def set(self, cred: Union[str, Credential]) -> Credential:
        if isinstance(cred, str):
            cred = credential_from_token(cred)

        with self._lock:
            previous = self._current
            self._current = cred

        if previous is not None:
            # rotation: anything keyed to the previous credential is now stale
            self._notify(previous, "rotated")

        if self._cache is not None:
            self._cache.save_credential(cred.token, cred.role.value)

        logger.info("[credentials] set %r", cred)
        return cred

    def clear(self, reason: str = "logout", expected: Optional[Credential] = None) -> bool:
        """
        Returns False when there was nothing to clear, or when `expected` is given
        and is no longer the current credential (a late 401 must not log out a
        newer session).
        """
        with self._lock:
            old = self._current
            if old is None:
                return False
            if expected is not None and expected is not old:
                return False
            self._current = None

        if self._cache is not None:
            self._cache.clear_credential()

        logger.info("[credentials] cleared %r reason=%s", old, reason)
        self._notify(old, reason)
        return True

    def subscribe(self, listener: ClearListener) -> Callable[[], None]:
        with self._lock:
            key = next(self._ids)
            self._listeners[key] = listener

        def dispose() -> None:
            with self._lock:
                self._listeners.pop(key, None)

        return dispose

    def restore(self) -> Optional[Credential]:
        """
        Re-seed from the local cache after a restart.
        An unreadable cached token is dropped.
        """
        if self._cache is None:
            return None
        cached = self._cache.load_credential()
        if not cached:
            return None
        token, _role = cached
        try:
            cred = credential_from_token(token)
        except Unauthorized as e:
            logger.warning("[credentials] cached token unusable: %s", e)
            self._cache.clear_credential()
            return None
        with self._lock:
            self._current = cred
        logger.info("[credentials] restored %r", cred)
        return cred

    # ---------------------------
    # INTERNAL
    # ---------------------------

    def _notify(self, old: Credential, reason: str) -> None:
        with self._lock:
            listeners = list(self._listeners.values())
        for listener in listeners:
            try:
                listener(old, reason)
            except Exception:
                logger.exception("[credentials] clear listener failed")
