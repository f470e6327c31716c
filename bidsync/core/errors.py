# bidsync/core/errors.py
from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """
    Base for every failure the sync engine surfaces.
    None of these are fatal to the process.
    """


# ─────────────────────────────────────────────
# AUTH / TRANSPORT
# ─────────────────────────────────────────────

class Unauthorized(SyncError):
    """Credential missing or rejected. Caller returns to the unauthenticated state."""


class Unreachable(SyncError):
    """Network call or channel could not complete. Retried with backoff."""


class MalformedResponse(Unreachable):
    """Payload failed structural validation. Treated as Unreachable for retries."""


class MalformedEvent(SyncError):
    """Channel payload failed validation. Logged and dropped."""


# ─────────────────────────────────────────────
# LOCAL VALIDATION (no network call is made)
# ─────────────────────────────────────────────

class InvalidInput(SyncError):
    pass


class InvalidAmount(InvalidInput):
    pass


class RoundNotOpen(InvalidInput):
    pass


class AlreadyBid(InvalidInput):
    pass


# ─────────────────────────────────────────────
# SERVER REJECTIONS (state left unchanged)
# ─────────────────────────────────────────────

class Rejected(SyncError):
    reason: str = "REJECTED"

    def __init__(self, message: str, *, reason: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if reason:
            self.reason = reason
        self.status_code = status_code


class DuplicateBid(Rejected):
    reason = "DUPLICATE_BID"


class RoundClosed(Rejected):
    reason = "ROUND_CLOSED"


class InsufficientState(Rejected):
    reason = "INSUFFICIENT_STATE"


# ─────────────────────────────────────────────
# ORDERING
# ─────────────────────────────────────────────

class Desynchronized(SyncError):
    """Stale or out-of-order input. Discarded and logged, never raised to consumers."""
