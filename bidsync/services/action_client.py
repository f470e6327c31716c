# bidsync/services/action_client.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

import requests

from bidsync.core.config import Settings
from bidsync.core.errors import (
    DuplicateBid,
    InsufficientState,
    Rejected,
    RoundClosed,
    Unauthorized,
    Unreachable,
)
from bidsync.core.security import Credential
from bidsync.models.enums import RejectionReason, RoundResult
from bidsync.schemas.actions import ActionAck
from bidsync.services.credential_store import CredentialStore

logger = logging.getLogger(__name__)

_REASON_TYPES = {
    RejectionReason.DUPLICATE_BID.value: DuplicateBid,
    RejectionReason.ROUND_CLOSED.value: RoundClosed,
    RejectionReason.INSUFFICIENT_STATE.value: InsufficientState,
}

# the coordinator often only sends a human message; match on it as a fallback
_MESSAGE_HINTS: Tuple[Tuple[Tuple[str, ...], type], ...] = (
    (("already bid", "already placed", "already submitted", "duplicate"), DuplicateBid),
    (("not active", "closed", "ended", "not open", "no active"), RoundClosed),
)


def classify_rejection(status_code: int, body: Any) -> Rejected:
    message = "Action rejected by coordinator."
    code = None
    if isinstance(body, dict):
        message = str(body.get("message") or body.get("detail") or body.get("error") or message)
        code = body.get("code") or body.get("reason")

    if code and str(code).upper() in _REASON_TYPES:
        return _REASON_TYPES[str(code).upper()](message, status_code=status_code)

    lowered = message.lower()
    for needles, exc_type in _MESSAGE_HINTS:
        if any(n in lowered for n in needles):
            return exc_type(message, status_code=status_code)
    return InsufficientState(message, status_code=status_code)


class ActionClient:
    """
    Request/response calls to the coordinator's action endpoints.
    The transport offers no dedup; callers guard retries (see BidGuard).
    """

    def __init__(self, store: CredentialStore, settings: Settings, http: Optional[requests.Session] = None):
        self._store = store
        self._settings = settings
        self._http = http if http is not None else requests.Session()

    # ---------------------------
    # OPERATOR
    # ---------------------------

    def start_round(self, title: str, category: str, duration_seconds: Optional[int] = None) -> ActionAck:
        body: Dict[str, Any] = {"title": title, "category": category}
        if duration_seconds is not None:
            body["duration"] = duration_seconds
        return self._post("/game/start", body)

    def end_bidding(self) -> ActionAck:
        return self._post("/game/end-bidding", {})

    def mark_result(self, result: RoundResult) -> ActionAck:
        return self._post("/game/result", {"result": RoundResult(result).value})

    def force_reset(self) -> ActionAck:
        return self._post("/game/force-reset", {})

    def reset_game(self) -> ActionAck:
        return self._post("/teams/reset", {})

    def history(self) -> List[Dict[str, Any]]:
        cred = self._require_credential()
        data = self._handle(self._send("GET", "/game/history", cred, None), cred)
        if isinstance(data, dict):
            data = data.get("history") or data.get("rounds") or []
        return list(data or [])

    # ---------------------------
    # PARTICIPANT
    # ---------------------------

    def submit_bid(self, amount: int, credential: Optional[Credential] = None) -> ActionAck:
        return self._post("/game/bid", {"amount": amount}, credential=credential)

    # ---------------------------
    # INTERNAL
    # ---------------------------

    def _require_credential(self) -> Credential:
        cred = self._store.get()
        if cred is None:
            raise Unauthorized("No credential; action not sent.")
        return cred

    def _post(self, path: str, body: Dict[str, Any], credential: Optional[Credential] = None) -> ActionAck:
        cred = credential or self._require_credential()
        data = self._handle(self._send("POST", path, cred, body), cred)
        if isinstance(data, dict):
            return ActionAck(ok=True, message=data.get("message"), data=data)
        return ActionAck(ok=True)

    def _send(self, method: str, path: str, cred: Credential, body: Optional[Dict[str, Any]]):
        url = f"{self._settings.coordinator_api}{path}"
        try:
            return self._http.request(
                method,
                url,
                json=body,
                headers=cred.bearer,
                timeout=self._settings.request_timeout_seconds,
            )
        except requests.RequestException as e:
            logger.warning("[actions] %s %s failed: %s", method, path, e)
            raise Unreachable(f"{method} {path} failed: {e}") from e

    def _handle(self, resp, cred: Credential) -> Any:
        try:
            body = resp.json()
        except ValueError:
            body = None

        if resp.status_code == 401:
            self._store.clear("unauthorized", expected=cred)
            raise Unauthorized("Coordinator rejected credential (HTTP 401).")
        if resp.status_code >= 500:
            raise Unreachable(f"Coordinator error HTTP {resp.status_code}.")
        if resp.status_code >= 400:
            rejection = classify_rejection(resp.status_code, body)
            logger.info("[actions] rejected reason=%s message=%s", rejection.reason, rejection.message)
            raise rejection
        return body
