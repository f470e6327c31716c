# bidsync/services/bid_guard.py
from __future__ import annotations

import logging
import threading
from typing import Callable

from bidsync.core.errors import AlreadyBid, InvalidAmount, RoundNotOpen, Unauthorized
from bidsync.core.security import Credential
from bidsync.models.enums import RoundStatus
from bidsync.policies.rbac import ACTION_SUBMIT_BID, principal_for, require_action
from bidsync.schemas.actions import ActionAck
from bidsync.schemas.round import GameView
from bidsync.services.action_client import ActionClient
from bidsync.services.credential_store import CredentialStore
from bidsync.services.round_state_machine import OwnBidAccepted

logger = logging.getLogger(__name__)


def validate_amount(amount) -> int:
    # bool is an int subclass; True must not become a 1-coin bid
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount("Bid amount must be a positive integer.")
    if amount <= 0:
        raise InvalidAmount("Bid amount must be a positive integer.")
    return amount


class BidGuard:
    """
    One bid per team per round, enforced before anything goes on the wire.

    Rules:
    - Preconditions are read from the live view at call time, never a separate flag.
    - The team is marked as having bid only after the coordinator acknowledges.
    - A rejected submission leaves the team unlocked so it may retry.
    - Submissions are serialized: a second call waits for the first to settle,
      then sees its effect in the view.
    """

    def __init__(
        self,
        store: CredentialStore,
        actions: ActionClient,
        current_view: Callable[[], GameView],
        on_accepted: Callable[[OwnBidAccepted, Credential], None],
    ):
        self._store = store
        self._actions = actions
        self._current_view = current_view
        self._on_accepted = on_accepted
        self._lock = threading.Lock()

    def submit_bid(self, amount) -> ActionAck:
        amount = validate_amount(amount)

        with self._lock:
            cred = self._store.get()
            if cred is None:
                raise Unauthorized("No credential; bid not sent.")
            require_action(principal_for(cred), ACTION_SUBMIT_BID)

            view = self._current_view()
            rnd = view.round
            if rnd.status != RoundStatus.bidding:
                raise RoundNotOpen(f"Round {rnd.round_number} is {rnd.status.value}; bidding is not open.")
            if view.own_bid is not None:
                raise AlreadyBid(f"Team already bid {view.own_bid.amount} in round {rnd.round_number}.")

            ack = self._actions.submit_bid(amount, credential=cred)

            if not self._store.is_current(cred):
                logger.info("[bid] ack for round %s arrived after logout; discarded", rnd.round_number)
                raise Unauthorized("Credential changed while the bid was in flight.")

            accepted = OwnBidAccepted(
                round_number=rnd.round_number,
                team_id=view.viewer_team_id or cred.subject,
                amount=amount,
                team_name=(view.team.team_name if view.team else None) or cred.display_name,
            )
            self._on_accepted(accepted, cred)
            logger.info("[bid] accepted round=%s amount=%s", rnd.round_number, amount)
            return ack
