#bidsync/policies/rbac.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Set

from bidsync.core.security import Credential
from bidsync.models.enums import Role


@dataclass(frozen=True)
class Principal:
    subject: Optional[str]
    role: Role
    display_name: Optional[str]


# --- Core action constants ---
ACTION_SUBMIT_BID = "SUBMIT_BID"
ACTION_START_ROUND = "START_ROUND"
ACTION_END_BIDDING = "END_BIDDING"
ACTION_MARK_RESULT = "MARK_RESULT"
ACTION_FORCE_RESET = "FORCE_RESET"
ACTION_RESET_GAME = "RESET_GAME"
ACTION_VIEW_HISTORY = "VIEW_HISTORY"

OPERATOR_ACTIONS = {
    ACTION_START_ROUND,
    ACTION_END_BIDDING,
    ACTION_MARK_RESULT,
    ACTION_FORCE_RESET,
    ACTION_RESET_GAME,
    ACTION_VIEW_HISTORY,
}


def principal_for(cred: Credential) -> Principal:
    return Principal(subject=cred.subject, role=cred.role, display_name=cred.display_name)


def allowed_actions(role: Role) -> Set[str]:
    """
    Pure RBAC: which actions a role may attempt.
    The coordinator enforces the same rules; this only avoids pointless calls.
    """

    if role == Role.TEAM:
        return {ACTION_SUBMIT_BID}

    if role == Role.ADMIN:
        return set(OPERATOR_ACTIONS)

    if role == Role.SPECTATOR:
        return set()

    return set()


def require_action(principal: Principal, action: str) -> None:
    if action not in allowed_actions(principal.role):
        raise PermissionError(
            f"Role {principal.role.value} not permitted for action {action}."
        )


def can_see_all_bids(role: Optional[Role]) -> bool:
    # participants only ever see their own bid before the round ends
    return role in (Role.ADMIN, Role.SPECTATOR)
