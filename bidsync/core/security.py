# bidsync/core/security.py
from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from bidsync.core.errors import Unauthorized
from bidsync.models.enums import Role

# public display connects with this literal instead of a signed token
SPECTATOR_TOKEN = "spectator"

_ROLE_ALIASES = {
    "team": Role.TEAM,
    "participant": Role.TEAM,
    "admin": Role.ADMIN,
    "operator": Role.ADMIN,
    "spectator": Role.SPECTATOR,
}

_SUBJECT_CLAIMS = ("teamId", "team_id", "id", "_id", "sub")

_serials = itertools.count(1)


@dataclass(frozen=True, eq=False)
class Credential:
    """
    Opaque bearer token plus the claims derived from it.

    Equality is identity: two credentials built from the same token string are
    still different sessions, so responses keyed to one never apply to the other.
    """
    token: str
    role: Role
    subject: Optional[str] = None
    display_name: Optional[str] = None
    serial: int = field(default_factory=lambda: next(_serials))

    @property
    def bearer(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def __repr__(self) -> str:
        # never log the token itself
        return f"Credential(serial={self.serial}, role={self.role.value}, subject={self.subject})"


def read_claims(token: str) -> Dict[str, Any]:
    """
    Claims are read WITHOUT signature verification: the coordinator owns the key,
    the client only needs the role to pick a view.
    """
    try:
        return jwt.get_unverified_claims(token)
    except JWTError:
        raise Unauthorized("Credential is not a readable bearer token.")


def credential_from_token(token: str) -> Credential:
    if not token or not token.strip():
        raise Unauthorized("Credential is empty.")

    token = token.strip()
    if token == SPECTATOR_TOKEN:
        return Credential(token=token, role=Role.SPECTATOR)

    claims = read_claims(token)

    raw_role = claims.get("role")
    if raw_role is None and claims.get("isAdmin") is True:
        raw_role = "admin"
    role = _ROLE_ALIASES.get(str(raw_role).lower()) if raw_role is not None else None
    if role is None:
        raise Unauthorized("Token missing a recognised role claim.")

    subject = None
    for key in _SUBJECT_CLAIMS:
        if claims.get(key):
            subject = str(claims[key])
            break

    if role == Role.TEAM and subject is None:
        raise Unauthorized("Team token missing a team id claim.")

    display_name = claims.get("teamName") or claims.get("name")
    return Credential(
        token=token,
        role=role,
        subject=subject,
        display_name=str(display_name) if display_name else None,
    )
