from __future__ import annotations

from typing import Annotated, Any, Dict

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# --- Numeric primitives ---
NonNegInt = Annotated[int, Field(ge=0)]
PosInt = Annotated[int, Field(ge=1)]


class WireModel(BaseModel):
    """
    Coordinator payloads are camelCase; Python code uses snake_case.
    Both spellings validate, unknown keys are ignored.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class ViewModel(WireModel):
    """
    Consumer-facing state. Frozen so a copy handed to a consumer can never
    be mutated back into the state machine.
    """
    model_config = ConfigDict(frozen=True)


def team_id_fallback(data: Any) -> Any:
    """
    The coordinator keys teams by Mongo `_id` and often only sends
    `teamName`; normalise to `teamId` so uniqueness is always by one key.
    """
    if not isinstance(data, dict):
        return data
    if data.get("teamId") or data.get("team_id"):
        return data
    out: Dict[str, Any] = dict(data)
    for key in ("_id", "id", "teamName", "team_name", "name"):
        if data.get(key):
            out["teamId"] = str(data[key])
            break
    if not out.get("teamName") and not out.get("team_name") and data.get("name"):
        out["teamName"] = data["name"]
    return out
