from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from bidsync.models.enums import RoundResult
from bidsync.schemas.primitives import WireModel


class StartRoundRequest(WireModel):
    """
    Operator opens the next round. The coordinator assigns roundNumber.
    """
    title: str = Field(..., min_length=1, max_length=500)
    category: str = Field(default="Easy", max_length=64)
    duration_seconds: Optional[int] = Field(default=None, ge=1, le=3600)


class BidRequest(WireModel):
    # positivity is enforced by the bid guard so the error is typed, not a 422
    amount: Any = None


class ResultRequest(WireModel):
    result: RoundResult


class LoginRequest(WireModel):
    token: str = Field(..., min_length=1)


class ActionAck(BaseModel):
    ok: bool = True
    message: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
