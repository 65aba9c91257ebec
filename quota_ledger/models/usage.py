"""
quota_ledger/models/usage.py

Counter state and gate outcomes.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from quota_ledger.models.dimension import Cadence, Dimension
from quota_ledger.models.plan import PlanTier


class GrantSource(str, Enum):
    PLAN = "plan"
    LEDGER = "ledger"


class DenialCode(str, Enum):
    UPGRADE_REQUIRED = "upgrade_required"
    FILE_TOO_LARGE = "file_too_large"
    LIMIT_EXCEEDED = "limit_exceeded"


class QuotaCounter(BaseModel):
    """One counter per (user, dimension). `generation` bumps on every reset."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    dimension: Dimension
    used: int
    last_reset: datetime
    generation: int = 0


class GateDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    dimension: Dimension
    plan: PlanTier
    code: Optional[DenialCode] = None
    reason: Optional[str] = None
    source: Optional[GrantSource] = None
    used: Optional[int] = None
    purchased_balance: Optional[int] = None
    replayed: bool = False  # echo of a grant committed by an earlier attempt

    def to_response(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"allowed": self.allowed}
        if self.reason:
            payload["reason"] = self.reason
        if self.replayed:
            payload["replayed"] = True
        return payload


class UsageSnapshotEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    used: int
    purchased_balance: int
    window: Cadence
    limit: Optional[int] = None  # -1 = unlimited; None when no plan given
    remaining: Optional[int] = None  # None when unlimited or no plan given
    next_reset_at: Optional[datetime] = None
