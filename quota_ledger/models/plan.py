"""
quota_ledger/models/plan.py

Plan tiers and their per-dimension limits.
"""

from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict

from quota_ledger.core.errors import ConfigurationError
from quota_ledger.models.dimension import Dimension


UNLIMITED = -1


class PlanTier(str, Enum):
    FREE = "free"
    COMMITTED = "committed"
    LOCKED_IN = "locked_in"
    LOCKED_IN_LEGACY = "locked_in_legacy"  # grandfathered top-tier price


def coerce_plan(value) -> PlanTier:
    """Return a PlanTier or raise ConfigurationError for unknown values."""
    if isinstance(value, PlanTier):
        return value
    try:
        return PlanTier(value)
    except ValueError:
        raise ConfigurationError(f"Unknown plan tier: {value!r}")


class PlanLimits(BaseModel):
    """
    Limits of one plan tier.

    Values are non-negative integers, or -1 for unlimited.
    """
    model_config = ConfigDict(frozen=True)

    plan: PlanTier
    limits: Dict[Dimension, int]
    max_upload_mb: int

    def limit(self, dimension: Dimension) -> int:
        value: Optional[int] = self.limits.get(dimension)
        if value is None:
            raise ConfigurationError(f"No limit configured for {self.plan.value}/{dimension.value}")
        return value
