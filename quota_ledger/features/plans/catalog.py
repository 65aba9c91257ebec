"""
quota_ledger/features/plans/catalog.py

Plan catalog: plan tier x dimension -> limit.

Handles:
- Built-in default limits (-1 = unlimited)
- Optional JSON override file (PLAN_LIMITS_FILE)
- Pro-gating and upsell hints
"""

import json
import logging
from typing import Dict, Mapping, Optional

from quota_ledger.core.config import settings
from quota_ledger.core.errors import ConfigurationError
from quota_ledger.models.dimension import Dimension, coerce_dimension
from quota_ledger.models.plan import PlanLimits, PlanTier, UNLIMITED, coerce_plan


logger = logging.getLogger(__name__)

# Default plan configurations
DEFAULT_PLAN_LIMITS: Dict[str, Dict[str, int]] = {
    "free": {
        "text_message": 3,
        "area_message": 1,
        "standard_vocalize": 1,
        "pro_vocalize": 0,
        "document_upload": 2,
        "lecture_upload": 1,
    },
    "committed": {
        "text_message": 30,
        "area_message": 15,
        "standard_vocalize": 5,
        "pro_vocalize": 2,
        "document_upload": 10,
        "lecture_upload": 10,
    },
    "locked_in": {
        "text_message": UNLIMITED,
        "area_message": 50,
        "standard_vocalize": 15,
        "pro_vocalize": 5,
        "document_upload": UNLIMITED,
        "lecture_upload": 45,
    },
    "locked_in_legacy": {
        "text_message": UNLIMITED,
        "area_message": 50,
        "standard_vocalize": 15,
        "pro_vocalize": 7,
        "document_upload": UNLIMITED,
        "lecture_upload": 45,
    },
}

DEFAULT_MAX_UPLOAD_MB: Dict[str, int] = {
    "free": 20,
    "committed": 30,
    "locked_in": 40,
    "locked_in_legacy": 40,
}

PRO_GATED_DIMENSIONS = frozenset({Dimension.PRO_VOCALIZE})

UPSELL_HINTS: Dict[PlanTier, str] = {
    PlanTier.FREE: "Upgrade to Committed for increased limits or purchase additional credits!",
    PlanTier.COMMITTED: "Upgrade to Locked In for higher limits or purchase additional credits!",
    PlanTier.LOCKED_IN: "Purchase additional credits to continue.",
    PlanTier.LOCKED_IN_LEGACY: "Purchase additional credits to continue.",
}


class PlanCatalog:
    """Immutable lookup of plan limits. Unknown plans or dimensions are programmer errors."""

    def __init__(self, plans: Mapping[PlanTier, PlanLimits]):
        missing = [tier.value for tier in PlanTier if tier not in plans]
        if missing:
            raise ConfigurationError(f"Plan catalog is missing plans: {', '.join(missing)}")
        for plan_limits in plans.values():
            absent = [d.value for d in Dimension if d not in plan_limits.limits]
            if absent:
                raise ConfigurationError(
                    f"Plan {plan_limits.plan.value} is missing limits for: {', '.join(absent)}"
                )
            negative = [d.value for d, v in plan_limits.limits.items() if v < UNLIMITED]
            if negative:
                raise ConfigurationError(
                    f"Plan {plan_limits.plan.value} has invalid limits for: {', '.join(negative)}"
                )
        self._plans: Dict[PlanTier, PlanLimits] = dict(plans)

    @classmethod
    def from_mapping(
        cls,
        limits: Mapping[str, Mapping[str, int]],
        max_upload_mb: Optional[Mapping[str, int]] = None,
    ) -> "PlanCatalog":
        uploads = dict(DEFAULT_MAX_UPLOAD_MB)
        uploads.update(max_upload_mb or {})
        plans: Dict[PlanTier, PlanLimits] = {}
        for plan_key, dims in limits.items():
            tier = coerce_plan(plan_key)
            parsed: Dict[Dimension, int] = {}
            for dim_key, value in dims.items():
                if isinstance(value, bool) or not isinstance(value, int):
                    raise ConfigurationError(f"Limit for {plan_key}/{dim_key} must be an integer")
                parsed[coerce_dimension(dim_key)] = value
            plans[tier] = PlanLimits(
                plan=tier,
                limits=parsed,
                max_upload_mb=int(uploads.get(plan_key, DEFAULT_MAX_UPLOAD_MB["free"])),
            )
        return cls(plans)

    @classmethod
    def from_file(cls, path: str) -> "PlanCatalog":
        try:
            with open(path, "r", encoding="utf-8") as fh:
                raw = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"Cannot load plan limits from {path}: {exc}")
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Plan limits file {path} must contain an object")
        limits = raw.get("limits", raw)
        return cls.from_mapping(limits, raw.get("max_upload_mb"))

    def plan_limits(self, plan) -> PlanLimits:
        return self._plans[coerce_plan(plan)]

    def limit(self, plan, dimension) -> int:
        return self.plan_limits(plan).limit(coerce_dimension(dimension))

    def is_pro_gated(self, dimension) -> bool:
        return coerce_dimension(dimension) in PRO_GATED_DIMENSIONS

    def max_upload_mb(self, plan) -> int:
        return self.plan_limits(plan).max_upload_mb

    def upsell_hint(self, plan) -> str:
        return UPSELL_HINTS[coerce_plan(plan)]


_catalog: Optional[PlanCatalog] = None


def get_catalog() -> PlanCatalog:
    """Load the catalog once (from PLAN_LIMITS_FILE when set)."""
    global _catalog
    if _catalog is None:
        path = settings.PLAN_LIMITS_FILE
        if path:
            logger.info("[plans] loading plan limits", extra={"path": path})
            _catalog = PlanCatalog.from_file(path)
        else:
            _catalog = PlanCatalog.from_mapping(DEFAULT_PLAN_LIMITS)
    return _catalog


def reset_catalog_cache() -> None:
    global _catalog
    _catalog = None
