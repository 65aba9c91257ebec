"""
quota_ledger/features/plans/resolver.py

Current-plan resolution.

Order:
1. plan_overrides table (users pinned to a plan, e.g. staff or partners)
2. active subscription price ID mapped through PRICE_PLANS
3. free tier
"""

from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional, Protocol
import logging

from sqlalchemy import select, insert, delete

from quota_ledger.core.database import get_db_session, plan_overrides
from quota_ledger.core.errors import PaymentSourceError
from quota_ledger.core.retry import run_with_store_retry
from quota_ledger.models.plan import PlanTier, coerce_plan


logger = logging.getLogger(__name__)

PriceLookup = Callable[[str], Optional[str]]

# Subscription price IDs -> plan tier. The first locked-in prices are
# grandfathered with a larger pro vocalize allowance.
PRICE_PLANS: Dict[str, PlanTier] = {
    "price_1QPXmwE4Vh8gPWWwc6Lkuz4W": PlanTier.LOCKED_IN_LEGACY,  # monthly, first pricing
    "price_1QPYjbE4Vh8gPWWwOBTX3eUW": PlanTier.LOCKED_IN_LEGACY,  # yearly, first pricing
    "price_1Qk2HsE4Vh8gPWWwE2n8MSRn": PlanTier.LOCKED_IN,
    "price_1Qk2McE4Vh8gPWWwdvem3SgQ": PlanTier.LOCKED_IN,
    "price_1QPXhYE4Vh8gPWWwFAzMKPNg": PlanTier.COMMITTED,
    "price_1QPYm6E4Vh8gPWWwaEzEKVbA": PlanTier.COMMITTED,
    "price_1Qk2CoE4Vh8gPWWwGjnzPbGS": PlanTier.COMMITTED,
    "price_1Qk2eeE4Vh8gPWWwjfNAnatz": PlanTier.COMMITTED,
}


class PlanResolver(Protocol):
    def current_plan(self, user_id: str) -> PlanTier:
        ...


def get_plan_override(user_id: str) -> Optional[PlanTier]:
    with get_db_session() as session:
        row = session.execute(
            select(plan_overrides.c.plan).where(plan_overrides.c.user_id == user_id)
        ).first()
    if not row:
        return None
    return coerce_plan(row.plan)


def set_plan_override(
    user_id: str,
    plan,
    *,
    reason: Optional[str] = None,
    created_by: Optional[str] = None,
) -> PlanTier:
    """Upsert a plan override for a user."""
    tier = coerce_plan(plan)
    with get_db_session() as session:
        session.execute(delete(plan_overrides).where(plan_overrides.c.user_id == user_id))
        session.execute(
            insert(plan_overrides).values(
                user_id=user_id,
                plan=tier.value,
                reason=reason,
                created_by=created_by,
                created_at=datetime.now(timezone.utc),
            )
        )
    logger.info(
        "[plans] override set",
        extra={"user_id": user_id, "plan": tier.value, "created_by": created_by},
    )
    return tier


def clear_plan_override(user_id: str) -> bool:
    with get_db_session() as session:
        result = session.execute(delete(plan_overrides).where(plan_overrides.c.user_id == user_id))
        removed = (result.rowcount or 0) > 0
    if removed:
        logger.info("[plans] override cleared", extra={"user_id": user_id})
    return removed


class SubscriptionPlanResolver:
    """Resolve plans from overrides, then the subscription price."""

    def __init__(
        self,
        price_lookup: Optional[PriceLookup] = None,
        price_plans: Optional[Mapping[str, PlanTier]] = None,
    ):
        self.price_lookup = price_lookup
        self.price_plans = dict(price_plans if price_plans is not None else PRICE_PLANS)

    def current_plan(self, user_id: str) -> PlanTier:
        override = run_with_store_retry(
            lambda: get_plan_override(user_id),
            operation="plans.current_plan",
        )
        if override is not None:
            return override

        if self.price_lookup is None:
            return PlanTier.FREE

        try:
            price_id = self.price_lookup(user_id)
        except PaymentSourceError as e:
            logger.warning(
                "[plans] subscription lookup failed, using free tier",
                extra={"user_id": user_id, "error": str(e)},
            )
            return PlanTier.FREE
        if not price_id:
            return PlanTier.FREE

        plan = self.price_plans.get(price_id)
        if plan is None:
            logger.warning(
                "[plans] unmapped subscription price, using free tier",
                extra={"user_id": user_id, "price_id": price_id},
            )
            return PlanTier.FREE
        return plan
