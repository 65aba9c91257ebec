"""
Quota API routes.

Surface:
- POST   /v1/quota/check: gate one action (allowed / denied with reason)
- POST   /v1/quota/vocalize/check: gate one vocalize generation by style
- GET    /v1/quota/usage: per-dimension usage snapshot
- GET    /v1/quota/transactions: recent grants and purchases
- POST   /v1/quota/reconcile: apply the user's outstanding payments
- POST   /v1/quota/credits: direct credit (admin)
- PUT    /v1/quota/admin/plan-overrides/{user_id}: pin a user's plan (admin)
- DELETE /v1/quota/admin/plan-overrides/{user_id}: remove the pin (admin)

The caller is identified by the X-User-Id header (set by the upstream auth proxy).
The plan always comes from the PlanResolver unless a valid X-Admin-Key is sent.
"""
import logging
import secrets
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field, field_validator

from quota_ledger.core.config import settings
from quota_ledger.core.errors import NotFoundError, PermissionError, TransientStoreError
from quota_ledger.core.logging import log_event
from quota_ledger.features.billing.payment_source import (
    get_payment_source,
    payments_enabled,
    stripe_active_price_lookup,
)
from quota_ledger.features.billing.reconcile import reconcile_user
from quota_ledger.features.gate.service import check_and_consume, usage_snapshot
from quota_ledger.features.ledger.purchases import credit_purchased_messages
from quota_ledger.features.ledger.transactions import list_transactions
from quota_ledger.features.plans.resolver import (
    PlanResolver,
    SubscriptionPlanResolver,
    clear_plan_override,
    set_plan_override,
)
from quota_ledger.models.dimension import Dimension, dimension_for_vocalize_style
from quota_ledger.models.plan import PlanTier


logger = logging.getLogger("quota_ledger.api")

router = APIRouter(prefix="/v1/quota", tags=["quota"])


# ============================================================================
# Dependencies
# ============================================================================

def require_user(x_user_id: Optional[str] = Header(None)) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id


def is_admin_caller(x_admin_key: Optional[str] = Header(None)) -> bool:
    admin_key = settings.ADMIN_KEY
    return bool(admin_key and x_admin_key and secrets.compare_digest(x_admin_key, admin_key))


def require_admin(is_admin: bool = Depends(is_admin_caller)) -> str:
    if not is_admin:
        logger.warning("[quota] invalid admin key attempt", extra={"error_code": "forbidden"})
        raise PermissionError("Invalid or missing X-Admin-Key header")
    return "admin_key"


def get_plan_resolver(request: Request) -> PlanResolver:
    resolver = getattr(request.app.state, "plan_resolver", None)
    if resolver is not None:
        return resolver
    lookup = stripe_active_price_lookup if payments_enabled() else None
    return SubscriptionPlanResolver(price_lookup=lookup)


def _resolve_plan(request: Request, user_id: str, plan: Optional[PlanTier], is_admin: bool) -> PlanTier:
    # End users get the plan their subscription (or override) says; only admin callers may name one.
    if plan is not None:
        if not is_admin:
            logger.warning(
                "[quota] plan supplied without admin key",
                extra={"user_id": user_id, "plan": plan.value, "error_code": "forbidden"},
            )
            raise PermissionError("Only admin callers may choose the plan; omit it to use the current plan")
        return plan
    return get_plan_resolver(request).current_plan(user_id)


# ============================================================================
# Pydantic Models
# ============================================================================

class CheckRequest(BaseModel):
    """Gate one action."""
    dimension: Dimension
    plan: Optional[PlanTier] = Field(default=None, description="Admin callers only")
    file_size_bytes: Optional[int] = Field(default=None, ge=0)
    grant_id: Optional[str] = Field(default=None, min_length=1, max_length=64, description="Reuse when retrying an ambiguous call")


class VocalizeCheckRequest(BaseModel):
    """Gate one vocalize generation; the style picks standard or pro."""
    style: str
    plan: Optional[PlanTier] = Field(default=None, description="Admin callers only")
    grant_id: Optional[str] = Field(default=None, min_length=1, max_length=64)

    @field_validator("style")
    @classmethod
    def _trim(cls, value: str) -> str:
        return value.strip()


class CheckResponse(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    replayed: Optional[bool] = None


class CreditRequest(BaseModel):
    user_id: str
    deltas: Dict[Dimension, int]
    idempotency_key: Optional[str] = Field(default=None, max_length=128)


class PlanOverrideRequest(BaseModel):
    plan: PlanTier
    reason: Optional[str] = Field(default=None, max_length=500)


# ============================================================================
# Routes
# ============================================================================

@router.post("/check", response_model=CheckResponse, response_model_exclude_none=True)
def check(
    body: CheckRequest,
    request: Request,
    user_id: str = Depends(require_user),
    is_admin: bool = Depends(is_admin_caller),
):
    plan = _resolve_plan(request, user_id, body.plan, is_admin)
    decision = check_and_consume(
        user_id,
        body.dimension,
        plan,
        file_size_bytes=body.file_size_bytes,
        grant_id=body.grant_id,
    )
    return decision.to_response()


@router.post("/vocalize/check", response_model=CheckResponse, response_model_exclude_none=True)
def check_vocalize(
    body: VocalizeCheckRequest,
    request: Request,
    user_id: str = Depends(require_user),
    is_admin: bool = Depends(is_admin_caller),
):
    plan = _resolve_plan(request, user_id, body.plan, is_admin)
    decision = check_and_consume(
        user_id,
        dimension_for_vocalize_style(body.style),
        plan,
        grant_id=body.grant_id,
    )
    return decision.to_response()


@router.get("/usage")
def usage(
    request: Request,
    plan: Optional[PlanTier] = Query(None),
    user_id: str = Depends(require_user),
    is_admin: bool = Depends(is_admin_caller),
):
    resolved = _resolve_plan(request, user_id, plan, is_admin)
    snapshot = usage_snapshot(user_id, resolved)
    return {
        "user_id": user_id,
        "plan": resolved.value,
        "usage": {dimension: entry.model_dump(mode="json") for dimension, entry in snapshot.items()},
    }


@router.get("/transactions")
def transactions(
    limit: int = Query(50, ge=1, le=500),
    user_id: str = Depends(require_user),
):
    entries = list_transactions(user_id, limit=limit)
    return {"transactions": [entry.model_dump(mode="json") for entry in entries]}


@router.post("/reconcile")
def reconcile(request: Request, user_id: str = Depends(require_user)):
    """
    Apply the caller's outstanding payments as purchased credits.

    Errors:
        503: No payment source configured (STRIPE_SECRET_KEY not set)
        502: Payment source unreachable
    """
    source = getattr(request.app.state, "payment_source", None) or get_payment_source()
    if source is None:
        raise HTTPException(
            status_code=503,
            detail={
                "error": "Payments disabled",
                "code": "payments_disabled",
                "message": "No payment source configured. Set STRIPE_SECRET_KEY environment variable.",
            },
        )
    report = reconcile_user(user_id, source)
    return report.model_dump(mode="json")


@router.post("/credits")
def credit(body: CreditRequest, actor: str = Depends(require_admin)):
    ok = credit_purchased_messages(
        body.user_id,
        {dimension.value: amount for dimension, amount in body.deltas.items()},
        idempotency_key=body.idempotency_key,
    )
    if not ok:
        raise TransientStoreError()
    log_event(
        "info",
        "quota.credit",
        user_id=body.user_id,
        event_type="admin_credit",
        extra={"actor": actor, "idempotency_key": body.idempotency_key},
    )
    return {"ok": True}


@router.put("/admin/plan-overrides/{user_id}")
def put_plan_override(user_id: str, body: PlanOverrideRequest, actor: str = Depends(require_admin)):
    plan = set_plan_override(user_id, body.plan, reason=body.reason, created_by=actor)
    return {"user_id": user_id, "plan": plan.value}


@router.delete("/admin/plan-overrides/{user_id}")
def delete_plan_override(user_id: str, actor: str = Depends(require_admin)):
    if not clear_plan_override(user_id):
        raise NotFoundError(f"No plan override for {user_id}")
    return {"user_id": user_id, "removed": True}
