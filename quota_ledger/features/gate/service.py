"""
quota_ledger/features/gate/service.py

Quota gate: the single call a gated feature makes before acting.

Handles:
- Tier gating (pro dimensions require a paid plan, purchased credits do not bypass it)
- Lazy window resets
- Plan allowance first, purchased credits second
- Transaction log writes in the same transaction as each grant
- Read-only usage snapshot for display

Store failures fail closed: TransientStoreError propagates and the action
must be treated as denied.
"""

from datetime import datetime, timedelta
from typing import Dict, Optional
from uuid import uuid4
import logging

from sqlalchemy.exc import IntegrityError

from quota_ledger.core.config import settings
from quota_ledger.core.database import get_db_session
from quota_ledger.core.errors import GrantConflictError, TransientStoreError, ValidationError
from quota_ledger.core.retry import run_with_store_retry
from quota_ledger.features.ledger.purchases import debit_in_session, get_balance, get_balances
from quota_ledger.features.ledger.transactions import append_transaction, claim_replay, find_grant
from quota_ledger.features.plans.catalog import PlanCatalog, get_catalog
from quota_ledger.features.usage.counters import (
    ensure_counter,
    get_counter,
    get_counters,
    reset_counter,
    try_increment,
)
from quota_ledger.features.usage.window import needs_reset, next_reset_at, normalize_now
from quota_ledger.models.dimension import Dimension, coerce_dimension
from quota_ledger.models.ledger import TransactionKind, TransactionSource
from quota_ledger.models.plan import PlanTier, UNLIMITED, coerce_plan
from quota_ledger.models.usage import (
    DenialCode,
    GateDecision,
    GrantSource,
    QuotaCounter,
    UsageSnapshotEntry,
)


logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024
MAX_GRANT_ID_LENGTH = 64


def limit_exceeded_message(dimension: Dimension, plan: PlanTier, catalog: PlanCatalog) -> str:
    return (
        f"You've reached your {dimension.cadence.value} {dimension.label} limit. "
        f"{catalog.upsell_hint(plan)}"
    )


def upgrade_required_message(dimension: Dimension) -> str:
    return (
        f"Upgrade required: {dimension.label} is only available on the "
        f"Committed and Locked In plans."
    )


def file_too_large_message(max_mb: int) -> str:
    return (
        f"File size exceeds the {max_mb}MB limit for your plan. "
        f"Please upgrade for larger file uploads."
    )


def _log_decision(user_id: str, decision: GateDecision) -> None:
    extra = {
        "user_id": user_id,
        "dimension": decision.dimension.value,
        "plan": decision.plan.value,
        "source": decision.source.value if decision.source else None,
        "code": decision.code.value if decision.code else None,
        "used": decision.used,
    }
    if decision.allowed:
        logger.info("[quota] ALLOW", extra=extra)
    else:
        logger.warning("[quota] DENY", extra=extra)


def _replayed_decision(
    user_id: str,
    grant_id: str,
    dimension: Dimension,
    plan: PlanTier,
    now: datetime,
) -> Optional[GateDecision]:
    """
    Echo a grant `user_id` already committed under `grant_id`, or None if there is none.

    The id only stands for the request that created it: same user, same
    dimension, within GATE_GRANT_REPLAY_SECONDS, and at most
    GATE_MAX_GRANT_REPLAYS echoes. Anything else is a GrantConflictError.
    """
    entry = find_grant(user_id, grant_id)
    if entry is None:
        return None

    if set(entry.deltas) != {dimension.value}:
        raise GrantConflictError(f"grant_id {grant_id} was issued for a different action")
    if now - entry.occurred_at > timedelta(seconds=settings.GATE_GRANT_REPLAY_SECONDS):
        raise GrantConflictError(f"grant_id {grant_id} has expired; use a new grant_id")
    if not claim_replay(user_id, grant_id, settings.GATE_MAX_GRANT_REPLAYS):
        raise GrantConflictError(f"grant_id {grant_id} has already been used")

    logger.info(
        "[quota] grant replayed",
        extra={"user_id": user_id, "dimension": dimension.value, "event_type": "grant_replay"},
    )
    source = GrantSource.LEDGER if entry.source is TransactionSource.LEDGER else GrantSource.PLAN
    return GateDecision(allowed=True, dimension=dimension, plan=plan, source=source, replayed=True)


def _draw_from_ledger(
    user_id: str,
    dimension: Dimension,
    plan: PlanTier,
    counter: QuotaCounter,
    now: datetime,
    grant_id: str,
    catalog: PlanCatalog,
) -> GateDecision:
    balance: Optional[int] = None
    with get_db_session() as session:
        drawn = debit_in_session(session, user_id, dimension, 1, now)
        if drawn:
            append_transaction(
                session,
                user_id=user_id,
                kind=TransactionKind.USAGE,
                source=TransactionSource.LEDGER,
                deltas={dimension.value: -1},
                occurred_at=now,
                grant_id=grant_id,
            )
            balance = get_balance(user_id, dimension, session=session)

    if drawn:
        return GateDecision(
            allowed=True,
            dimension=dimension,
            plan=plan,
            source=GrantSource.LEDGER,
            used=counter.used,
            purchased_balance=balance,
        )

    return GateDecision(
        allowed=False,
        dimension=dimension,
        plan=plan,
        code=DenialCode.LIMIT_EXCEEDED,
        reason=limit_exceeded_message(dimension, plan, catalog),
        used=counter.used,
        purchased_balance=0,
    )


def _consume(
    user_id: str,
    dimension: Dimension,
    plan: PlanTier,
    limit: int,
    now: datetime,
    grant_id: str,
    catalog: PlanCatalog,
) -> GateDecision:
    counter = ensure_counter(user_id, dimension, now)

    for _ in range(max(1, settings.GATE_MAX_CAS_ROUNDS)):
        if needs_reset(dimension, counter.last_reset, now):
            reset_counter(user_id, dimension, counter.generation, now)
            counter = get_counter(user_id, dimension) or counter
            continue

        if limit != UNLIMITED and counter.used >= limit:
            return _draw_from_ledger(user_id, dimension, plan, counter, now, grant_id, catalog)

        with get_db_session() as session:
            used = try_increment(session, user_id, dimension, counter.generation, limit, now)
            if used is not None:
                append_transaction(
                    session,
                    user_id=user_id,
                    kind=TransactionKind.USAGE,
                    source=TransactionSource.PLAN,
                    deltas={dimension.value: 1},
                    occurred_at=now,
                    grant_id=grant_id,
                )
        if used is not None:
            return GateDecision(
                allowed=True,
                dimension=dimension,
                plan=plan,
                source=GrantSource.PLAN,
                used=used,
            )

        # Window moved or the last unit went to a concurrent request; re-read.
        counter = get_counter(user_id, dimension) or counter

    raise TransientStoreError("Quota counter contention")


def check_and_consume(
    user_id: str,
    dimension,
    plan,
    *,
    now: Optional[datetime] = None,
    file_size_bytes: Optional[int] = None,
    grant_id: Optional[str] = None,
    catalog: Optional[PlanCatalog] = None,
) -> GateDecision:
    """
    Decide whether `user_id` may perform one `dimension` action on `plan`.

    Allowed decisions have already been charged (plan counter or purchased
    credit). A caller retrying with the same `grant_id` after an ambiguous
    failure gets the original grant back (flagged `replayed`) instead of a
    second charge.

    Raises:
        ValidationError: empty or over-long grant_id
        GrantConflictError: grant_id reused for another action or past its replay allowance
        ConfigurationError: unknown dimension or plan
        TransientStoreError: store unavailable (treat as denied)
    """
    dim = coerce_dimension(dimension)
    tier = coerce_plan(plan)
    cat = catalog or get_catalog()
    ts = normalize_now(now)

    if grant_id is not None and not 0 < len(grant_id) <= MAX_GRANT_ID_LENGTH:
        raise ValidationError(f"grant_id must be 1-{MAX_GRANT_ID_LENGTH} characters")

    if cat.is_pro_gated(dim) and tier is PlanTier.FREE:
        decision = GateDecision(
            allowed=False,
            dimension=dim,
            plan=tier,
            code=DenialCode.UPGRADE_REQUIRED,
            reason=upgrade_required_message(dim),
        )
        _log_decision(user_id, decision)
        return decision

    if dim.is_upload and file_size_bytes is not None:
        max_mb = cat.max_upload_mb(tier)
        if file_size_bytes > max_mb * BYTES_PER_MB:
            decision = GateDecision(
                allowed=False,
                dimension=dim,
                plan=tier,
                code=DenialCode.FILE_TOO_LARGE,
                reason=file_too_large_message(max_mb),
            )
            _log_decision(user_id, decision)
            return decision

    limit = cat.limit(tier, dim)
    caller_grant_id = grant_id is not None
    grant = grant_id or uuid4().hex
    attempts = {"count": 0}

    def _attempt() -> GateDecision:
        attempts["count"] += 1
        if caller_grant_id or attempts["count"] > 1:
            replayed = _replayed_decision(user_id, grant, dim, tier, ts)
            if replayed is not None:
                return replayed
        try:
            return _consume(user_id, dim, tier, limit, ts, grant, cat)
        except IntegrityError:
            # A concurrent call with the same grant_id committed first.
            replayed = _replayed_decision(user_id, grant, dim, tier, ts)
            if replayed is None:
                raise
            return replayed

    decision = run_with_store_retry(_attempt, operation="quota.check_and_consume")
    _log_decision(user_id, decision)
    return decision


def usage_snapshot(
    user_id: str,
    plan=None,
    *,
    now: Optional[datetime] = None,
    catalog: Optional[PlanCatalog] = None,
) -> Dict[str, UsageSnapshotEntry]:
    """Per-dimension usage for display. Never mutates counters."""
    ts = normalize_now(now)
    tier = coerce_plan(plan) if plan is not None else None
    cat = catalog or get_catalog()

    counters, balances = run_with_store_retry(
        lambda: (get_counters(user_id), get_balances(user_id)),
        operation="quota.usage_snapshot",
    )

    snapshot: Dict[str, UsageSnapshotEntry] = {}
    for dim in Dimension:
        counter = counters.get(dim)
        if counter is None or needs_reset(dim, counter.last_reset, ts):
            used = 0
            resets_at = None
        else:
            used = counter.used
            resets_at = next_reset_at(dim, counter.last_reset)

        limit = cat.limit(tier, dim) if tier is not None else None
        remaining = None
        if limit is not None and limit != UNLIMITED:
            remaining = max(0, limit - used)

        snapshot[dim.value] = UsageSnapshotEntry(
            used=used,
            purchased_balance=balances.get(dim, 0),
            window=dim.cadence,
            limit=limit,
            remaining=remaining,
            next_reset_at=resets_at,
        )
    return snapshot
