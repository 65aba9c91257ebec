"""
Payment reconciliation.

Turns a user's succeeded payments into purchased credits, exactly once per
payment ID. Safe to run repeatedly and concurrently (on session start, before
quota checks, or from workers/reconcile_payments.py):

- already-applied payments are skipped before any write
- the applied-payment row, the balance credits and the `purchase` log entry
  commit in one transaction; a unique violation there means another
  reconciler got there first
- malformed metadata is reported, never fatal; all-zero payments are still
  marked applied so they are not re-parsed forever
"""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Tuple
import logging

from sqlalchemy.exc import IntegrityError

from quota_ledger.core.database import get_db_session
from quota_ledger.core.errors import ReconciliationParseError, TransientStoreError
from quota_ledger.core.retry import run_with_store_retry
from quota_ledger.features.billing.payment_source import PaymentSource
from quota_ledger.features.ledger.purchases import (
    applied_payment_ids,
    credit_in_session,
    ensure_balance_rows,
    is_payment_applied,
    mark_payment_applied,
)
from quota_ledger.features.ledger.transactions import append_transaction
from quota_ledger.features.usage.window import normalize_now
from quota_ledger.models.dimension import Dimension, PAYMENT_METADATA_KEYS
from quota_ledger.models.ledger import (
    ParseIssue,
    PaymentRecord,
    ReconcileReport,
    TransactionKind,
    TransactionSource,
)


logger = logging.getLogger(__name__)

APPLIED = "applied"
SKIPPED = "skipped"


def parse_credit_value(raw: str, *, payment_id: str, dimension: Dimension) -> int:
    """Parse one metadata amount into a non-negative integer."""
    text = str(raw).strip()
    try:
        value = int(text)
    except ValueError:
        raise ReconciliationParseError(
            f"Payment {payment_id}: {dimension.value} credit {raw!r} is not an integer",
            payment_id=payment_id,
            dimension=dimension.value,
            raw_value=str(raw),
        )
    if value < 0:
        raise ReconciliationParseError(
            f"Payment {payment_id}: {dimension.value} credit {value} is negative",
            payment_id=payment_id,
            dimension=dimension.value,
            raw_value=str(raw),
        )
    return value


def _metadata_value(metadata: Dict[str, str], keys: Tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = metadata.get(key)
        if value is not None and str(value).strip():
            return value
    return None


def parse_payment_metadata(record: PaymentRecord) -> Tuple[Dict[Dimension, int], List[ReconciliationParseError]]:
    """
    Extract per-dimension credits from a payment's metadata.

    The first non-empty alias wins for each dimension. Bad values count as 0
    and are returned as errors so the other dimensions still apply.
    Unknown keys are ignored.
    """
    deltas: Dict[Dimension, int] = {}
    errors: List[ReconciliationParseError] = []
    for dimension, keys in PAYMENT_METADATA_KEYS.items():
        raw = _metadata_value(record.metadata, keys)
        if raw is None:
            continue
        try:
            amount = parse_credit_value(raw, payment_id=record.id, dimension=dimension)
        except ReconciliationParseError as e:
            errors.append(e)
            continue
        if amount:
            deltas[dimension] = amount
    return deltas, errors


def _apply_payment(user_id: str, record: PaymentRecord, deltas: Dict[Dimension, int], now: datetime) -> str:
    ensure_balance_rows(user_id, deltas.keys(), now)
    try:
        with get_db_session() as session:
            if is_payment_applied(user_id, record.id, session=session):
                return SKIPPED
            mark_payment_applied(session, user_id, record.id, now)
            for dimension, amount in deltas.items():
                credit_in_session(session, user_id, dimension, amount, now)
            append_transaction(
                session,
                user_id=user_id,
                kind=TransactionKind.PURCHASE,
                source=TransactionSource.PAYMENT,
                deltas={dimension.value: amount for dimension, amount in deltas.items()},
                occurred_at=now,
                payment_id=record.id,
            )
    except IntegrityError:
        return SKIPPED
    return APPLIED


def reconcile_user(user_id: str, source: PaymentSource, *, now: Optional[datetime] = None) -> ReconcileReport:
    """
    Apply every not-yet-applied payment for `user_id`.

    Raises:
        PaymentSourceError: if the payment records cannot be fetched
    """
    ts = normalize_now(now)
    report = ReconcileReport(user_id=user_id)

    records = source.payment_records(user_id)
    if not records:
        return report

    already_applied = run_with_store_retry(
        lambda: applied_payment_ids(user_id),
        operation="reconcile.applied_ids",
    )

    for record in records:
        if record.id in already_applied:
            report.skipped.append(record.id)
            continue

        deltas, errors = parse_payment_metadata(record)
        for error in errors:
            report.parse_errors.append(
                ParseIssue(
                    payment_id=record.id,
                    dimension=error.dimension or "",
                    raw_value=error.raw_value or "",
                    message=error.message,
                )
            )
            logger.warning(
                "[reconcile] unparseable payment metadata",
                extra={
                    "user_id": user_id,
                    "payment_id": record.id,
                    "dimension": error.dimension,
                    "error_code": error.code,
                },
            )

        try:
            outcome = run_with_store_retry(
                lambda: _apply_payment(user_id, record, deltas, ts),
                operation="reconcile.apply_payment",
            )
        except TransientStoreError:
            report.failed.append(record.id)
            logger.error(
                "[reconcile] payment not applied, will retry on next run",
                extra={"user_id": user_id, "payment_id": record.id, "error_code": "try_again"},
            )
            continue

        if outcome == SKIPPED:
            report.skipped.append(record.id)
            continue

        already_applied.add(record.id)
        report.applied.append(record.id)
        for dimension, amount in deltas.items():
            report.credited[dimension.value] = report.credited.get(dimension.value, 0) + amount

        if deltas:
            logger.info(
                "[reconcile] payment applied",
                extra={
                    "user_id": user_id,
                    "payment_id": record.id,
                    "deltas": {d.value: a for d, a in deltas.items()},
                },
            )
        else:
            logger.warning(
                "[reconcile] payment carried no credits, marked applied",
                extra={"user_id": user_id, "payment_id": record.id},
            )

    logger.info(
        "[reconcile] complete",
        extra={
            "user_id": user_id,
            "applied": len(report.applied),
            "skipped": len(report.skipped),
            "failed": len(report.failed),
        },
    )
    return report
