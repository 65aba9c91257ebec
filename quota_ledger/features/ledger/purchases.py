"""
quota_ledger/features/ledger/purchases.py

Purchased-credit ledger.

Balances move only through single conditional UPDATEs:
- credit: balance = balance + n
- debit:  balance = balance - n WHERE balance >= n

Rows are created lazily with balance 0 in their own transaction, so the
mutating transaction never has to recover from an insert race.
"""

from datetime import datetime
from typing import Dict, Iterable, Mapping, Optional, Set
import logging

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from quota_ledger.core.database import get_db_session, purchase_balances, applied_payments
from quota_ledger.core.errors import TransientStoreError, ValidationError
from quota_ledger.core.retry import run_with_store_retry
from quota_ledger.features.ledger.transactions import append_transaction
from quota_ledger.features.usage.window import normalize_now
from quota_ledger.models.dimension import Dimension, coerce_dimension
from quota_ledger.models.ledger import TransactionKind, TransactionSource


logger = logging.getLogger(__name__)


def ensure_balance_rows(user_id: str, dimensions: Iterable[Dimension], now: Optional[datetime] = None) -> None:
    ts = normalize_now(now)
    with get_db_session() as session:
        existing = {
            row.dimension
            for row in session.execute(
                select(purchase_balances.c.dimension).where(purchase_balances.c.user_id == user_id)
            ).all()
        }
    for dimension in dimensions:
        if dimension.value in existing:
            continue
        try:
            with get_db_session() as session:
                session.execute(
                    insert(purchase_balances).values(
                        user_id=user_id,
                        dimension=dimension.value,
                        balance=0,
                        updated_at=ts,
                    )
                )
        except IntegrityError:
            pass  # created concurrently


def get_balance(user_id: str, dimension, session: Optional[Session] = None) -> int:
    dim = coerce_dimension(dimension)
    query = select(purchase_balances.c.balance).where(
        purchase_balances.c.user_id == user_id,
        purchase_balances.c.dimension == dim.value,
    )
    if session is not None:
        value = session.execute(query).scalar()
    else:
        with get_db_session() as own:
            value = own.execute(query).scalar()
    return int(value or 0)


def get_balances(user_id: str) -> Dict[Dimension, int]:
    """Balances for every dimension (0 where no row exists)."""
    balances = {dimension: 0 for dimension in Dimension}
    with get_db_session() as session:
        rows = session.execute(
            select(purchase_balances.c.dimension, purchase_balances.c.balance)
            .where(purchase_balances.c.user_id == user_id)
        ).all()
    for row in rows:
        try:
            balances[Dimension(row.dimension)] = int(row.balance)
        except ValueError:
            continue
    return balances


def credit_in_session(session: Session, user_id: str, dimension: Dimension, amount: int, now: datetime) -> None:
    """Increase a balance inside the caller's transaction. The row must exist."""
    if amount < 0:
        raise ValidationError(f"Credit amount must be non-negative, got {amount}")
    if amount == 0:
        return
    result = session.execute(
        update(purchase_balances)
        .where(purchase_balances.c.user_id == user_id)
        .where(purchase_balances.c.dimension == dimension.value)
        .values(balance=purchase_balances.c.balance + amount, updated_at=now)
    )
    if result.rowcount != 1:
        raise RuntimeError(f"Balance row missing for {user_id}/{dimension.value}")


def debit_in_session(session: Session, user_id: str, dimension: Dimension, amount: int, now: datetime) -> bool:
    """Decrease a balance only if it covers `amount`; False (no mutation) otherwise."""
    if amount < 0:
        raise ValidationError(f"Debit amount must be non-negative, got {amount}")
    if amount == 0:
        return True
    result = session.execute(
        update(purchase_balances)
        .where(purchase_balances.c.user_id == user_id)
        .where(purchase_balances.c.dimension == dimension.value)
        .where(purchase_balances.c.balance >= amount)
        .values(balance=purchase_balances.c.balance - amount, updated_at=now)
    )
    return result.rowcount == 1


def credit(user_id: str, dimension, amount: int, now: Optional[datetime] = None) -> int:
    """Atomically add `amount` credits. Returns the new balance."""
    dim = coerce_dimension(dimension)
    if amount < 0:
        raise ValidationError(f"Credit amount must be non-negative, got {amount}")
    ts = normalize_now(now)
    ensure_balance_rows(user_id, [dim], ts)
    with get_db_session() as session:
        credit_in_session(session, user_id, dim, amount, ts)
        balance = get_balance(user_id, dim, session=session)
    logger.info(
        "[ledger] credit",
        extra={"user_id": user_id, "dimension": dim.value, "amount": amount, "balance": balance},
    )
    return balance


def debit(user_id: str, dimension, amount: int, now: Optional[datetime] = None) -> bool:
    """Atomically remove `amount` credits if the balance covers it."""
    dim = coerce_dimension(dimension)
    ts = normalize_now(now)
    with get_db_session() as session:
        ok = debit_in_session(session, user_id, dim, amount, ts)
    logger.info(
        "[ledger] debit" if ok else "[ledger] debit refused",
        extra={"user_id": user_id, "dimension": dim.value, "amount": amount},
    )
    return ok


def is_payment_applied(user_id: str, payment_id: str, session: Optional[Session] = None) -> bool:
    query = select(applied_payments.c.payment_id).where(
        applied_payments.c.user_id == user_id,
        applied_payments.c.payment_id == payment_id,
    )
    if session is not None:
        return session.execute(query).first() is not None
    with get_db_session() as own:
        return own.execute(query).first() is not None


def mark_payment_applied(session: Session, user_id: str, payment_id: str, now: datetime) -> None:
    """Record `payment_id` as applied. Raises IntegrityError if it already was."""
    session.execute(
        insert(applied_payments).values(user_id=user_id, payment_id=payment_id, applied_at=now)
    )


def applied_payment_ids(user_id: str) -> Set[str]:
    with get_db_session() as session:
        rows = session.execute(
            select(applied_payments.c.payment_id).where(applied_payments.c.user_id == user_id)
        ).all()
    return {row.payment_id for row in rows}


ADMIN_KEY_PREFIX = "admin:"


def _parse_deltas(deltas: Mapping) -> Dict[Dimension, int]:
    parsed: Dict[Dimension, int] = {}
    for key, value in deltas.items():
        dim = coerce_dimension(key)
        try:
            amount = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"Credit for {dim.value} must be an integer, got {value!r}")
        if amount < 0:
            raise ValidationError(f"Credit for {dim.value} must be non-negative, got {amount}")
        parsed[dim] = parsed.get(dim, 0) + amount
    return parsed


def credit_purchased_messages(
    user_id: str,
    deltas: Mapping,
    *,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Credit purchased units directly (support tooling, manual top-ups).

    All deltas commit together with one `purchase` log entry. With an
    `idempotency_key`, repeating the call is a no-op that still returns True.

    Returns:
        False if the store stayed unavailable after retries.

    Raises:
        ValidationError: negative or non-integer amount
        ConfigurationError: unknown dimension
    """
    parsed = _parse_deltas(deltas)
    ts = normalize_now(now)
    marker = f"{ADMIN_KEY_PREFIX}{idempotency_key}" if idempotency_key else None
    positive = {dim: amount for dim, amount in parsed.items() if amount > 0}

    def _apply() -> bool:
        ensure_balance_rows(user_id, positive.keys(), ts)
        try:
            with get_db_session() as session:
                if marker is not None:
                    if is_payment_applied(user_id, marker, session=session):
                        return False
                    mark_payment_applied(session, user_id, marker, ts)
                for dim, amount in positive.items():
                    credit_in_session(session, user_id, dim, amount, ts)
                append_transaction(
                    session,
                    user_id=user_id,
                    kind=TransactionKind.PURCHASE,
                    source=TransactionSource.ADMIN,
                    deltas={dim.value: amount for dim, amount in positive.items()},
                    occurred_at=ts,
                    payment_id=marker,
                )
        except IntegrityError:
            return False  # same key applied concurrently
        return True

    try:
        applied = run_with_store_retry(_apply, operation="ledger.credit_purchased")
    except TransientStoreError:
        logger.error(
            "[ledger] credit failed",
            extra={"user_id": user_id, "error_code": "try_again"},
        )
        return False

    if applied:
        logger.info(
            "[ledger] purchased credit applied",
            extra={"user_id": user_id, "deltas": {d.value: a for d, a in positive.items()}},
        )
    else:
        logger.info(
            "[ledger] duplicate credit ignored",
            extra={"user_id": user_id, "payment_id": marker},
        )
    return True
