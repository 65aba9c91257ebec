"""
quota_ledger/features/usage/counters.py

Quota counter store.

Every mutation is a single conditional UPDATE keyed on the counter's
generation, so concurrent requests for the same (user, dimension) can
never both consume the last unit of allowance:

- try_increment: used = used + 1 WHERE generation = g [AND used < limit]
- reset_counter: used = 0, generation = g + 1 WHERE generation = g
"""

from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from quota_ledger.core.database import get_db_session, quota_counters
from quota_ledger.features.usage.window import as_utc
from quota_ledger.models.dimension import Dimension
from quota_ledger.models.plan import UNLIMITED
from quota_ledger.models.usage import QuotaCounter


def _row_to_counter(row) -> QuotaCounter:
    return QuotaCounter(
        user_id=row.user_id,
        dimension=Dimension(row.dimension),
        used=row.used,
        last_reset=as_utc(row.last_reset),
        generation=row.generation,
    )


def get_counter(user_id: str, dimension: Dimension, session: Optional[Session] = None) -> Optional[QuotaCounter]:
    query = select(quota_counters).where(
        quota_counters.c.user_id == user_id,
        quota_counters.c.dimension == dimension.value,
    )
    if session is not None:
        row = session.execute(query).first()
    else:
        with get_db_session() as own:
            row = own.execute(query).first()
    return _row_to_counter(row) if row else None


def get_counters(user_id: str) -> Dict[Dimension, QuotaCounter]:
    with get_db_session() as session:
        rows = session.execute(
            select(quota_counters).where(quota_counters.c.user_id == user_id)
        ).all()
    counters = {}
    for row in rows:
        try:
            counter = _row_to_counter(row)
        except ValueError:
            continue  # dimension retired from the enum
        counters[counter.dimension] = counter
    return counters


def ensure_counter(user_id: str, dimension: Dimension, now: datetime) -> QuotaCounter:
    """Return the counter, creating it (used=0, last_reset=now) on first access."""
    existing = get_counter(user_id, dimension)
    if existing is not None:
        return existing
    try:
        with get_db_session() as session:
            session.execute(
                insert(quota_counters).values(
                    user_id=user_id,
                    dimension=dimension.value,
                    used=0,
                    last_reset=now,
                    generation=0,
                    updated_at=now,
                )
            )
    except IntegrityError:
        pass  # created concurrently
    counter = get_counter(user_id, dimension)
    if counter is None:
        raise RuntimeError(f"Counter for {user_id}/{dimension.value} vanished after insert")
    return counter


def reset_counter(user_id: str, dimension: Dimension, generation: int, now: datetime) -> bool:
    """Start a new window if nobody else has since `generation` was observed."""
    with get_db_session() as session:
        result = session.execute(
            update(quota_counters)
            .where(quota_counters.c.user_id == user_id)
            .where(quota_counters.c.dimension == dimension.value)
            .where(quota_counters.c.generation == generation)
            .values(
                used=0,
                last_reset=now,
                generation=quota_counters.c.generation + 1,
                updated_at=now,
            )
        )
        return result.rowcount == 1


def try_increment(
    session: Session,
    user_id: str,
    dimension: Dimension,
    generation: int,
    limit: int,
    now: datetime,
) -> Optional[int]:
    """Compare-and-increment inside the caller's transaction.

    Returns the new `used` value, or None when the window moved or the limit is reached.
    """
    stmt = (
        update(quota_counters)
        .where(quota_counters.c.user_id == user_id)
        .where(quota_counters.c.dimension == dimension.value)
        .where(quota_counters.c.generation == generation)
        .values(used=quota_counters.c.used + 1, updated_at=now)
    )
    if limit != UNLIMITED:
        stmt = stmt.where(quota_counters.c.used < limit)

    result = session.execute(stmt)
    if result.rowcount != 1:
        return None

    # The row is write-locked by this transaction, so this read sees our own increment.
    return session.execute(
        select(quota_counters.c.used)
        .where(quota_counters.c.user_id == user_id)
        .where(quota_counters.c.dimension == dimension.value)
    ).scalar_one()
