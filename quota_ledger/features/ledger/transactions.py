"""
quota_ledger/features/ledger/transactions.py

Transaction log for audit and reconciliation debugging.
Entries are written inside the same transaction as the mutation they describe
and never removed. The only later write is the replay counter of a grant.
"""

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select, insert, update
from sqlalchemy.orm import Session

from quota_ledger.core.database import get_db_session, quota_transactions
from quota_ledger.features.usage.window import as_utc
from quota_ledger.models.ledger import TransactionKind, TransactionLogEntry, TransactionSource


def _row_to_entry(row) -> TransactionLogEntry:
    return TransactionLogEntry(
        id=row.id,
        user_id=row.user_id,
        kind=TransactionKind(row.kind),
        source=TransactionSource(row.source),
        deltas=dict(row.deltas or {}),
        payment_id=row.payment_id,
        grant_id=row.grant_id,
        occurred_at=as_utc(row.occurred_at),
    )


def append_transaction(
    session: Session,
    *,
    user_id: str,
    kind: TransactionKind,
    source: TransactionSource,
    deltas: Dict[str, int],
    occurred_at: datetime,
    payment_id: Optional[str] = None,
    grant_id: Optional[str] = None,
) -> None:
    session.execute(
        insert(quota_transactions).values(
            user_id=user_id,
            kind=kind.value,
            source=source.value,
            deltas=deltas,
            payment_id=payment_id,
            grant_id=grant_id,
            occurred_at=occurred_at,
        )
    )


def find_grant(user_id: str, grant_id: str) -> Optional[TransactionLogEntry]:
    """Look up the log entry written by one of `user_id`'s committed grants."""
    with get_db_session() as session:
        row = session.execute(
            select(quota_transactions).where(
                quota_transactions.c.user_id == user_id,
                quota_transactions.c.grant_id == grant_id,
            )
        ).first()
    return _row_to_entry(row) if row else None


def claim_replay(user_id: str, grant_id: str, max_replays: int) -> bool:
    """Count one more echo of a grant. False once `max_replays` have been served."""
    with get_db_session() as session:
        result = session.execute(
            update(quota_transactions)
            .where(quota_transactions.c.user_id == user_id)
            .where(quota_transactions.c.grant_id == grant_id)
            .where(quota_transactions.c.replays < max_replays)
            .values(replays=quota_transactions.c.replays + 1)
        )
        return result.rowcount == 1


def list_transactions(user_id: str, limit: int = 50) -> List[TransactionLogEntry]:
    """Most recent entries first."""
    with get_db_session() as session:
        rows = session.execute(
            select(quota_transactions)
            .where(quota_transactions.c.user_id == user_id)
            .order_by(quota_transactions.c.occurred_at.desc(), quota_transactions.c.id.desc())
            .limit(limit)
        ).all()
    return [_row_to_entry(row) for row in rows]
