"""
quota_ledger/models/ledger.py

Payment records, transaction log entries and reconciliation reports.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TransactionKind(str, Enum):
    PURCHASE = "purchase"
    USAGE = "usage"


class TransactionSource(str, Enum):
    PLAN = "plan"
    LEDGER = "ledger"
    PAYMENT = "payment"
    ADMIN = "admin"


class PaymentRecord(BaseModel):
    """
    A payment observed in the external checkout pipeline.

    Metadata is a flat string map; credit amounts live under per-dimension
    keys (e.g. "text_messages": "50").
    """
    model_config = ConfigDict(frozen=True)

    id: str
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class TransactionLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    kind: TransactionKind
    source: TransactionSource
    deltas: Dict[str, int]
    occurred_at: datetime
    payment_id: Optional[str] = None
    grant_id: Optional[str] = None
    id: Optional[int] = None


class ParseIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    payment_id: str
    dimension: str
    raw_value: str
    message: str


class ReconcileReport(BaseModel):
    user_id: str
    applied: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    parse_errors: List[ParseIssue] = Field(default_factory=list)
    credited: Dict[str, int] = Field(default_factory=dict)
