"""
Reconcile payments into purchased credits for a batch of users.

Safe to run on a schedule and alongside request-time reconciliation:
every payment is applied at most once per user.

Usage:
    python -m quota_ledger.workers.reconcile_payments user_1 user_2
    python -m quota_ledger.workers.reconcile_payments --known-users
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, union

from quota_ledger.core.config import settings
from quota_ledger.core.database import get_db_session, purchase_balances, quota_counters
from quota_ledger.core.errors import PaymentSourceError
from quota_ledger.core.logging import configure_logging
from quota_ledger.features.billing.payment_source import PaymentSource, get_payment_source
from quota_ledger.features.billing.reconcile import reconcile_user


logger = logging.getLogger("quota_ledger.workers.reconcile")


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def known_user_ids() -> List[str]:
    """Users that have ever touched a quota counter or the ledger."""
    with get_db_session() as session:
        rows = session.execute(
            union(
                select(quota_counters.c.user_id),
                select(purchase_balances.c.user_id),
            )
        ).fetchall()
    return sorted(row[0] for row in rows)


def reconcile_users(user_ids: Iterable[str], source: PaymentSource) -> Dict:
    report = {
        "users": 0,
        "applied": 0,
        "skipped": 0,
        "failed": 0,
        "parse_errors": 0,
        "source_errors": [],
        "results": [],
    }

    for user_id in user_ids:
        report["users"] += 1
        try:
            result = reconcile_user(user_id, source)
        except PaymentSourceError as e:
            logger.error(
                "[reconcile] payment source unavailable for user",
                extra={"user_id": user_id, "error_code": e.code},
            )
            report["source_errors"].append(user_id)
            continue

        report["applied"] += len(result.applied)
        report["skipped"] += len(result.skipped)
        report["failed"] += len(result.failed)
        report["parse_errors"] += len(result.parse_errors)
        report["results"].append(result.model_dump(mode="json"))

    return report


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Apply succeeded payments as purchased credits.")
    parser.add_argument("user_ids", nargs="*", help="Users to reconcile.")
    parser.add_argument(
        "--known-users",
        action="store_true",
        default=_parse_bool(os.getenv("QUOTA_RECONCILE_KNOWN_USERS")),
        help="Reconcile every user with quota or ledger rows.",
    )
    args = parser.parse_args(argv)

    # stdout carries the JSON report
    configure_logging(settings.ENV, stream=sys.stderr)

    source = get_payment_source()
    if source is None:
        print("No payment source configured (set STRIPE_SECRET_KEY).", file=sys.stderr)
        return 2

    user_ids = list(args.user_ids)
    if args.known_users:
        user_ids.extend(u for u in known_user_ids() if u not in set(args.user_ids))
    if not user_ids:
        parser.error("pass user IDs or --known-users")

    report = reconcile_users(user_ids, source)
    print(json.dumps(report, indent=2, default=str))
    return 1 if report["failed"] or report["source_errors"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
