"""
Payment-record sources for reconciliation.

The checkout pipeline writes credit amounts into the payment's metadata
(e.g. {"user_id": "...", "text_messages": "50"}). Reconciliation only reads
them, so any source that can list a user's succeeded payments will do.
All Stripe-specific code lives here.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol
import logging

import stripe

from quota_ledger.core.config import settings
from quota_ledger.core.errors import PaymentSourceError
from quota_ledger.models.ledger import PaymentRecord


logger = logging.getLogger(__name__)

SUBSCRIPTION_LIVE_STATUSES = ("active", "trialing")


class PaymentSource(Protocol):
    """
    Protocol for payment-record sources.

    Implementations return every succeeded payment for the user, in any
    order and possibly including records that were already applied.
    """

    def payment_records(self, user_id: str) -> List[PaymentRecord]:
        """
        Raises:
            PaymentSourceError: If records cannot be read
        """
        ...


def _search_literal(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _as_str_map(metadata: Any) -> Dict[str, str]:
    if metadata is None:
        return {}
    if hasattr(metadata, "to_dict"):
        metadata = metadata.to_dict()
    return {str(key): "" if value is None else str(value) for key, value in dict(metadata).items()}


class StripePaymentSource:
    """Succeeded Stripe PaymentIntents tagged with the user's ID."""

    def __init__(self, secret_key: Optional[str] = None):
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        if not self.secret_key:
            raise PaymentSourceError("STRIPE_SECRET_KEY not configured")
        stripe.api_key = self.secret_key

    def payment_records(self, user_id: str) -> List[PaymentRecord]:
        query = f"status:'succeeded' AND metadata['user_id']:'{_search_literal(user_id)}'"
        try:
            results = stripe.PaymentIntent.search(query=query, limit=100)
            records = []
            for intent in results.auto_paging_iter():
                created = getattr(intent, "created", None)
                records.append(
                    PaymentRecord(
                        id=intent.id,
                        metadata=_as_str_map(getattr(intent, "metadata", None)),
                        created_at=datetime.fromtimestamp(created, tz=timezone.utc) if created else None,
                    )
                )
        except stripe.StripeError as e:
            logger.error(
                "[billing] payment search failed",
                extra={"user_id": user_id, "error": type(e).__name__},
            )
            raise PaymentSourceError(f"Stripe payment search failed: {e}")
        return records


def stripe_active_price_lookup(user_id: str) -> Optional[str]:
    """Price ID of the user's live subscription, or None."""
    query = f"metadata['user_id']:'{_search_literal(user_id)}'"
    try:
        subscriptions = stripe.Subscription.search(query=query, limit=10)
        for subscription in subscriptions.auto_paging_iter():
            if subscription.status not in SUBSCRIPTION_LIVE_STATUSES:
                continue
            items = subscription["items"]["data"]  # attribute access would hit dict.items
            if items:
                return items[0]["price"]["id"]
    except stripe.StripeError as e:
        raise PaymentSourceError(f"Stripe subscription lookup failed: {e}")
    return None


def payments_enabled() -> bool:
    """Check if a payment source is configured (Stripe key present)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_payment_source() -> Optional[PaymentSource]:
    """Get the payment source if payments are enabled."""
    if not payments_enabled():
        return None
    try:
        return StripePaymentSource()
    except PaymentSourceError:
        return None
