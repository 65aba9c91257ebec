"""
Bounded exponential backoff for store calls.

Only transient persistence failures are retried. Callers must pass
operations that are safe to run again: the quota gate carries a grant_id,
reconciliation relies on the applied-payment set.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import InterfaceError, OperationalError, TimeoutError as PoolTimeoutError
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from quota_ledger.core.config import settings
from quota_ledger.core.errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_STORE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError, TransientStoreError)


def _log_retry(operation: str) -> Callable[[RetryCallState], None]:
    def _before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "[store] retrying after transient error",
            extra={
                "event_type": operation,
                "attempt": state.attempt_number,
                "error": type(exc).__name__ if exc else None,
            },
        )
    return _before_sleep


def run_with_store_retry(fn: Callable[[], T], *, operation: str, attempts: Optional[int] = None) -> T:
    """Run `fn`, retrying transient store errors, then raise TransientStoreError."""
    retrying = Retrying(
        stop=stop_after_attempt(attempts or settings.STORE_RETRY_ATTEMPTS),
        wait=wait_exponential(
            multiplier=settings.STORE_RETRY_MIN_WAIT_SECONDS,
            min=settings.STORE_RETRY_MIN_WAIT_SECONDS,
            max=settings.STORE_RETRY_MAX_WAIT_SECONDS,
        ),
        retry=retry_if_exception_type(TRANSIENT_STORE_ERRORS),
        before_sleep=_log_retry(operation),
        reraise=True,
    )
    try:
        return retrying(fn)
    except TransientStoreError:
        raise
    except TRANSIENT_STORE_ERRORS as exc:
        logger.error(
            "[store] giving up after retries",
            extra={"event_type": operation, "error": type(exc).__name__},
        )
        raise TransientStoreError() from exc
