"""
Retry Policy

Classifies failed gateway calls and computes backoff deadlines for the
charge scheduler.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .models import FailureKind, GatewayResult

# Gateway-level codes that describe an outage rather than a decline
RETRYABLE_GATEWAY_CODES = frozenset({"6", "96"})


def classify_failure(result: GatewayResult) -> FailureKind:
    """
    Retryable: network timeout/reset, HTTP 5xx, HTTP 429, gateway outage codes.
    Everything else (other 4xx, decline codes) is permanent.
    """
    if result.transport_error:
        return FailureKind.RETRYABLE
    status = result.http_status
    if status is not None and (status >= 500 or status == 429):
        return FailureKind.RETRYABLE
    if status is not None and 400 <= status < 500:
        return FailureKind.PERMANENT
    if result.code in RETRYABLE_GATEWAY_CODES:
        return FailureKind.RETRYABLE
    return FailureKind.PERMANENT


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    next_retry_at: Optional[datetime]
    retry_count: int


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: base * 2^n minutes for the n-th retry (n from 0)"""
    max_retries: int = 3
    base_minutes: int = 5

    def backoff(self, attempts_so_far: int) -> timedelta:
        return timedelta(minutes=self.base_minutes * (2 ** attempts_so_far))

    def decide(self, retry_count: int, now: datetime, max_retries: Optional[int] = None) -> RetryDecision:
        """
        Decide what follows a retryable failure.

        The failure that brings the count to the limit is terminal, so with
        max_retries=3 the order is retried at +5 and +10 minutes and fails on
        the third consecutive outage.

        Args:
            retry_count: Retryable failures already recorded for this order
            now: Failure time
            max_retries: Per-order override of the policy limit
        """
        limit = self.max_retries if max_retries is None else max_retries
        count = retry_count + 1
        if count >= limit:
            return RetryDecision(retry=False, next_retry_at=None, retry_count=count)
        return RetryDecision(
            retry=True,
            next_retry_at=now + self.backoff(count - 1),
            retry_count=count,
        )
