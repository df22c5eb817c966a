"""Retry schedule for queued CRM syncs."""
import math
from datetime import datetime
from typing import Optional

from leadsync.queue.errors import ErrorCategory, ErrorRecord

# Delay before attempt n+1, indexed by retry count: 1m, 5m, 15m, 30m, 1h
RETRY_DELAYS = (60, 300, 900, 1800, 3600)


def retry_delay(retry_count: int) -> int:
    """Seconds to wait before the next attempt, capped at one hour."""
    if retry_count < 0:
        raise ValueError("retry_count cannot be negative")
    return RETRY_DELAYS[min(retry_count, len(RETRY_DELAYS) - 1)]


def hint_seconds(error: Optional[ErrorRecord], now: Optional[datetime] = None) -> Optional[int]:
    """
    Explicit wait requested by the CRM, in seconds, or None.

    A Retry-After value is used as given. A reset time is measured from
    `now` (naive UTC) and needs it; it never yields less than one second.
    """
    if error is None:
        return None
    if error.retry_after is not None:
        return max(0, int(error.retry_after))
    if error.retry_at is not None and now is not None:
        return max(1, math.ceil((error.retry_at - now).total_seconds()))
    return None


def next_retry_delay(
    retry_count: int,
    error: Optional[ErrorRecord] = None,
    previous_category: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Delay for the next reschedule, honouring a retry-after hint.

    The hint replaces the schedule for this one reschedule only. After two
    rate limits in a row the larger of hint and schedule is used.

    Args:
        retry_count: retry count the schedule is indexed by.
        error: the failure being scheduled, if any.
        previous_category: error_type recorded for the job before this failure.
        now: scheduling time, needed to turn a reset time into a delay.
    """
    scheduled = retry_delay(retry_count)
    hint = hint_seconds(error, now)
    if hint is None:
        return scheduled
    if (
        error.category == ErrorCategory.RATE_LIMIT
        and previous_category == ErrorCategory.RATE_LIMIT.value
    ):
        return max(hint, scheduled)
    return hint
