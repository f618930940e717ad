"""
Retry delay policy for the NetSuite rate limiter.

A server Retry-After hint always wins; otherwise the delay follows a fixed
exponential table indexed by attempt (last entry reused). Every delay is
clamped to [min_wait, max_wait].
"""

import asyncio
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

import logging

from core.config import settings
from core.exceptions import RetryableError

logger = logging.getLogger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[Any]]

TRANSIENT_ERROR_CODES = {"CONCURRENCY_LIMIT_EXCEEDED"}


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """
    Seconds to wait from a Retry-After header.

    Accepts delta-seconds or an HTTP date; a date in the past yields 0.
    Returns None when the header is missing or unparseable.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None

    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def is_transient(status: Optional[int], error_code: Optional[str] = None) -> bool:
    """429, any 5xx, or the provider concurrency code"""
    if error_code in TRANSIENT_ERROR_CODES:
        return True
    if status is None:
        return False
    return status == 429 or 500 <= status < 600


class BackoffPolicy:
    """Compute the wait before the next attempt"""

    def __init__(
        self,
        schedule: Optional[Sequence[float]] = None,
        min_wait: Optional[float] = None,
        max_wait: Optional[float] = None,
    ):
        self.schedule = list(schedule or settings.RETRY_BACKOFF_SCHEDULE)
        self.min_wait = settings.RETRY_MIN_WAIT_SECONDS if min_wait is None else min_wait
        self.max_wait = settings.RETRY_MAX_WAIT_SECONDS if max_wait is None else max_wait

    def delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        if retry_after is not None:
            wait = retry_after
        else:
            wait = self.schedule[min(attempt, len(self.schedule) - 1)]
        return min(self.max_wait, max(self.min_wait, wait))


async def retry_transient(
    send: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    sleep: Optional[Sleep] = None,
    tag: str = "remote",
) -> T:
    """
    Await ``send`` until it stops raising a RetryableError.

    There is no attempt limit: a transient condition is waited out. The
    error's ``retry_after`` (when set) wins over the table.
    """
    sleep = sleep or asyncio.sleep
    attempt = 0
    while True:
        try:
            return await send()
        except RetryableError as e:
            wait = policy.delay(attempt, getattr(e, "retry_after", None))
            logger.warning(f"[{tag}] {e.message}, retrying in {wait:.2f}s (attempt {attempt + 1})")
            await sleep(wait)
            attempt += 1
