"""
Time helpers shared by models, jobs and the credential cache
"""

import time
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MonotonicClock:
    """Seconds source for expiry bookkeeping. Tests swap in a fake."""

    def now(self) -> float:
        return time.monotonic()
