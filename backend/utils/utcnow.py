"""UTC and epoch-millisecond clock helpers.

The radar keys caches, dedup windows and monitor state on integer epoch
milliseconds; persisted rows use naive UTC datetimes.
"""

import time
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current UTC time as a naive (tzinfo=None) datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utcfromtimestamp(ts: float) -> datetime:
    """Convert a POSIX timestamp to a naive UTC datetime."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def now_ms() -> int:
    """Current wall-clock time in integer epoch milliseconds."""
    return int(time.time() * 1000)


def ms_to_datetime(ms: int) -> datetime:
    return utcfromtimestamp(ms / 1000.0)


def ms_to_iso(ms: int) -> str:
    return ms_to_datetime(ms).isoformat(timespec="milliseconds") + "Z"
