"""Timestamp helpers shared by the session core.

Wall-clock values (token expiry, cache stamps, ping frames, local ids) are
epoch seconds from time.time(). Idle detection uses time.monotonic() so that
clock adjustments never make a user look idle.
"""

import time
from datetime import datetime, timezone


def now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def isonow() -> str:
    """Return the current UTC time as an ISO 8601 string with +00:00 offset."""
    return now().isoformat()


def epoch_millis(clock=time.time) -> int:
    """Milliseconds since the epoch, as used in ping frames and local ids."""
    return int(clock() * 1000)
