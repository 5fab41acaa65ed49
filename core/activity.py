"""
User activity tracking.

The host forwards interaction signals (pointer, key, scroll, touch, input)
to record(). The token lifecycle asks is_idle() before deciding between a
refresh and an inactivity revoke.
"""

import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

ACTIVITY_KINDS = frozenset({"pointer", "key", "scroll", "touch", "input"})


class ActivityMonitor:
    """Keeps the monotonic timestamp of the last user interaction."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._last_active = clock()
        self._listeners: list[Callable[[str], None]] = []

    @property
    def last_active(self) -> float:
        return self._last_active

    def record(self, kind: str = "input") -> None:
        if kind not in ACTIVITY_KINDS:
            raise ValueError(f"Unknown activity kind: {kind}")
        self._last_active = self._clock()
        for listener in list(self._listeners):
            try:
                listener(kind)
            except Exception:
                logger.exception("Activity listener failed")

    def idle_for(self) -> float:
        """Seconds since the last recorded interaction."""
        return max(0.0, self._clock() - self._last_active)

    def is_idle(self, timeout: float) -> bool:
        return self.idle_for() >= timeout

    def reset(self, at: Optional[float] = None) -> None:
        """Treat the user as active now (used after a fresh login)."""
        self._last_active = self._clock() if at is None else at

    def on_activity(self, callback: Callable[[str], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe
