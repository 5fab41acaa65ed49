"""
Request coalescing: concurrent identical fetches share one round-trip.

The first caller for a key creates a pending future and a producer task
that waits out the debounce window before running. Later callers for the
same key await the same future. The entry is removed from the table before
the result is delivered, so a call made after settling starts a new fetch.
"""

import asyncio
import hashlib
import json
import logging
from typing import Any, Awaitable, Callable, Optional

from core.async_utils import cancel_task
from core.errors import SessionExpiredError

logger = logging.getLogger(__name__)

Producer = Callable[[], Awaitable[Any]]


def request_key(facade: str, **args) -> str:
    """Stable digest of a facade name and its arguments."""
    blob = json.dumps(args, sort_keys=True, default=str)
    digest = hashlib.sha1(blob.encode()).hexdigest()[:16]
    return f"{facade}:{digest}"


class _Pending:
    __slots__ = ("future", "task")

    def __init__(self, future: asyncio.Future, task: Optional[asyncio.Task] = None):
        self.future = future
        self.task = task


class RequestCoalescer:
    """In-flight table keyed by request key."""

    def __init__(self, debounce_ms: int = 300):
        self._debounce_ms = debounce_ms
        self._pending: dict[str, _Pending] = {}
        self._stats = {"calls": 0, "coalesced": 0, "produced": 0}

    def pending(self, key: str) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    async def coalesce(self, key: str, producer: Producer, debounce_ms: Optional[int] = None) -> Any:
        """Run `producer` once for all concurrent callers of `key`."""
        self._stats["calls"] += 1
        entry = self._pending.get(key)
        if entry is not None:
            self._stats["coalesced"] += 1
            logger.debug(f"Coalesced request {key}")
            return await asyncio.shield(entry.future)

        loop = asyncio.get_running_loop()
        entry = _Pending(loop.create_future())
        self._pending[key] = entry
        delay = self._debounce_ms if debounce_ms is None else debounce_ms
        entry.task = loop.create_task(self._produce(key, entry, producer, delay / 1000.0))
        return await asyncio.shield(entry.future)

    async def _produce(self, key: str, entry: _Pending, producer: Producer, delay: float) -> None:
        try:
            if delay > 0:
                await asyncio.sleep(delay)
            self._stats["produced"] += 1
            result = await producer()
        except asyncio.CancelledError:
            self._finish(key, entry, exc=SessionExpiredError())
            raise
        except Exception as e:
            self._finish(key, entry, exc=e)
        else:
            self._finish(key, entry, result=result)

    def _finish(self, key: str, entry: _Pending, result: Any = None, exc: Optional[BaseException] = None) -> None:
        if self._pending.get(key) is entry:
            del self._pending[key]
        if entry.future.done():
            return
        if exc is not None:
            entry.future.set_exception(exc)
        else:
            entry.future.set_result(result)

    def settle(self, key: str, result: Any) -> bool:
        """Deliver a result early for a pending key. Returns False if none was pending."""
        entry = self._pending.get(key)
        if entry is None:
            return False
        cancel_task(entry.task)
        self._finish(key, entry, result=result)
        return True

    def cancel_all(self) -> int:
        """Fail every pending entry with SessionExpiredError (used on revoke)."""
        entries = list(self._pending.items())
        self._pending.clear()
        for key, entry in entries:
            cancel_task(entry.task)
            if not entry.future.done():
                entry.future.set_exception(SessionExpiredError())
        if entries:
            logger.info(f"Cancelled {len(entries)} pending request(s)")
        return len(entries)

    def get_stats(self) -> dict:
        return dict(self._stats, pending=len(self._pending))
