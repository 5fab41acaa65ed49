"""
Fallback poller: keeps cached data fresh while the WebSocket is down.

Engaged when the channel reaches FALLBACK_POLLING and disengaged when it
returns to OPEN. Each poll refetches the subscribed entity families and
asks the channel to try a reconnect. Errors are logged, never raised.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional

from core.async_utils import cancel_task
from realtime.channel import ChannelState

logger = logging.getLogger(__name__)


class FallbackPoller:
    """Periodic refetch plus reconnect probe."""

    def __init__(
        self,
        refresh_family: Callable[[str], Awaitable[Any]],
        families: Callable[[], Iterable[str]],
        reconnect: Optional[Callable[[], Awaitable[Any]]] = None,
        interval_seconds: float = 30.0,
    ):
        """
        Args:
            refresh_family: Coroutine function that refetches one cache family
            families: Returns the cache families to refetch on each poll
            reconnect: Coroutine function asking the channel to reconnect
            interval_seconds: Time between polls
        """
        self._refresh_family = refresh_family
        self._families = families
        self._reconnect = reconnect
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._engaged = False
        self.polls = 0

    @property
    def engaged(self) -> bool:
        return self._engaged

    def engage(self) -> None:
        if self._engaged:
            return
        self._engaged = True
        self._task = asyncio.ensure_future(self._run())
        logger.info(f"Fallback polling engaged (every {self._interval}s)")

    def disengage(self) -> None:
        if not self._engaged:
            return
        self._engaged = False
        cancel_task(self._task)
        self._task = None
        logger.info("Fallback polling disengaged")

    async def _run(self) -> None:
        while self._engaged:
            await asyncio.sleep(self._interval)
            if not self._engaged:
                break
            await self.poll_once()

    async def poll_once(self) -> None:
        """Refetch each family, then probe the channel."""
        self.polls += 1
        for family in list(self._families()):
            if not self._engaged:
                return
            try:
                await self._refresh_family(family)
            except Exception:
                logger.exception(f"Fallback refresh of {family} failed")

        if self._reconnect is None or not self._engaged:
            return
        try:
            outcome = self._reconnect()
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("Fallback reconnect probe failed")

    def on_channel_state(self, old: ChannelState, new: ChannelState) -> None:
        """Channel state listener."""
        if new is ChannelState.FALLBACK_POLLING:
            self.engage()
        elif new is ChannelState.OPEN:
            self.disengage()
        elif new is ChannelState.DISCONNECTED and old is not ChannelState.CONNECTING:
            # Closed by logout or revoke
            self.disengage()
