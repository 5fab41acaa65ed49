"""
Async helpers for the single-threaded session core.

Synchronous callbacks (credential listeners, activity signals, channel
state listeners) use try_create_task() to schedule follow-up coroutines.
Background loops are stopped with cancel_task(), which never cancels the
task it is called from: a revoke triggered inside the tick loop or the
socket reader must be able to finish its own teardown.

Usage:
    from core.async_utils import run_sync, try_create_task, cancel_task

    result = run_sync(fetch_players())
    try_create_task(channel.ensure_connected())
    cancel_task(self._tick_task)
"""

import asyncio
import logging
from typing import Any, Coroutine, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Strong references to fire-and-forget tasks so they are not garbage
# collected mid-flight.
_background_tasks: set[asyncio.Task] = set()


def run_sync(coro: Coroutine[Any, Any, T]) -> T:
    """
    Run an async coroutine synchronously.

    Creates a new event loop, runs the coroutine to completion,
    and properly closes the loop.
    """
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def try_create_task(coro: Coroutine[Any, Any, T]) -> bool:
    """
    Try to schedule an async task in the current event loop.

    If there's no running event loop, closes the coroutine and returns
    False without error.

    Returns:
        True if task was scheduled, False if no event loop available
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        coro.close()
        return False

    task = loop.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_finish_background_task)
    return True


def _finish_background_task(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background task failed: %r", exc, exc_info=exc)


def cancel_task(task: Optional[asyncio.Task]) -> bool:
    """
    Cancel a background task unless it is done or is the calling task.

    Returns:
        True if cancellation was requested
    """
    if task is None or task.done():
        return False
    try:
        current = asyncio.current_task()
    except RuntimeError:
        current = None
    if task is current:
        return False
    task.cancel()
    return True
