"""
Core session utilities for the display player management client.

This package holds the pieces every other layer builds on:
- credentials, activity and token lifecycle (who is logged in, for how long)
- the HTTP gateway and its uniform ApiResult
- the entity cache and request coalescer
- SessionRuntime (core.session), which wires them together with the
  realtime channel and the API facades
"""

from .async_utils import cancel_task, run_sync, try_create_task
from .errors import (
    ApiError,
    ApiResult,
    ErrorKind,
    SessionError,
    safe_result,
)
from .types import Credentials, User

__all__ = [
    "ApiError",
    "ApiResult",
    "Credentials",
    "ErrorKind",
    "SessionError",
    "User",
    "cancel_task",
    "run_sync",
    "safe_result",
    "try_create_task",
]
