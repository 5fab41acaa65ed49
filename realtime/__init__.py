"""Realtime push: WebSocket channel, fallback poller, dispatcher and events."""

from realtime.channel import AUTH_REJECTED_CLOSE_CODE, ChannelState, RealtimeChannel, reconnect_delay
from realtime.dispatcher import EventDispatcher
from realtime.events import (
    AuthExpiredEvent,
    EntityEvent,
    EntityFamily,
    EntityOp,
    SessionEvent,
    SubscriptionRegistry,
)
from realtime.poller import FallbackPoller

__all__ = [
    "AUTH_REJECTED_CLOSE_CODE",
    "AuthExpiredEvent",
    "ChannelState",
    "EntityEvent",
    "EntityFamily",
    "EntityOp",
    "EventDispatcher",
    "FallbackPoller",
    "RealtimeChannel",
    "SessionEvent",
    "SubscriptionRegistry",
    "reconnect_delay",
]
