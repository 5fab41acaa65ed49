"""
Event dispatcher: turns server push messages into cache invalidation and
typed subscription events.

    ping                               -> reply pong
    pong / heartbeat                   -> liveness only
    error / auth_error (expired token) -> revoke("expired")
    <family>_<created|updated|deleted> -> invalidate cache, then publish EntityEvent
    anything else                      -> logged and dropped
"""

import logging
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from core.entity_cache import EntityCache
from core.token_lifecycle import RevocationReason, indicates_expired_token
from realtime.events import EntityEvent, EntityFamily, EntityOp, SubscriptionRegistry
from schemas.messages import ServerMessage

logger = logging.getLogger(__name__)

LIVENESS_TYPES = frozenset({"pong", "heartbeat", "connected", "welcome"})
ERROR_TYPES = frozenset({"error", "auth_error"})

# Families whose cached lists embed data of the mutated family
DEPENDENT_FAMILIES = {
    EntityFamily.COMPANY: (EntityFamily.USER, EntityFamily.PLAYER),
}


def parse_entity_type(message_type: str) -> Optional[tuple[EntityFamily, EntityOp]]:
    """Split 'player_updated' into (PLAYER, UPDATED); None if not an entity event."""
    family, sep, op = message_type.partition("_")
    if not sep:
        return None
    try:
        return EntityFamily(family), EntityOp(op)
    except ValueError:
        return None


class EventDispatcher:
    """Routes parsed frames from the realtime channel."""

    def __init__(
        self,
        cache: EntityCache,
        registry: SubscriptionRegistry,
        send: Callable[[dict], Awaitable[Any]],
        revoke: Callable[[RevocationReason], Awaitable[Any]],
    ):
        self._cache = cache
        self._registry = registry
        self._send = send
        self._revoke = revoke
        self._stats = {"dispatched": 0, "entity_events": 0, "dropped": 0}

    async def dispatch(self, frame: dict) -> None:
        """Handle one frame. Never raises for malformed input."""
        try:
            message = ServerMessage.model_validate(frame)
        except ValidationError:
            self._stats["dropped"] += 1
            logger.warning(f"Dropping malformed realtime message: {str(frame)[:200]}")
            return

        self._stats["dispatched"] += 1
        kind = message.type

        if kind == "ping":
            await self._send({"type": "pong"})
            return
        if kind in LIVENESS_TYPES:
            return
        if kind in ERROR_TYPES:
            await self._handle_error(message)
            return

        parsed = parse_entity_type(kind)
        if parsed is None:
            self._stats["dropped"] += 1
            logger.info(f"Ignoring unknown realtime message type: {kind}")
            return

        family, op = parsed
        self._invalidate(family)
        self._stats["entity_events"] += 1
        self._registry.publish(EntityEvent(family=family, op=op, payload=message.body()))

    def _invalidate(self, family: EntityFamily) -> None:
        self._cache.invalidate(family.cache_family)
        for dependent in DEPENDENT_FAMILIES.get(family, ()):
            self._cache.invalidate(dependent.cache_family)

    async def _handle_error(self, message: ServerMessage) -> None:
        body = message.model_dump()
        if indicates_expired_token(body):
            logger.warning(f"Server reported an expired session ({message.type})")
            await self._revoke(RevocationReason.EXPIRED)
            return
        logger.warning(f"Realtime server error: {body.get('message') or body.get('error') or body.get('data')}")

    def get_stats(self) -> dict:
        return dict(self._stats)
