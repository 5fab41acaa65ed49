"""
Typed events and the subscription registry.

Two kinds of events share one registry:
- EntityEvent for server-pushed mutations, keyed by (family, op)
- session events such as "auth-expired", keyed by SessionEvent

Subscribers run synchronously in registration order. A subscriber that
raises is logged and the remaining subscribers still receive the event.

Usage:
    registry = SubscriptionRegistry()
    unsubscribe = registry.subscribe_family(EntityFamily.PLAYER, on_player_change)
    registry.on_auth_expired(lambda event: show_login(event.reason))
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Hashable, Union

logger = logging.getLogger(__name__)


class EntityFamily(str, Enum):
    COMPANY = "company"
    PLAYER = "player"
    USER = "user"

    @property
    def cache_family(self) -> str:
        """Cache/endpoint family name (companies, players, users)."""
        return {"company": "companies", "player": "players", "user": "users"}[self.value]

    @classmethod
    def from_cache_family(cls, family: str) -> "EntityFamily":
        for member in cls:
            if member.cache_family == family:
                return member
        raise ValueError(f"Unknown entity family: {family}")


class EntityOp(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class SessionEvent(str, Enum):
    AUTH_EXPIRED = "auth-expired"


AUTH_EXPIRED = SessionEvent.AUTH_EXPIRED


@dataclass(frozen=True)
class EntityEvent:
    """A server-announced mutation of one entity."""
    family: EntityFamily
    op: EntityOp
    payload: Any = None

    @property
    def kind(self) -> tuple[EntityFamily, EntityOp]:
        return (self.family, self.op)


@dataclass(frozen=True)
class AuthExpiredEvent:
    """The session ended; the host should show the login screen."""
    reason: str
    details: dict = field(default_factory=dict)

    @property
    def kind(self) -> SessionEvent:
        return SessionEvent.AUTH_EXPIRED


Event = Union[EntityEvent, AuthExpiredEvent]
Subscriber = Callable[[Event], Any]


class SubscriptionRegistry:
    """Ordered subscribers per event kind."""

    def __init__(self):
        self._subscribers: dict[Hashable, list[Subscriber]] = {}
        self._stats = {"published": 0, "delivered": 0, "subscriber_errors": 0}

    def subscribe(self, kind: Hashable, callback: Subscriber) -> Callable[[], None]:
        """
        Register a callback for one event kind.

        Args:
            kind: (EntityFamily, EntityOp) tuple or a SessionEvent

        Returns:
            Function that removes the subscription
        """
        subscribers = self._subscribers.setdefault(kind, [])
        subscribers.append(callback)

        def unsubscribe():
            if callback in subscribers:
                subscribers.remove(callback)

        return unsubscribe

    def subscribe_family(self, family: EntityFamily, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for created, updated and deleted events of a family."""
        family = EntityFamily(family)
        unsubscribers = [self.subscribe((family, op), callback) for op in EntityOp]

        def unsubscribe():
            for fn in unsubscribers:
                fn()

        return unsubscribe

    def on_auth_expired(self, callback: Subscriber) -> Callable[[], None]:
        return self.subscribe(SessionEvent.AUTH_EXPIRED, callback)

    def subscribed_families(self) -> list[EntityFamily]:
        """Families that currently have at least one subscriber."""
        families = []
        for kind, subscribers in self._subscribers.items():
            if subscribers and isinstance(kind, tuple) and kind[0] not in families:
                families.append(kind[0])
        return families

    def publish(self, event: Event) -> int:
        """Deliver an event to its subscribers. Returns the number delivered."""
        self._stats["published"] += 1
        delivered = 0
        for callback in list(self._subscribers.get(event.kind, ())):
            try:
                callback(event)
                delivered += 1
            except Exception:
                self._stats["subscriber_errors"] += 1
                logger.exception(f"Subscriber failed for {event.kind}")
        self._stats["delivered"] += delivered
        return delivered

    def get_stats(self) -> dict:
        return dict(self._stats)
