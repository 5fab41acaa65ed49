"""
Session runtime: owns and wires every session-core component.

One SessionRuntime per process (or per logged-in identity). The host
constructs it at startup, forwards user activity to it and listens for
`auth-expired` to show the login screen:

    async with SessionRuntime() as session:
        session.events.on_auth_expired(lambda event: print("expired:", event.reason))
        result = await session.auth.login("a@b.nl", "Secret123!")
        players = await session.players.list()

Revocation order (token lifecycle hooks): credentials cleared, channel
closed (terminal), poller stopped, caches cleared including the mirror,
pending coalesced requests cancelled, then auth-expired published.
"""

import logging
import time
from typing import Callable, Optional

from api.auth import AuthAPI, LoginThrottle
from api.companies import CompanyAPI
from api.players import PlayerAPI
from api.users import UserAPI
from config.settings import AppSettings, get_settings
from core.activity import ActivityMonitor
from core.async_utils import try_create_task
from core.coalescer import RequestCoalescer
from core.credentials import CredentialStore
from core.durable_store import DurableStore, open_store
from core.entity_cache import EntityCache
from core.gateway import HttpGateway, Transport
from core.token_lifecycle import RevocationReason, TokenLifecycle
from core.types import User
from realtime.channel import Connector, RealtimeChannel
from realtime.dispatcher import EventDispatcher
from realtime.events import AuthExpiredEvent, SubscriptionRegistry
from realtime.poller import FallbackPoller

logger = logging.getLogger(__name__)


class SessionRuntime:
    """Composition root for the session and realtime sync core."""

    def __init__(
        self,
        settings: Optional[AppSettings] = None,
        *,
        store: Optional[DurableStore] = None,
        transport: Optional[Transport] = None,
        connector: Optional[Connector] = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self.store = store if store is not None else open_store(self.settings.storage.storage_path)

        self.credentials = CredentialStore(self.store)
        self.activity = ActivityMonitor(clock=monotonic)
        self.lifecycle = TokenLifecycle(self.credentials, self.activity, self.settings.session, clock=clock)
        self.gateway = HttpGateway(self.settings.api, self.credentials, self.lifecycle, transport)
        self.lifecycle.bind_refresher(self.gateway.refresh_token)

        self.cache = EntityCache(self.store, self.settings.session.cache_ttl_seconds, clock=clock)
        self.coalescer = RequestCoalescer(self.settings.session.coalesce_debounce_ms)
        self.events = SubscriptionRegistry()

        self.companies = CompanyAPI(self.gateway, self.cache, self.coalescer, self.credentials)
        self.players = PlayerAPI(self.gateway, self.cache, self.coalescer, self.credentials)
        self.users = UserAPI(self.gateway, self.cache, self.coalescer, self.credentials)
        self._facades = {api.family: api for api in (self.companies, self.players, self.users)}

        throttle = LoginThrottle(
            self.store,
            self.settings.session.lockout_threshold,
            self.settings.session.lockout_duration_seconds,
            clock=clock,
        )
        self.auth = AuthAPI(
            self.gateway,
            self.credentials,
            throttle,
            end_session=self.lifecycle.logout,
            on_login=self._on_login,
        )

        self.channel = RealtimeChannel(
            self.settings.api.realtime_url,
            self.credentials,
            self.settings.realtime,
            connector=connector,
            clock=monotonic,
        )
        self.dispatcher = EventDispatcher(self.cache, self.events, self.channel.send, self.lifecycle.revoke)
        self.poller = FallbackPoller(
            self._refresh_family,
            self._polled_families,
            self.channel.request_reconnect,
            self.settings.realtime.poll_interval_seconds,
        )

        self.channel.set_message_handler(self.dispatcher.dispatch)
        self.channel.set_auth_rejected_handler(lambda: self.lifecycle.revoke(RevocationReason.EXPIRED))
        self.channel.on_state_change(self.poller.on_channel_state)

        self.lifecycle.add_revoke_hook(lambda reason: self.channel.close(terminal=True))
        self.lifecycle.add_revoke_hook(lambda reason: self.poller.disengage())
        self.lifecycle.add_revoke_hook(lambda reason: self.cache.invalidate_all(include_mirror=True))
        self.lifecycle.add_revoke_hook(lambda reason: self.coalescer.cancel_all())
        self.lifecycle.add_revoke_hook(self._publish_auth_expired)

        self.credentials.on_change(self.lifecycle.on_credentials)
        self.credentials.on_change(self.channel.on_credentials)

        self._started = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, connect: bool = True) -> None:
        """Restore credentials, start the token tick and open the channel."""
        if self._started:
            return
        self._started = True
        credentials = self.credentials.load()
        if credentials is None:
            logger.info("Session runtime started (logged out)")
            return

        self.lifecycle.start()
        await self.lifecycle.evaluate()
        if connect and self.credentials.is_authenticated:
            try_create_task(self.channel.ensure_connected())
        logger.info(f"Session runtime started for {credentials.user.email}")

    async def logout(self) -> None:
        await self.auth.logout()

    async def aclose(self) -> None:
        """Stop all timers and release network resources. Credentials are kept."""
        self.lifecycle.stop()
        self.poller.disengage()
        self.coalescer.cancel_all()
        await self.channel.aclose()
        await self.gateway.close()
        self.store.close()
        self._started = False
        logger.info("Session runtime closed")

    async def __aenter__(self) -> "SessionRuntime":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # =========================================================================
    # Host-facing helpers
    # =========================================================================

    def record_activity(self, kind: str = "input") -> None:
        self.activity.record(kind)

    def _on_login(self, previous: Optional[User], user: User) -> None:
        self.activity.reset()
        if previous is not None and previous.id != user.id:
            # Tenant scope changed, nothing cached for the last user is valid
            logger.info(f"Login switched user {previous.id} -> {user.id}, dropping caches")
            self.cache.invalidate_all(include_mirror=True)

    def _publish_auth_expired(self, reason: str) -> None:
        if reason == RevocationReason.LOGOUT.value:
            return
        self.events.publish(AuthExpiredEvent(reason=reason))

    def _polled_families(self) -> list[str]:
        return [family.cache_family for family in self.events.subscribed_families()]

    async def _refresh_family(self, family: str) -> None:
        result = await self._facades[family].refresh()
        if not result.ok:
            logger.info(f"Fallback refresh of {family} failed: {result.error}")

    def stats(self) -> dict:
        return {
            "cache": self.cache.stats(),
            "coalescer": self.coalescer.get_stats(),
            "gateway": self.gateway.get_stats(),
            "lifecycle": self.lifecycle.get_stats(),
            "channel": self.channel.get_stats(),
            "events": self.events.get_stats(),
            "dispatcher": self.dispatcher.get_stats(),
            "poller": {"engaged": self.poller.engaged, "polls": self.poller.polls},
        }
