"""
Realtime WebSocket channel with bounded exponential backoff.

State machine (initial DISCONNECTED):

    DISCONNECTED --credentials present--> CONNECTING   (jwt.<token> subprotocol, handshake timeout)
    CONNECTING   --opened-------------->  OPEN          (reset backoff, send initial ping)
    CONNECTING   --timeout / error----->  DISCONNECTED  (schedule reconnect)
    OPEN         --close(4401)--------->  DISCONNECTED  (terminal, revoke "expired")
    OPEN         --close(other) / error-> DISCONNECTED  (schedule reconnect)
    DISCONNECTED --budget exhausted---->  FALLBACK_POLLING (poller engaged, retry at long interval)
    any          --logout / revoke----->  DISCONNECTED  (terminal, no reconnect)

Only one handshake runs at a time; concurrent ensure_connected() callers
share it. This class is the only writer of the socket.

Usage:
    channel = RealtimeChannel(settings.api.realtime_url, credentials, settings.realtime)
    channel.set_message_handler(dispatcher.dispatch)
    channel.set_auth_rejected_handler(lambda: lifecycle.revoke("expired"))
    await channel.ensure_connected()
"""

import asyncio
import inspect
import json
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from config.settings import RealtimeSettings
from core.async_utils import cancel_task, try_create_task
from core.credentials import CredentialStore
from core.timestamps import epoch_millis
from core.types import Credentials

logger = logging.getLogger(__name__)

AUTH_REJECTED_CLOSE_CODE = 4401


class ChannelState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    FALLBACK_POLLING = "fallback_polling"


def reconnect_delay(attempts: int, base: float = 5.0, factor: float = 1.5, min_delay: float = 5.0) -> float:
    """Backoff before the next attempt after `attempts` consecutive failures."""
    return max(min_delay, base * (factor ** max(0, attempts)))


# (url, protocols) -> websocket
Connector = Callable[[str, list[str]], Awaitable[Any]]
StateListener = Callable[[ChannelState, ChannelState], None]


class AiohttpConnector:
    """Opens client WebSockets on a dedicated aiohttp.ClientSession."""

    def __init__(self):
        self._session: Optional[aiohttp.ClientSession] = None

    async def __call__(self, url: str, protocols: list[str]):
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return await self._session.ws_connect(url, protocols=protocols, autoping=True)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


class RealtimeChannel:
    """Owns the socket, its reconnect timers and the heartbeat."""

    def __init__(
        self,
        url: str,
        credentials: CredentialStore,
        settings: RealtimeSettings,
        *,
        connector: Optional[Connector] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._url = url
        self._credentials = credentials
        self._settings = settings
        self._owns_connector = connector is None
        self._connector = connector or AiohttpConnector()
        self._clock = clock

        self.state = ChannelState.DISCONNECTED
        self.terminal = False
        self.reconnect_attempts = 0
        self.last_attempt_at: Optional[float] = None
        self._fallback = False

        self._ws = None
        self._socket_user_id: Optional[str] = None
        self._handshake: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

        self._on_message: Optional[Callable[[dict], Any]] = None
        self._on_auth_rejected: Optional[Callable[[], Any]] = None
        self._state_listeners: list[StateListener] = []

        self._stats = {"connects": 0, "failures": 0, "messages": 0}

    # =========================================================================
    # Wiring
    # =========================================================================

    def set_message_handler(self, handler: Callable[[dict], Any]) -> None:
        self._on_message = handler

    def set_auth_rejected_handler(self, handler: Callable[[], Any]) -> None:
        self._on_auth_rejected = handler

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        self._state_listeners.append(listener)

        def unsubscribe():
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return unsubscribe

    @property
    def in_fallback(self) -> bool:
        return self._fallback

    def _set_state(self, new: ChannelState) -> None:
        old = self.state
        if old is new:
            return
        self.state = new
        logger.info(f"Realtime channel {old.value} -> {new.value}", extra={"state": new.value})
        for listener in list(self._state_listeners):
            try:
                listener(old, new)
            except Exception:
                logger.exception("Channel state listener failed")

    # =========================================================================
    # Connect
    # =========================================================================

    async def ensure_connected(self) -> bool:
        """Connect if needed. Returns True when the channel is open."""
        if self.state is ChannelState.OPEN:
            return True
        if self.terminal or not self._credentials.is_authenticated:
            return False
        if self._handshake is None:
            task = asyncio.ensure_future(self._connect())
            task.add_done_callback(self._clear_handshake)
            self._handshake = task
        handshake = self._handshake
        try:
            return await asyncio.shield(handshake)
        except asyncio.CancelledError:
            # Handshake abandoned by a logout, the caller itself is still live
            if handshake.cancelled():
                return False
            raise

    def _clear_handshake(self, task: asyncio.Task) -> None:
        if self._handshake is task:
            self._handshake = None

    async def _connect(self) -> bool:
        token = self._credentials.get_token()
        if token is None:
            return False

        self.last_attempt_at = self._clock()
        self._set_state(ChannelState.CONNECTING)
        attempt = self.reconnect_attempts + 1
        logger.debug(f"Opening realtime channel (attempt {attempt})", extra={"attempt": attempt})

        try:
            ws = await asyncio.wait_for(
                self._connector(self._url, [f"jwt.{token}"]),
                timeout=self._settings.handshake_timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._stats["failures"] += 1
            if isinstance(e, aiohttp.WSServerHandshakeError) and e.status == 401:
                logger.warning("Realtime handshake rejected the token")
                await self._auth_rejected()
                return False
            reason = "handshake timeout" if isinstance(e, asyncio.TimeoutError) else repr(e)
            logger.warning(f"Realtime connect failed: {reason}", extra={"attempt": attempt})
            if self.terminal or not self._credentials.is_authenticated:
                self._set_state(ChannelState.DISCONNECTED)
                return False
            self._on_failure()
            return False

        if self.terminal or self._credentials.get_token() != token:
            # Logged out or token replaced while the handshake was in flight
            await ws.close()
            if self.terminal or not self._credentials.is_authenticated:
                self._set_state(ChannelState.DISCONNECTED)
                return False
            logger.info("Token changed during realtime handshake, reopening with the current token")
            return await self._connect()

        self._ws = ws
        user = self._credentials.get_user()
        self._socket_user_id = user.id if user is not None else None
        self._stats["connects"] += 1
        self.reconnect_attempts = 0
        self._fallback = False
        self._set_state(ChannelState.OPEN)
        await self.send({"type": "ping", "timestamp": epoch_millis()})
        self._reader_task = asyncio.ensure_future(self._read_loop(ws))
        self._heartbeat_task = asyncio.ensure_future(self._heartbeat_loop(ws))
        return True

    def _on_failure(self) -> None:
        self.reconnect_attempts += 1
        max_attempts = self._settings.max_reconnect_attempts

        if self.reconnect_attempts >= max_attempts and not self._fallback:
            logger.warning(
                f"Realtime reconnect budget exhausted after {self.reconnect_attempts} attempts, "
                f"falling back to polling"
            )
            self._fallback = True

        if self._fallback:
            if self.reconnect_attempts >= max_attempts:
                self.reconnect_attempts = 0
            self._set_state(ChannelState.FALLBACK_POLLING)
            self._schedule_reconnect(self._settings.fallback_interval_seconds)
            return

        delay = reconnect_delay(
            self.reconnect_attempts - 1,
            self._settings.reconnect_base_seconds,
            self._settings.reconnect_factor,
            self._settings.min_reconnect_delay_seconds,
        )
        self._set_state(ChannelState.DISCONNECTED)
        self._schedule_reconnect(delay)

    def _schedule_reconnect(self, delay: float) -> None:
        cancel_task(self._reconnect_task)
        logger.info(f"Realtime reconnect in {delay:.1f}s")
        self._reconnect_task = asyncio.ensure_future(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        if self.terminal or not self._credentials.is_authenticated:
            return
        await self.ensure_connected()

    async def request_reconnect(self) -> bool:
        """
        Attempt a reconnect now (used by the fallback poller).

        Ignored while open or connecting, when terminal, and within the
        minimum gap since the last attempt.
        """
        if self.state is ChannelState.OPEN:
            return True
        if self.terminal or self._handshake is not None or not self._credentials.is_authenticated:
            return False
        if self._gap_remaining() > 0:
            logger.debug("Reconnect request ignored, within the minimum gap since the last attempt")
            return False
        cancel_task(self._reconnect_task)
        self._reconnect_task = None
        return await self.ensure_connected()

    def _gap_remaining(self) -> float:
        """Seconds until another attempt is allowed by the minimum reconnect gap."""
        if self.last_attempt_at is None:
            return 0.0
        since = self._clock() - self.last_attempt_at
        return max(0.0, self._settings.min_reconnect_delay_seconds - since)

    # =========================================================================
    # Socket I/O
    # =========================================================================

    async def send(self, frame: dict) -> bool:
        """Send one JSON frame. Returns False when the socket is not open."""
        ws = self._ws
        if ws is None or ws.closed:
            return False
        try:
            await ws.send_json(frame)
            return True
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            logger.warning(f"Realtime send failed: {e!r}")
            return False

    async def _read_loop(self, ws) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._deliver(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning(f"Realtime socket error: {ws.exception()!r}")
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Realtime reader stopped: {e!r}")
        await self._handle_closed(ws)

    async def _deliver(self, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.warning("Dropping non-JSON realtime frame")
            return
        if not isinstance(frame, dict):
            logger.warning("Dropping non-object realtime frame")
            return
        self._stats["messages"] += 1
        if self._on_message is None:
            return
        try:
            outcome = self._on_message(frame)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("Realtime message handler failed")

    async def _heartbeat_loop(self, ws) -> None:
        interval = self._settings.heartbeat_interval_seconds
        while self._ws is ws and not ws.closed:
            await asyncio.sleep(interval)
            if self._ws is not ws:
                break
            await self.send({"type": "ping", "timestamp": epoch_millis()})

    async def _handle_closed(self, ws) -> None:
        if ws is not self._ws:
            return
        self._ws = None
        cancel_task(self._heartbeat_task)
        self._heartbeat_task = None

        code = ws.close_code
        if code == AUTH_REJECTED_CLOSE_CODE:
            logger.warning("Realtime channel closed with 4401 (authentication rejected)")
            await self._auth_rejected()
            return

        if self.terminal or not self._credentials.is_authenticated:
            self._set_state(ChannelState.DISCONNECTED)
            return

        logger.info(f"Realtime channel closed (code {code})")
        self._on_failure()

    async def _auth_rejected(self) -> None:
        self.terminal = True
        self._teardown()
        if self._on_auth_rejected is None:
            return
        try:
            outcome = self._on_auth_rejected()
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("Auth-rejected handler failed")

    # =========================================================================
    # Teardown
    # =========================================================================

    def _teardown(self, terminal: bool = True):
        """Stop timers, abandon any handshake and detach the socket. Returns the detached socket."""
        if terminal:
            self.terminal = True
            # Next session starts without inheriting this one's backoff gap
            self.last_attempt_at = None
        cancel_task(self._handshake)
        self._handshake = None
        cancel_task(self._reconnect_task)
        self._reconnect_task = None
        cancel_task(self._heartbeat_task)
        self._heartbeat_task = None
        cancel_task(self._reader_task)
        self._reader_task = None
        ws, self._ws = self._ws, None
        self._socket_user_id = None
        self._fallback = False
        self.reconnect_attempts = 0
        self._set_state(ChannelState.DISCONNECTED)
        return ws

    async def close(self, terminal: bool = True) -> None:
        """Close the socket and cancel reconnects. terminal=True blocks reconnecting."""
        ws = self._teardown(terminal)
        if ws is not None and not ws.closed:
            try:
                await ws.close()
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                logger.debug(f"Error closing realtime socket: {e!r}")

    def on_credentials(self, credentials: Optional[Credentials]) -> None:
        """
        Credential listener: connect on login, tear down on logout.

        A token refresh for the same user never bypasses a pending backoff
        timer or the minimum gap between attempts. A different user replaces
        the open socket.
        """
        if credentials is None or (
            self._socket_user_id is not None and credentials.user.id != self._socket_user_id
        ):
            ws = self._teardown(terminal=True)
            if ws is not None and not ws.closed:
                try_create_task(ws.close())
            if credentials is None:
                return
            logger.info("Credentials changed user, reopening realtime channel")

        self.terminal = False
        if self.state is not ChannelState.DISCONNECTED or self._handshake is not None:
            return
        if self._reconnect_task is not None:
            return
        wait = self._gap_remaining()
        if wait > 0:
            self._schedule_reconnect(wait)
            return
        try_create_task(self.ensure_connected())

    async def aclose(self) -> None:
        await self.close(terminal=True)
        if self._owns_connector:
            await self._connector.close()

    def get_stats(self) -> dict:
        return dict(
            self._stats,
            state=self.state.value,
            terminal=self.terminal,
            reconnect_attempts=self.reconnect_attempts,
        )
