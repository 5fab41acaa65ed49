"""
Token lifecycle: expiry decoding, refresh-vs-revoke policy, revocation.

Policy applied by evaluate() whenever the token is expired or within the
expiry margin (60 s by default):

    idle user          -> revoke("inactivity")
    active user        -> refresh(); failure -> revoke("refresh_failed")
    no refresh token   -> revoke("expired")

refresh() is single-flight: concurrent callers await the same task.
revoke() is idempotent and guarded against re-entry. It bumps `epoch` so
HTTP results that were in flight before the revoke can be discarded, clears
credentials, then runs the registered revoke hooks in order (socket close,
poller stop, cache clear, coalescer cancel, auth-expired event).

Usage:
    lifecycle = TokenLifecycle(credentials, activity, settings.session)
    lifecycle.bind_refresher(gateway.refresh_token)
    lifecycle.add_revoke_hook(lambda reason: channel.close(terminal=True))
    lifecycle.start()
"""

import asyncio
import inspect
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import jwt

from config.settings import SessionSettings
from core.activity import ActivityMonitor
from core.async_utils import cancel_task, try_create_task
from core.credentials import CredentialStore
from core.errors import ApiResult
from core.types import Credentials

logger = logging.getLogger(__name__)

# Markers the server uses when a bearer token is rejected
EXPIRED_TOKEN_MARKERS = (
    "jwt expired",
    "token expired",
    "invalid token",
    "jwt malformed",
    "invalid signature",
    "authentication expired",
)


class RevocationReason(str, Enum):
    INACTIVITY = "inactivity"
    REFRESH_FAILED = "refresh_failed"
    EXPIRED = "expired"
    LOGOUT = "logout"


class TokenState(Enum):
    VALID = "valid"
    EXPIRING = "expiring"
    EXPIRED = "expired"


class TokenAction(Enum):
    """Outcome of one evaluate() pass."""
    NONE = "none"
    REFRESHED = "refreshed"
    REVOKED = "revoked"


def decode_expiry(token: str) -> Optional[float]:
    """
    Return the `exp` claim (epoch seconds) without verifying the signature.

    Raises ValueError for tokens that cannot be decoded at all. Tokens that
    decode but carry no numeric exp return None (no expiry).
    """
    try:
        payload = jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
    except jwt.InvalidTokenError as e:
        raise ValueError(f"Undecodable token: {e}") from e
    exp = payload.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    return float(exp)


def token_state(token: Optional[str], now: float, margin: float) -> TokenState:
    """Classify a token. Missing or undecodable tokens count as expired."""
    if not token:
        return TokenState.EXPIRED
    try:
        exp = decode_expiry(token)
    except ValueError:
        return TokenState.EXPIRED
    if exp is None:
        return TokenState.VALID
    if now >= exp:
        return TokenState.EXPIRED
    if exp - now <= margin:
        return TokenState.EXPIRING
    return TokenState.VALID


def indicates_expired_token(payload: Any) -> bool:
    """True when an error body or push message carries an expired-token marker."""
    if isinstance(payload, dict):
        if payload.get("code") in ("TOKEN_EXPIRED", "INVALID_TOKEN", "token_expired"):
            return True
        texts = [payload.get(k) for k in ("error", "message", "data")]
    else:
        texts = [payload]
    for text in texts:
        if isinstance(text, str) and any(m in text.lower() for m in EXPIRED_TOKEN_MARKERS):
            return True
    return False


RevokeHook = Callable[[str], Any]
Refresher = Callable[[str], Awaitable[ApiResult]]


class TokenLifecycle:
    """Decides between refresh and revoke and owns the revocation sequence."""

    def __init__(
        self,
        credentials: CredentialStore,
        activity: ActivityMonitor,
        settings: SessionSettings,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self._credentials = credentials
        self._activity = activity
        self._settings = settings
        self._clock = clock

        self.epoch = 0
        self._refresher: Optional[Refresher] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._revoking = False
        self._revoke_hooks: list[RevokeHook] = []

        self._running = False
        self._tick_task: Optional[asyncio.Task] = None
        self._evaluation_pending = False

        self._stats = {
            "refreshes": 0,
            "refresh_failures": 0,
            "revocations": 0,
        }

        activity.on_activity(self._on_activity)

    # =========================================================================
    # Wiring
    # =========================================================================

    def bind_refresher(self, refresher: Refresher) -> None:
        """Set the RPC used to exchange a refresh token for a new access token."""
        self._refresher = refresher

    def add_revoke_hook(self, hook: RevokeHook) -> None:
        """Hooks run in registration order after credentials are cleared."""
        self._revoke_hooks.append(hook)

    # =========================================================================
    # Token state
    # =========================================================================

    def state(self) -> Optional[TokenState]:
        """State of the current access token, or None when logged out."""
        token = self._credentials.get_token()
        if token is None:
            return None
        return token_state(token, self._clock(), self._settings.expiry_margin_seconds)

    def needs_refresh(self) -> bool:
        return self.state() in (TokenState.EXPIRING, TokenState.EXPIRED)

    async def evaluate(self) -> TokenAction:
        """Apply the refresh/revoke policy once."""
        state = self.state()
        if state is None or state is TokenState.VALID:
            return TokenAction.NONE

        if self._activity.is_idle(self._settings.inactivity_timeout_seconds):
            logger.info(f"Token {state.value} and user idle for {self._activity.idle_for():.0f}s")
            await self.revoke(RevocationReason.INACTIVITY)
            return TokenAction.REVOKED

        if await self.refresh():
            return TokenAction.REFRESHED
        return TokenAction.REVOKED

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(self) -> bool:
        """
        Exchange the refresh token for a new access token.

        At most one refresh runs at a time; concurrent callers share its
        outcome. Returns False (after revoking) on failure, and False when a
        revoke happened while the refresh was in flight.
        """
        if self._refresh_task is None:
            task = asyncio.ensure_future(self._do_refresh())
            task.add_done_callback(self._clear_refresh_task)
            self._refresh_task = task
        return await asyncio.shield(self._refresh_task)

    def _clear_refresh_task(self, task: asyncio.Task) -> None:
        if self._refresh_task is task:
            self._refresh_task = None

    async def _do_refresh(self) -> bool:
        current = self._credentials.current
        if current is None:
            return False
        if not current.refresh_token:
            logger.info("Token expired and no refresh token available")
            await self.revoke(RevocationReason.EXPIRED)
            return False
        if self._refresher is None:
            logger.error("No refresher bound, cannot refresh token")
            await self.revoke(RevocationReason.REFRESH_FAILED)
            return False

        epoch = self.epoch
        try:
            result = await self._refresher(current.refresh_token)
        except Exception:
            logger.exception("Token refresh raised")
            result = None

        if self.epoch != epoch:
            logger.debug("Session revoked during refresh, discarding result")
            return False

        data = result.data if result is not None and result.ok else None
        if not isinstance(data, dict) or not data.get("token"):
            self._stats["refresh_failures"] += 1
            reason = result.error if result is not None and result.error else "no token in response"
            logger.warning(f"Token refresh failed: {reason}")
            await self.revoke(RevocationReason.REFRESH_FAILED)
            return False

        refresh_token = self._rotate(current.refresh_token, data.get("refreshToken"))
        user = data.get("user") or current.user
        try:
            self._credentials.set(data["token"], refresh_token, user)
        except ValueError as e:
            logger.warning(f"Refresh response rejected: {e}")
            await self.revoke(RevocationReason.REFRESH_FAILED)
            return False

        self._stats["refreshes"] += 1
        logger.info("Access token refreshed")
        return True

    def _rotate(self, current: str, issued: Optional[str]) -> Optional[str]:
        mode = self._settings.refresh_rotation
        if mode == "keep":
            return current
        if mode == "replace":
            return issued
        return issued or current

    # =========================================================================
    # Revocation
    # =========================================================================

    @property
    def revoking(self) -> bool:
        return self._revoking

    async def revoke(self, reason: RevocationReason) -> bool:
        """
        End the session. No-op while another revoke runs or when logged out.

        Returns True if this call performed the revocation.
        """
        if self._revoking or not self._credentials.is_authenticated:
            return False

        reason = RevocationReason(reason)
        self._revoking = True
        self.epoch += 1
        self._stats["revocations"] += 1
        try:
            logger.warning(f"Revoking session: {reason.value}", extra={"reason": reason.value})
            self._credentials.clear()
            for hook in list(self._revoke_hooks):
                try:
                    outcome = hook(reason.value)
                    if inspect.isawaitable(outcome):
                        await outcome
                except Exception:
                    logger.exception(f"Revoke hook failed during {reason.value}")
        finally:
            self._revoking = False
        return True

    async def logout(self) -> bool:
        """User-initiated revoke; does not emit auth-expired."""
        return await self.revoke(RevocationReason.LOGOUT)

    # =========================================================================
    # Periodic and activity-driven evaluation
    # =========================================================================

    def start(self) -> None:
        """Start the periodic tick (no-op if already running)."""
        if self._running:
            return
        self._running = True
        self._tick_task = asyncio.ensure_future(self._tick_loop())
        logger.debug(f"Token tick started (every {self._settings.tick_interval_seconds}s)")

    def stop(self) -> None:
        self._running = False
        cancel_task(self._tick_task)
        self._tick_task = None

    @property
    def running(self) -> bool:
        return self._running

    async def _tick_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._settings.tick_interval_seconds)
            if not self._running:
                break
            try:
                await self.evaluate()
            except Exception:
                logger.exception("Token evaluation failed")

    def on_credentials(self, credentials: Optional[Credentials]) -> None:
        """Credential listener: tick while logged in, stop on logout."""
        if credentials is None:
            self.stop()
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self.start()

    def _on_activity(self, kind: str) -> None:
        if self._evaluation_pending or not self._credentials.is_authenticated:
            return
        self._evaluation_pending = True
        if not try_create_task(self._evaluate_from_activity()):
            self._evaluation_pending = False

    async def _evaluate_from_activity(self) -> None:
        try:
            await self.evaluate()
        finally:
            self._evaluation_pending = False

    def get_stats(self) -> dict:
        return dict(self._stats, epoch=self.epoch)
