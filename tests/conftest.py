"""Shared pytest fixtures for session core tests."""
import asyncio
import copy
import json
import os
import sys
from types import SimpleNamespace

import aiohttp
import jwt
import pytest
import pytest_asyncio

# Add project root to path
_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _PROJECT_ROOT)

from config.settings import (  # noqa: E402
    ApiSettings,
    AppSettings,
    RealtimeSettings,
    SessionSettings,
    StorageSettings,
    get_settings,
)
from core.durable_store import MemoryStore  # noqa: E402

API_BASE = "http://api.test/api"
WALL_START = 1_700_000_000.0
MONO_START = 5_000.0


# =============================================================================
# Clocks and tokens
# =============================================================================

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_token(exp: float, sub: str = "u1") -> str:
    """Signed JWT with the given absolute exp (epoch seconds)."""
    return jwt.encode({"sub": sub, "exp": int(exp)}, "test-secret-for-session-core-tests-0123456789", algorithm="HS256")


ADMIN = {"id": "u1", "email": "admin@example.com", "role": "superadmin"}
COMPANY_ADMIN = {"id": "u2", "email": "boss@acme.nl", "role": "company_admin", "company_id": "c1"}


# =============================================================================
# Fake HTTP transport
# =============================================================================

class FakeTransport:
    """
    Scripted replacement for the aiohttp transport.

    Responses are queued per (method, path); the last queued response is
    sticky. Unscripted requests get a 404.
    """

    def __init__(self, base: str = API_BASE):
        self.base = base
        self.calls = []
        self.routes = {}
        self.delay = 0.0

    def add(self, method, path, status=200, body=None, *, error=None):
        self.routes.setdefault((method.upper(), path), []).append((status, body, error))
        return self

    async def __call__(self, method, url, *, json=None, params=None, headers=None):
        path = url[len(self.base):]
        self.calls.append(SimpleNamespace(method=method, path=path, json=json, params=params, headers=headers or {}))
        if self.delay:
            await asyncio.sleep(self.delay)
        queue = self.routes.get((method, path))
        if not queue:
            return 404, {"error": "Not found"}
        status, body, error = queue.pop(0) if len(queue) > 1 else queue[0]
        if error is not None:
            raise error
        return status, copy.deepcopy(body)

    def count(self, method, path) -> int:
        return sum(1 for c in self.calls if c.method == method and c.path == path)

    def last(self, method, path):
        matches = [c for c in self.calls if c.method == method and c.path == path]
        return matches[-1] if matches else None


def network_down():
    return aiohttp.ClientConnectionError("Cannot connect to host api.test")


# =============================================================================
# Fake WebSocket
# =============================================================================

class FakeSocket:
    """Minimal stand-in for aiohttp.ClientWebSocketResponse."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self.close_code = None
        self._inbox = asyncio.Queue()

    async def send_json(self, data):
        if self.closed:
            raise ConnectionResetError("socket closed")
        self.sent.append(data)

    def feed(self, frame):
        raw = frame if isinstance(frame, str) else json.dumps(frame)
        self._inbox.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=raw))

    def server_close(self, code: int):
        self.closed = True
        self.close_code = code
        self._inbox.put_nowait(None)

    async def close(self, code: int = 1000):
        if not self.closed:
            self.closed = True
            self.close_code = code
            self._inbox.put_nowait(None)
        return True

    def exception(self):
        return None

    def __aiter__(self):
        return self

    async def __anext__(self):
        msg = await self._inbox.get()
        if msg is None:
            raise StopAsyncIteration
        return msg


class FakeConnector:
    """Fails the first `fail_times` connects, then hands out FakeSockets.

    gated=True holds the first handshake until `gate` is set.
    """

    def __init__(self, fail_times: int = 0, hang: bool = False, gated: bool = False):
        self.fail_times = fail_times
        self.hang = hang
        self.gate = asyncio.Event() if gated else None
        self.attempts = []
        self.sockets = []

    async def __call__(self, url, protocols):
        self.attempts.append((url, list(protocols)))
        if self.hang:
            await asyncio.sleep(3600)
        if self.gate is not None and len(self.attempts) == 1:
            await self.gate.wait()
        if len(self.attempts) <= self.fail_times:
            raise aiohttp.ClientConnectionError("connection refused")
        ws = FakeSocket()
        self.sockets.append(ws)
        return ws

    async def close(self):
        pass


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.005):
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


# =============================================================================
# Settings and runtime fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def _reset_settings_singleton():
    """Each test sees a fresh get_settings()."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def realtime_settings():
    """Realtime timings shrunk to milliseconds."""
    return RealtimeSettings(
        handshake_timeout_seconds=0.1,
        heartbeat_interval_seconds=60,
        reconnect_base_seconds=0.01,
        reconnect_factor=1.5,
        max_reconnect_attempts=8,
        min_reconnect_delay_seconds=0.01,
        fallback_interval_multiplier=2,
        poll_interval_seconds=0.02,
    )


@pytest.fixture
def app_settings(realtime_settings):
    return AppSettings(
        api=ApiSettings(api_url=API_BASE),
        session=SessionSettings(coalesce_debounce_ms=20),
        realtime=realtime_settings,
        storage=StorageSettings(storage_path=""),
    )


@pytest.fixture
def clock():
    return FakeClock(WALL_START)


@pytest.fixture
def mono():
    return FakeClock(MONO_START)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest_asyncio.fixture
async def runtime(app_settings, store, transport, connector, clock, mono):
    """A SessionRuntime wired to fakes; closed after the test."""
    from core.session import SessionRuntime

    rt = SessionRuntime(
        app_settings,
        store=store,
        transport=transport,
        connector=connector,
        clock=clock,
        monotonic=mono,
    )
    yield rt
    await rt.aclose()


@pytest.fixture
def login_as(runtime, clock):
    """Seed credentials directly. Returns the access token."""
    def _login(user=ADMIN, exp_in: float = 3600, refresh_token="R1"):
        token = make_token(clock() + exp_in, sub=user["id"])
        runtime.credentials.set(token, refresh_token, user)
        return token
    return _login


# =============================================================================
# Helper fixtures (tests reach the fakes through these)
# =============================================================================

@pytest.fixture
def token_for():
    return make_token


@pytest.fixture
def admin_user():
    return dict(ADMIN)


@pytest.fixture
def company_admin_user():
    return dict(COMPANY_ADMIN)


@pytest.fixture
def connector_factory():
    return FakeConnector


@pytest.fixture
def network_error():
    return network_down


@pytest.fixture
def wait_until():
    return wait_for
