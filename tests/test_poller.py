"""Tests for the fallback poller."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from realtime.channel import ChannelState
from realtime.poller import FallbackPoller


@pytest.fixture
def refresh():
    return AsyncMock()


@pytest.fixture
def reconnect():
    return AsyncMock(return_value=False)


@pytest.fixture
def poller(refresh, reconnect):
    p = FallbackPoller(refresh, lambda: ["players", "companies"], reconnect, interval_seconds=0.01)
    yield p
    p.disengage()


class TestPolling:
    @pytest.mark.asyncio
    async def test_poll_once_refreshes_families_then_probes(self, poller, refresh, reconnect):
        poller.engage()
        await poller.poll_once()
        assert [c.args[0] for c in refresh.await_args_list[:2]] == ["players", "companies"]
        reconnect.assert_awaited()

    @pytest.mark.asyncio
    async def test_engaged_poller_runs_periodically(self, poller, refresh, wait_until):
        poller.engage()
        await wait_until(lambda: poller.polls >= 2)
        assert refresh.await_count >= 4

    @pytest.mark.asyncio
    async def test_disengage_stops_polling(self, poller):
        poller.engage()
        poller.disengage()
        polls = poller.polls
        await asyncio.sleep(0.05)
        assert poller.polls == polls
        assert poller.engaged is False

    @pytest.mark.asyncio
    async def test_refresh_error_does_not_stop_probe(self, reconnect):
        failing = AsyncMock(side_effect=RuntimeError("down"))
        poller = FallbackPoller(failing, lambda: ["players"], reconnect, interval_seconds=0.01)
        poller.engage()
        try:
            await poller.poll_once()
        finally:
            poller.disengage()
        reconnect.assert_awaited_once()


class TestChannelStates:
    @pytest.mark.asyncio
    async def test_fallback_engages_and_open_disengages(self, poller):
        poller.on_channel_state(ChannelState.DISCONNECTED, ChannelState.FALLBACK_POLLING)
        assert poller.engaged is True
        poller.on_channel_state(ChannelState.CONNECTING, ChannelState.OPEN)
        assert poller.engaged is False

    @pytest.mark.asyncio
    async def test_failed_attempt_in_fallback_keeps_polling(self, poller):
        poller.on_channel_state(ChannelState.DISCONNECTED, ChannelState.FALLBACK_POLLING)
        poller.on_channel_state(ChannelState.FALLBACK_POLLING, ChannelState.CONNECTING)
        poller.on_channel_state(ChannelState.CONNECTING, ChannelState.DISCONNECTED)
        assert poller.engaged is True

    @pytest.mark.asyncio
    async def test_logout_disengages(self, poller):
        poller.on_channel_state(ChannelState.DISCONNECTED, ChannelState.FALLBACK_POLLING)
        poller.on_channel_state(ChannelState.FALLBACK_POLLING, ChannelState.DISCONNECTED)
        assert poller.engaged is False
