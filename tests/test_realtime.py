"""
Tests for the reconnecting realtime channel.
"""

import asyncio
import json
from types import SimpleNamespace
from typing import List

import aiohttp
import pytest

from propdesk_api.events import WS_CLOSE, WS_MESSAGE, WS_OPEN, EventBus
from propdesk_api.realtime import ChannelState, RealtimeChannel, build_ws_url


class FakeSocket:
    """Async-iterable stand-in for aiohttp.ClientWebSocketResponse."""

    def __init__(self, frames=(), hold_open: bool = False) -> None:
        self._frames = list(frames)
        self._hold_open = hold_open
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._frames:
            data = self._frames.pop(0)
            kind = aiohttp.WSMsgType.ERROR if isinstance(data, Exception) else aiohttp.WSMsgType.TEXT
            return SimpleNamespace(type=kind, data=data)
        if self._hold_open:
            await asyncio.sleep(3600)
        raise StopAsyncIteration

    async def close(self) -> None:
        self.closed = True


class FakeConnector:
    """Hands out scripted sockets and records the URLs dialled."""

    def __init__(self, *sockets) -> None:
        self.sockets = list(sockets)
        self.urls: List[str] = []

    async def __call__(self, url: str):
        self.urls.append(url)
        socket = self.sockets.pop(0) if len(self.sockets) > 1 else self.sockets[0]
        if isinstance(socket, Exception):
            raise socket
        return socket


def make_channel(connector, token="tok", reconnect_delay=0.01):
    events = EventBus()
    channel = RealtimeChannel(
        "https://api.propdesk.test/api",
        lambda: token,
        events,
        reconnect_delay=reconnect_delay,
        connector=connector,
    )
    return channel, events


class TestBuildWsUrl:
    """Tests for realtime URL derivation."""

    def test_https_becomes_wss(self):
        url = build_ws_url("https://api.propdesk.test/api", "abc", "u1")
        assert url == "wss://api.propdesk.test/api/ws?token=abc&userId=u1"

    def test_http_becomes_ws(self):
        url = build_ws_url("http://localhost:5000/api/", "abc", "u1")
        assert url == "ws://localhost:5000/api/ws?token=abc&userId=u1"

    def test_values_are_encoded(self):
        url = build_ws_url("http://localhost:5000/api", "a b+c", "u/1")
        assert "token=a+b%2Bc" in url
        assert "userId=u%2F1" in url

    def test_missing_token(self):
        assert "token=&" in build_ws_url("http://h/api", None, "u1")


class TestRealtimeChannel:
    """Tests for connection lifecycle and message dispatch."""

    @pytest.mark.asyncio
    async def test_messages_are_emitted(self):
        frames = [json.dumps({"type": "booking:created", "id": "b1"}), "not json", json.dumps([1, 2])]
        connector = FakeConnector(FakeSocket(frames, hold_open=True))
        channel, events = make_channel(connector)
        messages = []
        opened = []
        events.on(WS_MESSAGE, messages.append)
        events.on(WS_OPEN, opened.append)

        await channel.connect("u1")
        await asyncio.sleep(0.05)

        assert opened == [{"userId": "u1"}]
        assert messages == [{"type": "booking:created", "id": "b1"}, [1, 2]]
        assert channel.state is ChannelState.CONNECTED
        assert connector.urls == ["wss://api.propdesk.test/api/ws?token=tok&userId=u1"]
        await channel.close()

    @pytest.mark.asyncio
    async def test_reconnects_after_drop(self):
        first = FakeSocket([json.dumps({"n": 1})])
        second = FakeSocket(hold_open=True)
        connector = FakeConnector(first, second)
        channel, events = make_channel(connector)
        closes = []
        events.on(WS_CLOSE, closes.append)

        await channel.connect("u1")
        await asyncio.sleep(0.1)

        assert channel.connect_attempts == 2
        assert first.closed
        assert len(closes) == 1
        assert channel.state is ChannelState.CONNECTED
        await channel.close()

    @pytest.mark.asyncio
    async def test_reconnect_waits_for_fixed_delay(self):
        connector = FakeConnector(FakeSocket(), FakeSocket(hold_open=True))
        channel, _ = make_channel(connector, reconnect_delay=0.3)

        await channel.connect("u1")
        await asyncio.sleep(0.15)
        assert channel.connect_attempts == 1
        assert channel.state is ChannelState.DISCONNECTED

        await asyncio.sleep(0.3)
        assert channel.connect_attempts == 2
        assert channel.state is ChannelState.CONNECTED
        await channel.close()

    @pytest.mark.asyncio
    async def test_failed_connect_is_retried(self):
        socket = FakeSocket(hold_open=True)
        connector = FakeConnector(aiohttp.ClientConnectionError("refused"), socket)
        channel, _ = make_channel(connector)

        await channel.connect("u1")
        await asyncio.sleep(0.1)

        assert channel.connect_attempts == 2
        assert channel.state is ChannelState.CONNECTED
        await channel.close()

    @pytest.mark.asyncio
    async def test_error_frame_triggers_reconnect(self):
        connector = FakeConnector(FakeSocket([RuntimeError("bad frame")]), FakeSocket(hold_open=True))
        channel, _ = make_channel(connector)

        await channel.connect("u1")
        await asyncio.sleep(0.1)

        assert channel.connect_attempts == 2
        await channel.close()

    @pytest.mark.asyncio
    async def test_teardown_prevents_reconnect(self):
        socket = FakeSocket(hold_open=True)
        connector = FakeConnector(socket)
        channel, events = make_channel(connector)
        closes = []
        events.on(WS_CLOSE, closes.append)

        await channel.connect("u1")
        await asyncio.sleep(0.02)
        channel.teardown()
        await asyncio.sleep(0.1)

        assert channel.connect_attempts == 1
        assert socket.closed
        assert closes == [{"userId": "u1"}]
        assert channel.state is ChannelState.DISCONNECTED
        assert not channel.is_active

    @pytest.mark.asyncio
    async def test_connect_replaces_previous_session(self):
        first = FakeSocket(hold_open=True)
        second = FakeSocket(hold_open=True)
        connector = FakeConnector(first, second)
        channel, _ = make_channel(connector)

        await channel.connect("u1")
        await asyncio.sleep(0.02)
        await channel.connect("u2")
        await asyncio.sleep(0.02)

        assert first.closed
        assert channel.user_id == "u2"
        assert connector.urls[-1].endswith("userId=u2")
        await channel.close()

    @pytest.mark.asyncio
    async def test_close_when_never_connected(self):
        channel, _ = make_channel(FakeConnector(FakeSocket()))
        await channel.close()
        assert not channel.is_active
