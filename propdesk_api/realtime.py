"""
Reconnecting WebSocket channel for server push events.

The channel is bound to one user session. When the socket drops for any
reason other than an explicit teardown it waits a fixed delay and opens a
new connection, indefinitely. Inbound JSON frames are re-emitted on the
event bus as `ws:message`.
"""

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import aiohttp

from .events import WS_CLOSE, WS_MESSAGE, WS_OPEN, EventBus


logger = logging.getLogger("propdesk_api")

# Returns an object with aiohttp's ClientWebSocketResponse surface:
# async iteration over messages, `closed`, and `close()`.
Connector = Callable[[str], Awaitable[Any]]


class ChannelState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


def build_ws_url(base_url: str, token: Optional[str], user_id: str) -> str:
    """Derive the realtime URL from the HTTP base URL."""
    base = base_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    query = urlencode({"token": token or "", "userId": user_id})
    return f"{base}/ws?{query}"


class RealtimeChannel:
    """A self-healing WebSocket session."""

    def __init__(
        self,
        base_url: str,
        token_provider: Callable[[], Optional[str]],
        events: EventBus,
        reconnect_delay: float = 5.0,
        connector: Optional[Connector] = None,
    ) -> None:
        self._base_url = base_url
        self._token_provider = token_provider
        self._events = events
        self._reconnect_delay = reconnect_delay
        self._connector = connector or self._aiohttp_connect
        self._session: Optional[aiohttp.ClientSession] = None
        self._task: Optional["asyncio.Future[None]"] = None
        self._socket: Any = None
        self._user_id: Optional[str] = None
        self._state = ChannelState.DISCONNECTED
        self._closing = False
        self._connect_attempts = 0

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def connect_attempts(self) -> int:
        """Connection attempts made since the channel was created."""
        return self._connect_attempts

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def is_active(self) -> bool:
        """True while a session is running, connected or waiting to reconnect."""
        return self._task is not None and not self._task.done()

    async def _aiohttp_connect(self, url: str) -> aiohttp.ClientWebSocketResponse:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return await self._session.ws_connect(url)

    async def connect(self, user_id: str) -> None:
        """Start a session for `user_id`, replacing any previous one."""
        await self._stop()
        self._user_id = user_id
        self._closing = False
        self._task = asyncio.ensure_future(self._run(user_id))

    async def _run(self, user_id: str) -> None:
        while True:
            await self._open_once(user_id)
            if self._closing:
                return
            logger.info("Realtime channel dropped, reconnecting in %.1fs", self._reconnect_delay)
            await asyncio.sleep(self._reconnect_delay)

    async def _open_once(self, user_id: str) -> None:
        url = build_ws_url(self._base_url, self._token_provider(), user_id)
        self._connect_attempts += 1
        try:
            socket = await self._connector(url)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            logger.warning("Realtime connect failed: %s", e)
            return

        self._socket = socket
        self._state = ChannelState.CONNECTED
        logger.info("Realtime channel connected for user %s", user_id)
        self._events.emit(WS_OPEN, {"userId": user_id})
        try:
            async for message in socket:
                if message.type == aiohttp.WSMsgType.TEXT:
                    self._dispatch(message.data)
                elif message.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("Realtime channel error: %s", message.data)
                    break
        finally:
            self._socket = None
            self._state = ChannelState.DISCONNECTED
            if not socket.closed:
                await socket.close()
            self._events.emit(WS_CLOSE, {"userId": user_id})

    def _dispatch(self, raw: str) -> None:
        try:
            payload = json.loads(raw)
        except ValueError:
            logger.warning("Dropping non-JSON realtime frame: %.80s", raw)
            return
        self._events.emit(WS_MESSAGE, payload)

    def teardown(self) -> None:
        """Stop the session now; no reconnect will follow."""
        self._closing = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _stop(self) -> None:
        task = self._task
        self.teardown()
        self._task = None
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        self._user_id = None

    async def close(self) -> None:
        """Tear down the session and release the underlying HTTP session."""
        await self._stop()
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
