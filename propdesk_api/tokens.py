"""
Credential ownership and the single-flight token refresh protocol.

At most one refresh call is in flight. Every request that hits a 401 while
a refresh token is available becomes a waiter; when the refresh settles,
waiters are either replayed once with the new token (in enqueue order) or
rejected together.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .errors import RequestCancelledError, TokenRefreshError
from .events import AUTH_LOGOUT, EventBus
from .types import REFRESH_TOKEN_KEY, TOKEN_KEY, Credentials, RequestDescriptor, TokenStorage


logger = logging.getLogger("propdesk_api")

RefreshCall = Callable[[str], Awaitable[Dict[str, Any]]]
Replay = Callable[[RequestDescriptor], Awaitable[Any]]


class RefreshState(str, Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"


@dataclass
class PendingRefresh:
    """A request parked until the in-flight refresh settles."""

    future: "asyncio.Future[Any]"
    request: RequestDescriptor
    replay: Replay


def _settle(future: "asyncio.Future[Any]", task: "asyncio.Future[Any]") -> None:
    if future.done():
        return
    if task.cancelled():
        future.cancel()
    elif task.exception() is not None:
        future.set_exception(task.exception())
    else:
        future.set_result(task.result())


class TokenManager:
    """Owns the access/refresh credentials and persists every change."""

    def __init__(
        self,
        storage: TokenStorage,
        events: EventBus,
        refresh_call: Optional[RefreshCall] = None,
    ) -> None:
        self._storage = storage
        self._events = events
        self._refresh_call = refresh_call
        self._state = RefreshState.IDLE
        self._queue: List[PendingRefresh] = []
        self._refresh_task: Optional["asyncio.Future[None]"] = None
        self._replays: Set["asyncio.Future[Any]"] = set()
        # Bumped on clear(); a refresh started under an older session is dropped
        self._generation = 0
        self._credentials = self._load()

    def _load(self) -> Optional[Credentials]:
        access_token = self._storage.get_item(TOKEN_KEY)
        if not access_token:
            return None
        return Credentials(access_token, self._storage.get_item(REFRESH_TOKEN_KEY))

    def bind_refresh_call(self, refresh_call: RefreshCall) -> None:
        self._refresh_call = refresh_call

    # =========================================================================
    # Credentials
    # =========================================================================

    @property
    def access_token(self) -> Optional[str]:
        return self._credentials.access_token if self._credentials else None

    @property
    def refresh_token(self) -> Optional[str]:
        return self._credentials.refresh_token if self._credentials else None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.access_token)

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    def set_credentials(self, access_token: str, refresh_token: Optional[str] = None) -> None:
        """Store new credentials. A missing refresh token keeps the current one."""
        if not access_token:
            raise ValueError("access_token must not be empty")
        kept_refresh = refresh_token or self.refresh_token
        self._credentials = Credentials(access_token, kept_refresh)
        self._storage.set_item(TOKEN_KEY, access_token)
        if refresh_token:
            self._storage.set_item(REFRESH_TOKEN_KEY, refresh_token)

    def clear(self) -> None:
        """
        Forget and un-persist all credentials.

        Ends a refresh in flight: its result is discarded and parked
        requests fail with TokenRefreshError.
        """
        self._generation += 1
        self._credentials = None
        self._storage.remove_item(TOKEN_KEY)
        self._storage.remove_item(REFRESH_TOKEN_KEY)

        waiters, self._queue = self._queue, []
        for waiter in waiters:
            if not waiter.future.done():
                waiter.future.set_exception(TokenRefreshError("Session ended during token refresh"))

        if self._state is RefreshState.REFRESHING:
            self._state = RefreshState.IDLE
            if self._refresh_task is not None and not self._refresh_task.done():
                self._refresh_task.cancel()

    def can_refresh(self, request: RequestDescriptor) -> bool:
        """A 401 on this request may be recovered by a refresh."""
        return (
            bool(self.refresh_token)
            and not request.is_retry_attempt
            and not request.skip_auto_refresh
        )

    # =========================================================================
    # Refresh protocol
    # =========================================================================

    async def handle_unauthorized(self, request: RequestDescriptor, replay: Replay) -> Any:
        """
        Park `request` until the shared refresh settles, starting the refresh
        if none is running.

        Returns the result of replaying the request once with the new token.

        Raises:
            TokenRefreshError: If the refresh fails; the session is cleared
                and `auth:logout` is emitted.
            RequestCancelledError: If the request's abort signal fires while
                it is parked; the request is dropped from the queue.
        """
        signal = request.signal
        if signal is not None and signal.is_set():
            raise RequestCancelledError()

        future: "asyncio.Future[Any]" = asyncio.get_running_loop().create_future()
        self._queue.append(PendingRefresh(future, request, replay))

        if self._state is RefreshState.IDLE:
            self._state = RefreshState.REFRESHING
            logger.debug("Access token rejected, refreshing")
            self._refresh_task = asyncio.ensure_future(self._run_refresh())
        else:
            logger.debug("Refresh in flight, queued %s %s", request.method.value, request.endpoint)

        if signal is None:
            return await future
        return await self._wait_or_abort(future, signal)

    async def _wait_or_abort(self, future: "asyncio.Future[Any]", signal: asyncio.Event) -> Any:
        abort_task = asyncio.ensure_future(signal.wait())
        try:
            done, _ = await asyncio.wait({future, abort_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            future.cancel()
            raise
        finally:
            if not abort_task.done():
                abort_task.cancel()

        if future in done:
            return future.result()

        # Cancelling the future also abandons a replay already under way
        future.cancel()
        self._queue = [waiter for waiter in self._queue if waiter.future is not future]
        logger.debug("Parked request aborted by caller")
        raise RequestCancelledError()

    async def _run_refresh(self) -> None:
        generation = self._generation
        try:
            credentials = await self._request_credentials()
        except asyncio.CancelledError:
            if generation == self._generation:
                self._state = RefreshState.IDLE
                self._cancel_waiters()
            raise
        except Exception as error:
            if generation != self._generation:
                return
            self._state = RefreshState.IDLE
            self._fail_session(error)
            return

        if generation != self._generation:
            logger.debug("Session cleared during refresh, dropping new token")
            return

        self.set_credentials(credentials.access_token, credentials.refresh_token)
        self._state = RefreshState.IDLE
        waiters, self._queue = self._queue, []
        logger.debug("Token refreshed, replaying %d request(s)", len(waiters))

        for waiter in waiters:
            if waiter.future.done():
                continue
            task = asyncio.ensure_future(waiter.replay(waiter.request.for_retry()))
            self._replays.add(task)
            task.add_done_callback(self._replays.discard)
            task.add_done_callback(functools.partial(_settle, waiter.future))
            waiter.future.add_done_callback(
                functools.partial(self._abandon_replay, task)
            )

    @staticmethod
    def _abandon_replay(task: "asyncio.Future[Any]", future: "asyncio.Future[Any]") -> None:
        if future.cancelled() and not task.done():
            task.cancel()

    async def _request_credentials(self) -> Credentials:
        refresh_token = self.refresh_token
        if not refresh_token:
            raise TokenRefreshError("No refresh token available")
        if self._refresh_call is None:
            raise TokenRefreshError("No refresh handler configured")

        data = await self._refresh_call(refresh_token)
        credentials = Credentials.from_dict(data if isinstance(data, dict) else {})
        if not credentials.access_token:
            raise TokenRefreshError("Refresh response did not include a token")
        return credentials

    def _fail_session(self, error: Exception) -> None:
        logger.warning("Token refresh failed: %s", error)
        waiters, self._queue = self._queue, []
        self.clear()
        for waiter in waiters:
            if not waiter.future.done():
                waiter.future.set_exception(
                    TokenRefreshError("Authentication failed", {"original_error": repr(error)})
                )
        self._events.emit(AUTH_LOGOUT, {"reason": str(error)})

    def _cancel_waiters(self) -> None:
        waiters, self._queue = self._queue, []
        for waiter in waiters:
            waiter.future.cancel()

    async def aclose(self) -> None:
        """Cancel a running refresh and any replays it started."""
        pending = [t for t in [self._refresh_task, *self._replays] if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
