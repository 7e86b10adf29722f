"""
Ordered request/response/error interceptor chains.

Interceptors may be plain functions or coroutine functions. They can run
several times for one logical call (once per attempt), so side effects must
tolerate repetition.
"""

import inspect
import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import httpx

from .types import RequestDescriptor


logger = logging.getLogger("propdesk_api")

RequestInterceptor = Callable[
    [RequestDescriptor],
    Union[Optional[RequestDescriptor], Awaitable[Optional[RequestDescriptor]]],
]
# Returning an httpx.Response continues the chain; any other value becomes
# the result of the call.
ResponseInterceptor = Callable[[httpx.Response, RequestDescriptor], Any]
ErrorInterceptor = Callable[[BaseException, RequestDescriptor], Any]


class Stage(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"
    ERROR = "error"


@dataclass(frozen=True)
class InterceptorHandle:
    """Opaque handle returned on registration, used for removal."""

    stage: Stage
    id: int


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class InterceptorPipeline:
    """Three independent chains, each run in registration order."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._chains: Dict[Stage, Dict[int, Callable[..., Any]]] = {
            Stage.REQUEST: {},
            Stage.RESPONSE: {},
            Stage.ERROR: {},
        }

    def _add(self, stage: Stage, interceptor: Callable[..., Any]) -> InterceptorHandle:
        handle = InterceptorHandle(stage, next(self._ids))
        self._chains[stage][handle.id] = interceptor
        return handle

    def add_request_interceptor(self, interceptor: RequestInterceptor) -> InterceptorHandle:
        return self._add(Stage.REQUEST, interceptor)

    def add_response_interceptor(self, interceptor: ResponseInterceptor) -> InterceptorHandle:
        return self._add(Stage.RESPONSE, interceptor)

    def add_error_interceptor(self, interceptor: ErrorInterceptor) -> InterceptorHandle:
        return self._add(Stage.ERROR, interceptor)

    def remove(self, handle: InterceptorHandle) -> bool:
        """Remove an interceptor. Returns False if it was already removed."""
        return self._chains[handle.stage].pop(handle.id, None) is not None

    def count(self, stage: Stage) -> int:
        return len(self._chains[stage])

    async def process_request(self, descriptor: RequestDescriptor) -> RequestDescriptor:
        """Run request interceptors; a None return keeps the current descriptor."""
        for interceptor in list(self._chains[Stage.REQUEST].values()):
            descriptor = await _resolve(interceptor(descriptor)) or descriptor
        return descriptor

    async def process_response(self, response: httpx.Response, descriptor: RequestDescriptor) -> Any:
        """
        Run response interceptors.

        Returns an httpx.Response when every interceptor let the response
        through, otherwise the value the short-circuiting interceptor produced.
        """
        for interceptor in list(self._chains[Stage.RESPONSE].values()):
            result = await _resolve(interceptor(response, descriptor))
            if result is None:
                continue
            if not isinstance(result, httpx.Response):
                return result
            response = result
        return response

    async def process_error(self, error: BaseException, descriptor: RequestDescriptor) -> None:
        """Run error interceptors for their side effects only."""
        for interceptor in list(self._chains[Stage.ERROR].values()):
            try:
                await _resolve(interceptor(error, descriptor))
            except Exception:
                logger.warning("Error interceptor failed", exc_info=True)
