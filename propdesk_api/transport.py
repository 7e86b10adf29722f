"""
HTTP transport: one logical request, bounded retries, error mapping.

A request attempt either returns parsed JSON or raises an ApiError. Server
errors, network failures and timeouts are retried with linear backoff;
everything else propagates after the first attempt.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Dict, Optional

import httpx

from .errors import (
    ApiError,
    HttpError,
    NetworkError,
    RequestCancelledError,
    RequestTimeoutError,
    is_retryable_error,
)
from .interceptors import InterceptorPipeline
from .types import RequestDescriptor


logger = logging.getLogger("propdesk_api")

ProgressCallback = Callable[[float], None]

UPLOAD_CHUNK_SIZE = 64 * 1024


def backoff_delay(retry_delay: float, attempt: int) -> float:
    """Delay before the retry that follows failed attempt number `attempt`."""
    return retry_delay * attempt


def parse_response(response: httpx.Response) -> Any:
    """Return the JSON body of a successful response or raise the mapped error."""
    body: Any = None
    if response.content:
        try:
            body = response.json()
        except ValueError:
            body = None

    if response.is_success:
        return body if body is not None else {}

    raise HttpError.from_response_body(response.status_code, body)


class Transport:
    """Executes RequestDescriptors against the configured base URL."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str,
        pipeline: InterceptorPipeline,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        default_headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self._http = http_client
        self._base_url = base_url.rstrip("/")
        self._pipeline = pipeline
        self._retry_attempts = retry_attempts
        self._retry_delay = retry_delay
        self._default_headers = default_headers or {}

    @property
    def base_url(self) -> str:
        return self._base_url

    def url_for(self, endpoint: str) -> str:
        return f"{self._base_url}{endpoint}"

    async def execute(self, descriptor: RequestDescriptor) -> Any:
        """
        Run the request pipeline, then send with retry.

        Raises:
            ApiError: The last attempt's error once the attempt budget is
                spent, or the first non-retryable error.
        """
        descriptor = await self._pipeline.process_request(descriptor)
        attempt = 0

        while True:
            attempt += 1
            try:
                response = await self._send(descriptor)
            except RequestCancelledError:
                raise
            except ApiError as error:
                await self._after_failure(error, descriptor, attempt)
                continue

            # Interceptor outcomes (e.g. a refreshed replay) are final
            outcome = await self._pipeline.process_response(response, descriptor)
            if not isinstance(outcome, httpx.Response):
                return outcome

            try:
                return parse_response(outcome)
            except ApiError as error:
                await self._after_failure(error, descriptor, attempt)

    async def send_once(self, descriptor: RequestDescriptor) -> Any:
        """Single attempt, bypassing interceptors and retries."""
        response = await self._send(descriptor)
        return parse_response(response)

    async def upload(
        self,
        descriptor: RequestDescriptor,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Any:
        """
        Send a multipart upload once, streaming the body and reporting
        percentage progress. Uploads are never retried.
        """
        descriptor = await self._pipeline.process_request(descriptor)
        data, files = descriptor.body.to_httpx()  # type: ignore[union-attr]
        encoded = httpx.Request(
            descriptor.method.value,
            self.url_for(descriptor.endpoint),
            data=data,
            files=files,
        )
        body = encoded.read()
        headers = {
            k: v for k, v in {**self._default_headers, **descriptor.headers}.items()
            if k.lower() != "content-type"
        }
        headers["Content-Type"] = encoded.headers["Content-Type"]
        headers["Content-Length"] = str(len(body))

        try:
            response = await self._http.request(
                descriptor.method.value,
                self.url_for(descriptor.endpoint),
                headers=headers,
                content=_progress_stream(body, on_progress),
                timeout=descriptor.timeout,
            )
        except httpx.TimeoutException as e:
            error: ApiError = RequestTimeoutError(descriptor.timeout)
            await self._pipeline.process_error(error, descriptor)
            raise error from e
        except httpx.RequestError as e:
            error = NetworkError(f"Upload failed: {e}")
            await self._pipeline.process_error(error, descriptor)
            raise error from e

        try:
            return parse_response(response)
        except ApiError as e:
            await self._pipeline.process_error(e, descriptor)
            raise

    async def _after_failure(self, error: ApiError, descriptor: RequestDescriptor, attempt: int) -> None:
        """Raise `error` if it is terminal, otherwise wait before the next attempt."""
        await self._pipeline.process_error(error, descriptor)

        if not is_retryable_error(error) or attempt >= self._retry_attempts:
            raise error

        delay = backoff_delay(self._retry_delay, attempt)
        logger.debug(
            "%s %s failed (%s), retry %d/%d in %.2fs",
            descriptor.method.value,
            descriptor.endpoint,
            error.code,
            attempt,
            self._retry_attempts - 1,
            delay,
        )
        await self._wait(delay, descriptor.signal)

    async def _wait(self, delay: float, signal: Optional[asyncio.Event]) -> None:
        if signal is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(signal.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise RequestCancelledError()

    def _build_request_kwargs(self, descriptor: RequestDescriptor) -> Dict[str, Any]:
        headers = {**self._default_headers, **descriptor.headers}
        kwargs: Dict[str, Any] = {"timeout": descriptor.timeout}

        if descriptor.is_multipart:
            # httpx writes the multipart Content-Type with its boundary
            headers = {k: v for k, v in headers.items() if k.lower() != "content-type"}
            data, files = descriptor.body.to_httpx()  # type: ignore[union-attr]
            kwargs["data"] = data
            kwargs["files"] = files
        else:
            headers.setdefault("Content-Type", "application/json")
            if descriptor.body is not None:
                kwargs["json"] = descriptor.body

        kwargs["headers"] = headers
        return kwargs

    async def _dispatch(self, descriptor: RequestDescriptor) -> httpx.Response:
        try:
            return await self._http.request(
                descriptor.method.value,
                self.url_for(descriptor.endpoint),
                **self._build_request_kwargs(descriptor),
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(descriptor.timeout) from e
        except httpx.RequestError as e:
            raise NetworkError(str(e) or e.__class__.__name__) from e

    async def _send(self, descriptor: RequestDescriptor) -> httpx.Response:
        """One attempt, abandoned early if the caller's abort signal fires."""
        signal = descriptor.signal
        if signal is None:
            return await self._dispatch(descriptor)
        if signal.is_set():
            raise RequestCancelledError()

        request_task = asyncio.ensure_future(self._dispatch(descriptor))
        abort_task = asyncio.ensure_future(signal.wait())
        try:
            done, _ = await asyncio.wait(
                {request_task, abort_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (request_task, abort_task):
                if not task.done():
                    task.cancel()

        if request_task not in done:
            raise RequestCancelledError()
        return request_task.result()


async def _progress_stream(body: bytes, on_progress: Optional[ProgressCallback]) -> AsyncIterator[bytes]:
    total = len(body)
    sent = 0
    for start in range(0, total, UPLOAD_CHUNK_SIZE):
        chunk = body[start:start + UPLOAD_CHUNK_SIZE]
        sent += len(chunk)
        yield chunk
        if on_progress is not None:
            on_progress(sent / total * 100 if total else 100.0)
