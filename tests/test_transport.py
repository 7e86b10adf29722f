"""
Tests for the HTTP transport: retries, error mapping, cancellation, uploads.
"""

import asyncio
import json
from typing import List
from unittest.mock import AsyncMock, call

import httpx
import pytest
from hypothesis import given, strategies as st

from propdesk_api.errors import (
    AuthorizationError,
    HttpError,
    NetworkError,
    NotFoundError,
    RequestCancelledError,
    RequestTimeoutError,
    ValidationError,
)
from propdesk_api.interceptors import InterceptorPipeline
from propdesk_api.transport import Transport, backoff_delay, parse_response
from propdesk_api.types import FormData, HttpMethod, RequestDescriptor


BASE_URL = "https://api.propdesk.test/api"


class Recorder:
    """MockTransport handler replaying a scripted list of outcomes."""

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def make_transport(handler, pipeline=None, retry_attempts=3, retry_delay=0.5):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    transport = Transport(
        http,
        BASE_URL,
        pipeline or InterceptorPipeline(),
        retry_attempts=retry_attempts,
        retry_delay=retry_delay,
    )
    return transport, http


# =============================================================================
# Helpers
# =============================================================================

class TestBackoff:
    """Tests for the linear backoff schedule."""

    def test_linear_schedule(self):
        assert [backoff_delay(1.0, n) for n in (1, 2, 3)] == [1.0, 2.0, 3.0]

    @given(st.floats(min_value=0, max_value=60), st.integers(min_value=1, max_value=10))
    def test_delay_grows_with_attempt(self, delay, attempt):
        assert backoff_delay(delay, attempt + 1) >= backoff_delay(delay, attempt)


class TestParseResponse:
    """Tests for response body handling and status mapping."""

    def test_json_body(self):
        assert parse_response(httpx.Response(200, json={"id": 1})) == {"id": 1}

    def test_empty_body_is_empty_dict(self):
        assert parse_response(httpx.Response(204)) == {}

    @pytest.mark.parametrize(
        "status, error_class",
        [(400, ValidationError), (403, AuthorizationError), (404, NotFoundError), (409, HttpError)],
    )
    def test_status_mapping(self, status, error_class):
        with pytest.raises(error_class) as exc_info:
            parse_response(httpx.Response(status, json={"message": "nope"}))
        assert exc_info.value.status_code == status
        assert exc_info.value.message == "nope"
        assert exc_info.value.data == {"message": "nope"}

    def test_nested_error_message(self):
        with pytest.raises(HttpError) as exc_info:
            parse_response(httpx.Response(500, json={"error": {"message": "db down"}}))
        assert exc_info.value.message == "db down"

    def test_non_json_error_body(self):
        with pytest.raises(HttpError) as exc_info:
            parse_response(httpx.Response(502, text="<html>bad gateway</html>"))
        assert exc_info.value.message == "HTTP 502"


# =============================================================================
# Execute
# =============================================================================

class TestExecute:
    """Tests for request execution with retries."""

    @pytest.mark.asyncio
    async def test_sends_json_body_to_base_url(self):
        handler = Recorder(httpx.Response(201, json={"id": "b1"}))
        transport, http = make_transport(handler)

        result = await transport.execute(
            RequestDescriptor(endpoint="/bookings", method=HttpMethod.POST, body={"propertyId": "p1"})
        )

        assert result == {"id": "b1"}
        request = handler.requests[0]
        assert str(request.url) == f"{BASE_URL}/bookings"
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content) == {"propertyId": "p1"}
        await http.aclose()

    @pytest.mark.asyncio
    async def test_server_error_retried_until_budget_spent(self):
        handler = Recorder(httpx.Response(503, json={"message": "unavailable"}))
        transport, http = make_transport(handler)
        transport._wait = AsyncMock()

        with pytest.raises(HttpError) as exc_info:
            await transport.execute(RequestDescriptor(endpoint="/properties"))

        assert exc_info.value.status_code == 503
        assert len(handler.requests) == 3
        assert transport._wait.await_args_list == [call(0.5, None), call(1.0, None)]
        await http.aclose()

    @pytest.mark.asyncio
    async def test_server_error_then_success(self):
        handler = Recorder(httpx.Response(500), httpx.Response(200, json=[{"id": 1}]))
        transport, http = make_transport(handler)
        transport._wait = AsyncMock()

        result = await transport.execute(RequestDescriptor(endpoint="/properties"))

        assert result == [{"id": 1}]
        assert len(handler.requests) == 2
        await http.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    async def test_client_errors_not_retried(self, status):
        handler = Recorder(httpx.Response(status, json={"message": "no"}))
        transport, http = make_transport(handler)
        transport._wait = AsyncMock()

        with pytest.raises(HttpError):
            await transport.execute(RequestDescriptor(endpoint="/properties"))

        assert len(handler.requests) == 1
        transport._wait.assert_not_awaited()
        await http.aclose()

    @pytest.mark.asyncio
    async def test_timeout_is_retried_and_mapped(self):
        handler = Recorder(httpx.ReadTimeout("timed out"))
        transport, http = make_transport(handler, retry_attempts=2)
        transport._wait = AsyncMock()

        with pytest.raises(RequestTimeoutError) as exc_info:
            await transport.execute(RequestDescriptor(endpoint="/properties", timeout=5.0))

        assert exc_info.value.code == "TIMEOUT"
        assert exc_info.value.status_code == 0
        assert len(handler.requests) == 2
        await http.aclose()

    @pytest.mark.asyncio
    async def test_network_error_is_retried_then_succeeds(self):
        handler = Recorder(httpx.ConnectError("refused"), httpx.Response(200, json={"ok": True}))
        transport, http = make_transport(handler)
        transport._wait = AsyncMock()

        assert await transport.execute(RequestDescriptor(endpoint="/health")) == {"ok": True}
        assert len(handler.requests) == 2
        await http.aclose()

    @pytest.mark.asyncio
    async def test_error_interceptors_run_per_failed_attempt(self):
        handler = Recorder(httpx.ConnectError("refused"))
        pipeline = InterceptorPipeline()
        seen = []
        pipeline.add_error_interceptor(lambda e, d: seen.append(e))
        transport, http = make_transport(handler, pipeline=pipeline)
        transport._wait = AsyncMock()

        with pytest.raises(NetworkError):
            await transport.execute(RequestDescriptor(endpoint="/health"))

        assert len(seen) == 3
        await http.aclose()

    @pytest.mark.asyncio
    async def test_request_interceptors_run_once(self):
        handler = Recorder(httpx.Response(500), httpx.Response(200, json={}))
        pipeline = InterceptorPipeline()
        calls = []
        pipeline.add_request_interceptor(lambda d: calls.append(d.endpoint))
        transport, http = make_transport(handler, pipeline=pipeline)
        transport._wait = AsyncMock()

        await transport.execute(RequestDescriptor(endpoint="/x"))

        assert calls == ["/x"]
        await http.aclose()

    @pytest.mark.asyncio
    async def test_short_circuit_value_returned(self):
        handler = Recorder(httpx.Response(401))
        pipeline = InterceptorPipeline()
        pipeline.add_response_interceptor(lambda r, d: {"from": "interceptor"})
        transport, http = make_transport(handler, pipeline=pipeline)

        assert await transport.execute(RequestDescriptor(endpoint="/x")) == {"from": "interceptor"}
        await http.aclose()

    @pytest.mark.asyncio
    async def test_default_headers_merged(self):
        handler = Recorder(httpx.Response(200, json={}))
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        transport = Transport(http, BASE_URL, InterceptorPipeline(), default_headers={"X-Client": "sdk"})

        await transport.execute(RequestDescriptor(endpoint="/x", headers={"X-Trace": "t1"}))

        headers = handler.requests[0].headers
        assert headers["X-Client"] == "sdk"
        assert headers["X-Trace"] == "t1"
        await http.aclose()

    @pytest.mark.asyncio
    async def test_send_once_skips_retry(self):
        handler = Recorder(httpx.Response(503))
        transport, http = make_transport(handler)

        with pytest.raises(HttpError):
            await transport.send_once(RequestDescriptor(endpoint="/auth/refresh", method=HttpMethod.POST))
        assert len(handler.requests) == 1
        await http.aclose()


# =============================================================================
# Cancellation
# =============================================================================

class TestCancellation:
    """Tests for caller abort signals."""

    @pytest.mark.asyncio
    async def test_preset_signal_sends_nothing(self):
        handler = Recorder(httpx.Response(200, json={}))
        transport, http = make_transport(handler)
        signal = asyncio.Event()
        signal.set()

        with pytest.raises(RequestCancelledError):
            await transport.execute(RequestDescriptor(endpoint="/x", signal=signal))
        assert handler.requests == []
        await http.aclose()

    @pytest.mark.asyncio
    async def test_signal_aborts_in_flight_request(self):
        async def slow(request):
            await asyncio.sleep(10)
            return httpx.Response(200, json={})

        transport, http = make_transport(slow)
        signal = asyncio.Event()
        task = asyncio.ensure_future(transport.execute(RequestDescriptor(endpoint="/x", signal=signal)))
        await asyncio.sleep(0.01)
        signal.set()

        with pytest.raises(RequestCancelledError):
            await asyncio.wait_for(task, timeout=1)
        await http.aclose()

    @pytest.mark.asyncio
    async def test_signal_aborts_backoff_wait(self):
        handler = Recorder(httpx.Response(503))
        transport, http = make_transport(handler, retry_delay=10)
        signal = asyncio.Event()
        task = asyncio.ensure_future(transport.execute(RequestDescriptor(endpoint="/x", signal=signal)))
        await asyncio.sleep(0.01)
        signal.set()

        with pytest.raises(RequestCancelledError):
            await asyncio.wait_for(task, timeout=1)
        assert len(handler.requests) == 1
        await http.aclose()


# =============================================================================
# Multipart and Upload
# =============================================================================

class TestMultipart:
    """Tests for form bodies and streamed uploads."""

    @pytest.mark.asyncio
    async def test_form_data_sent_as_multipart(self):
        handler = Recorder(httpx.Response(201, json={"id": "p1"}))
        transport, http = make_transport(handler)
        form = FormData()
        form.append("title", "Sea view flat")
        form.append_file("images", "front.jpg", b"\xff\xd8jpeg", "image/jpeg")

        await transport.execute(
            RequestDescriptor(
                endpoint="/properties",
                method=HttpMethod.POST,
                body=form,
                headers={"Content-Type": "application/json"},
            )
        )

        request = handler.requests[0]
        assert request.headers["Content-Type"].startswith("multipart/form-data; boundary=")
        assert b"Sea view flat" in request.content
        assert b'filename="front.jpg"' in request.content
        await http.aclose()

    @pytest.mark.asyncio
    async def test_upload_reports_progress(self):
        handler = Recorder(httpx.Response(200, json={"url": "/files/1"}))
        transport, http = make_transport(handler)
        form = FormData()
        form.append_file("file", "plan.pdf", b"x" * 150_000, "application/pdf")
        progress: List[float] = []

        result = await transport.upload(
            RequestDescriptor(endpoint="/uploads", method=HttpMethod.POST, body=form),
            progress.append,
        )

        assert result == {"url": "/files/1"}
        assert len(progress) >= 3
        assert progress == sorted(progress)
        assert progress[-1] == 100.0
        request = handler.requests[0]
        assert request.headers["Content-Type"].startswith("multipart/form-data")
        assert int(request.headers["Content-Length"]) == len(request.content)
        await http.aclose()

    @pytest.mark.asyncio
    async def test_upload_is_not_retried(self):
        handler = Recorder(httpx.Response(503))
        transport, http = make_transport(handler)
        form = FormData()
        form.append_file("file", "a.txt", b"abc", "text/plain")

        with pytest.raises(HttpError):
            await transport.upload(RequestDescriptor(endpoint="/uploads", method=HttpMethod.POST, body=form))
        assert len(handler.requests) == 1
        await http.aclose()

    @pytest.mark.asyncio
    async def test_upload_network_error_mapped(self):
        handler = Recorder(httpx.ConnectError("refused"))
        transport, http = make_transport(handler)
        form = FormData()
        form.append_file("file", "a.txt", b"abc", "text/plain")

        with pytest.raises(NetworkError):
            await transport.upload(RequestDescriptor(endpoint="/uploads", method=HttpMethod.POST, body=form))
        await http.aclose()
