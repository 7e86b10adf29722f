"""
PropDesk API Client

Async facade over the PropDesk backend. Composes the response cache, the
interceptor pipeline, the token manager, the HTTP transport and the
realtime channel into typed resource methods.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterable, List, Mapping, Optional, Tuple, Union
from urllib.parse import urlencode

import httpx

from .cache import CacheStore, resource_family
from .errors import AuthenticationError, ConfigurationError, NetworkError
from .events import AUTH_LOGOUT, NETWORK_ERROR, EventBus
from .interceptors import (
    ErrorInterceptor,
    InterceptorHandle,
    InterceptorPipeline,
    RequestInterceptor,
    ResponseInterceptor,
)
from .realtime import Connector, RealtimeChannel
from .storage import MemoryStorage
from .tokens import TokenManager
from .transport import ProgressCallback, Transport
from .types import (
    ApiConfig,
    AuthResult,
    Body,
    FormData,
    HttpMethod,
    Page,
    RequestDescriptor,
    encode_form_value,
)


logger = logging.getLogger("propdesk_api")

FileInput = Union[bytes, str, "os.PathLike[str]", BinaryIO]


def _clean_params(params: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    return {k: v for k, v in (params or {}).items() if v is not None}


def _read_file(file: FileInput, filename: Optional[str]) -> Tuple[bytes, str]:
    """Load an upload into memory: bytes, a path, or a binary file object."""
    if isinstance(file, (bytes, bytearray)):
        return bytes(file), filename or "file"
    if isinstance(file, (str, os.PathLike)):
        path = Path(file)
        return path.read_bytes(), filename or path.name
    content = file.read()
    name = filename or os.path.basename(getattr(file, "name", "") or "file")
    return content, name


class ApiClient:
    """
    PropDesk API Client - async SDK entry point.

    One instance owns one session: its credentials, its response cache,
    its refresh queue and its realtime channel.
    """

    def __init__(self, config: Optional[ApiConfig] = None, connector: Optional[Connector] = None) -> None:
        """Initialize the client."""
        config = config or ApiConfig()
        self._validate_config(config)

        self._base_url = config.base_url.rstrip("/")
        self._timeout = config.timeout
        self._debug = config.debug

        self.events = EventBus()
        self.cache = CacheStore(default_ttl=config.cache_ttl)
        self.interceptors = InterceptorPipeline()
        self.tokens = TokenManager(config.storage or MemoryStorage(), self.events)

        # HTTP client
        self._http_client = httpx.AsyncClient(timeout=self._timeout, transport=config.transport)
        self._transport = Transport(
            self._http_client,
            self._base_url,
            self.interceptors,
            retry_attempts=config.retry_attempts,
            retry_delay=config.retry_delay,
            default_headers=config.headers,
        )
        self.tokens.bind_refresh_call(self._request_refresh)

        self.realtime = RealtimeChannel(
            self._base_url,
            lambda: self.tokens.access_token,
            self.events,
            reconnect_delay=config.reconnect_delay,
            connector=connector,
        )

        self._setup_default_interceptors()
        self.events.on(AUTH_LOGOUT, self._on_auth_logout)

        self._log(f"ApiClient initialized (base_url={self._base_url})")

    def _validate_config(self, config: ApiConfig) -> None:
        """Validate configuration."""
        if not config.base_url.startswith(("http://", "https://")):
            raise ConfigurationError(
                "base_url must be an http(s) URL", {"base_url": config.base_url}
            )
        if config.retry_attempts < 1:
            raise ConfigurationError("retry_attempts must be at least 1")
        if config.timeout <= 0:
            raise ConfigurationError("timeout must be positive")

    def _log(self, message: str, *args: Any) -> None:
        """Log debug message."""
        if self._debug:
            logger.debug(f"[PropDesk] {message}", *args)

    # =========================================================================
    # Default Interceptors
    # =========================================================================

    def _setup_default_interceptors(self) -> None:
        self.interceptors.add_request_interceptor(self._inject_bearer_token)
        self.interceptors.add_response_interceptor(self._recover_unauthorized)
        self.interceptors.add_error_interceptor(self._report_network_error)

    def _inject_bearer_token(self, descriptor: RequestDescriptor) -> RequestDescriptor:
        token = self.tokens.access_token
        if token and not any(k.lower() == "authorization" for k in descriptor.headers):
            descriptor.headers["Authorization"] = f"Bearer {token}"
        return descriptor

    async def _recover_unauthorized(self, response: httpx.Response, descriptor: RequestDescriptor) -> Any:
        if response.status_code == 401 and self.tokens.can_refresh(descriptor):
            return await self.tokens.handle_unauthorized(descriptor, self._transport.execute)
        return response

    def _report_network_error(self, error: BaseException, descriptor: RequestDescriptor) -> None:
        if isinstance(error, NetworkError):
            logger.warning(
                "Network error on %s %s: %s", descriptor.method.value, descriptor.endpoint, error.message
            )
            self.events.emit(NETWORK_ERROR, error)

    def _on_auth_logout(self, _payload: Any) -> None:
        self.cache.invalidate()
        self.realtime.teardown()

    def add_request_interceptor(self, interceptor: RequestInterceptor) -> InterceptorHandle:
        return self.interceptors.add_request_interceptor(interceptor)

    def add_response_interceptor(self, interceptor: ResponseInterceptor) -> InterceptorHandle:
        return self.interceptors.add_response_interceptor(interceptor)

    def add_error_interceptor(self, interceptor: ErrorInterceptor) -> InterceptorHandle:
        return self.interceptors.add_error_interceptor(interceptor)

    def remove_interceptor(self, handle: InterceptorHandle) -> bool:
        return self.interceptors.remove(handle)

    # =========================================================================
    # HTTP Methods
    # =========================================================================

    def _descriptor(
        self,
        method: HttpMethod,
        endpoint: str,
        body: Body = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        signal: Optional[asyncio.Event] = None,
        skip_auto_refresh: bool = False,
    ) -> RequestDescriptor:
        return RequestDescriptor(
            endpoint=endpoint,
            method=method,
            headers=dict(headers or {}),
            body=body,
            timeout=timeout or self._timeout,
            signal=signal,
            skip_auto_refresh=skip_auto_refresh,
        )

    def _invalidate_family(self, endpoint: str) -> None:
        family = resource_family(endpoint)
        self.cache.invalidate(family or None)

    async def request(
        self,
        method: Union[HttpMethod, str],
        endpoint: str,
        body: Body = None,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        signal: Optional[asyncio.Event] = None,
        skip_auto_refresh: bool = False,
    ) -> Any:
        """Send one request through the pipeline. Mutations invalidate their resource family."""
        method = HttpMethod(method.upper()) if isinstance(method, str) else method
        descriptor = self._descriptor(method, endpoint, body, headers, timeout, signal, skip_auto_refresh)

        if not method.is_mutating:
            return await self._transport.execute(descriptor)

        self._invalidate_family(endpoint)
        result = await self._transport.execute(descriptor)
        # Reads that overlapped the mutation may have cached stale data
        self._invalidate_family(endpoint)
        return result

    async def get(
        self,
        endpoint: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        use_cache: bool = True,
        cache_ttl: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        signal: Optional[asyncio.Event] = None,
    ) -> Any:
        """GET with response caching keyed by endpoint and sorted params."""
        query = _clean_params(params)
        cache_key = self.cache.build_key(endpoint, query)

        if use_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                self._log("Cache hit: %s", cache_key)
                return cached

        url = f"{endpoint}?{urlencode(query, doseq=True)}" if query else endpoint
        data = await self.request(HttpMethod.GET, url, headers=headers, timeout=timeout, signal=signal)

        if use_cache:
            self.cache.set(cache_key, data, cache_ttl)
        return data

    async def post(self, endpoint: str, body: Body = None, **options: Any) -> Any:
        return await self.request(HttpMethod.POST, endpoint, body, **options)

    async def put(self, endpoint: str, body: Body = None, **options: Any) -> Any:
        return await self.request(HttpMethod.PUT, endpoint, body, **options)

    async def patch(self, endpoint: str, body: Body = None, **options: Any) -> Any:
        return await self.request(HttpMethod.PATCH, endpoint, body, **options)

    async def delete(self, endpoint: str, **options: Any) -> Any:
        return await self.request(HttpMethod.DELETE, endpoint, **options)

    async def upload_file(
        self,
        endpoint: str,
        file: FileInput,
        *,
        filename: Optional[str] = None,
        field_name: str = "file",
        content_type: str = "application/octet-stream",
        additional_data: Optional[Mapping[str, Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Upload a file as multipart/form-data.

        Args:
            endpoint: Target endpoint, e.g. "/properties/42/images"
            file: Raw bytes, a filesystem path, or a binary file object
            additional_data: Extra form fields sent with the file
            on_progress: Called with the percentage of the body sent so far

        Uploads are sent once; failures are not retried.
        """
        content, name = _read_file(file, filename)
        form = FormData()
        form.append_file(field_name, name, content, content_type)
        for key, value in (additional_data or {}).items():
            form.append(key, encode_form_value(value))

        self._invalidate_family(endpoint)
        descriptor = self._descriptor(HttpMethod.POST, endpoint, form, headers, timeout)
        result = await self._transport.upload(descriptor, on_progress)
        self._invalidate_family(endpoint)
        return result

    async def batch(self, requests: Iterable[Mapping[str, Any]]) -> List[Any]:
        """
        Run several requests concurrently.

        Each request is a mapping with "method", "endpoint" and optionally
        "body" (query params for GET) and "options". Failed requests appear
        in the result list as their exception instead of raising.
        """
        entries = list(requests)
        for entry in entries:
            if str(entry["method"]).upper() not in HttpMethod.__members__:
                raise ValueError(f"Unsupported batch method: {entry['method']!r}")

        calls = [self._batch_call(entry) for entry in entries]
        return await asyncio.gather(*calls, return_exceptions=True)

    def _batch_call(self, entry: Mapping[str, Any]) -> Any:
        method = str(entry["method"]).lower()
        endpoint = entry["endpoint"]
        options = dict(entry.get("options") or {})
        if method == "get":
            return self.get(endpoint, entry.get("params", entry.get("body")), **options)
        if method == "delete":
            return self.delete(endpoint, **options)
        return getattr(self, method)(endpoint, entry.get("body"), **options)

    async def paginate(
        self,
        endpoint: str,
        params: Optional[Mapping[str, Any]] = None,
        page: int = 1,
        limit: int = 10,
        **options: Any,
    ) -> Page:
        """Fetch one page of a listing endpoint."""
        query = {**_clean_params(params), "page": page, "limit": limit}
        data = await self.get(endpoint, query, **options)
        return Page.from_dict(data, page, limit)

    # =========================================================================
    # Authentication Methods
    # =========================================================================

    async def login(self, email: str, password: str) -> AuthResult:
        """
        Login with email and password.

        Returns:
            AuthResult with the issued tokens and user data
        """
        self._log(f"Login attempt for: {email}")

        data = await self.post(
            "/auth/login",
            {"email": email, "password": password},
            skip_auto_refresh=True,
        )
        result = self._start_session(data)

        self._log("Login successful")
        return result

    async def register(self, user_data: Mapping[str, Any]) -> AuthResult:
        """Register a new user and start a session."""
        self._log(f"Register attempt for: {user_data.get('email')}")

        data = await self.post("/auth/register", dict(user_data), skip_auto_refresh=True)
        result = self._start_session(data)

        self._log("Registration successful")
        return result

    def _start_session(self, data: Any) -> AuthResult:
        result = AuthResult.from_dict(data if isinstance(data, dict) else {})
        if not result.token:
            raise AuthenticationError("Authentication response did not include a token", data)
        self.set_token(result.token, result.refresh_token)
        return result

    async def get_current_user(self) -> Any:
        """Fetch the signed-in user; never served from cache."""
        return await self.get("/auth/me", use_cache=False)

    async def logout(self) -> None:
        """Logout: notify the backend, then always drop the local session."""
        self._log("Logout")
        try:
            if self.tokens.is_authenticated:
                await self.post(
                    "/auth/logout",
                    {"refreshToken": self.tokens.refresh_token},
                    skip_auto_refresh=True,
                )
        finally:
            self.clear_token()
            self.clear_cache()
            await self.close_websocket()

    async def _request_refresh(self, refresh_token: str) -> Dict[str, Any]:
        descriptor = self._descriptor(
            HttpMethod.POST,
            "/auth/refresh",
            {"refreshToken": refresh_token},
            skip_auto_refresh=True,
        )
        return await self._transport.send_once(descriptor)

    # =========================================================================
    # Properties
    # =========================================================================

    async def get_properties(self, filters: Optional[Mapping[str, Any]] = None) -> Any:
        return await self.get("/properties", filters)

    async def get_property(self, property_id: str) -> Any:
        return await self.get(f"/properties/{property_id}")

    async def create_property(self, property_data: Mapping[str, Any]) -> Any:
        """Create a property; `images` are uploaded as files in the same request."""
        return await self.post("/properties", self._property_form(property_data))

    async def update_property(self, property_id: str, property_data: Mapping[str, Any]) -> Any:
        """Update a property. Existing images given as URL strings are left untouched."""
        return await self.put(f"/properties/{property_id}", self._property_form(property_data))

    async def delete_property(self, property_id: str) -> Any:
        return await self.delete(f"/properties/{property_id}")

    @staticmethod
    def _property_form(property_data: Mapping[str, Any]) -> FormData:
        form = FormData()
        for key, value in property_data.items():
            if key == "images" or value is None:
                continue
            if isinstance(value, (list, tuple)):
                if key == "amenities":
                    for index, amenity in enumerate(value):
                        form.append(f"amenities[{index}]", amenity)
                else:
                    form.append(key, json.dumps(list(value)))
            else:
                form.append(key, encode_form_value(value))

        for image in property_data.get("images") or []:
            if isinstance(image, str):
                continue
            if isinstance(image, tuple):
                filename, content, *rest = image
                form.append_file("images", filename, content, rest[0] if rest else "application/octet-stream")
            else:
                content, filename = _read_file(image, None)
                form.append_file("images", filename, content)
        return form

    # =========================================================================
    # Bookings
    # =========================================================================

    async def get_bookings(self, filters: Optional[Mapping[str, Any]] = None) -> Any:
        return await self.get("/bookings", filters)

    async def get_booking(self, booking_id: str) -> Any:
        return await self.get(f"/bookings/{booking_id}")

    async def create_booking(self, booking_data: Mapping[str, Any]) -> Any:
        return await self.post("/bookings", dict(booking_data))

    async def update_booking_status(self, booking_id: str, status: str) -> Any:
        return await self.put(f"/bookings/{booking_id}/status", {"status": status})

    # =========================================================================
    # Housekeeping
    # =========================================================================

    async def get_housekeeping_tasks(self, filters: Optional[Mapping[str, Any]] = None) -> Any:
        return await self.get("/housekeeping", filters)

    async def create_housekeeping_task(self, task_data: Mapping[str, Any]) -> Any:
        return await self.post("/housekeeping", dict(task_data))

    async def update_housekeeping_task(self, task_id: str, task_data: Mapping[str, Any]) -> Any:
        return await self.put(f"/housekeeping/{task_id}", dict(task_data))

    async def delete_housekeeping_task(self, task_id: str) -> Any:
        return await self.delete(f"/housekeeping/{task_id}")

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def get_maintenance_requests(self, filters: Optional[Mapping[str, Any]] = None) -> Any:
        return await self.get("/maintenance", filters)

    async def create_maintenance_request(self, request_data: Mapping[str, Any]) -> Any:
        return await self.post("/maintenance", dict(request_data))

    async def update_maintenance_request(self, request_id: str, request_data: Mapping[str, Any]) -> Any:
        return await self.put(f"/maintenance/{request_id}", dict(request_data))

    async def delete_maintenance_request(self, request_id: str) -> Any:
        return await self.delete(f"/maintenance/{request_id}")

    async def get_maintenance_stats(self) -> Any:
        return await self.get("/maintenance/stats")

    # =========================================================================
    # Users
    # =========================================================================

    async def get_users(self, filters: Optional[Mapping[str, Any]] = None) -> Any:
        return await self.get("/users", filters)

    async def get_user(self, user_id: str) -> Any:
        return await self.get(f"/users/{user_id}")

    async def update_user(self, user_id: str, user_data: Mapping[str, Any]) -> Any:
        return await self.put(f"/users/{user_id}", dict(user_data))

    async def delete_user(self, user_id: str) -> Any:
        return await self.delete(f"/users/{user_id}")

    # =========================================================================
    # Session Methods
    # =========================================================================

    def set_token(self, token: str, refresh_token: Optional[str] = None) -> None:
        """Install credentials, e.g. ones obtained outside this client."""
        self.tokens.set_credentials(token, refresh_token)

    def clear_token(self) -> None:
        self.tokens.clear()

    def clear_cache(self, pattern: Optional[str] = None) -> int:
        return self.cache.invalidate(pattern)

    def is_authenticated(self) -> bool:
        return self.tokens.is_authenticated

    async def setup_websocket(self, user_id: str) -> RealtimeChannel:
        """Open (or reopen) the realtime channel for `user_id`."""
        await self.realtime.connect(user_id)
        return self.realtime

    async def close_websocket(self) -> None:
        await self.realtime.close()

    async def close(self) -> None:
        """Close the realtime channel and the HTTP client."""
        await self.realtime.close()
        await self.tokens.aclose()
        await self._http_client.aclose()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


def create_api_client(config: Optional[ApiConfig] = None) -> ApiClient:
    """Create a new API client."""
    return ApiClient(config)
