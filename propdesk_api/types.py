"""
PropDesk API Client Type Definitions

Configuration, request descriptors and the small result types returned by
the client facade.
"""

import asyncio
import json
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple, Union, runtime_checkable

import httpx


DEFAULT_BASE_URL = "http://localhost:5000/api"

# Fixed storage keys for persisted credentials
TOKEN_KEY = "token"
REFRESH_TOKEN_KEY = "refreshToken"


@runtime_checkable
class TokenStorage(Protocol):
    """Key/value storage interface for persisted credentials."""

    def get_item(self, key: str) -> Optional[str]:
        """Get a stored value."""
        ...

    def set_item(self, key: str, value: str) -> None:
        """Store a value."""
        ...

    def remove_item(self, key: str) -> None:
        """Remove a stored value."""
        ...


@dataclass
class ApiConfig:
    """Client configuration options."""

    # API base URL (default: http://localhost:5000/api)
    base_url: str = DEFAULT_BASE_URL
    # Per-attempt request timeout in seconds (default: 30)
    timeout: float = 30.0
    # Total attempts for a failed request, including the first (default: 3)
    retry_attempts: int = 3
    # Base delay for linear backoff, in seconds (default: 1.0)
    retry_delay: float = 1.0
    # Default lifetime of cached GET responses in seconds (default: 300)
    cache_ttl: float = 300.0
    # Fixed delay before reopening a dropped realtime channel (default: 5)
    reconnect_delay: float = 5.0
    # Custom storage for tokens (default: None, uses MemoryStorage)
    storage: Optional[TokenStorage] = None
    # Custom headers to include in requests
    headers: Optional[Dict[str, str]] = None
    # Enable debug logging (default: False)
    debug: bool = False
    # Custom httpx transport (default: None, uses the network)
    transport: Optional[httpx.AsyncBaseTransport] = None

    @classmethod
    def from_env(cls, **overrides: Any) -> "ApiConfig":
        """Build configuration from PROPDESK_* environment variables."""
        values: Dict[str, Any] = {
            "base_url": os.environ.get("PROPDESK_API_URL", DEFAULT_BASE_URL),
        }
        if "PROPDESK_TIMEOUT" in os.environ:
            values["timeout"] = float(os.environ["PROPDESK_TIMEOUT"])
        if "PROPDESK_RETRY_ATTEMPTS" in os.environ:
            values["retry_attempts"] = int(os.environ["PROPDESK_RETRY_ATTEMPTS"])
        if "PROPDESK_DEBUG" in os.environ:
            values["debug"] = os.environ["PROPDESK_DEBUG"].lower() in ("1", "true", "yes")
        values.update(overrides)
        return cls(**values)


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"

    @property
    def is_mutating(self) -> bool:
        return self is not HttpMethod.GET


@dataclass
class FormData:
    """Multipart form body. Files are kept in memory so retries can resend them."""

    fields: List[Tuple[str, str]] = field(default_factory=list)
    files: List[Tuple[str, Tuple[str, bytes, str]]] = field(default_factory=list)

    def append(self, name: str, value: Any) -> None:
        """Append a text field."""
        self.fields.append((name, value if isinstance(value, str) else str(value)))

    def append_file(
        self,
        name: str,
        filename: str,
        content: bytes,
        content_type: str = "application/octet-stream",
    ) -> None:
        """Append a file part."""
        self.files.append((name, (filename, content, content_type)))

    def to_httpx(self) -> Tuple[Dict[str, Union[str, List[str]]], List[Tuple[str, Tuple[str, bytes, str]]]]:
        """Return (data, files) arguments for httpx."""
        data: Dict[str, Union[str, List[str]]] = {}
        for name, value in self.fields:
            existing = data.get(name)
            if existing is None:
                data[name] = value
            elif isinstance(existing, list):
                existing.append(value)
            else:
                data[name] = [existing, value]
        return data, list(self.files)


Body = Union[None, FormData, Dict[str, Any], List[Any], str, int, float, bool]


@dataclass
class RequestDescriptor:
    """A single logical request as it travels through the pipeline."""

    endpoint: str
    method: HttpMethod = HttpMethod.GET
    headers: Dict[str, str] = field(default_factory=dict)
    body: Body = None
    timeout: float = 30.0
    is_retry_attempt: bool = False
    # Auth endpoints report bad credentials with 401; never refresh for them
    skip_auto_refresh: bool = False
    # Caller abort signal
    signal: Optional[asyncio.Event] = None

    @property
    def is_multipart(self) -> bool:
        return isinstance(self.body, FormData)

    def for_retry(self) -> "RequestDescriptor":
        """Copy marked as a retry, without the stale Authorization header."""
        headers = {k: v for k, v in self.headers.items() if k.lower() != "authorization"}
        return replace(self, headers=headers, is_retry_attempt=True)


@dataclass
class Credentials:
    """Access/refresh token pair."""

    access_token: str
    refresh_token: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credentials":
        """Create from a login/refresh response."""
        access_token = data.get("token") or data.get("accessToken") or data.get("access_token") or ""
        refresh_token = data.get("refreshToken") or data.get("refresh_token")
        return cls(access_token=access_token, refresh_token=refresh_token)


@dataclass
class AuthResult:
    """Login/registration result."""

    token: str
    refresh_token: Optional[str] = None
    user: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthResult":
        """Create from dictionary."""
        credentials = Credentials.from_dict(data)
        return cls(
            token=credentials.access_token,
            refresh_token=credentials.refresh_token,
            user=data.get("user") or {},
            raw=data,
        )


@dataclass
class Page:
    """A page of a paginated listing."""

    data: List[Any]
    page: int
    limit: int
    total: int
    total_pages: int
    has_next_page: bool
    has_prev_page: bool
    next_page: Optional[int]
    prev_page: Optional[int]

    @classmethod
    def from_dict(cls, data: Dict[str, Any], page: int = 1, limit: int = 10) -> "Page":
        """Create from a `{data, page, limit, total, totalPages}` envelope."""
        current = int(data.get("page", page))
        total_pages = int(data.get("totalPages", data.get("total_pages", 1)))
        has_next = current < total_pages
        has_prev = current > 1
        return cls(
            data=list(data.get("data", [])),
            page=current,
            limit=int(data.get("limit", limit)),
            total=int(data.get("total", 0)),
            total_pages=total_pages,
            has_next_page=has_next,
            has_prev_page=has_prev,
            next_page=current + 1 if has_next else None,
            prev_page=current - 1 if has_prev else None,
        )


def encode_form_value(value: Any) -> str:
    """Encode a non-file form value the way the backend expects."""
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
