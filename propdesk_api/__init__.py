"""
PropDesk API Python SDK

Async client for the PropDesk property-management backend with response
caching, interceptors, single-flight token refresh, retrying transport and
a reconnecting realtime channel.
"""

from .client import ApiClient, create_api_client
from .cache import CacheStore
from .types import (
    ApiConfig,
    TokenStorage,
    HttpMethod,
    FormData,
    RequestDescriptor,
    Credentials,
    AuthResult,
    Page,
)
from .errors import (
    ApiError,
    NetworkError,
    RequestTimeoutError,
    HttpError,
    ValidationError,
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    TokenRefreshError,
    RequestCancelledError,
    ConfigurationError,
    is_api_error,
    is_retryable_error,
)
from .events import AUTH_LOGOUT, NETWORK_ERROR, WS_CLOSE, WS_MESSAGE, WS_OPEN, EventBus
from .interceptors import InterceptorHandle, InterceptorPipeline
from .realtime import ChannelState, RealtimeChannel
from .storage import MemoryStorage, FileStorage, EnvironmentStorage
from .tokens import RefreshState, TokenManager

__version__ = "1.0.0"
__all__ = [
    # Client
    "ApiClient",
    "create_api_client",
    # Components
    "CacheStore",
    "EventBus",
    "InterceptorHandle",
    "InterceptorPipeline",
    "TokenManager",
    "RefreshState",
    "RealtimeChannel",
    "ChannelState",
    # Types
    "ApiConfig",
    "TokenStorage",
    "HttpMethod",
    "FormData",
    "RequestDescriptor",
    "Credentials",
    "AuthResult",
    "Page",
    # Errors
    "ApiError",
    "NetworkError",
    "RequestTimeoutError",
    "HttpError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "TokenRefreshError",
    "RequestCancelledError",
    "ConfigurationError",
    "is_api_error",
    "is_retryable_error",
    # Events
    "AUTH_LOGOUT",
    "NETWORK_ERROR",
    "WS_OPEN",
    "WS_CLOSE",
    "WS_MESSAGE",
    # Storage
    "MemoryStorage",
    "FileStorage",
    "EnvironmentStorage",
]
