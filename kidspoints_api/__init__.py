"""Authenticated REST API client with retry and single-flight token refresh."""

from .client import ApiClient
from .config import APIConfig, Settings, get_settings
from .connectivity import ConnectivityProbe, HttpConnectivityProbe, StaticConnectivityProbe
from .events import EventBus, EventType
from .executor import RequestDescriptor, RequestExecutor
from .hydra import extract_hydra_collection, get_hydra_total_items
from .logging_config import setup_logging, setup_logging_from_settings
from .refresh import RefreshCoordinator, RefreshState
from .retry import DEFAULT_RETRY, NO_RETRY, RetryConfig, RetryManager
from .storage import (
    STORAGE_KEYS,
    JsonFileStorage,
    KeyValueStorage,
    MemoryStorage,
    StoredSession,
    TokenPair,
    TokenStore,
)
from .exceptions import (
    APIError,
    APITimeoutError,
    ConcurrentTokenUpdateError,
    ErrorKind,
    ForbiddenError,
    NetworkError,
    NotFoundError,
    ServerError,
    UnauthorizedError,
    UnknownAPIError,
    ValidationError,
    classify_network_error,
    classify_response,
    get_error_from_status_code,
)

__all__ = [
    # Client
    "ApiClient",
    "APIConfig",
    "Settings",
    "get_settings",
    "setup_logging",
    "setup_logging_from_settings",

    # Collaborators
    "ConnectivityProbe",
    "HttpConnectivityProbe",
    "StaticConnectivityProbe",
    "EventBus",
    "EventType",
    "RequestDescriptor",
    "RequestExecutor",
    "RefreshCoordinator",
    "RefreshState",

    # Retry
    "RetryConfig",
    "RetryManager",
    "DEFAULT_RETRY",
    "NO_RETRY",

    # Storage
    "STORAGE_KEYS",
    "JsonFileStorage",
    "KeyValueStorage",
    "MemoryStorage",
    "StoredSession",
    "TokenPair",
    "TokenStore",

    # Exceptions
    "APIError",
    "APITimeoutError",
    "ConcurrentTokenUpdateError",
    "ErrorKind",
    "ForbiddenError",
    "NetworkError",
    "NotFoundError",
    "ServerError",
    "UnauthorizedError",
    "UnknownAPIError",
    "ValidationError",

    # Utility functions
    "classify_network_error",
    "classify_response",
    "get_error_from_status_code",
    "extract_hydra_collection",
    "get_hydra_total_items",
]
