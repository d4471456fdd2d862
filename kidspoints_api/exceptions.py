"""API client exceptions and error classification."""

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Closed set of failure kinds surfaced by the client."""

    UNAUTHORIZED = "Unauthorized"
    FORBIDDEN = "Forbidden"
    NOT_FOUND = "NotFound"
    VALIDATION = "Validation"
    SERVER_ERROR = "ServerError"
    NETWORK_ERROR = "NetworkError"
    TIMEOUT = "Timeout"
    UNKNOWN = "Unknown"


class APIError(Exception):
    """Base exception for all API-related errors.

    Every failure leaving the client is an ``APIError``. Callers can either
    catch a specific subclass or match on ``error.kind``.
    """

    kind: ErrorKind = ErrorKind.UNKNOWN
    default_retryable: bool = False
    default_message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        response: Any = None,
        retryable: Optional[bool] = None,
        original_exception: Optional[BaseException] = None,
        **context
    ):
        """
        Initialize API error with context.

        Args:
            message (Optional[str]): Primary error message
            status_code (Optional[int]): HTTP status, when a response was received
            response (Any): Parsed error body, when a response was received
            retryable (Optional[bool]): Override of the kind's default
            original_exception (Optional[BaseException]): Underlying exception
            **context: Additional error context (request url, method...)
        """
        self.message = message or self.default_message
        self.status_code = status_code
        self.response = response
        self.retryable = self.default_retryable if retryable is None else retryable
        self.original_exception = original_exception
        self.context = context

        log_message = f"{self.__class__.__name__}: {self.message}"
        if context:
            log_message += f" | Context: {context}"
        logger.debug(log_message)

        super().__init__(self.message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.status_code is not None:
            parts.append(f"Status: {self.status_code}")
        if "request_method" in self.context and "request_url" in self.context:
            parts.append(f"Request: {self.context['request_method']} {self.context['request_url']}")
        return " | ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Return the error envelope as a plain dictionary."""
        return {
            "kind": self.kind.value,
            "status": self.status_code,
            "message": self.message,
            "retryable": self.retryable,
        }


class UnauthorizedError(APIError):
    """Raised on 401 responses and when the session cannot be refreshed."""

    kind = ErrorKind.UNAUTHORIZED
    default_message = "Authentication required"


class ForbiddenError(APIError):
    kind = ErrorKind.FORBIDDEN
    default_message = "Access denied"


class NotFoundError(APIError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Resource not found"


class ValidationError(APIError):
    """Raised when the backend rejects the request payload (400/422)."""

    kind = ErrorKind.VALIDATION
    default_message = "Request validation failed"

    def __init__(self, message: Optional[str] = None, violations: Optional[List[Any]] = None, **kwargs):
        self.violations = violations or []
        super().__init__(message, **kwargs)


class ServerError(APIError):
    kind = ErrorKind.SERVER_ERROR
    default_retryable = True
    default_message = "Server error"


class NetworkError(APIError):
    """Raised when the backend could not be reached."""

    kind = ErrorKind.NETWORK_ERROR
    default_retryable = True
    default_message = "Unable to connect to the server"


class APITimeoutError(APIError):
    """Raised when an attempt exceeds its deadline."""

    kind = ErrorKind.TIMEOUT
    default_retryable = True
    default_message = "Request timed out"

    def __init__(self, message: Optional[str] = None, timeout_type: str = "deadline", **kwargs):
        self.timeout_type = timeout_type
        super().__init__(message, **kwargs)


class UnknownAPIError(APIError):
    kind = ErrorKind.UNKNOWN


class ConcurrentTokenUpdateError(Exception):
    """Raised when tokens are modified while a refresh owns the session."""


_STATUS_ERRORS = {
    400: ValidationError,
    401: UnauthorizedError,
    403: ForbiddenError,
    404: NotFoundError,
    422: ValidationError,
}


def get_error_from_status_code(
    status_code: int,
    message: Optional[str] = None,
    **kwargs
) -> APIError:
    """
    Map an HTTP status code to the matching exception.

    Args:
        status_code (int): HTTP status code
        message (Optional[str]): Error message
        **kwargs: Additional error attributes and context

    Returns:
        APIError: Exception for the status code
    """
    if status_code >= 500:
        error_class = ServerError
    else:
        error_class = _STATUS_ERRORS.get(status_code, UnknownAPIError)
    if error_class is UnknownAPIError and message is None:
        message = f"Unexpected response status {status_code}"
    return error_class(message, status_code=status_code, **kwargs)


def _extract_message(data: Any) -> Optional[str]:
    if isinstance(data, dict):
        for key in ("hydra:description", "detail", "message", "error"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
    elif isinstance(data, str) and data.strip():
        return data.strip()[:500]
    return None


def _extract_violations(data: Any) -> List[Any]:
    if isinstance(data, dict):
        violations = data.get("violations")
        if isinstance(violations, list):
            return violations
        errors = data.get("errors")
        if isinstance(errors, list):
            return errors
    return []


def classify_response(response: httpx.Response, **context) -> APIError:
    """
    Build the error for a completed, non-2xx response.

    Args:
        response (httpx.Response): Response with an error status
        **context: Additional error context

    Returns:
        APIError: Classified error carrying the parsed body
    """
    try:
        data = response.json()
    except (ValueError, UnicodeDecodeError):
        data = response.text

    message = _extract_message(data)
    kwargs: Dict[str, Any] = {"response": data}
    if response.status_code in (400, 422):
        violations = _extract_violations(data)
        kwargs["violations"] = violations
        messages = [v.get("message") for v in violations if isinstance(v, dict) and v.get("message")]
        if messages:
            message = ", ".join(messages)

    return get_error_from_status_code(response.status_code, message, **kwargs, **context)


def classify_network_error(exception: BaseException, **context) -> APIError:
    """
    Classify a transport-level exception.

    Args:
        exception (BaseException): Exception raised while sending the request
        **context: Additional error context

    Returns:
        APIError: Timeout, network or unknown error wrapping the exception
    """
    if isinstance(exception, APIError):
        return exception

    if isinstance(exception, httpx.TimeoutException):
        timeout_type = "unknown"
        if isinstance(exception, httpx.ConnectTimeout):
            timeout_type = "connect"
        elif isinstance(exception, httpx.ReadTimeout):
            timeout_type = "read"
        elif isinstance(exception, httpx.WriteTimeout):
            timeout_type = "write"
        elif isinstance(exception, httpx.PoolTimeout):
            timeout_type = "pool"
        return APITimeoutError(
            f"Request timed out ({timeout_type})",
            timeout_type=timeout_type,
            original_exception=exception,
            **context
        )

    if isinstance(exception, asyncio.TimeoutError):
        return APITimeoutError(
            "Request exceeded its deadline",
            timeout_type="deadline",
            original_exception=exception,
            **context
        )

    if isinstance(exception, (httpx.RequestError, OSError)):
        return NetworkError(
            f"Network error: {exception}",
            original_exception=exception,
            **context
        )

    return UnknownAPIError(
        f"Unexpected error: {exception}",
        original_exception=exception,
        **context
    )
