"""Error taxonomy shared by the backend, the API client and the coordinator.

Every failure that crosses a network boundary is mapped onto one of these
classes so callers can tell retryable failures (network, server) apart from
ones that need a different action (sign in again, fix the input).
"""

import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx


class ErrorCode(str, Enum):
    """Machine-readable error codes returned by the API and the coordinator."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    CONFLICT = "CONFLICT"
    NOT_FOUND = "NOT_FOUND"
    NETWORK_ERROR = "NETWORK_ERROR"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    PERMISSION_ERROR = "PERMISSION_ERROR"
    SERVER_ERROR = "SERVER_ERROR"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    IN_FLIGHT = "IN_FLIGHT"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class HomiioError(Exception):
    """Base error carrying a machine code and optional context."""

    code: ErrorCode = ErrorCode.UNKNOWN_ERROR
    status_code: int = 500
    retryable: bool = True
    default_user_message = "Something went wrong. Please try again"

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.context = context or {}

    @property
    def user_message(self) -> str:
        return self.default_user_message

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.code.value}: {self.message}>"


class ValidationError(HomiioError):
    """Malformed or missing input. Never retried."""

    code = ErrorCode.VALIDATION_ERROR
    status_code = 400
    retryable = False

    def __init__(self, message: str, *, field: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.field = field
        if field:
            self.context.setdefault("field", field)

    @property
    def user_message(self) -> str:
        # Validation messages already say what to fix
        return self.message


class ConflictError(HomiioError):
    """Unique constraint collision that could not be resolved by a lookup."""

    code = ErrorCode.CONFLICT
    status_code = 409
    retryable = True

    @property
    def user_message(self) -> str:
        return self.message


class NotFoundError(HomiioError):
    """The addressed record does not exist (or is not visible to the caller)."""

    code = ErrorCode.NOT_FOUND
    status_code = 404
    retryable = False

    @property
    def user_message(self) -> str:
        return self.message


class NetworkError(HomiioError):
    """Transport failure or timeout before a response arrived."""

    code = ErrorCode.NETWORK_ERROR
    status_code = 503
    retryable = True
    default_user_message = "Please check your internet connection and try again"


class AuthenticationError(HomiioError):
    code = ErrorCode.AUTHENTICATION_ERROR
    status_code = 401
    retryable = False
    default_user_message = "Please sign in to manage saved properties"


class PermissionDeniedError(HomiioError):
    code = ErrorCode.PERMISSION_ERROR
    status_code = 403
    retryable = False
    default_user_message = "You do not have permission to perform this action"


class ServerError(HomiioError):
    """5xx from the backend. Retryable, but reported apart from network errors."""

    code = ErrorCode.SERVER_ERROR
    status_code = 500
    retryable = True
    default_user_message = "Something went wrong on our end. Please try again later"


# =============================================================================
# Classification
# =============================================================================


@dataclass
class SavedPropertiesError:
    """Structured, display-ready description of a failed operation."""

    code: ErrorCode
    message: str
    user_message: str
    retryable: bool
    context: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def should_show_user_message(self) -> bool:
        # Auth failures trigger a sign-in prompt instead of a toast
        return self.code != ErrorCode.AUTHENTICATION_ERROR


def error_for_status(status: int, message: str, **kwargs: Any) -> HomiioError:
    """Map an HTTP status code onto the error taxonomy."""
    if status in (400, 422):
        return ValidationError(message, **kwargs)
    if status == 401:
        return AuthenticationError(message, **kwargs)
    if status == 403:
        return PermissionDeniedError(message, **kwargs)
    if status == 404:
        return NotFoundError(message, **kwargs)
    if status == 409:
        return ConflictError(message, **kwargs)
    if status >= 500:
        return ServerError(message, **kwargs)
    return HomiioError(message, **kwargs)


def as_homiio_error(exc: BaseException) -> HomiioError:
    """Coerce any exception raised around a remote call into a HomiioError."""
    if isinstance(exc, HomiioError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        return error_for_status(exc.response.status_code, str(exc))
    if isinstance(exc, httpx.TransportError):
        return NetworkError(str(exc) or "Network error occurred")
    return HomiioError(str(exc) or "An unknown error occurred")


def classify_error(exc: BaseException, context: str = "") -> SavedPropertiesError:
    """Build the structured error reported to the UI for ``exc``."""
    error = as_homiio_error(exc)
    return SavedPropertiesError(
        code=error.code,
        message=error.message,
        user_message=error.user_message,
        retryable=error.retryable,
        context=context,
    )


def retry_delay(attempt: int, base: float = 1.0, maximum: float = 10.0) -> float:
    """Exponential backoff in seconds with up to 10% jitter."""
    delay = min(base * (2 ** attempt), maximum)
    return delay + random.random() * 0.1 * delay
