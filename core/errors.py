"""
Centralized error handling for the session core.

Error Hierarchy:
- SessionError: expected failures with messages safe to show to users.
  Each subclass carries an ErrorKind.
- Anything else is unexpected: logged with an error id and turned into a
  generic server error by safe_result().

Facades never raise across their boundary. They return an ApiResult whose
`error` is an ApiError:

    result = await runtime.players.list()
    if not result.ok:
        print(result.error.kind, result.error.message)

Usage inside a facade:
    try:
        ...
    except Exception as e:
        return safe_result(e, "list players")
"""

import logging
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Error kinds surfaced to facade callers."""
    AUTH_REQUIRED = "auth_required"
    SESSION_EXPIRED = "session_expired"
    NETWORK = "network"
    SERVER = "server"
    VALIDATION = "validation"
    CONFLICT = "conflict"


DEFAULT_MESSAGES = {
    ErrorKind.AUTH_REQUIRED: "Authentication required",
    ErrorKind.SESSION_EXPIRED: "Session expired",
    ErrorKind.NETWORK: "Network unavailable",
    ErrorKind.SERVER: "Server error",
    ErrorKind.VALIDATION: "Invalid input",
    ErrorKind.CONFLICT: "Conflicting change",
}


# =============================================================================
# Exception Classes
# =============================================================================

class SessionError(Exception):
    """
    Base class for expected session-core errors.
    Messages are safe to expose to users.
    """
    kind = ErrorKind.SERVER

    def __init__(self, message: str = None, *, field: str = None, status: int = None):
        super().__init__(message or DEFAULT_MESSAGES[self.kind])
        self.field = field
        self.status = status


class AuthRequiredError(SessionError):
    """No credentials are present."""
    kind = ErrorKind.AUTH_REQUIRED


class SessionExpiredError(SessionError):
    """The session was revoked or the token could not be refreshed."""
    kind = ErrorKind.SESSION_EXPIRED


class NetworkError(SessionError):
    """Transport failure (server down, timeout, DNS)."""
    kind = ErrorKind.NETWORK


class ServerError(SessionError):
    """Non-2xx response carrying a server message."""
    kind = ErrorKind.SERVER


class ValidationError(SessionError):
    """Input rejected locally or by the server (field, reason)."""
    kind = ErrorKind.VALIDATION


class ConflictError(SessionError):
    """Resource conflict (409)."""
    kind = ErrorKind.CONFLICT


# =============================================================================
# Uniform Result Shape
# =============================================================================

@dataclass(frozen=True)
class ApiError:
    """Error half of an ApiResult."""
    kind: ErrorKind
    message: str
    field: Optional[str] = None
    status: Optional[int] = None
    error_id: Optional[str] = None

    def __str__(self) -> str:
        if self.field:
            return f"{self.kind.value}: {self.field}: {self.message}"
        return f"{self.kind.value}: {self.message}"


@dataclass(frozen=True)
class ApiResult(Generic[T]):
    """
    Uniform `{data | error, used_fallback}` result.

    used_fallback=True tells facades to try the mirrored cache (reads) or a
    local shadow write. `provisional` marks data produced by a shadow write
    that the server has not confirmed.
    """
    data: Optional[T] = None
    error: Optional[ApiError] = None
    used_fallback: bool = False
    provisional: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, data: Any = None, *, used_fallback: bool = False, provisional: bool = False) -> "ApiResult":
        return cls(data=data, used_fallback=used_fallback, provisional=provisional)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str = None,
        *,
        field: str = None,
        status: int = None,
        used_fallback: bool = False,
        error_id: str = None,
    ) -> "ApiResult":
        error = ApiError(
            kind=kind,
            message=message or DEFAULT_MESSAGES[kind],
            field=field,
            status=status,
            error_id=error_id,
        )
        return cls(error=error, used_fallback=used_fallback)

    @classmethod
    def from_exception(cls, exc: SessionError, *, used_fallback: bool = False) -> "ApiResult":
        return cls.failure(
            exc.kind,
            str(exc),
            field=exc.field,
            status=exc.status,
            used_fallback=used_fallback,
        )

    def with_data(self, data: Any) -> "ApiResult":
        return replace(self, data=data)

    def raise_for_error(self) -> T:
        """Return data or raise the matching SessionError (for scripts and the CLI)."""
        if self.error is None:
            return self.data
        exc_type = _EXCEPTIONS_BY_KIND.get(self.error.kind, SessionError)
        raise exc_type(self.error.message, field=self.error.field, status=self.error.status)


_EXCEPTIONS_BY_KIND = {
    ErrorKind.AUTH_REQUIRED: AuthRequiredError,
    ErrorKind.SESSION_EXPIRED: SessionExpiredError,
    ErrorKind.NETWORK: NetworkError,
    ErrorKind.SERVER: ServerError,
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.CONFLICT: ConflictError,
}


# =============================================================================
# Safe Result Helper
# =============================================================================

def safe_result(e: Exception, operation: str, include_error_id: bool = True) -> ApiResult:
    """
    Turn any exception caught at a facade boundary into an ApiResult.

    For SessionError subclasses (expected errors):
        - Keeps the message and kind
        - Logs at WARNING level

    For all other exceptions (unexpected errors):
        - Returns a generic "<operation> failed" server error
        - Logs the full exception at ERROR level

    Args:
        e: The exception that was caught
        operation: Human-readable description of what failed (e.g., "list players")
        include_error_id: Whether to attach an error_id for support reference
    """
    error_id = str(uuid.uuid4())[:8] if include_error_id else None
    log_extra = {'error_id': error_id} if error_id else {}

    if isinstance(e, SessionError):
        logger.warning(f"{operation}: {e}", extra=log_extra)
        return ApiResult.failure(
            e.kind, str(e), field=e.field, status=e.status, error_id=error_id
        )

    logger.exception(f"{operation} failed", extra=log_extra)
    return ApiResult.failure(ErrorKind.SERVER, f"{operation} failed", error_id=error_id)
