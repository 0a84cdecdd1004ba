# src/core/exceptions.py
"""
CaseVault Core Exceptions - standardized error handling for the secure access core.

Every error carries a machine-readable ``error_kind`` (used by hosts to pick a
response) and a ``user_message`` that is safe to show to staff. The technical
``message`` and ``details`` are for operators and logs only.
"""

from typing import Optional, Dict, Any


# Shared on purpose: callers must not learn whether a record exists
# unless they are allowed to see it.
RECORD_ACCESS_MESSAGE = "Unable to access client data. Please check your permissions."


class CaseVaultError(Exception):
    """Base exception for all CaseVault errors"""

    error_kind: str = "error"
    user_message: str = "Something went wrong. Please try again."

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize base exception.

        Args:
            message: Human-readable error message (operator facing)
            details: Optional additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class InputValidationError(CaseVaultError):
    """Untrusted input failed validation at the boundary"""

    error_kind = "validation_failed"
    user_message = "Please check that all required fields are filled out correctly."

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize validation error.

        Args:
            message: Field-level message, safe to show to the caller
            field: Field that failed validation
            value: Invalid value (only a preview is kept)
            details: Additional validation context
        """
        super().__init__(message, details)
        self.field = field
        self.value = value
        # The field-level message is the caller-facing message here
        self.user_message = message

        if field:
            self.details['field'] = field
        if value is not None:
            self.details['value'] = str(value)[:50]


class AccessDeniedError(CaseVaultError):
    """Principal lacks the role required for the operation"""

    error_kind = "access_denied"
    user_message = RECORD_ACCESS_MESSAGE

    def __init__(
        self,
        message: str,
        principal_id: Optional[str] = None,
        required_role: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.principal_id = principal_id
        self.required_role = required_role

        if principal_id:
            self.details['principal_id'] = principal_id
        if required_role:
            self.details['required_role'] = required_role


class RecordNotFoundError(CaseVaultError):
    """Store confirmed that no such record exists"""

    error_kind = "not_found"
    user_message = RECORD_ACCESS_MESSAGE

    def __init__(
        self,
        message: str,
        record_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.record_id = record_id

        if record_id:
            self.details['record_id'] = record_id


class RateLimitedError(CaseVaultError):
    """Caller exceeded its request quota and must back off"""

    error_kind = "rate_limited"
    user_message = "Too many requests. Please wait a moment and try again."

    def __init__(
        self,
        message: str,
        identifier: Optional[str] = None,
        retry_after_seconds: int = 60,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.identifier = identifier
        self.retry_after_seconds = retry_after_seconds

        self.details['retry_after_seconds'] = retry_after_seconds


class SessionTerminatedError(CaseVaultError):
    """Session is no longer active; nothing may be read through it"""

    error_kind = "session_terminated"
    user_message = "Your session has ended. Please sign in again."

    def __init__(
        self,
        message: str,
        session_id: Optional[str] = None,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.session_id = session_id
        self.reason = reason

        if session_id:
            self.details['session_id'] = session_id[:8]
        if reason:
            self.details['reason'] = reason


class ServiceError(CaseVaultError):
    """Errors in external service interactions"""

    error_kind = "service_error"

    def __init__(
        self,
        message: str,
        service_name: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize service error.

        Args:
            message: Error description
            service_name: Name of the failing service
            operation: Operation that failed
            details: Additional service context
        """
        super().__init__(message, details)
        self.service_name = service_name
        self.operation = operation

        if service_name:
            self.details['service'] = service_name
        if operation:
            self.details['operation'] = operation


class StoreUnavailableError(ServiceError):
    """Persistence collaborator failed; transient, safe to retry with backoff"""

    error_kind = "store_unavailable"
    user_message = "Client data is temporarily unavailable. Please try again."

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, service_name="SecureStore", operation=operation, details=details)


class RedisServiceError(ServiceError):
    """Specific errors for Redis service interactions"""

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, service_name="Redis", operation=operation, details=details)
        self.key = key

        if key:
            self.details['key'] = key


class ConfigurationError(CaseVaultError):
    """Errors in system configuration and initialization"""

    error_kind = "configuration_error"

    def __init__(
        self,
        message: str,
        component: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.component = component

        if component:
            self.details['component'] = component


# Convenience functions for creating common errors

def validation_error(message: str, field: str, value: Any = None) -> InputValidationError:
    """Create a validation error with field context."""
    return InputValidationError(message, field=field, value=value)


def access_denied(principal_id: str, required_role: str) -> AccessDeniedError:
    """Create an access denial for a missing role."""
    return AccessDeniedError(
        f"Principal lacks required role '{required_role}'",
        principal_id=principal_id,
        required_role=required_role
    )


def store_unavailable(operation: str, cause: Optional[BaseException] = None) -> StoreUnavailableError:
    """Create a store error for a failed collaborator operation."""
    details = {}
    if cause is not None:
        details = {'original_error': str(cause), 'error_type': type(cause).__name__}
    return StoreUnavailableError(f"Store operation '{operation}' failed", operation=operation, details=details)


def session_terminated(session_id: str, reason: Optional[str] = None) -> SessionTerminatedError:
    """Create a session error for a terminated session."""
    return SessionTerminatedError("Session is no longer active", session_id=session_id, reason=reason)


# Short aliases, one per error kind
ValidationFailed = InputValidationError
AccessDenied = AccessDeniedError
NotFound = RecordNotFoundError
RateLimited = RateLimitedError
StoreUnavailable = StoreUnavailableError
SessionTerminated = SessionTerminatedError
