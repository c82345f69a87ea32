"""Clinical Data Custom Exception Hierarchy.

This module provides the exception hierarchy for the clinical data engines
with rich error context for debugging, monitoring, and user feedback.

Exception Hierarchy:
    ClinicalDataException (base)
    ├── DataEntryException
    │   ├── NotFoundError
    │   ├── InvalidStateError
    │   ├── ValidationError
    │   ├── AuthorizationDenied
    │   │   ├── NotRequired
    │   │   ├── AlreadyComplete
    │   │   └── SameEntrant
    │   └── PreconditionFailed
    └── DataException
        ├── StorageError
        ├── AuditError
        └── LockTimeoutError

All exceptions include rich context:
- error_code: Unique error identifier
- context: Dictionary with error-specific details
- timestamp: When the error occurred
- traceback: Full stack trace for debugging

Example:
    >>> from clinicaldata.exceptions import PreconditionFailed
    >>> raise PreconditionFailed(
    ...     message="Cannot finalize: 2 unresolved discrepancies remain",
    ...     open_count=2,
    ...     context={"form_instance_id": "ecrf-001"}
    ... )

Author: Clinical Data Platform Team
Date: October 2026
Status: Production Ready
"""

from typing import Any, Dict, Optional
from datetime import datetime, timezone
import traceback as tb
import json
import re


# ==============================================================================
# Base Exception
# ==============================================================================

class ClinicalDataException(Exception):
    """Base exception for all clinical data errors.

    Attributes:
        message: Human-readable error message
        error_code: Unique error identifier (e.g., "CD_DDE_NOT_FOUND_ERROR")
        context: Dictionary with error-specific details
        timestamp: When the error occurred (UTC)
        traceback_str: Full stack trace for debugging
    """

    # Base error code prefix
    ERROR_PREFIX = "CD"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        """Initialize clinical data exception with rich context.

        Args:
            message: Human-readable error message
            error_code: Unique error identifier (auto-generated if not provided)
            context: Dictionary with error-specific details
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self._generate_error_code()
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)
        self.traceback_str = "".join(tb.format_stack()[:-1])

    def _generate_error_code(self) -> str:
        """Generate error code based on exception class.

        Returns:
            Error code like "CD_DDE_SAME_ENTRANT"
        """
        # CamelCase -> SCREAMING_SNAKE_CASE
        error_type = re.sub(r'(?<!^)(?=[A-Z])', '_', self.__class__.__name__).upper()
        return f"{self.ERROR_PREFIX}_{error_type}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization.

        Returns:
            Dictionary with all error details
        """
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "traceback": self.traceback_str,
        }

    def to_json(self) -> str:
        """Convert exception to JSON string."""
        return json.dumps(self.to_dict(), indent=2, default=str)

    def __str__(self) -> str:
        return f"[{self.error_code}] - {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message='{self.message}', "
            f"error_code='{self.error_code}')"
        )


# ==============================================================================
# Data Entry Exceptions
# ==============================================================================

class DataEntryException(ClinicalDataException):
    """Base exception for double data-entry workflow errors.

    Raised when a lifecycle, comparison, or resolution operation is refused.
    """
    ERROR_PREFIX = "CD_DDE"


class NotFoundError(DataEntryException):
    """Referenced form instance or discrepancy does not exist.

    Example:
        >>> raise NotFoundError(
        ...     message="Form instance not found: ecrf-404",
        ...     entity_type="form_instance",
        ...     entity_id="ecrf-404",
        ... )
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ):
        context = context or {}
        if entity_type:
            context["entity_type"] = entity_type
        if entity_id:
            context["entity_id"] = entity_id
        super().__init__(message, context=context)
        self.entity_type = entity_type
        self.entity_id = entity_id


class InvalidStateError(DataEntryException):
    """Operation is not legal from the current lifecycle or record state.

    Example:
        >>> raise InvalidStateError(
        ...     message="Cannot finalize from first_entry_complete",
        ...     current_state="first_entry_complete",
        ...     operation="finalize",
        ... )
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        current_state: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        context = context or {}
        if current_state:
            context["current_state"] = current_state
        if operation:
            context["operation"] = operation
        super().__init__(message, context=context)
        self.current_state = current_state
        self.operation = operation


class ValidationError(DataEntryException):
    """Caller input failed validation before any state was touched.

    Example:
        >>> raise ValidationError(
        ...     message="new_value is required for strategy 'new_value'",
        ...     invalid_fields={"new_value": "required"},
        ... )
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        invalid_fields: Optional[Dict[str, str]] = None,
    ):
        """Initialize validation error.

        Args:
            message: Error message
            context: Error context
            invalid_fields: Dictionary of field_name -> reason
        """
        if invalid_fields:
            context = context or {}
            context["invalid_fields"] = invalid_fields
        super().__init__(message, context=context)
        self.invalid_fields = invalid_fields or {}


class AuthorizationDenied(DataEntryException):
    """Entry authorization gate refused the user.

    The ``reason_code`` attribute is one of ``not_required``,
    ``already_complete`` or ``same_entrant``; the concrete subclasses fix it.
    """

    reason_code: str = "denied"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = context or {}
        context.setdefault("reason_code", self.reason_code)
        super().__init__(message, context=context)


class NotRequired(AuthorizationDenied):
    """Second entry attempted on a form that does not require double entry."""

    reason_code = "not_required"


class AlreadyComplete(AuthorizationDenied):
    """Second-entry slot is already filled."""

    reason_code = "already_complete"


class SameEntrant(AuthorizationDenied):
    """Second entry attempted by the user who performed the first entry."""

    reason_code = "same_entrant"


class PreconditionFailed(DataEntryException):
    """Finalization refused because open discrepancies remain.

    Example:
        >>> raise PreconditionFailed(
        ...     message="Cannot finalize: 1 unresolved discrepancies remain",
        ...     open_count=1,
        ... )
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        open_count: int = 0,
    ):
        context = context or {}
        context["open_count"] = open_count
        super().__init__(message, context=context)
        self.open_count = open_count


# ==============================================================================
# Data Exceptions
# ==============================================================================

class DataException(ClinicalDataException):
    """Base exception for storage and audit errors."""
    ERROR_PREFIX = "CD_DATA"


class StorageError(DataException):
    """Persistent store failed or returned unusable data.

    Example:
        >>> raise StorageError(
        ...     message="Failed to update event_crf row",
        ...     operation="save_form_instance",
        ...     cause=original_exception,
        ... )
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        operation: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        """Initialize storage error.

        Args:
            message: Error message
            context: Error context
            operation: Store operation that failed
            cause: Underlying driver exception
        """
        context = context or {}
        if operation:
            context["operation"] = operation
        if cause:
            context["cause"] = str(cause)
            context["cause_type"] = type(cause).__name__
        super().__init__(message, context=context)
        self.cause = cause


class AuditError(StorageError):
    """Audit sink failed to persist a record; the operation is rolled back."""


class LockTimeoutError(DataException):
    """Per-key lock could not be acquired in time."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        lock_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        context = context or {}
        if lock_key:
            context["lock_key"] = lock_key
        if timeout_seconds is not None:
            context["timeout_seconds"] = timeout_seconds
        super().__init__(message, context=context)
        self.lock_key = lock_key


# ==============================================================================
# Utilities
# ==============================================================================

def format_exception_chain(exc: Exception) -> str:
    """Format exception chain for logging/display.

    Args:
        exc: Exception to format

    Returns:
        Formatted string with full exception chain
    """
    lines = []
    current = exc

    while current is not None:
        if isinstance(current, ClinicalDataException):
            lines.append(str(current))
            lines.append(f"  Context: {current.context}")
        else:
            lines.append(f"{type(current).__name__}: {current}")

        current = getattr(current, "__cause__", None)

    return "\n".join(lines)


def is_retriable(exc: Exception) -> bool:
    """Check if exception is retriable.

    Lock timeouts and transient storage failures may be retried by the
    caller; workflow refusals never succeed on retry without a state change.

    Args:
        exc: Exception to check

    Returns:
        True if operation should be retried
    """
    if isinstance(exc, AuditError):
        return False
    if isinstance(exc, (LockTimeoutError, StorageError)):
        return True
    return False


__all__ = [
    "ClinicalDataException",
    "DataEntryException",
    "NotFoundError",
    "InvalidStateError",
    "ValidationError",
    "AuthorizationDenied",
    "NotRequired",
    "AlreadyComplete",
    "SameEntrant",
    "PreconditionFailed",
    "DataException",
    "StorageError",
    "AuditError",
    "LockTimeoutError",
    "format_exception_chain",
    "is_retriable",
]
