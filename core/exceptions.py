"""
Custom exceptions for the sync pipeline with structured error context.

Every exception carries a context dictionary for debugging, a stable
``error_kind`` string surfaced to API callers and the HTTP status the
trigger surface answers with.

Exception Hierarchy:
    ETLException (base)
    ├── ExtractionError
    │   ├── RemoteQueryError
    │   │   ├── RemoteAuthenticationError
    │   │   └── ScriptEndpointError
    │   ├── RateLimitError (transient status, retried with backoff)
    │   ├── NetworkError (transport failure, retried with backoff)
    │   └── ExportNotFoundError
    ├── TransformationError
    │   └── MalformedRemoteDataError
    │       ├── InvalidManifestError
    │       ├── EmptyExportError
    │       └── MissingScopeError
    ├── LoadError
    │   ├── DatabaseError
    │   └── UpsertError
    ├── CheckpointError
    ├── AdminAuthorizationError
    ├── InvalidRequestError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class ETLException(Exception):
    """
    Base exception for all sync-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (job, remote status, counts, etc.)
        original_exception: The original exception that was caught (if any)
    """

    error_kind = "sync_failed"
    http_status = 500

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "error_kind": self.error_kind,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }

    def to_response(self) -> Dict[str, Any]:
        """Job failure payload returned to the trigger surface."""
        return {
            "ok": False,
            "error": self.error_kind,
            "message": self.message,
            "details": self.context,
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(ETLException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Rate limiting (HTTP 429) and provider concurrency limits
    - Service unavailable (HTTP 5xx)
    - Network timeouts
    """
    pass


class NonRetryableError(ETLException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Malformed remote data
    - Resource not found (HTTP 404)
    """
    pass


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(ETLException):
    """Base exception for data extraction failures."""
    pass


class RemoteQueryError(NonRetryableError, ExtractionError):
    """
    Non-transient failure from the remote ERP.

    Context should include:
        - tag: Caller-supplied label for the query
        - status: HTTP status code (if applicable)
        - code: Provider error code (if any)
        - body: Response body truncated to 600 characters
    """

    error_kind = "remote_error"
    http_status = 502


class RemoteAuthenticationError(RemoteQueryError):
    """Authentication failures (HTTP 401, 403) against the ERP."""

    error_kind = "remote_auth_failed"


class ScriptEndpointError(RemoteQueryError):
    """The file-streaming script answered with a non-2xx status or ok=false."""

    error_kind = "script_fetch_failed"


class RateLimitError(RetryableError, ExtractionError):
    """Rate limiting / concurrency signal that should be retried with backoff."""

    error_kind = "rate_limited"
    http_status = 503

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after is not None:
            self.context["retry_after"] = retry_after


class NetworkError(RetryableError, ExtractionError):
    """Transport failure (connect, read, timeout) talking to the ERP."""

    error_kind = "network_error"
    http_status = 503
    retry_after: Optional[float] = None


class ExportNotFoundError(NonRetryableError, ExtractionError):
    """
    The expected export (or its manifest) does not exist in the folder.

    Context should include:
        - name: File name that was looked up
        - folder_id: Folder that was searched
    """

    error_kind = "not_found"
    http_status = 404


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(ETLException):
    """Base exception for data transformation failures."""
    pass


class MalformedRemoteDataError(NonRetryableError, TransformationError):
    """
    Remote data did not have the expected shape. Aborts the job.

    Context should include:
        - expected: What was expected
        - received: What was actually found
    """

    error_kind = "malformed_remote_data"
    http_status = 422


class InvalidManifestError(MalformedRemoteDataError):
    """The manifest is not JSON or lacks the export entry."""

    error_kind = "invalid_manifest"


class EmptyExportError(MalformedRemoteDataError):
    """The export file produced no parseable rows."""

    error_kind = "empty_export"


class MissingScopeError(MalformedRemoteDataError):
    """The export carries no usable snapshot scope values."""

    error_kind = "missing_scope"


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(ETLException):
    """Base exception for data loading failures."""

    error_kind = "persistence_error"
    http_status = 500


class DatabaseError(LoadError):
    """
    Exception raised when database operations fail.

    Context should include:
        - operation: Type of database operation (SELECT, UPDATE, UPSERT)
        - table_name: Name of the table
    """
    pass


class UpsertError(LoadError):
    """
    Exception raised when an upsert batch fails.

    Context should include:
        - table_name: Target table
        - conflict_fields: Natural key columns
        - batch_index: Index of the failing batch
        - counts: Counts committed before the failure
    """
    pass


# ============================================================================
# Checkpoint Errors
# ============================================================================

class CheckpointError(ETLException):
    """
    Exception raised when the persisted sync cursor cannot be read or written.

    Context should include:
        - key: sync_state key
        - operation: read or write
    """
    pass


# ============================================================================
# Trigger surface
# ============================================================================

class AdminAuthorizationError(NonRetryableError):
    """Missing or wrong admin secret on a trigger request."""

    error_kind = "unauthorized"
    http_status = 401


class InvalidRequestError(NonRetryableError):
    """Trigger parameters that cannot describe a run."""

    error_kind = "invalid_request"
    http_status = 422
