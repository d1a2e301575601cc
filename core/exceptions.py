"""
Custom exceptions with structured error context and HTTP status mapping.

Every exception carries a message, a context dictionary and (optionally)
the exception it wraps. Route handlers let these propagate; the handler
registered in ``api.main`` turns them into ``{success: false, error}``
responses using ``status_code``.

Exception Hierarchy:
    AppException (base)
    ├── FacebookApiError
    │   ├── RateLimitError
    │   │   └── AllAppsExhaustedError
    │   ├── InvalidTokenError
    │   └── NetworkError
    ├── AppRotationError
    ├── RequestQueuedError
    ├── ValidationError
    ├── ResourceNotFoundError
    ├── PermissionDeniedError
    ├── IntelligenceDisabledError
    ├── DatabaseError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class AppException(Exception):
    """
    Base exception for all application errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (ad account, app, etc.)
        original_exception: The original exception that was caught (if any)
        status_code: HTTP status returned when this reaches a route boundary
    """

    status_code: int = 500

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

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
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }

    def response_fields(self) -> Dict[str, Any]:
        """Extra fields merged into the JSON error envelope."""
        return {}


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(AppException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Temporary database connection issues
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(AppException):
    """Mixin for errors that should NOT trigger retry logic (bad input, bad token, 404)."""
    pass


# ============================================================================
# Facebook Graph API Errors
# ============================================================================

class FacebookApiError(AppException):
    """
    Error returned by the Graph API.

    Context should include:
        - path: Graph API path that failed
        - status_code: HTTP status code from Facebook
        - app_name: App whose token was used
    """

    status_code = 400

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        fb_code: Optional[int] = None,
        fb_subcode: Optional[int] = None,
        fb_type: Optional[str] = None
    ):
        super().__init__(message, context, original_exception)
        self.fb_code = fb_code
        self.fb_subcode = fb_subcode
        self.fb_type = fb_type

    def response_fields(self) -> Dict[str, Any]:
        return {
            "code": self.fb_code,
            "subcode": self.fb_subcode,
            "type": self.fb_type,
        }


class NetworkError(RetryableError, FacebookApiError):
    """Timeouts and connection failures that should be retried."""

    status_code = 502


class RateLimitError(RetryableError, FacebookApiError):
    """Rate limiting errors (HTTP 429, FB code 4 / 17 / 80004)."""

    status_code = 429

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after

    def response_fields(self) -> Dict[str, Any]:
        return {"retryAfter": self.retry_after}


class AllAppsExhaustedError(RateLimitError):
    """Every configured app has hit its hourly limit."""

    def __init__(
        self,
        message: str = "All Facebook apps have reached their rate limit. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[int] = 3600
    ):
        super().__init__(message, context, original_exception, retry_after=retry_after)


class InvalidTokenError(NonRetryableError, FacebookApiError):
    """Access token rejected by Facebook (HTTP 401 or FB code 190)."""

    status_code = 401

    def __init__(
        self,
        message: str = "Invalid or expired access token",
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        app_name: Optional[str] = None
    ):
        super().__init__(message, context, original_exception, fb_code=190)
        self.app_name = app_name
        if app_name:
            self.context["app_name"] = app_name

    def response_fields(self) -> Dict[str, Any]:
        return {"appName": self.app_name}


# ============================================================================
# Dispatch Errors
# ============================================================================

class AppRotationError(AppException):
    """Backup app rotation could not select or update an app."""

    status_code = 500


class RequestQueuedError(AppException):
    """Request was deferred to the request queue instead of being executed."""

    status_code = 202

    def __init__(
        self,
        message: str,
        queue_id: int,
        estimated_wait_minutes: int,
        process_after: Optional[datetime] = None,
        rate_limit_status: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, context)
        self.queue_id = queue_id
        self.estimated_wait_minutes = estimated_wait_minutes
        self.process_after = process_after
        self.rate_limit_status = rate_limit_status or {}

    def response_fields(self) -> Dict[str, Any]:
        # 202 is not a failure: the envelope reports success
        return {
            "success": True,
            "status": "queued",
            "message": self.message,
            "queue": {
                "id": self.queue_id,
                "estimatedWaitMinutes": self.estimated_wait_minutes,
                "processAfter": self.process_after.isoformat() if self.process_after else None,
            },
            "rateLimitStatus": self.rate_limit_status,
        }


# ============================================================================
# Request / Storage Errors
# ============================================================================

class ValidationError(NonRetryableError):
    """
    Invalid request payload or configuration.

    Context should include:
        - field_name: Name of the field that failed validation
    """

    status_code = 400


class ResourceNotFoundError(NonRetryableError):
    """Requested row or Graph object does not exist."""

    status_code = 404


class PermissionDeniedError(NonRetryableError):
    """Caller does not own the requested resource or lacks the role for it."""

    status_code = 403


class IntelligenceDisabledError(NonRetryableError):
    """Intelligence routes called while ENABLE_INTELLIGENCE is off."""

    status_code = 503

    def __init__(self, message: str = "Intelligence module is disabled"):
        super().__init__(message)


class DatabaseError(AppException):
    """
    Exception raised when database operations fail.

    Context should include:
        - operation: Type of database operation (INSERT, UPDATE, UPSERT)
        - table_name: Name of the table
    """

    status_code = 500
