"""
Watermark Pipeline Backend — Custom Exception Hierarchy
=========================================================

What:  Application-specific exceptions for the watermark task pipeline.
How:   Each exception class carries a message and an optional context dict.
       Global exception handlers (registered in main.py) map them to HTTP
       status codes and structured JSON error bodies.
Who:   Raised by services and middleware; caught by global handlers.

Exception Hierarchy:
    WatermarkPipelineError (base)
    ├── ValidationError            → 400 Bad Request
    │   └── UnsupportedFileTypeError → 400 Bad Request
    ├── NotFoundError              → 404 Not Found
    ├── TaskStateError             → 409 Conflict
    ├── SigningError               → 500 (bad key material, never retried)
    ├── RemoteServiceError         → 502 Bad Gateway
    ├── CircuitBreakerOpenError    → 503 Service Unavailable
    ├── BackgroundProcessingError  → never raised to callers; recorded on the task
    ├── FileStorageError           → 500 Internal Server Error
    ├── DatabaseError              → 500 Internal Server Error
    └── RateLimitExceededError     → 429 Too Many Requests

"No provenance found" is not an error: the resolver returns a zero-confidence
result instead.
"""

from typing import Any, Dict, Optional


class WatermarkPipelineError(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged, returned only where handlers choose to)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(WatermarkPipelineError):
    """
    Raised when client input fails validation.

    When:    Missing file, file too large, unknown sensitivity, invalid file URL.
    HTTP:    400 Bad Request
    """

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class UnsupportedFileTypeError(ValidationError):
    """
    Raised when a file type has no embedding rules or is not covered by the
    selected policy. Policy adaptation never falls back silently.
    """

    def __init__(
        self,
        file_type: str,
        supported: Optional[list] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["file_type"] = file_type
        if supported is not None:
            ctx["supported"] = sorted(supported)
        super().__init__(
            message=f"File type '{file_type}' is not supported",
            field="file_type",
            context=ctx,
        )
        self.file_type = file_type


class NotFoundError(WatermarkPipelineError):
    """
    Raised when a requested resource does not exist.

    When:    Unknown task id, unknown policy id, file missing from storage.
    HTTP:    404 Not Found
    """

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class TaskStateError(WatermarkPipelineError):
    """
    Raised when an operation requires a task state the record is not in,
    e.g. cancelling a completed task or retrying one that has not failed.

    HTTP:    409 Conflict
    """

    def __init__(
        self,
        task_id: str,
        status: str,
        message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx.update({"task_id": task_id, "status": status})
        super().__init__(
            message=message or f"Task '{task_id}' is in state '{status}'",
            context=ctx,
        )
        self.task_id = task_id
        self.status = status


class SigningError(WatermarkPipelineError):
    """
    Raised when a request cannot be signed (empty secret or access key).

    Fatal: retrying cannot fix missing key material.
    HTTP:    500 Internal Server Error
    """

    def __init__(
        self,
        message: str = "Request signing failed: secret key is not configured",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class RemoteServiceError(WatermarkPipelineError):
    """
    Raised when the remote watermark service answers with a non-2xx status,
    a malformed creation response, or cannot be reached after retries.

    Before acceptance this surfaces as a task-creation failure and no task is
    created. Inside the worker it becomes the failed record's error message.

    Attributes:
        status_code: Remote HTTP status (None for transport failures)
        detail:      Best-effort parsed response body
    HTTP:    502 Bad Gateway
    """

    def __init__(
        self,
        message: str = "Watermark service request failed",
        status_code: Optional[int] = None,
        detail: Any = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if status_code is not None:
            ctx["status_code"] = status_code
        if detail is not None:
            ctx["detail"] = detail
        super().__init__(message=message, context=ctx)
        self.status_code = status_code
        self.detail = detail


class CircuitBreakerOpenError(WatermarkPipelineError):
    """
    Raised when the circuit breaker guarding the remote service is OPEN.

    How circuit breaker works:
        CLOSED (normal) → failures increment counter
        → After N failures → OPEN (reject all calls for M seconds)
        → After M seconds → HALF-OPEN (allow one test call)
        → If test succeeds → CLOSED
        → If test fails → OPEN again
    HTTP:    503 Service Unavailable
    """

    def __init__(
        self,
        recovery_time: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Watermark service is temporarily unavailable due to repeated failures. "
            f"Calls resume in approximately {recovery_time} seconds."
        )
        ctx = context or {}
        ctx["recovery_time"] = recovery_time
        super().__init__(message=message, context=ctx)
        self.recovery_time = recovery_time


class BackgroundProcessingError(WatermarkPipelineError):
    """
    Raised inside the background worker after a task was accepted.

    Never propagates to an HTTP caller: the worker converts it into the
    task record's `error_message` and a terminal `failed` status.

    Attributes:
        reason: Machine-readable failure reason stored on the record
                (remote_failed, error, timeout, cancelled)
    """

    def __init__(
        self,
        message: str = "Background processing failed",
        reason: str = "error",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)
        self.reason = reason


class FileStorageError(WatermarkPipelineError):
    """
    Raised when file system operations or file downloads fail.

    HTTP:    500 Internal Server Error
    """

    def __init__(
        self,
        message: str = "File storage operation failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class DatabaseError(WatermarkPipelineError):
    """
    Raised when database operations fail unexpectedly.

    The message returned to the client is always generic; details are logged.
    HTTP:    500 Internal Server Error
    """

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class RateLimitExceededError(WatermarkPipelineError):
    """
    Raised when a client exceeds the per-IP request rate limit.

    HTTP:    429 Too Many Requests
    """

    def __init__(
        self,
        retry_after: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Rate limit exceeded. Please wait {retry_after} seconds before making more requests."
        )
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after
