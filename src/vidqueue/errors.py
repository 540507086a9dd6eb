"""Error taxonomy shared by the queue, the security layer and the HTTP API.

Every error a caller can observe derives from ``ServiceError`` and carries the
HTTP status code, a short ``error`` title and a human readable ``message``.
The API layer renders them as ``{"success": false, "error": ..., "message": ...}``.

Task errors (``TransientTaskError`` / ``PermanentTaskError``) are raised by the
external processing task and drive the retry policy; they never reach HTTP
callers directly.
"""

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for caller-visible failures."""

    status_code = 500
    error = "Internal server error"

    def __init__(
        self,
        message: str,
        *,
        error: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if error is not None:
            self.error = error
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "error": self.error,
            "message": self.message,
        }
        body.update(self.details)
        return body


class ValidationError(ServiceError):
    """Malformed or disallowed input. Not retried."""

    status_code = 400
    error = "Validation failed"


class PayloadTooLarge(ServiceError):
    status_code = 413
    error = "Request too large"


class CapacityExceeded(ServiceError):
    """Queue is full; the caller should retry later."""

    status_code = 503
    error = "Service temporarily unavailable"


class StoreUnavailable(ServiceError):
    """The job store rejected a write needed to accept the request."""

    status_code = 503
    error = "Job store unavailable"


class AuthFailure(ServiceError):
    status_code = 401
    error = "Authentication failed"


class MissingCredential(AuthFailure):
    error = "API key required"


class InvalidKey(AuthFailure):
    error = "Invalid API key"


class PermissionDenied(AuthFailure):
    status_code = 403
    error = "Insufficient permissions"


class RetryableRejection(ServiceError):
    """Rejection that tells the caller how long to back off."""

    status_code = 429

    def __init__(self, message: str, retry_after: int, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = max(1, int(retry_after))
        self.details.setdefault("retryAfter", self.retry_after)


class SourceBlocked(RetryableRejection):
    """Source is locked out after repeated authentication failures."""

    error = "Too many authentication failures"


class RateLimited(RetryableRejection):
    error = "Rate limit exceeded"


class NotFound(ServiceError):
    status_code = 404
    error = "Job not found"


class InvalidState(ServiceError):
    """Operation not allowed in the job's current state."""

    status_code = 400
    error = "Invalid job state"


class TaskError(Exception):
    """Failure reported by the external processing task."""


class TransientTaskError(TaskError):
    """Network or timeout class failure; retried with backoff."""


class PermanentTaskError(TaskError):
    """Unrecoverable failure such as unavailable content; never retried."""


class JobCancelled(Exception):
    """Raised inside a running task at a progress checkpoint once the job
    was cancelled or finalized by the queue."""

    def __init__(self, job_id: str, reason: Optional[str] = None):
        super().__init__(f"Job {job_id} cancelled" + (f": {reason}" if reason else ""))
        self.job_id = job_id
        self.reason = reason
