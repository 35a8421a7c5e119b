"""Domain-specific exceptions for service and orchestration layers.

`main.py` registers handlers that translate these to HTTP responses.
"""

from typing import Dict, Optional


class NotFoundError(Exception):
    """Job, promotion, service, customer or vehicle does not exist (maps to HTTP 404)."""


class InvalidAmountError(Exception):
    """Payment amount is zero or negative (maps to HTTP 400)."""


class InvalidTransitionError(Exception):
    """Requested status change is not allowed by the job state machine (maps to HTTP 409)."""


class ValidationFailedError(Exception):
    """Request is well-formed but semantically invalid (maps to HTTP 422)."""


class PermissionDeniedError(Exception):
    """Actor role is not allowed to perform the operation (maps to HTTP 403)."""


class RateLimitError(Exception):
    """Rate limit exceeded (maps to HTTP 429)."""

    def __init__(self, detail: str, retry_after: int = 60, headers: Optional[Dict[str, str]] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.retry_after = retry_after
        self.headers = headers or {"Retry-After": str(retry_after)}


class AnalysisFailedError(Exception):
    """External image analysis returned an error or an unusable response."""


class RetryExhaustedError(Exception):
    """A retried call failed on every attempt of its budget."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class AggregateSyncError(Exception):
    """Stored aggregate entries do not match the job snapshot they were derived from."""


class ExternalServiceError(Exception):
    """Upstream provider or storage error (maps to HTTP 503)."""
