"""Custom exceptions for Catalog Bridge.

This module defines the error taxonomy used across the migration pipeline.
Item-level errors (remote validation, malformed responses, transform
failures) are caught at the work-item boundary and counted; run-level
errors (listing failures, configuration problems) abort the run.
"""

from typing import Any


class CatalogMigrationError(Exception):
    """Base exception for all catalog migration errors."""

    pass


class APIError(CatalogMigrationError):
    """Base class for API-related errors."""

    def __init__(self, message: str, status_code: int | None = None, response: Any = None):
        """Initialize API error.

        Args:
            message: Error message
            status_code: HTTP status code
            response: API response body
        """
        self.message = message
        self.status_code = status_code
        self.response = response
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format error message with status code and response."""
        msg = self.message
        if self.status_code:
            msg = f"[{self.status_code}] {msg}"
        if self.response:
            msg = f"{msg}: {self.response}"
        return msg


class AuthenticationError(APIError):
    """Raised when authentication fails (401 Unauthorized)."""

    pass


class AuthorizationError(APIError):
    """Raised when authorization fails (403 Forbidden)."""

    pass


class NotFoundError(APIError):
    """Raised when a resource is not found (404 Not Found)."""

    pass


class RateLimitError(APIError):
    """Raised when the remote quota is exceeded (429 Too Many Requests).

    The credit budget only paces callers; a real quota breach still lands
    here as an ordinary remote failure.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response: Any = None,
        retry_after: float | None = None,
    ):
        """Initialize rate limit error.

        Args:
            message: Error message
            status_code: HTTP status code
            response: API response body
            retry_after: Seconds to wait before retrying (from Retry-After header)
        """
        super().__init__(message, status_code, response)
        self.retry_after = retry_after


class ServerError(APIError):
    """Raised when server returns 5xx error."""

    pass


class RemoteValidationError(APIError):
    """Raised when a GraphQL response carries ``errors`` or ``userErrors``.

    This is a failure even when the HTTP status is 200.
    """

    def __init__(
        self,
        message: str,
        errors: list[Any] | None = None,
        status_code: int | None = None,
        response: Any = None,
    ):
        self.errors = errors or []
        super().__init__(message, status_code, response)

    def format_message(self) -> str:
        msg = super().format_message()
        if self.errors and not self.response:
            msg = f"{msg}: {self.errors}"
        return msg


class MalformedResponseError(APIError):
    """Raised when an expected field is missing from a remote response."""

    pass


class TransientNetworkError(CatalogMigrationError):
    """Raised when network-related errors occur (timeouts, connection failures).

    The core never retries these; wrap calls with ``utils.retry`` to do so.
    """

    pass


class FetchError(CatalogMigrationError):
    """Raised when a paginated traversal fails on one of its pages."""

    def __init__(self, message: str, page_number: int | None = None):
        self.page_number = page_number
        super().__init__(message)


class BulkOperationError(APIError):
    """Raised when a bulk export job ends in FAILED."""

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        error_code: str | None = None,
        response: Any = None,
    ):
        self.job_id = job_id
        self.error_code = error_code
        super().__init__(message, response=response)


class JobTimeoutError(CatalogMigrationError):
    """Raised when a bulk job does not reach a terminal state within the attempt cap."""

    def __init__(self, message: str, job_id: str | None = None, attempts: int = 0):
        self.job_id = job_id
        self.attempts = attempts
        super().__init__(message)


class StateError(CatalogMigrationError):
    """Raised when ledger (state database) operations fail."""

    pass


class ConfigurationError(CatalogMigrationError):
    """Raised when configuration is invalid or missing."""

    pass


class MigrationError(CatalogMigrationError):
    """Raised when migration operations fail."""

    pass


class TransformationError(MigrationError):
    """Raised when a source record cannot be transformed into a destination payload."""

    pass


class RunAbortedError(MigrationError):
    """Raised when a run cannot start or continue (e.g. the id listing failed)."""

    pass
