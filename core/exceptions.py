"""
Custom exception hierarchy for Klaviyo API operations and report building.

Exception Hierarchy:
    KlaviyoError (base)
    ├── KlaviyoConnectionError  - Network/timeout issues
    ├── KlaviyoAPIError         - API returned error response
    └── KlaviyoDataError        - Invalid response structure

    ReportError                 - A mandatory report step failed
    ValidationError             - Input validation failed
"""
from typing import Any


class KlaviyoError(Exception):
    """Base exception for all Klaviyo-related errors."""

    def __init__(self, message: str, details: str = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message

    @property
    def payload(self) -> Any:
        """Error body to hand back to the caller."""
        return self.details or self.message


class KlaviyoConnectionError(KlaviyoError):
    """
    Network-related errors (timeout, connection refused, etc.).

    Never retried; the failed call's contribution is dropped or the
    report fails, depending on whether the call was optional.
    """


class KlaviyoAPIError(KlaviyoError):
    """
    API returned a non-2xx response.

    `upstream` holds the upstream error body unmodified: the parsed
    `errors` array when the body is JSON:API, the raw text otherwise.
    A 429 lands here like any other status.
    """

    def __init__(
        self,
        message: str,
        details: str = None,
        status_code: int = None,
        upstream: Any = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code
        self.upstream = upstream

    @property
    def payload(self) -> Any:
        if self.upstream is not None:
            return self.upstream
        return super().payload

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429


class KlaviyoDataError(KlaviyoError):
    """
    API response has unexpected structure.

    This indicates a contract violation - the API returned
    data in a format we don't understand.
    """

    def __init__(self, message: str, details: str = None, expected: str = None, got: str = None):
        super().__init__(message, details)
        self.expected = expected
        self.got = got


class ReportError(Exception):
    """
    A mandatory step of the report pipeline failed.

    Wraps the upstream error so the web layer can return the
    report-level error envelope with the raw upstream payload.
    """

    def __init__(self, stage: str, cause: Exception):
        self.stage = stage
        self.cause = cause
        super().__init__(f"Report stage '{stage}' failed: {cause}")

    @property
    def payload(self) -> Any:
        if isinstance(self.cause, KlaviyoError):
            return self.cause.payload
        return str(self.cause)

    @property
    def status_code(self) -> int:
        """HTTP status for the error envelope."""
        if isinstance(self.cause, KlaviyoAPIError) and self.cause.status_code in (401, 403):
            return self.cause.status_code
        return 502


class ValidationError(Exception):
    """
    Input validation failed.

    Used for validating user input before processing.
    """

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        if self.value is not None:
            return f"{self.field}: {self.message} (got: {self.value!r})"
        return f"{self.field}: {self.message}"
