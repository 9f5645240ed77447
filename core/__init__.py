"""
Core library for the Klaviyo performance dashboard.

Framework-free logic used by the web/ package:
- exceptions: Custom exception hierarchy
- validators: Input validation functions
- pagination: Cursor pagination over `links.next`
- klaviyo: Async upstream client
- report: Attribution report pipeline
- config: Centralized configuration
"""

# Import in dependency order
from core.exceptions import (
    KlaviyoError,
    KlaviyoConnectionError,
    KlaviyoAPIError,
    KlaviyoDataError,
    ReportError,
    ValidationError,
)

from core.validators import (
    validate_entity,
    validate_resource_id,
)

from core.pagination import (
    CursorPaginator,
    extract_cursor,
)

from core.config import config

__all__ = [
    # Exceptions
    "KlaviyoError",
    "KlaviyoConnectionError",
    "KlaviyoAPIError",
    "KlaviyoDataError",
    "ReportError",
    "ValidationError",
    # Validators
    "validate_entity",
    "validate_resource_id",
    # Pagination
    "CursorPaginator",
    "extract_cursor",
    # Config
    "config",
]
