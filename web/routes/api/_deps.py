"""Shared dependencies for API route modules."""
import time

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import config
from core.validators import validate_entity, validate_resource_id
from core.exceptions import ValidationError
from core.observability import get_logger

# Shared limiter instance
limiter = Limiter(key_func=get_remote_address)

REPORT_RATE_LIMIT = config.web.report_rate_limit
DEFAULT_RATE_LIMIT = config.web.default_rate_limit

# Track startup time for uptime calculation
START_TIME = time.time()

__all__ = [
    "limiter",
    "get_logger",
    "REPORT_RATE_LIMIT",
    "DEFAULT_RATE_LIMIT",
    "START_TIME",
    "ValidationError",
    "validate_entity",
    "validate_resource_id",
]
