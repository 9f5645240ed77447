"""
Centralized configuration for the Klaviyo performance dashboard.

This module provides a single source of truth for all configuration values.
Configuration is loaded from environment variables with sensible defaults.

Usage:
    from core.config import config

    api_key = config.api.key
    window = config.report.window_days

Components never read these globals directly when they are handed a config
object; the global instance is only the default used by the web layer.
"""

import os
from dataclasses import dataclass, field
from typing import Tuple

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


ENGAGEMENT_REVENUE_MODES = ("exclusive", "additive")
AMBIGUOUS_ATTRIBUTION_MODES = ("both", "campaign", "flow")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


@dataclass(frozen=True)
class APIConfig:
    """Klaviyo API configuration."""

    base_url: str = field(
        default_factory=lambda: os.getenv("KLAVIYO_BASE_URL", "https://a.klaviyo.com/api")
    )
    key: str = field(default_factory=lambda: os.getenv("KLAVIYO_API_KEY", ""))
    revision: str = "2024-10-15"
    request_timeout: float = 30.0
    page_size: int = 100

    # Reporting endpoints allow 1/s burst, 2/m steady
    report_call_delay: float = field(
        default_factory=lambda: _env_float("KLAVIYO_REPORT_CALL_DELAY", 31.0)
    )
    throttled_endpoints: Tuple[str, ...] = (
        "metric-aggregates",
        "campaign-values-reports",
        "flow-values-reports",
    )

    def is_throttled(self, endpoint: str) -> bool:
        """Check whether an endpoint shares the per-minute report quota."""
        name = endpoint.strip("/").split("/")[0]
        return name in self.throttled_endpoints


@dataclass(frozen=True)
class ReportConfig:
    """Attribution report configuration."""

    window_days: int = 30
    timeframe_label: str = "Last 30 days"

    # Metric names as configured in the account
    conversion_metric: str = "Placed Order"
    conversion_metric_aliases: Tuple[str, ...] = ("placed-order",)
    opened_metric: str = "Opened Email"
    clicked_metric: str = "Clicked Email"
    received_metric: str = "Received Email"

    # Upstream requires a channel filter on the campaigns list
    primary_channel: str = "email"
    secondary_channels: Tuple[str, ...] = ("sms",)

    engagement_revenue_mode: str = field(
        default_factory=lambda: os.getenv("ENGAGEMENT_REVENUE_MODE", "exclusive").lower()
    )
    ambiguous_attribution: str = field(
        default_factory=lambda: os.getenv("AMBIGUOUS_ATTRIBUTION", "campaign").lower()
    )

    @property
    def channels(self) -> Tuple[str, ...]:
        return (self.primary_channel,) + tuple(self.secondary_channels)


@dataclass(frozen=True)
class WebConfig:
    """Web dashboard configuration."""

    host: str = field(default_factory=lambda: os.getenv("WEB_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.getenv("WEB_PORT", "8080")))
    cors_origin: str = field(default_factory=lambda: os.getenv("FRONTEND_URL", "*"))

    # Inbound rate limiting; each report burns several upstream report calls
    report_rate_limit: str = "6/minute"
    default_rate_limit: str = "60/minute"

    # Seconds; reports are expected to take minutes
    request_timeout: float = 30.0
    report_timeout: float = 900.0


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    version: str = "1.0.0"
    api: APIConfig = field(default_factory=APIConfig)
    report: ReportConfig = field(default_factory=ReportConfig)
    web: WebConfig = field(default_factory=WebConfig)


# Global config instance
config = AppConfig()

VERSION = config.version


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def validate_config(app_config: AppConfig = None, require_api: bool = True) -> None:
    """
    Validate that all required configuration is present.

    Call this on application startup to fail fast with clear error messages
    instead of cryptic runtime failures.

    Args:
        app_config: Configuration to check (defaults to the global config)
        require_api: If True, validate the Klaviyo API key

    Raises:
        ConfigurationError: If required configuration is missing
    """
    cfg = app_config or config
    errors = []

    if require_api and not cfg.api.key:
        errors.append("KLAVIYO_API_KEY is required but not set")

    # Public keys cannot read metrics or reporting endpoints
    if cfg.api.key and cfg.api.key.startswith("pk_"):
        errors.append("KLAVIYO_API_KEY is a public key (pk_...); a private key (sk_...) is required")

    if cfg.api.report_call_delay < 0:
        errors.append("KLAVIYO_REPORT_CALL_DELAY must not be negative")

    if cfg.report.engagement_revenue_mode not in ENGAGEMENT_REVENUE_MODES:
        errors.append(
            f"ENGAGEMENT_REVENUE_MODE must be one of {', '.join(ENGAGEMENT_REVENUE_MODES)} "
            f"(got {cfg.report.engagement_revenue_mode!r})"
        )

    if cfg.report.ambiguous_attribution not in AMBIGUOUS_ATTRIBUTION_MODES:
        errors.append(
            f"AMBIGUOUS_ATTRIBUTION must be one of {', '.join(AMBIGUOUS_ATTRIBUTION_MODES)} "
            f"(got {cfg.report.ambiguous_attribution!r})"
        )

    if cfg.report.window_days <= 0:
        errors.append("window_days must be positive")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)
