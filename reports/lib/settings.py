"""Environment-based settings for report orchestration.

All fields can be set with ``REPORTS_``-prefixed environment variables or
in a ``.env`` file, e.g. ``REPORTS_MAX_RETRIES=5``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from reports.lib import constants as c
from reports.lib.backoff import BackoffPolicy
from reports.lib.dates import resolve_timezone
from reports.lib.rate_limiter import RateLimiter
from reports.lib.resilience import CircuitBreaker

logger = logging.getLogger(__name__)

__all__ = ["ReportSettings", "load_env_file"]


def load_env_file(
    path: Optional[Union[str, Path]] = None,
    *,
    override: bool = False,
) -> bool:
    """Load environment variables from a .env file.

    Args:
        path: Path to the .env file. If None, python-dotenv searches the
              current directory and its parents.
        override: If True, override existing environment variables.

    Returns:
        True if a .env file was found and loaded, False otherwise.
    """
    loaded = load_dotenv(dotenv_path=path, override=override)
    if path and not loaded:
        logger.warning("No variables loaded from env file %s", path)
    return loaded


class ReportSettings(BaseSettings):
    """Retry, rate limit, scheduling and API settings.

    Example:
        >>> # REPORTS_MAX_ENTITIES_PER_BATCH=10
        >>> settings = ReportSettings()
        >>> settings.max_entities_per_batch
        10
    """

    # Retries and waits
    max_retries: int = Field(default=c.DEFAULT_MAX_RETRIES, ge=1, le=20)
    initial_delay_seconds: float = Field(default=c.DEFAULT_INITIAL_DELAY_SECONDS, ge=0)
    request_delay_seconds: float = Field(default=c.DEFAULT_REQUEST_DELAY_SECONDS, ge=0)
    retry_base_delay_seconds: float = Field(default=c.DEFAULT_RETRY_BASE_DELAY_SECONDS, ge=0)
    retry_max_delay_seconds: float = Field(
        default=c.DEFAULT_RETRY_MAX_DELAY_SECONDS, ge=0, le=c.MAX_WAIT_SECONDS
    )
    retry_wait_base_seconds: float = Field(default=c.DEFAULT_RETRY_WAIT_BASE_SECONDS, ge=0)
    retry_wait_max_seconds: float = Field(
        default=c.DEFAULT_RETRY_WAIT_MAX_SECONDS, ge=0, le=c.MAX_WAIT_SECONDS
    )

    # Rate limiter and circuit breaker
    rate_limit_max_requests: int = Field(default=c.DEFAULT_RATE_LIMIT_MAX_REQUESTS, ge=1)
    rate_limit_window_ms: int = Field(default=c.DEFAULT_RATE_LIMIT_WINDOW_MS, ge=1)
    circuit_breaker_threshold: int = Field(default=c.DEFAULT_CIRCUIT_BREAKER_THRESHOLD, ge=1)
    circuit_breaker_timeout_ms: int = Field(default=c.DEFAULT_CIRCUIT_BREAKER_TIMEOUT_MS, ge=0)
    circuit_breaker_half_open_max_calls: int = Field(default=c.DEFAULT_HALF_OPEN_MAX_CALLS, ge=1)

    # Scheduling
    max_entities_per_batch: int = Field(default=c.DEFAULT_MAX_ENTITIES_PER_BATCH, ge=1)
    max_staleness_days_ago: int = Field(default=c.DEFAULT_MAX_STALENESS_DAYS_AGO, ge=0)
    max_asin_string_chars: int = Field(default=c.DEFAULT_MAX_ASIN_STRING_CHARS, ge=1)
    timezone: str = Field(default=c.DEFAULT_TIMEZONE)
    weeks_to_pull: int = Field(default=c.DEFAULT_WEEKS_TO_PULL, ge=0)
    months_to_pull: int = Field(default=c.DEFAULT_MONTHS_TO_PULL, ge=0)
    quarters_to_pull: int = Field(default=c.DEFAULT_QUARTERS_TO_PULL, ge=0)
    auto_reset_periods: bool = Field(
        default=True, description="Clear period statuses from a previous window at the start of each run"
    )

    # Upstream API
    api_base_url: str = Field(default=c.DEFAULT_API_BASE_URL)
    api_timeout_seconds: float = Field(default=c.DEFAULT_API_TIMEOUT_SECONDS, gt=0)
    report_type_name: str = Field(default=c.DEFAULT_REPORT_TYPE_NAME)

    # Local paths and notifications
    storage_dir: str = Field(default=c.DEFAULT_STORAGE_DIR, description="Downloaded payloads")
    state_dir: str = Field(default=c.DEFAULT_STATE_DIR, description="Persisted retry/task state")
    notify_webhook_url: Optional[str] = Field(default=None, description="Failure webhook URL")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="console", description="Log format: 'json' or 'console'")
    log_file: Optional[str] = Field(default=None, description="Optional log file path")

    model_config = SettingsConfigDict(
        env_prefix="REPORTS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Validate timezone is a known IANA name."""
        resolve_timezone(v)
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        valid_formats = ["json", "console", "text"]
        if v.lower() not in valid_formats:
            raise ValueError(f"log_format must be one of: {valid_formats}")
        return v.lower()

    @model_validator(mode="after")
    def validate_delay_bounds(self) -> "ReportSettings":
        """Base delays may not exceed their maximums."""
        if self.retry_base_delay_seconds > self.retry_max_delay_seconds:
            raise ValueError("retry_base_delay_seconds must be <= retry_max_delay_seconds")
        if self.retry_wait_base_seconds > self.retry_wait_max_seconds:
            raise ValueError("retry_wait_base_seconds must be <= retry_wait_max_seconds")
        return self

    def backoff_policy(self) -> BackoffPolicy:
        """Backoff used between status checks of a report still being generated."""
        return BackoffPolicy(
            base_delay=self.retry_base_delay_seconds,
            max_delay=self.retry_max_delay_seconds,
        )

    def retry_wait_policy(self) -> BackoffPolicy:
        """Backoff used by the retry executor after a failed attempt."""
        return BackoffPolicy(
            base_delay=self.retry_wait_base_seconds,
            max_delay=self.retry_wait_max_seconds,
        )

    def build_rate_limiter(self) -> RateLimiter:
        return RateLimiter(
            max_requests=self.rate_limit_max_requests,
            window_seconds=self.rate_limit_window_ms / 1000.0,
        )

    def build_circuit_breaker(self) -> CircuitBreaker:
        return CircuitBreaker(
            failure_threshold=self.circuit_breaker_threshold,
            timeout_seconds=self.circuit_breaker_timeout_ms / 1000.0,
            half_open_max_calls=self.circuit_breaker_half_open_max_calls,
        )
