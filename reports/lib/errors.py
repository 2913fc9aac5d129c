"""Structured exception hierarchy for report orchestration.

Provides specific exception types for the failure modes the retry
executor has to tell apart, with rich context for debugging.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    "ReportError",
    "UpstreamApiError",
    "ReportStillProcessing",
    "RateLimitExceeded",
    "CircuitBreakerOpen",
    "PersistenceError",
    "ConfigurationError",
    "MissingCredentialsError",
]


class ReportError(Exception):
    """Base exception for all report orchestration errors.

    Provides structured error information for debugging.
    """

    def __init__(
        self,
        message: str,
        *,
        account: Optional[str] = None,
        period: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.message = message
        self.account = account
        self.period = period
        self.details = details or {}
        self.suggestion = suggestion

        parts = [message]

        if account or period:
            context = f"{account or '?'}.{period or '?'}"
            parts.insert(0, f"[{context}]")

        if details:
            detail_lines = [f"  {k}: {v}" for k, v in details.items()]
            parts.append("\nDetails:")
            parts.extend(detail_lines)

        if suggestion:
            parts.append(f"\nSuggestion: {suggestion}")

        super().__init__("\n".join(parts) if len(parts) > 1 else message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "account": self.account,
            "period": self.period,
            "details": self.details,
            "suggestion": self.suggestion,
        }


class UpstreamApiError(ReportError):
    """The upstream report API answered with an error or could not be reached."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        operation: Optional[str] = None,
        retry_after: Optional[float] = None,
        cause: Optional[Exception] = None,
        **kwargs: Any,
    ) -> None:
        self.status_code = status_code
        self.operation = operation
        self.retry_after = retry_after
        self.cause = cause

        details = kwargs.pop("details", {})
        if status_code is not None:
            details["status_code"] = status_code
        if operation:
            details["operation"] = operation
        if retry_after is not None:
            details["retry_after"] = retry_after
        if cause:
            details["cause"] = str(cause)
            details["cause_type"] = type(cause).__name__

        super().__init__(message, details=details, **kwargs)


class ReportStillProcessing(ReportError):
    """A report is queued or being generated; check again after ``delay_seconds``.

    Raised by the status check so that polling is expressed as a retryable
    outcome. The retry executor waits ``delay_seconds`` instead of its own
    backoff before the next attempt.
    """

    def __init__(self, status: str, delay_seconds: float, **kwargs: Any) -> None:
        self.status = status
        self.delay_seconds = delay_seconds
        readable = status.lower().replace("_", " ")
        super().__init__(
            f"Report still {readable} - retrying in {delay_seconds:.0f}s",
            **kwargs,
        )


class RateLimitExceeded(ReportError):
    """Raised when an identity has used up its request window."""

    def __init__(self, identity: str, retry_after: float, **kwargs: Any) -> None:
        self.identity = identity
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for {identity}. Retry after {retry_after:.1f}s",
            **kwargs,
        )


class CircuitBreakerOpen(ReportError):
    """Raised when the circuit breaker is failing fast."""

    def __init__(self, message: str = "Circuit breaker is OPEN - failing fast", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class PersistenceError(ReportError):
    """The task's own status or log store failed.

    Never retried by the executor; the run for the affected entity aborts.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        cause: Optional[Exception] = None,
        **kwargs: Any,
    ) -> None:
        self.operation = operation
        self.cause = cause

        details = kwargs.pop("details", {})
        if operation:
            details["operation"] = operation
        if cause:
            details["cause"] = str(cause)
            details["cause_type"] = type(cause).__name__

        super().__init__(message, details=details, **kwargs)


class ConfigurationError(ReportError):
    """Error in settings or account configuration."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Any = None,
        **kwargs: Any,
    ) -> None:
        self.field = field
        self.value = value

        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(message, details=details, **kwargs)


class MissingCredentialsError(ReportError):
    """No access token is available for an account."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        suggestion = kwargs.pop("suggestion", None)
        if not suggestion:
            suggestion = "Check the account's access_token in the accounts file or environment."
        super().__init__(message, suggestion=suggestion, **kwargs)
