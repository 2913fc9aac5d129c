"""Retry executor for report workflow phases.

Runs one phase (request, status check, download) up to ``max_retries``
times, persisting the retry count and an activity entry for every
attempt, classifying failures as retryable or not, and escalating when
attempts run out.

Two channels are kept apart:

- Operations signal *failure* by raising. The executor decides whether
  to retry, back off, or give up.
- Operations signal "stop, but this is not an error" by returning an
  ``OperationResult`` with ``no_retry_needed=True`` (for example a report
  that upstream marked FATAL). The executor treats it as a normal return.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from reports.lib.backoff import BackoffPolicy, cap_wait
from reports.lib.collaborators import NotifyFailure, RetryStore
from reports.lib.constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_WAIT_BASE_SECONDS,
    DEFAULT_RETRY_WAIT_MAX_SECONDS,
    NON_RETRYABLE_STATUS_CODES,
    RETRYABLE_STATUS_CODES,
)
from reports.lib.errors import (
    CircuitBreakerOpen,
    ConfigurationError,
    MissingCredentialsError,
    PersistenceError,
    RateLimitExceeded,
    ReportStillProcessing,
    UpstreamApiError,
)
from reports.lib.models import ActivityLogEntry, ActivityStatus, ProcessPhase, ReportState, TaskKey

logger = logging.getLogger(__name__)

__all__ = [
    "AttemptContext",
    "OperationResult",
    "RetryExecutor",
    "RetryResult",
    "RetrySpec",
    "is_retryable",
]

NON_RETRYABLE_PATTERNS = (
    "unauthorized",
    "forbidden",
    "invalid token",
    "access denied",
    "access_denied",
    "authentication",
    "invalid_grant",
    "invalid_client",
    "not found",
    "bad request",
    "invalid request",
    "validation",
    "unprocessable",
)

RETRYABLE_PATTERNS = (
    "timeout",
    "timed out",
    "network",
    "connection",
    "econnreset",
    "econnrefused",
    "socket hang up",
    "rate limit",
    "too many requests",
    "throttl",
    "temporarily unavailable",
    "service unavailable",
    "internal server error",
    "server error",
    "bad gateway",
    "gateway timeout",
    "still in",
    "still processing",
)

_ALWAYS_RETRYABLE = (
    ReportStillProcessing,
    RateLimitExceeded,
    CircuitBreakerOpen,
    httpx.TransportError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
)

_NEVER_RETRYABLE = (MissingCredentialsError, ConfigurationError, PersistenceError)


def _status_code(error: Any) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def _message(error: Any) -> str:
    message = getattr(error, "message", None)
    if not isinstance(message, str) or not message:
        message = str(error)
    return message.lower()


def is_retryable(error: Any) -> bool:
    """Classify a failure as retryable (True) or permanent (False).

    HTTP status wins over message text; unrecognized errors are retryable.
    """
    status = _status_code(error)
    if status in NON_RETRYABLE_STATUS_CODES:
        return False
    if status in RETRYABLE_STATUS_CODES:
        return True

    if isinstance(error, _NEVER_RETRYABLE):
        return False
    if isinstance(error, _ALWAYS_RETRYABLE):
        return True

    message = _message(error)
    if any(pattern in message for pattern in NON_RETRYABLE_PATTERNS):
        return False
    if any(pattern in message for pattern in RETRYABLE_PATTERNS):
        return True
    return True


@dataclass
class AttemptContext:
    """Metadata handed to an operation on each attempt."""

    key: TaskKey
    attempt: int
    max_retries: int
    retry_count: int
    started_at: float


@dataclass
class OperationResult:
    """What a successful (non-raising) operation returns."""

    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    report_id: Optional[str] = None
    already_logged: bool = False
    no_retry_needed: bool = False


Operation = Callable[[AttemptContext], Awaitable[OperationResult]]


@dataclass
class RetrySpec:
    """One phase run through the executor.

    ``phase`` scopes the persisted retry count, so each phase of a task gets
    its own ``max_retries`` budget. Without it the count covers the whole key.
    """

    key: TaskKey
    action: str
    operation: Operation
    max_retries: int = DEFAULT_MAX_RETRIES
    skip_if_max_retries_reached: bool = True
    report_id: Optional[str] = None
    notify_failure: Optional[NotifyFailure] = None
    phase: Optional[ProcessPhase] = None


@dataclass
class RetryResult:
    """Outcome of ``RetryExecutor.execute_with_retry``."""

    success: bool
    attempt: int = 0
    result: Optional[OperationResult] = None
    skipped: bool = False
    final_failure: bool = False
    non_retryable: bool = False
    error: Optional[BaseException] = None
    retry_count: int = 0

    @property
    def no_retry_needed(self) -> bool:
        return bool(self.result and self.result.no_retry_needed)

    @property
    def data(self) -> Dict[str, Any]:
        return self.result.data if self.result else {}


class RetryExecutor:
    """Attempt an operation N times, persist progress, escalate on exhaustion.

    Example:
        executor = RetryExecutor(store)
        result = await executor.execute_with_retry(
            RetrySpec(key=task.key, action="Request Report", operation=do_request)
        )
        if result.skipped:
            ...  # retry budget already spent by an earlier run
    """

    def __init__(
        self,
        store: RetryStore,
        *,
        backoff: Optional[BackoffPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.store = store
        self.backoff = backoff or BackoffPolicy(
            base_delay=DEFAULT_RETRY_WAIT_BASE_SECONDS,
            max_delay=DEFAULT_RETRY_WAIT_MAX_SECONDS,
        )
        self._sleep = sleep
        self.clock = clock
        self._now = now

    def _delay_for(self, error: BaseException, attempt: int) -> float:
        if isinstance(error, ReportStillProcessing):
            return cap_wait(error.delay_seconds)
        if isinstance(error, CircuitBreakerOpen):
            remaining = error.details.get("retry_in_seconds")
            if remaining is not None:
                # the breaker only half-opens once its timeout has fully passed
                return cap_wait(float(remaining) + 1)
        retry_after = getattr(error, "retry_after", None)
        if isinstance(error, (RateLimitExceeded, UpstreamApiError)) and retry_after:
            return cap_wait(retry_after)
        return self.backoff.compute_delay(attempt)

    async def _log(
        self,
        spec: RetrySpec,
        status: ActivityStatus,
        message: str,
        *,
        retry_count: int,
        started_at: float,
        report_id: Optional[str] = None,
    ) -> None:
        await self.store.log_activity(
            ActivityLogEntry(
                key=spec.key,
                action=spec.action,
                status=status,
                message=message,
                external_report_id=report_id or spec.report_id,
                retry_count=retry_count,
                execution_time=round(self.clock() - started_at, 3),
                updated_at=self._now(),
            )
        )

    async def _notify(self, spec: RetrySpec, reason: str, retry_count: int) -> None:
        if spec.notify_failure is None:
            return
        try:
            await spec.notify_failure(spec.key, reason, retry_count, spec.report_id, False)
        except Exception:
            logger.exception("Failure notification for %s raised; continuing", spec.key)

    async def execute_with_retry(self, spec: RetrySpec) -> RetryResult:
        """Run ``spec.operation`` with retries.

        Persistence errors raised by the store or the operation propagate.
        """
        key = spec.key

        if spec.skip_if_max_retries_reached:
            current = await self.store.get_retry_count(key, phase=spec.phase)
            if current >= spec.max_retries:
                logger.info(
                    "Skipping %s for %s: retry count %d already at max %d",
                    spec.action,
                    key,
                    current,
                    spec.max_retries,
                )
                return RetryResult(success=False, skipped=True, retry_count=current)

        last_error: Optional[BaseException] = None
        retry_count = 0
        attempt = 0

        for attempt in range(1, spec.max_retries + 1):
            started_at = self.clock()
            retry_count = await self.store.get_retry_count(key, phase=spec.phase)

            await self._log(
                spec,
                ActivityStatus.RUNNING,
                f"{spec.action} attempt {attempt}/{spec.max_retries}",
                retry_count=retry_count,
                started_at=started_at,
            )

            context = AttemptContext(
                key=key,
                attempt=attempt,
                max_retries=spec.max_retries,
                retry_count=retry_count,
                started_at=started_at,
            )

            try:
                result = await spec.operation(context)
            except PersistenceError:
                raise
            except Exception as exc:
                last_error = exc

                if not is_retryable(exc):
                    logger.error(
                        "%s for %s failed with non-retryable error: %s",
                        spec.action,
                        key,
                        exc,
                    )
                    await self._log(
                        spec,
                        ActivityStatus.FAILED,
                        f"Non-retryable error: {exc}",
                        retry_count=retry_count,
                        started_at=started_at,
                    )
                    return RetryResult(
                        success=False,
                        attempt=attempt,
                        final_failure=True,
                        non_retryable=True,
                        error=exc,
                        retry_count=retry_count,
                    )

                retry_count = await self.store.increment_retry_count(key, phase=spec.phase)

                if attempt < spec.max_retries:
                    delay = self._delay_for(exc, attempt)
                    logger.warning(
                        "%s attempt %d/%d for %s failed: %s. Retrying in %.1fs...",
                        spec.action,
                        attempt,
                        spec.max_retries,
                        key,
                        exc,
                        delay,
                    )
                    await self._log(
                        spec,
                        ActivityStatus.RETRYING,
                        f"{exc} - will retry in {delay:.0f}s (attempt {attempt}/{spec.max_retries})",
                        retry_count=retry_count,
                        started_at=started_at,
                    )
                    await self._sleep(delay)
                    continue

                await self.store.update_terminal_status(
                    key,
                    ReportState.ERROR,
                    report_id=spec.report_id,
                    ended_at=self._now(),
                )
                logger.error(
                    "%s for %s failed after %d attempts. Last error: %s",
                    spec.action,
                    key,
                    attempt,
                    exc,
                )
                await self._log(
                    spec,
                    ActivityStatus.FAILED,
                    f"Max retries reached after {attempt} attempts: {exc}",
                    retry_count=retry_count,
                    started_at=started_at,
                )
                await self._notify(spec, str(exc), retry_count)
                return RetryResult(
                    success=False,
                    attempt=attempt,
                    final_failure=True,
                    error=exc,
                    retry_count=retry_count,
                )

            if not result.already_logged:
                await self._log(
                    spec,
                    ActivityStatus.SUCCESS,
                    result.message or f"{spec.action} succeeded",
                    retry_count=retry_count,
                    started_at=started_at,
                    report_id=result.report_id,
                )
            return RetryResult(
                success=True,
                attempt=attempt,
                result=result,
                retry_count=retry_count,
            )

        # Only reached when max_retries < 1
        return RetryResult(
            success=False,
            attempt=attempt,
            final_failure=True,
            error=last_error,
            retry_count=retry_count,
        )
