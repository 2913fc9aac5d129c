"""Failure notifications for report tasks.

Only critical failures notify: upstream FATAL/CANCELLED, authentication
and permission errors, unknown statuses, server errors and exhausted
retries on permanent errors. Queued, in-progress and throttled reports
are normal retry traffic and never notify.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import httpx

from reports.lib.collaborators import RetryStore
from reports.lib.models import ActivityLogEntry, ActivityStatus, TaskKey

logger = logging.getLogger(__name__)

__all__ = [
    "FailureNotifier",
    "LoggingChannel",
    "NotificationChannel",
    "WebhookChannel",
    "error_type",
    "should_send_notification",
]

CRITICAL_PATTERNS = (
    "fatal",
    "cancelled",
    "forbidden",
    "unauthorized",
    "unknown",
    "invalid_grant",
    "access_denied",
    "server error",
    "internal server",
    "service unavailable",
    "bad gateway",
    "gateway timeout",
    "invalid request",
    "not found",
    "quota exceeded",
    "invalid_client",
    "invalid_scope",
    "access token",
    "credentials",
)

NON_CRITICAL_PATTERNS = (
    "in_queue",
    "in_progress",
    "still in_queue",
    "still in_progress",
    "throttl",
    "too many requests",
    "request limit",
)

# First match wins
_ERROR_TYPES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("fatal",), "FATAL"),
    (("cancelled",), "CANCELLED"),
    (("forbidden", "403"), "FORBIDDEN (403)"),
    (("unauthorized", "401"), "UNAUTHORIZED (401)"),
    (("unknown",), "UNKNOWN STATUS"),
    (("500", "internal server"), "SERVER ERROR (500)"),
    (("502", "bad gateway"), "BAD GATEWAY (502)"),
    (("503", "service unavailable"), "SERVICE UNAVAILABLE (503)"),
    (("504", "gateway timeout"), "GATEWAY TIMEOUT (504)"),
    (("quota",), "QUOTA EXCEEDED"),
    (("access token",), "ACCESS TOKEN ERROR"),
    (("invalid_grant",), "OAUTH ERROR"),
)


def should_send_notification(message: Optional[str], is_fatal: bool = False) -> bool:
    """Decide whether a failure is critical enough to notify about."""
    if is_fatal:
        return True
    lowered = (message or "").lower()
    if any(pattern in lowered for pattern in NON_CRITICAL_PATTERNS):
        return False
    return any(pattern in lowered for pattern in CRITICAL_PATTERNS)


def error_type(message: Optional[str]) -> str:
    """Human-readable category for a failure message."""
    lowered = (message or "").lower()
    for patterns, label in _ERROR_TYPES:
        if any(pattern in lowered for pattern in patterns):
            return label
    return "CRITICAL ERROR"


class NotificationChannel(Protocol):
    async def send(self, subject: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingChannel:
    """Delivers notifications as ERROR log records."""

    def __init__(self, logger_name: str = "reports.notifications"):
        self._logger = logging.getLogger(logger_name)

    async def send(self, subject: str, payload: Dict[str, Any]) -> None:
        self._logger.error("%s", subject, extra={"notification": payload})


class WebhookChannel:
    """POSTs each notification as JSON to a webhook URL.

    Failures are logged but do not raise.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def send(self, subject: str, payload: Dict[str, Any]) -> None:
        body = {"subject": subject, **payload}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url=self.url, json=body)
                response.raise_for_status()
            logger.debug("Webhook POST succeeded for %s", self.url)
        except httpx.HTTPError as exc:
            logger.warning("Webhook POST failed for %s: %s", self.url, exc)


class FailureNotifier:
    """Applies the notification policy, logs the notification, delivers it.

    Example:
        notifier = FailureNotifier(store, LoggingChannel(), account_id="seller-1")
        workflow = ReportWorkflow(..., notifier=notifier)
    """

    def __init__(
        self,
        store: RetryStore,
        channel: Optional[NotificationChannel] = None,
        *,
        account_id: Optional[str] = None,
        context: str = "",
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.channel = channel or LoggingChannel()
        self.account_id = account_id
        self.context = context
        self._now = now

    async def notify_failure(
        self,
        key: TaskKey,
        reason: str,
        retry_count: int,
        report_id: Optional[str],
        is_fatal: bool,
    ) -> None:
        try:
            await self._notify(key, reason, retry_count, report_id, is_fatal)
        except Exception:
            logger.exception("Failed to send failure notification for %s", key)

    async def _notify(
        self,
        key: TaskKey,
        reason: str,
        retry_count: int,
        report_id: Optional[str],
        is_fatal: bool,
    ) -> None:
        if not should_send_notification(reason, is_fatal):
            logger.info(
                "Non-critical error for %s - notification skipped: %s",
                key.storage_key,
                reason,
            )
            return

        prefix = f"{self.context} - " if self.context else ""
        kind = "FATAL" if is_fatal else "Critical"
        explanation = (
            "Upstream returned a terminal status - no retries attempted"
            if is_fatal
            else f"Critical error after {retry_count} attempts"
        )
        range_info = f" for {key.date_range.label}" if key.date_range else ""

        await self.store.log_activity(
            ActivityLogEntry(
                key=key,
                action="Failure Notification",
                status=ActivityStatus.FAILED,
                message=(
                    f"NOTIFICATION: Report failed after {retry_count} attempts{range_info}. "
                    f"{explanation}. Error: {reason}"
                ),
                external_report_id=report_id,
                retry_count=retry_count,
                execution_time=0.0,
                updated_at=self._now(),
            )
        )

        subject = f"{prefix}{kind} Error [{key.period.value}]"
        if key.date_range:
            subject += f" ({key.date_range.label})"
        if self.account_id:
            subject += f" - {self.account_id}"

        payload = {
            "account_id": self.account_id,
            "run_id": key.run_id,
            "period": key.period.value,
            "date_range": key.date_range.label if key.date_range else None,
            "report_id": report_id,
            "retry_count": retry_count,
            "error_type": error_type(reason),
            "fatal": is_fatal,
            "error": reason,
            "time": self._now().isoformat(),
        }
        logger.error("Sending failure notification - %s", subject)
        await self.channel.send(subject, payload)
