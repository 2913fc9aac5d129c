"""Per-report state machine: request, status check, download and import.

Each phase runs inside the retry executor. A task moves through

    REQUESTED -> IN_QUEUE | IN_PROGRESS | PROCESSING -> READY -> DOWNLOADED -> IMPORTED

and stops in IMPORTED on success or in FATAL, CANCELLED or ERROR on
failure. Failure paths only update the terminal state and end time: an
external report id, once assigned, is kept so a later run can resume
checking the same report instead of requesting a new one.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, ContextManager, Dict, Optional, Sequence, TypeVar

from reports.lib.backoff import BackoffPolicy
from reports.lib.collaborators import (
    Notifier,
    Persistence,
    ReportApi,
    ReportImporter,
    ReportSpec,
    ReportStorage,
)
from reports.lib.constants import (
    DEFAULT_INITIAL_DELAY_SECONDS,
    DEFAULT_MAX_DOWNLOAD_ATTEMPTS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_REPORT_TYPE_NAME,
    DEFAULT_REQUEST_DELAY_SECONDS,
)
from reports.lib.errors import MissingCredentialsError, ReportStillProcessing
from reports.lib.logging import task_context
from reports.lib.models import (
    Account,
    ActivityLogEntry,
    ActivityStatus,
    DateRange,
    DownloadRecord,
    DownloadStatus,
    EntityPeriodStatus,
    PeriodKind,
    ProcessPhase,
    PullStatus,
    ReportState,
    ReportTask,
    TaskKey,
)
from reports.lib.rate_limiter import RateLimiter
from reports.lib.resilience import CircuitBreaker
from reports.lib.retry import (
    AttemptContext,
    OperationResult,
    RetryExecutor,
    RetryResult,
    RetrySpec,
)

logger = logging.getLogger(__name__)

__all__ = ["ReportWorkflow", "TaskOutcome"]

T = TypeVar("T")

PENDING_STATUSES = ("IN_QUEUE", "IN_PROGRESS", "PROCESSING")
TERMINAL_UPSTREAM_STATUSES = ("FATAL", "CANCELLED")


@dataclass
class TaskOutcome:
    """Where a task ended up after ``ReportWorkflow.run``."""

    task: ReportTask
    phase: ProcessPhase
    result: RetryResult

    @property
    def succeeded(self) -> bool:
        return self.task.state == ReportState.IMPORTED

    @property
    def skipped(self) -> bool:
        return self.result.skipped


class ReportWorkflow:
    """Drives one report task from creation to imported rows.

    The circuit breaker and rate limiter are shared by every workflow that
    talks to the same upstream API; pass the same instances in.
    """

    def __init__(
        self,
        api: ReportApi,
        store: Persistence,
        storage: ReportStorage,
        importer: ReportImporter,
        *,
        executor: RetryExecutor,
        breaker: CircuitBreaker,
        rate_limiter: RateLimiter,
        notifier: Optional[Notifier] = None,
        poll_backoff: Optional[BackoffPolicy] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        request_delay_seconds: float = DEFAULT_REQUEST_DELAY_SECONDS,
        initial_delay_seconds: float = DEFAULT_INITIAL_DELAY_SECONDS,
        report_type_name: str = DEFAULT_REPORT_TYPE_NAME,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.api = api
        self.store = store
        self.storage = storage
        self.importer = importer
        self.executor = executor
        self.breaker = breaker
        self.rate_limiter = rate_limiter
        self.notifier = notifier
        self.poll_backoff = poll_backoff or BackoffPolicy()
        self.max_retries = max_retries
        self.request_delay_seconds = request_delay_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.report_type_name = report_type_name
        self._sleep = sleep
        self._now = now

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def new_task(
        self,
        account: Account,
        run_id: str,
        period: PeriodKind,
        date_range: DateRange,
        entity_ids: Sequence[str],
        *,
        backfill: bool = False,
    ) -> ReportTask:
        now = self._now()
        task = ReportTask(
            task_id=uuid.uuid4().hex,
            run_id=run_id,
            account_id=account.account_id,
            period=period,
            date_range=date_range,
            entity_ids=list(entity_ids),
            backfill=backfill,
            created_at=now,
            updated_at=now,
        )
        await self.store.save_task(task)
        return task

    async def _call_upstream(self, account: Account, call: Callable[[], Awaitable[T]]) -> T:
        if not account.access_token:
            raise MissingCredentialsError(
                f"No access token available for account {account.account_id}",
                account=account.account_id,
            )
        self.rate_limiter.check_limit(account.seller_id)
        return await self.breaker.execute(call)

    async def _courtesy_delay(self, reason: str) -> None:
        if self.request_delay_seconds > 0:
            logger.debug("Waiting %.0fs: %s", self.request_delay_seconds, reason)
            await self._sleep(self.request_delay_seconds)

    async def _log(
        self,
        task: ReportTask,
        action: str,
        status: ActivityStatus,
        message: str,
        context: AttemptContext,
    ) -> None:
        await self.store.log_activity(
            ActivityLogEntry(
                key=task.key,
                action=action,
                status=status,
                message=message,
                external_report_id=task.external_report_id,
                retry_count=context.retry_count,
                execution_time=round(self.executor.clock() - context.started_at, 3),
                updated_at=self._now(),
            )
        )

    async def _notify(self, key: TaskKey, reason: str, retry_count: int, report_id: Optional[str], is_fatal: bool) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify_failure(key, reason, retry_count, report_id, is_fatal)
        except Exception:
            logger.exception("Notifier raised for %s; continuing", key)

    async def _save(self, task: ReportTask, retry_count: Optional[int] = None) -> None:
        if retry_count is not None:
            task.bump_retry_count(retry_count)
        task.updated_at = self._now()
        await self.store.save_task(task)

    async def _set_entity_status(self, task: ReportTask, status: EntityPeriodStatus) -> None:
        # Backfill pulls historical ranges; scheduling status tracks the latest period only
        if task.backfill:
            return
        await self.store.update_entity_status(task.account_id, task.entity_ids, task.period, status)

    async def _fail(self, task: ReportTask, state: ReportState, result: RetryResult) -> None:
        """Record a terminal failure for the task and its entities."""
        now = self._now()
        if not task.state.is_terminal:
            task.transition(state, now)
        await self._save(task, result.retry_count)
        await self.store.update_terminal_status(
            task.key, task.state, report_id=task.external_report_id, ended_at=now
        )
        await self._set_entity_status(
            task,
            EntityPeriodStatus(status=PullStatus.FAILED, start_time=task.created_at, end_time=now),
        )
        if result.non_retryable:
            await self._notify(
                task.key,
                f"Non-retryable error: {result.error}",
                result.retry_count,
                task.external_report_id,
                True,
            )

    def _context(self, task: ReportTask, phase: ProcessPhase) -> ContextManager[Dict[str, Any]]:
        return task_context(
            task_key=str(task.key),
            period=task.period.value,
            phase=phase.name.lower(),
            report_id=task.external_report_id,
        )

    def _spec(
        self,
        task: ReportTask,
        phase: ProcessPhase,
        action: str,
        operation: Callable[[AttemptContext], Awaitable[OperationResult]],
    ) -> RetrySpec:
        return RetrySpec(
            key=task.key,
            action=action,
            operation=operation,
            phase=phase,
            max_retries=self.max_retries,
            report_id=task.external_report_id,
            notify_failure=self._notify if self.notifier else None,
        )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def request(self, account: Account, task: ReportTask) -> RetryResult:
        """Create the upstream report and remember its id."""
        action = "Backfill - Request Report" if task.backfill else "Request Report"

        async def operation(context: AttemptContext) -> OperationResult:
            await self.store.set_process_phase(task.key, ProcessPhase.REQUEST)
            spec = ReportSpec(
                report_type=self.report_type_name,
                data_start_time=task.date_range.data_start_time(),
                data_end_time=task.date_range.data_end_time(),
                marketplace_ids=[account.marketplace_id],
                entity_filter=task.entity_filter,
                period=task.period,
            )
            report_id = await self._call_upstream(
                account, lambda: self.api.create_report(account, spec)
            )
            logger.info(
                "Report %s created for %s %s (%s), attempt %d",
                report_id,
                account.account_id,
                task.period.value,
                task.date_range.label,
                context.attempt,
            )

            task.external_report_id = report_id
            await self._save(task, context.retry_count)
            await self._set_entity_status(
                task,
                EntityPeriodStatus(status=PullStatus.IN_PROGRESS, start_time=self._now()),
            )
            await self._courtesy_delay("between report requests")

            return OperationResult(
                message=f"Report requested successfully. Report ID: {report_id}. Range: {task.date_range.label}",
                report_id=report_id,
                data={"report_id": report_id, "range": task.date_range.label},
            )

        with self._context(task, ProcessPhase.REQUEST):
            result = await self.executor.execute_with_retry(
                self._spec(task, ProcessPhase.REQUEST, action, operation)
            )
            if result.final_failure:
                await self._fail(task, ReportState.ERROR, result)
        return result

    async def poll_status(self, account: Account, task: ReportTask) -> RetryResult:
        """Check the upstream status until the report is ready or terminal.

        Still-processing statuses raise ``ReportStillProcessing`` carrying the
        backoff delay; the executor waits that long and polls again.
        """
        if not task.external_report_id:
            raise ValueError(f"Task {task.task_id} has no report id; request it first")
        if task.state.is_terminal:
            logger.info("Task %s already %s; not polling", task.task_id, task.state.value)
            return RetryResult(success=False, skipped=True, retry_count=task.retry_count)

        report_id = task.external_report_id
        action = "Backfill - Check Status" if task.backfill else "Check Status"

        async def operation(context: AttemptContext) -> OperationResult:
            await self.store.set_process_phase(task.key, ProcessPhase.STATUS_CHECK)
            status = await self._call_upstream(
                account, lambda: self.api.get_report_status(account, report_id)
            )
            upstream = (status.processing_status or "UNKNOWN").upper()

            if upstream == "DONE":
                task.mark_ready(status.report_document_id, self._now())
                await self._save(task, context.retry_count)
                await self.store.store_download(
                    DownloadRecord(
                        report_id=report_id,
                        key=task.key,
                        status=DownloadStatus.PENDING,
                        attempts=0,
                        max_attempts=DEFAULT_MAX_DOWNLOAD_ATTEMPTS,
                    )
                )
                logger.info("Report %s ready for download (document %s)", report_id, status.report_document_id)
                await self._courtesy_delay("between status check and download")
                return OperationResult(
                    message=f"Report {report_id} is ready for download",
                    report_id=report_id,
                    data={"status": upstream, "document_id": status.report_document_id},
                )

            if upstream in PENDING_STATUSES:
                delay = self.poll_backoff.compute_delay(context.attempt)
                task.transition(ReportState(upstream), self._now())
                await self._save(task, context.retry_count)
                readable = upstream.lower().replace("_", " ")
                await self._log(
                    task,
                    action,
                    ActivityStatus.RUNNING,
                    f"Report {readable} on attempt {context.attempt}, waiting {delay:.0f}s before retry",
                    context,
                )
                logger.info("Report %s still %s, checking again in %.0fs", report_id, readable, delay)
                raise ReportStillProcessing(upstream, delay)

            if upstream in TERMINAL_UPSTREAM_STATUSES:
                task.transition(ReportState(upstream), self._now())
                await self._save(task, context.retry_count)
                logger.error("Report %s finished with %s status", report_id, upstream)
                await self._log(
                    task,
                    action,
                    ActivityStatus.FAILED,
                    f"Report {upstream}: No retries attempted",
                    context,
                )
                await self._courtesy_delay("after terminal status check")
                return OperationResult(
                    message=f"Report {upstream}",
                    report_id=report_id,
                    data={"status": upstream},
                    already_logged=True,
                    no_retry_needed=True,
                )

            logger.warning("Report %s returned unknown status %r", report_id, upstream)
            task.transition(ReportState.ERROR, self._now())
            await self._save(task, context.retry_count)
            await self._log(
                task,
                action,
                ActivityStatus.FAILED,
                f"Unknown report status {upstream}: No retries attempted",
                context,
            )
            return OperationResult(
                message=f"Unknown report status {upstream}",
                report_id=report_id,
                data={"status": upstream},
                already_logged=True,
                no_retry_needed=True,
            )

        with self._context(task, ProcessPhase.STATUS_CHECK):
            result = await self.executor.execute_with_retry(
                self._spec(task, ProcessPhase.STATUS_CHECK, action, operation)
            )

            if result.success and result.no_retry_needed:
                upstream = result.data.get("status", "UNKNOWN")
                await self._fail(task, task.state, result)
                await self._notify(
                    task.key,
                    f"Report {upstream}" if upstream in TERMINAL_UPSTREAM_STATUSES else f"Unknown report status {upstream}",
                    result.retry_count,
                    report_id,
                    True,
                )
            elif result.final_failure:
                await self._fail(task, ReportState.ERROR, result)
        return result

    async def download_and_import(self, account: Account, task: ReportTask) -> RetryResult:
        """Download a ready report, store the raw payload and import its rows."""
        if task.state not in (ReportState.READY, ReportState.DOWNLOADED):
            raise ValueError(
                f"Task {task.task_id} is {task.state.value}; only READY reports can be downloaded"
            )
        report_id = task.external_report_id or ""
        document_id = task.external_document_id or report_id
        action = "Backfill - Download Report" if task.backfill else "Download Report"

        async def operation(context: AttemptContext) -> OperationResult:
            await self.store.set_process_phase(task.key, ProcessPhase.DOWNLOAD)
            record = await self.store.get_download(report_id) or DownloadRecord(
                report_id=report_id,
                key=task.key,
                max_attempts=DEFAULT_MAX_DOWNLOAD_ATTEMPTS,
            )
            record.attempts += 1
            await self.store.store_download(record)

            records = await self._call_upstream(
                account, lambda: self.api.download_report(account, document_id)
            )
            now = self._now()

            if not records:
                logger.info("Report %s contains no data", report_id)
                record.status = DownloadStatus.COMPLETED
                record.file_size = 0
                await self.store.store_download(record)
                task.transition(ReportState.IMPORTED, now)
                await self._complete(task, context.retry_count)
                return OperationResult(
                    message=f"Report {report_id} contains no data",
                    report_id=report_id,
                    data={"records": 0, "rows": 0, "no_data": True},
                )

            payload = await self.storage.save(account, task, records)
            record.status = DownloadStatus.COMPLETED
            record.file_path = payload.path
            record.file_size = payload.size_bytes
            await self.store.store_download(record)

            if task.state == ReportState.READY:
                task.transition(ReportState.DOWNLOADED, now)
            await self._save(task, context.retry_count)
            await self._log(
                task,
                action,
                ActivityStatus.SUCCESS,
                f"Downloaded {len(records)} records to {payload.path}",
                context,
            )

            rows = await self.importer.import_records(account, task, records, payload)
            task.transition(ReportState.IMPORTED, self._now())
            await self._complete(task, context.retry_count)
            await self._log(
                task,
                "Import Done",
                ActivityStatus.SUCCESS,
                f"Imported {rows} rows from {len(records)} records",
                context,
            )
            return OperationResult(
                message=f"Imported {rows} rows",
                report_id=report_id,
                data={"records": len(records), "rows": rows, "file_path": payload.path},
                already_logged=True,
            )

        with self._context(task, ProcessPhase.DOWNLOAD):
            result = await self.executor.execute_with_retry(
                self._spec(task, ProcessPhase.DOWNLOAD, action, operation)
            )
            if result.final_failure:
                await self._fail(task, ReportState.ERROR, result)
        return result

    async def _complete(self, task: ReportTask, retry_count: int) -> None:
        now = self._now()
        await self._save(task, retry_count)
        await self.store.update_terminal_status(
            task.key, ReportState.IMPORTED, report_id=task.external_report_id, ended_at=now
        )
        await self._set_entity_status(
            task,
            EntityPeriodStatus(status=PullStatus.SUCCESS, start_time=task.created_at, end_time=now),
        )

    # ------------------------------------------------------------------
    # Whole lifecycle
    # ------------------------------------------------------------------

    async def resume(self, account: Account, task: ReportTask) -> TaskOutcome:
        """Continue a stored task that already has an upstream report id.

        In-flight tasks pick up where they stopped. ERROR tasks are reopened
        at the phase they failed in, unless that phase has already spent its
        retry budget, in which case the task is left alone and a skipped
        outcome comes back.
        """
        if not task.external_report_id:
            raise ValueError(f"Task {task.task_id} was never requested; nothing to resume")
        if task.state in (ReportState.IMPORTED, ReportState.FATAL, ReportState.CANCELLED):
            raise ValueError(f"Task {task.task_id} is {task.state.value}; nothing to resume")

        if task.state == ReportState.ERROR:
            phase = ProcessPhase.DOWNLOAD if task.external_document_id else ProcessPhase.STATUS_CHECK
            spent = await self.store.get_retry_count(task.key, phase=phase)
            if spent >= self.max_retries:
                logger.info(
                    "Not resuming %s: %s retries spent (%d/%d)",
                    task.key,
                    phase.name.lower(),
                    spent,
                    self.max_retries,
                )
                return TaskOutcome(task, phase, RetryResult(success=False, skipped=True, retry_count=spent))
            task.reopen(self._now())
            await self._save(task)

        logger.info("Resuming %s at %s (report %s)", task.key, task.state.value, task.external_report_id)
        return await self.run(account, task)

    async def run(self, account: Account, task: ReportTask) -> TaskOutcome:
        """Request (unless already requested), poll, then download and import."""
        if not task.external_report_id:
            result = await self.request(account, task)
            if not result.success:
                return TaskOutcome(task, ProcessPhase.REQUEST, result)
            if self.initial_delay_seconds > 0:
                await self._sleep(self.initial_delay_seconds)

        if task.state not in (ReportState.READY, ReportState.DOWNLOADED):
            result = await self.poll_status(account, task)
            if not result.success or result.no_retry_needed:
                return TaskOutcome(task, ProcessPhase.STATUS_CHECK, result)

        result = await self.download_and_import(account, task)
        return TaskOutcome(task, ProcessPhase.DOWNLOAD, result)
