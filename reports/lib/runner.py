"""Account-level runs: schedule a batch, chunk it, drive each report.

A regular run asks the scheduler for the next batch of an account's
entities, splits the batch into upstream-sized entity filters and runs the
report workflow for every (chunk, period) pair, one after another. A
backfill run does the same for each historical date range. A retry run
resumes stored tasks that were requested upstream but never imported.

Per-chunk work goes through an ``EntityProcessor`` so batch iteration does
not depend on what happens to each chunk.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from reports.lib.chunking import EntityChunk, split_into_chunks
from reports.lib.collaborators import Notifier, Persistence, ReportApi, ReportImporter, ReportStorage
from reports.lib.constants import (
    DEFAULT_MAX_ASIN_STRING_CHARS,
    DEFAULT_MONTHS_TO_PULL,
    DEFAULT_QUARTERS_TO_PULL,
    DEFAULT_TIMEZONE,
    DEFAULT_WEEKS_TO_PULL,
)
from reports.lib.dates import historical_ranges, local_midnight, local_today, period_reset_date, previous_period_range
from reports.lib.errors import CircuitBreakerOpen, MissingCredentialsError, PersistenceError
from reports.lib.logging import log_metric, task_context
from reports.lib.models import Account, DateRange, PeriodKind, ReportState, ReportTask
from reports.lib.rate_limiter import RateLimiter
from reports.lib.resilience import CircuitBreaker
from reports.lib.retry import RetryExecutor
from reports.lib.scheduler import EligibilityScheduler
from reports.lib.settings import ReportSettings
from reports.lib.storage import JsonLinesImporter, LocalReportStorage
from reports.lib.workflow import ReportWorkflow, TaskOutcome

logger = logging.getLogger(__name__)

__all__ = [
    "BatchProgress",
    "BatchRunner",
    "EntityProcessor",
    "ProcessResult",
    "RunSummary",
    "build_runner",
    "process_entities",
    "reset_period_statuses",
]

# Errors after which the rest of the batch would fail the same way
_STOP_BATCH_ERRORS = (CircuitBreakerOpen, MissingCredentialsError)


@dataclass
class ProcessResult:
    """Outcome of processing one chunk for one period."""

    processed: bool
    error: Optional[BaseException] = None
    should_stop_batch: bool = False
    outcome: Optional[TaskOutcome] = None


class EntityProcessor(Protocol):
    async def __call__(
        self,
        account: Account,
        chunk: EntityChunk,
        period: PeriodKind,
        date_range: DateRange,
    ) -> ProcessResult:
        ...


@dataclass
class BatchProgress:
    processed: int = 0
    failed: int = 0
    stopped: bool = False
    errors: List[str] = field(default_factory=list)
    outcomes: List[TaskOutcome] = field(default_factory=list)

    def record(self, result: ProcessResult) -> None:
        if result.outcome is not None:
            self.outcomes.append(result.outcome)
        if result.processed:
            self.processed += 1
        else:
            self.failed += 1
        if result.error is not None:
            self.errors.append(str(result.error))


async def process_entities(
    account: Account,
    chunks: Sequence[EntityChunk],
    work: Iterable[Tuple[PeriodKind, DateRange]],
    processor: EntityProcessor,
) -> BatchProgress:
    """Run ``processor`` for every chunk and every ``(period, date_range)`` in ``work``.

    Work items run sequentially. A persistence failure aborts only the chunk
    it happened in; a result with ``should_stop_batch`` ends the batch.
    """
    progress = BatchProgress()

    for period, date_range in work:
        for chunk in chunks:
            try:
                result = await processor(account, chunk, period, date_range)
            except PersistenceError as exc:
                logger.error(
                    "Persistence failure for %s %s (%d entities): %s",
                    account.account_id,
                    period.value,
                    len(chunk.entity_ids),
                    exc,
                )
                result = ProcessResult(processed=False, error=exc)

            progress.record(result)
            if result.should_stop_batch:
                logger.warning(
                    "Stopping batch for account %s after %s: %s",
                    account.account_id,
                    period.value,
                    result.error,
                )
                progress.stopped = True
                return progress
    return progress


@dataclass
class RunSummary:
    account_id: str
    run_id: str
    backfill: bool = False
    resumed: bool = False
    scenario: Optional[int] = None
    entity_count: int = 0
    periods: List[str] = field(default_factory=list)
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    stopped: bool = False
    errors: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.failed == 0 and not self.stopped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "run_id": self.run_id,
            "backfill": self.backfill,
            "resumed": self.resumed,
            "scenario": self.scenario,
            "entity_count": self.entity_count,
            "periods": self.periods,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "stopped": self.stopped,
            "errors": self.errors,
            "duration_seconds": self.duration_seconds,
        }


def _new_run_id(account_id: str, now: datetime) -> str:
    return f"{account_id}-{now.strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:6]}"


def _result_from_outcome(outcome: TaskOutcome) -> ProcessResult:
    error = outcome.result.error
    return ProcessResult(
        processed=outcome.succeeded,
        error=error,
        should_stop_batch=isinstance(error, _STOP_BATCH_ERRORS),
        outcome=outcome,
    )


async def reset_period_statuses(
    store: Persistence,
    account_id: str,
    *,
    timezone_name: str = DEFAULT_TIMEZONE,
    now: Optional[datetime] = None,
    periods: Optional[Sequence[PeriodKind]] = None,
    force: bool = False,
) -> Dict[PeriodKind, int]:
    """Clear entity statuses left over from a previous reporting window.

    A new window opens on the period's reset day (Tuesday for weeks, the
    3rd for months, the 20th of the first month for quarters) at local
    midnight in ``timezone_name``. Statuses last touched before that moment
    go back to UNSET so the scheduler picks the entities up again. With
    ``force`` every status of an active entity is cleared.

    Returns:
        Number of entities reset per period.
    """
    now = now or datetime.now(timezone.utc)
    today = local_today(timezone_name, now)
    counts: Dict[PeriodKind, int] = {}
    for period in periods or list(PeriodKind):
        before = None if force else local_midnight(period_reset_date(period, today=today), timezone_name)
        counts[period] = await store.reset_entity_statuses(account_id, period, before=before)
        if counts[period]:
            logger.info(
                "Reset %d %s statuses for account %s%s",
                counts[period],
                period.value,
                account_id,
                "" if before is None else f" (last pulled before {before.isoformat()})",
            )
    return counts


class BatchRunner:
    """Runs the scheduler and the report workflow for one account at a time."""

    def __init__(
        self,
        workflow: ReportWorkflow,
        scheduler: EligibilityScheduler,
        *,
        max_asin_chars: int = DEFAULT_MAX_ASIN_STRING_CHARS,
        timezone_name: str = DEFAULT_TIMEZONE,
        history: Optional[Dict[PeriodKind, int]] = None,
        auto_reset: bool = True,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.workflow = workflow
        self.scheduler = scheduler
        self.max_asin_chars = max_asin_chars
        self.timezone_name = timezone_name
        self.history = history or {
            PeriodKind.WEEK: DEFAULT_WEEKS_TO_PULL,
            PeriodKind.MONTH: DEFAULT_MONTHS_TO_PULL,
            PeriodKind.QUARTER: DEFAULT_QUARTERS_TO_PULL,
        }
        self.auto_reset = auto_reset
        self._now = now

    @property
    def store(self) -> Persistence:
        return self.workflow.store

    def _processor(self, run_id: str, chunks: Sequence[EntityChunk], *, backfill: bool) -> EntityProcessor:
        async def process(
            account: Account,
            chunk: EntityChunk,
            period: PeriodKind,
            date_range: DateRange,
        ) -> ProcessResult:
            # Each chunk is its own report, so it gets its own task key
            task_run_id = run_id if len(chunks) == 1 else f"{run_id}-{chunks.index(chunk) + 1}"
            task = await self.workflow.new_task(
                account, task_run_id, period, date_range, chunk.entity_ids, backfill=backfill
            )
            return _result_from_outcome(await self.workflow.run(account, task))

        return process

    def _summarize(self, summary: RunSummary, progress: BatchProgress, started: float) -> RunSummary:
        summary.succeeded = sum(1 for o in progress.outcomes if o.succeeded)
        summary.skipped = sum(1 for o in progress.outcomes if o.skipped)
        summary.failed = progress.failed - summary.skipped
        summary.stopped = progress.stopped
        summary.errors = progress.errors
        summary.duration_seconds = round(time.monotonic() - started, 3)

        log_metric(logger, "reports_succeeded", summary.succeeded, unit="reports")
        log_metric(logger, "reports_failed", summary.failed, unit="reports")
        log_metric(logger, "reports_skipped", summary.skipped, unit="reports")
        log_metric(logger, "run_duration_seconds", summary.duration_seconds, unit="seconds")
        logger.info(
            "Run %s finished: %d succeeded, %d failed, %d skipped%s",
            summary.run_id,
            summary.succeeded,
            summary.failed,
            summary.skipped,
            " (stopped early)" if summary.stopped else "",
        )
        return summary

    async def reset_periods(
        self,
        account: Account,
        *,
        periods: Optional[Sequence[PeriodKind]] = None,
        force: bool = False,
    ) -> Dict[PeriodKind, int]:
        """Clear ``account``'s statuses from a previous window; see ``reset_period_statuses``."""
        return await reset_period_statuses(
            self.store,
            account.account_id,
            timezone_name=self.timezone_name,
            now=self._now(),
            periods=periods,
            force=force,
        )

    async def run_account(
        self,
        account: Account,
        *,
        periods: Optional[Sequence[PeriodKind]] = None,
    ) -> RunSummary:
        """One scheduling pass for ``account`` and a report per due period and chunk."""
        started = time.monotonic()
        now = self._now()
        run_id = _new_run_id(account.account_id, now)
        summary = RunSummary(account_id=account.account_id, run_id=run_id)

        with task_context(account=account.account_id, run_id=run_id):
            if self.auto_reset:
                await self.reset_periods(account)

            batch = await self.scheduler.next_batch(account.account_id)
            if batch is None:
                return self._summarize(summary, BatchProgress(), started)

            due = [p for p in batch.periods if not periods or p in periods]
            summary.scenario = batch.scenario.number
            summary.entity_count = len(batch.entity_ids)
            summary.periods = [p.value for p in due]
            if not due:
                logger.info("Scenario %d periods excluded by filter; nothing to do", batch.scenario.number)
                return self._summarize(summary, BatchProgress(), started)

            today = local_today(self.timezone_name, now)
            work = [(period, previous_period_range(period, today=today)) for period in due]
            chunks = split_into_chunks(batch.entity_ids, self.max_asin_chars)
            logger.info(
                "Scenario %d: %d entities in %d chunks for %s",
                batch.scenario.number,
                len(batch.entity_ids),
                len(chunks),
                ", ".join(summary.periods),
            )
            log_metric(logger, "entities_selected", len(batch.entity_ids), unit="entities")

            progress = await process_entities(account, chunks, work, self._processor(run_id, chunks, backfill=False))
            return self._summarize(summary, progress, started)

    async def run_backfill(
        self,
        account: Account,
        *,
        periods: Optional[Sequence[PeriodKind]] = None,
        counts: Optional[Dict[PeriodKind, int]] = None,
        limit: Optional[int] = None,
    ) -> RunSummary:
        """Request every historical range for the account's oldest active entities."""
        started = time.monotonic()
        now = self._now()
        run_id = _new_run_id(account.account_id, now)
        summary = RunSummary(account_id=account.account_id, run_id=run_id, backfill=True)

        with task_context(account=account.account_id, run_id=run_id):
            limit = limit if limit is not None else self.scheduler.max_entities
            entities = [e for e in await self.store.list_entities(account.account_id) if e.active][:limit]
            if not entities:
                logger.info("No active entities to backfill for account %s", account.account_id)
                return self._summarize(summary, BatchProgress(), started)

            counts = {**self.history, **(counts or {})}
            selected = list(periods) if periods else list(PeriodKind)
            today = local_today(self.timezone_name, now)
            work = [
                (period, date_range)
                for period in selected
                for date_range in historical_ranges(period, counts.get(period, 0), today=today)
            ]
            summary.entity_count = len(entities)
            summary.periods = [p.value for p in selected]

            chunks = split_into_chunks([e.entity_id for e in entities], self.max_asin_chars)
            logger.info(
                "Backfill: %d entities in %d chunks across %d date ranges",
                len(entities),
                len(chunks),
                len(work),
            )
            progress = await process_entities(account, chunks, work, self._processor(run_id, chunks, backfill=True))
            return self._summarize(summary, progress, started)

    async def _resumable_tasks(
        self,
        account: Account,
        periods: Optional[Sequence[PeriodKind]],
    ) -> List[ReportTask]:
        cutoff = self.scheduler.staleness_cutoff()
        entities = {e.entity_id: e for e in await self.store.list_entities(account.account_id)}

        def superseded(task: ReportTask) -> bool:
            # A later pull already succeeded for one of the task's entities
            for entity_id in task.entity_ids:
                entity = entities.get(entity_id)
                if entity is None:
                    continue
                status = entity.status_for(task.period)
                if status.succeeded and task.created_at and status.end_time > task.created_at:
                    return True
            return False

        selected = []
        for task in await self.store.list_tasks(account.account_id):
            if not task.external_report_id:
                continue
            if task.state in (ReportState.IMPORTED, ReportState.FATAL, ReportState.CANCELLED):
                continue
            if periods and task.period not in periods:
                continue
            if task.created_at is None or task.created_at < cutoff:
                logger.debug("Task %s is older than the staleness window; not resuming", task.key)
                continue
            if not task.backfill and superseded(task):
                logger.debug("Task %s was superseded by a later pull; not resuming", task.key)
                continue
            selected.append(task)
        return selected

    async def run_retry(
        self,
        account: Account,
        *,
        periods: Optional[Sequence[PeriodKind]] = None,
    ) -> RunSummary:
        """Resume stored tasks that were requested upstream but never imported.

        In-flight tasks continue polling their existing report; ERROR tasks
        are reopened at the phase they failed in. Tasks older than the
        scheduler's staleness window, and regular tasks whose entities have
        since been pulled successfully, are left alone.
        """
        started = time.monotonic()
        now = self._now()
        run_id = _new_run_id(account.account_id, now)
        summary = RunSummary(account_id=account.account_id, run_id=run_id, resumed=True)

        with task_context(account=account.account_id, run_id=run_id):
            tasks = await self._resumable_tasks(account, periods)
            summary.entity_count = len({e for t in tasks for e in t.entity_ids})
            summary.periods = sorted({t.period.value for t in tasks})
            logger.info("Resuming %d stored tasks for account %s", len(tasks), account.account_id)

            progress = BatchProgress()
            for task in tasks:
                try:
                    result = _result_from_outcome(await self.workflow.resume(account, task))
                except PersistenceError as exc:
                    logger.error("Persistence failure resuming %s: %s", task.key, exc)
                    result = ProcessResult(processed=False, error=exc)

                progress.record(result)
                if result.should_stop_batch:
                    logger.warning("Stopping retry run for account %s: %s", account.account_id, result.error)
                    progress.stopped = True
                    break
            return self._summarize(summary, progress, started)


def build_runner(
    settings: ReportSettings,
    api: ReportApi,
    store: Persistence,
    *,
    storage: Optional[ReportStorage] = None,
    importer: Optional[ReportImporter] = None,
    notifier: Optional[Notifier] = None,
    breaker: Optional[CircuitBreaker] = None,
    rate_limiter: Optional[RateLimiter] = None,
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> BatchRunner:
    """Wire a ``BatchRunner`` from settings.

    Pass the same ``breaker`` and ``rate_limiter`` to every runner that talks
    to the same upstream API.
    """
    sleep_kwargs: Dict[str, Any] = {"sleep": sleep} if sleep is not None else {}
    executor = RetryExecutor(store, backoff=settings.retry_wait_policy(), now=now, **sleep_kwargs)
    workflow = ReportWorkflow(
        api,
        store,
        storage or LocalReportStorage(settings.storage_dir),
        importer or JsonLinesImporter(),
        executor=executor,
        breaker=breaker or settings.build_circuit_breaker(),
        rate_limiter=rate_limiter or settings.build_rate_limiter(),
        notifier=notifier,
        poll_backoff=settings.backoff_policy(),
        max_retries=settings.max_retries,
        request_delay_seconds=settings.request_delay_seconds,
        initial_delay_seconds=settings.initial_delay_seconds,
        report_type_name=settings.report_type_name,
        now=now,
        **sleep_kwargs,
    )
    scheduler = EligibilityScheduler(
        store,
        max_entities=settings.max_entities_per_batch,
        max_days_ago=settings.max_staleness_days_ago,
        now=now,
    )
    return BatchRunner(
        workflow,
        scheduler,
        max_asin_chars=settings.max_asin_string_chars,
        timezone_name=settings.timezone,
        history={
            PeriodKind.WEEK: settings.weeks_to_pull,
            PeriodKind.MONTH: settings.months_to_pull,
            PeriodKind.QUARTER: settings.quarters_to_pull,
        },
        auto_reset=settings.auto_reset_periods,
        now=now,
    )
