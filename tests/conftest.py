"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, List, Optional

import pytest

from reports.lib.collaborators import ReportSpec, ReportStatus
from reports.lib.models import Account, DateRange, PeriodKind, TaskKey, TrackedEntity
from reports.lib.rate_limiter import RateLimiter
from reports.lib.resilience import CircuitBreaker
from reports.lib.retry import RetryExecutor
from reports.lib.storage import JsonLinesImporter, LocalReportStorage
from reports.lib.store import MemoryStore
from reports.lib.workflow import ReportWorkflow

START = datetime(2025, 3, 14, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Wall clock and monotonic clock that only move when told to."""

    def __init__(self, start: datetime = START):
        self.current = start
        self.elapsed = 0.0

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.elapsed

    def advance(self, seconds: float) -> None:
        self.elapsed += seconds
        self.current = self.current + timedelta(seconds=seconds)


class RecordingSleep:
    """Async sleep replacement: records each wait and advances the clock."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds)


class FakeReportApi:
    """Scripted upstream API.

    Queue entries are returned in order; an entry that is an exception is
    raised instead.
    """

    def __init__(self) -> None:
        self.report_ids: Deque[Any] = deque()
        self.statuses: Deque[Any] = deque()
        self.downloads: Deque[Any] = deque()
        self.calls: List[str] = []
        self.specs: List[ReportSpec] = []
        self._next_id = 0

    @staticmethod
    def _next(queue: Deque[Any], default: Any) -> Any:
        item = queue.popleft() if queue else default
        if isinstance(item, BaseException):
            raise item
        return item

    async def create_report(self, account: Account, spec: ReportSpec) -> str:
        self.calls.append("create_report")
        self.specs.append(spec)
        self._next_id += 1
        return self._next(self.report_ids, f"report-{self._next_id}")

    async def get_report_status(self, account: Account, report_id: str) -> ReportStatus:
        self.calls.append("get_report_status")
        status = self._next(self.statuses, "DONE")
        if isinstance(status, ReportStatus):
            return status
        document_id = f"doc-{report_id}" if status == "DONE" else None
        return ReportStatus(processing_status=status, report_document_id=document_id)

    async def download_report(self, account: Account, document_id: str) -> List[Dict[str, Any]]:
        self.calls.append("download_report")
        return self._next(self.downloads, [])


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []

    async def notify_failure(
        self,
        key: TaskKey,
        reason: str,
        retry_count: int,
        report_id: Optional[str],
        is_fatal: bool,
    ) -> None:
        self.calls.append(
            {
                "key": key,
                "reason": reason,
                "retry_count": retry_count,
                "report_id": report_id,
                "is_fatal": is_fatal,
            }
        )


def sample_record(asin: str = "B000000001", clicks: int = 100) -> Dict[str, Any]:
    """One search-query-performance record as the upstream document holds it."""
    return {
        "startDate": "2025-03-02",
        "endDate": "2025-03-08",
        "asin": asin,
        "searchQueryData": {"searchQuery": "garden hose", "searchQueryVolume": 5000},
        "impressionData": {"asinImpressionCount": 1000},
        "clickData": {
            "asinClickCount": clicks,
            "asinMedianClickPrice": {"amount": 0.5, "currencyCode": "USD"},
        },
        "purchaseData": {
            "asinPurchaseCount": 10,
            "asinMedianPurchasePrice": {"amount": 25.0, "currencyCode": "USD"},
        },
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper(clock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def api() -> FakeReportApi:
    return FakeReportApi()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def account() -> Account:
    return Account(
        account_id="acme-us",
        seller_id="A1SELLER",
        marketplace_id="ATVPDKIKX0DER",
        access_token="Atza|token",
    )


@pytest.fixture
def date_range() -> DateRange:
    return DateRange(start=datetime(2025, 3, 2).date(), end=datetime(2025, 3, 8).date())


@pytest.fixture
def tracked(store, account, clock):
    """Register entities for the account; returns a helper taking entity ids."""

    def _add(*entity_ids: str) -> List[TrackedEntity]:
        added = []
        for offset, entity_id in enumerate(entity_ids):
            added.append(
                store.add_entity(
                    account.account_id,
                    entity_id,
                    created_at=clock.now() - timedelta(days=30) + timedelta(minutes=offset),
                )
            )
        return added

    return _add


@pytest.fixture
def make_workflow(api, store, notifier, clock, sleeper, tmp_path):
    """Build a ReportWorkflow wired to the fakes; keyword overrides pass through."""

    def _make(**overrides: Any) -> ReportWorkflow:
        executor = overrides.pop(
            "executor",
            RetryExecutor(store, sleep=sleeper, clock=clock.monotonic, now=clock.now),
        )
        options: Dict[str, Any] = {
            "executor": executor,
            "breaker": CircuitBreaker(failure_threshold=5, timeout_seconds=60, clock=clock.monotonic),
            "rate_limiter": RateLimiter(max_requests=100, window_seconds=900, clock=clock.monotonic),
            "notifier": notifier,
            "max_retries": 3,
            "request_delay_seconds": 0,
            "initial_delay_seconds": 0,
            "sleep": sleeper,
            "now": clock.now,
        }
        options.update(overrides)
        return ReportWorkflow(
            api,
            store,
            LocalReportStorage(tmp_path / "payloads"),
            JsonLinesImporter(),
            **options,
        )

    return _make


@pytest.fixture
def new_task(account, date_range):
    """Create a task through the workflow for the given entities."""

    async def _new(workflow: ReportWorkflow, *entity_ids: str, period: PeriodKind = PeriodKind.WEEK, **kwargs: Any):
        return await workflow.new_task(
            account,
            kwargs.pop("run_id", "run-1"),
            period,
            kwargs.pop("date_range", date_range),
            list(entity_ids) or ["B000000001"],
            **kwargs,
        )

    return _new


@pytest.fixture
def make_record():
    return sample_record
