"""Contracts for the collaborators the orchestration core talks to.

The core never imports a concrete database, HTTP client, file store or
mail system; it depends on these protocols. ``reports.lib.store``,
``reports.lib.client``, ``reports.lib.storage`` and ``reports.lib.notify``
provide the implementations shipped with the package.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
)

from reports.lib.models import (
    Account,
    ActivityLogEntry,
    DownloadRecord,
    EntityPeriodStatus,
    PeriodKind,
    ProcessPhase,
    ReportState,
    ReportTask,
    TaskKey,
    TrackedEntity,
)

if TYPE_CHECKING:
    from reports.lib.scheduler import Scenario

__all__ = [
    "NotifyFailure",
    "Notifier",
    "Persistence",
    "ReportApi",
    "ReportImporter",
    "ReportSpec",
    "ReportStatus",
    "ReportStorage",
    "RetryStore",
    "StoredPayload",
]

# notify_failure(task_key, reason, retry_count, report_id, is_fatal)
NotifyFailure = Callable[[TaskKey, str, int, Optional[str], bool], Awaitable[None]]


@dataclass(frozen=True)
class ReportSpec:
    """Body of a create-report call."""

    report_type: str
    data_start_time: str
    data_end_time: str
    marketplace_ids: Sequence[str]
    entity_filter: str
    period: PeriodKind

    def to_payload(self) -> Dict[str, Any]:
        return {
            "reportType": self.report_type,
            "dataStartTime": self.data_start_time,
            "dataEndTime": self.data_end_time,
            "marketplaceIds": list(self.marketplace_ids),
            "reportOptions": {
                "asin": self.entity_filter,
                "reportPeriod": self.period.value,
            },
        }


@dataclass(frozen=True)
class ReportStatus:
    """Upstream processing status of a report."""

    processing_status: str
    report_document_id: Optional[str] = None


@dataclass(frozen=True)
class StoredPayload:
    path: str
    size_bytes: int


class ReportApi(Protocol):
    """Upstream report-generation API."""

    async def create_report(self, account: Account, spec: ReportSpec) -> str:
        """Request a report and return its id."""
        ...

    async def get_report_status(self, account: Account, report_id: str) -> ReportStatus:
        ...

    async def download_report(self, account: Account, document_id: str) -> List[Dict[str, Any]]:
        ...


class RetryStore(Protocol):
    """The slice of persistence the retry executor needs."""

    async def get_retry_count(self, key: TaskKey, *, phase: Optional[ProcessPhase] = None) -> int:
        """Retries spent by ``phase`` of the task, or by the whole task when no phase is given."""
        ...

    async def increment_retry_count(self, key: TaskKey, *, phase: Optional[ProcessPhase] = None) -> int:
        """Add one to the phase count and the task total; return the count asked for."""
        ...

    async def log_activity(self, entry: ActivityLogEntry) -> None:
        """Insert or update the single activity row for ``entry.key``."""
        ...

    async def update_terminal_status(
        self,
        key: TaskKey,
        state: ReportState,
        *,
        report_id: Optional[str] = None,
        ended_at: Optional[datetime] = None,
    ) -> None:
        """Record a terminal state; an existing report id is never cleared."""
        ...


class Persistence(RetryStore, Protocol):
    """Full persistence contract used by the workflow and the scheduler."""

    async def save_task(self, task: ReportTask) -> None:
        ...

    async def get_task(self, key: TaskKey) -> Optional[ReportTask]:
        ...

    async def list_tasks(self, account_id: str) -> List[ReportTask]:
        """All stored tasks of ``account_id``, oldest first."""
        ...

    async def set_process_phase(self, key: TaskKey, phase: ProcessPhase) -> None:
        ...

    async def get_activity(self, key: TaskKey) -> Optional[ActivityLogEntry]:
        ...

    async def update_entity_status(
        self,
        account_id: str,
        entity_ids: Sequence[str],
        period: PeriodKind,
        status: EntityPeriodStatus,
    ) -> None:
        ...

    async def reset_entity_statuses(
        self,
        account_id: str,
        period: PeriodKind,
        *,
        before: Optional[datetime] = None,
    ) -> int:
        """Set the period status of active entities back to UNSET; return how many changed."""
        ...

    async def store_download(self, record: DownloadRecord) -> None:
        """Insert or update the download row for ``record.report_id``."""
        ...

    async def get_download(self, report_id: str) -> Optional[DownloadRecord]:
        ...

    async def list_entities(self, account_id: str) -> List[TrackedEntity]:
        ...

    async def query_entities(
        self,
        account_id: str,
        scenario: "Scenario",
        cutoff: datetime,
        limit: int,
    ) -> List[TrackedEntity]:
        """Active entities matching ``scenario``, oldest-created first, at most ``limit``."""
        ...


class ReportStorage(Protocol):
    """Where raw downloaded payloads are kept."""

    async def save(
        self,
        account: Account,
        task: ReportTask,
        records: List[Dict[str, Any]],
    ) -> StoredPayload:
        ...


class ReportImporter(Protocol):
    """Turns raw records into structured rows."""

    async def import_records(
        self,
        account: Account,
        task: ReportTask,
        records: List[Dict[str, Any]],
        payload: StoredPayload,
    ) -> int:
        """Persist structured rows and return how many were written."""
        ...


class Notifier(Protocol):
    async def notify_failure(
        self,
        key: TaskKey,
        reason: str,
        retry_count: int,
        report_id: Optional[str],
        is_fatal: bool,
    ) -> None:
        """Best effort: implementations must not raise."""
        ...
