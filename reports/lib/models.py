"""Data model for report tasks, per-entity pull status and the activity log."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

__all__ = [
    "PeriodKind",
    "ReportState",
    "PullStatus",
    "ActivityStatus",
    "ProcessPhase",
    "DownloadStatus",
    "DateRange",
    "TaskKey",
    "ReportTask",
    "EntityPeriodStatus",
    "TrackedEntity",
    "ActivityLogEntry",
    "DownloadRecord",
    "Account",
]


class PeriodKind(str, Enum):
    """Reporting cadence, tracked independently per entity."""

    WEEK = "WEEK"  # short
    MONTH = "MONTH"  # medium
    QUARTER = "QUARTER"  # long

    @property
    def label(self) -> str:
        return {
            PeriodKind.WEEK: "Weekly",
            PeriodKind.MONTH: "Monthly",
            PeriodKind.QUARTER: "Quarterly",
        }[self]

    @classmethod
    def parse(cls, value: str) -> "PeriodKind":
        aliases = {"SHORT": cls.WEEK, "MEDIUM": cls.MONTH, "LONG": cls.QUARTER}
        key = value.strip().upper()
        if key in aliases:
            return aliases[key]
        return cls(key)


class ReportState(str, Enum):
    """Lifecycle of a single report task."""

    REQUESTED = "REQUESTED"
    IN_QUEUE = "IN_QUEUE"
    IN_PROGRESS = "IN_PROGRESS"
    PROCESSING = "PROCESSING"
    READY = "READY"
    DOWNLOADED = "DOWNLOADED"
    IMPORTED = "IMPORTED"
    FATAL = "FATAL"
    CANCELLED = "CANCELLED"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES

    @property
    def is_pending(self) -> bool:
        return self in (ReportState.IN_QUEUE, ReportState.IN_PROGRESS, ReportState.PROCESSING)


_TERMINAL_STATES = frozenset(
    {ReportState.IMPORTED, ReportState.FATAL, ReportState.CANCELLED, ReportState.ERROR}
)


class PullStatus(str, Enum):
    """Outcome of the last pull for one entity and one period."""

    UNSET = "UNSET"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class ActivityStatus(int, Enum):
    """Status recorded on activity log entries."""

    RUNNING = 0
    SUCCESS = 1
    FAILED = 2
    RETRYING = 3


class ProcessPhase(int, Enum):
    """Which workflow phase is currently driving a task."""

    REQUEST = 1
    STATUS_CHECK = 2
    DOWNLOAD = 3


class DownloadStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class DateRange:
    """Inclusive calendar date range for one report."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"Start date {self.start} cannot be after end date {self.end}")

    @property
    def label(self) -> str:
        return f"{self.start.isoformat()} to {self.end.isoformat()}"

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def data_start_time(self) -> str:
        return f"{self.start.isoformat()}T00:00:00Z"

    def data_end_time(self) -> str:
        return f"{self.end.isoformat()}T23:59:59Z"

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "DateRange":
        return cls(start=date.fromisoformat(data["start"]), end=date.fromisoformat(data["end"]))


@dataclass(frozen=True)
class TaskKey:
    """Identity of a report task for retry counting and activity upserts.

    ``date_range`` is only part of the key for backfill tasks, where one run
    requests several ranges of the same period.
    """

    run_id: str
    period: PeriodKind
    date_range: Optional[DateRange] = None

    @property
    def storage_key(self) -> str:
        parts = [self.run_id, self.period.value]
        if self.date_range is not None:
            parts.append(self.date_range.label)
        return "|".join(parts)

    def __str__(self) -> str:
        return self.storage_key


@dataclass
class ReportTask:
    """One unit of work: one entity batch, one period, one run."""

    task_id: str
    run_id: str
    account_id: str
    period: PeriodKind
    date_range: DateRange
    entity_ids: List[str]
    state: ReportState = ReportState.REQUESTED
    external_report_id: Optional[str] = None
    external_document_id: Optional[str] = None
    retry_count: int = 0
    backfill: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> TaskKey:
        return TaskKey(
            run_id=self.run_id,
            period=self.period,
            date_range=self.date_range if self.backfill else None,
        )

    @property
    def entity_filter(self) -> str:
        return " ".join(self.entity_ids)

    def transition(self, state: ReportState, now: datetime) -> None:
        """Move to ``state``; terminal states are absorbing."""
        if self.state.is_terminal and state != self.state:
            raise ValueError(f"Task {self.task_id} is already terminal ({self.state.value})")
        self.state = state
        self.updated_at = now

    def mark_ready(self, document_id: Optional[str], now: datetime) -> None:
        self.transition(ReportState.READY, now)
        self.external_document_id = document_id

    def reopen(self, now: datetime) -> None:
        """Take an ERROR task back to the phase it failed in.

        Only used when a stored task is resumed by hand or by a retry run.
        The report id and document id are kept.
        """
        if self.state != ReportState.ERROR:
            raise ValueError(f"Task {self.task_id} is {self.state.value}; only ERROR tasks can be reopened")
        self.state = ReportState.READY if self.external_document_id else ReportState.REQUESTED
        self.updated_at = now

    def bump_retry_count(self, count: int) -> None:
        # never decreases
        self.retry_count = max(self.retry_count, count)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "run_id": self.run_id,
            "account_id": self.account_id,
            "period": self.period.value,
            "date_range": self.date_range.to_dict(),
            "entity_ids": list(self.entity_ids),
            "state": self.state.value,
            "external_report_id": self.external_report_id,
            "external_document_id": self.external_document_id,
            "retry_count": self.retry_count,
            "backfill": self.backfill,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReportTask":
        return cls(
            task_id=data["task_id"],
            run_id=data["run_id"],
            account_id=data["account_id"],
            period=PeriodKind(data["period"]),
            date_range=DateRange.from_dict(data["date_range"]),
            entity_ids=list(data.get("entity_ids", [])),
            state=ReportState(data.get("state", ReportState.REQUESTED.value)),
            external_report_id=data.get("external_report_id"),
            external_document_id=data.get("external_document_id"),
            retry_count=data.get("retry_count", 0),
            backfill=data.get("backfill", False),
            created_at=_parse_dt(data.get("created_at")),
            updated_at=_parse_dt(data.get("updated_at")),
        )


@dataclass
class EntityPeriodStatus:
    """Last pull outcome for one entity and one period kind."""

    status: PullStatus = PullStatus.UNSET
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.status == PullStatus.SUCCESS:
            if self.end_time is None:
                raise ValueError("A successful pull must record its end time")
            if self.start_time is not None and self.end_time < self.start_time:
                raise ValueError("Pull end time cannot precede its start time")

    @property
    def succeeded(self) -> bool:
        return self.status == PullStatus.SUCCESS

    @property
    def in_flight(self) -> bool:
        return self.status == PullStatus.IN_PROGRESS

    @property
    def last_activity(self) -> Optional[datetime]:
        return self.end_time or self.start_time

    def is_stale(self, cutoff: datetime) -> bool:
        """Unset or failed, and either never finished or finished before ``cutoff``.

        An in-flight pull only counts as stale once it was started before
        ``cutoff``, so an abandoned request is eventually picked up again.
        """
        if self.status == PullStatus.SUCCESS:
            return False
        if self.status == PullStatus.IN_PROGRESS:
            return self.start_time is None or self.start_time < cutoff
        return self.end_time is None or self.end_time < cutoff

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityPeriodStatus":
        return cls(
            status=PullStatus(data.get("status", PullStatus.UNSET.value)),
            start_time=_parse_dt(data.get("start_time")),
            end_time=_parse_dt(data.get("end_time")),
        )


@dataclass
class TrackedEntity:
    """A tenant-owned item reports are pulled for, with one status per period."""

    entity_id: str
    account_id: str
    created_at: datetime
    active: bool = True
    statuses: Dict[PeriodKind, EntityPeriodStatus] = field(default_factory=dict)

    def status_for(self, period: PeriodKind) -> EntityPeriodStatus:
        return self.statuses.get(period) or EntityPeriodStatus()

    def with_status(self, period: PeriodKind, status: EntityPeriodStatus) -> "TrackedEntity":
        statuses = dict(self.statuses)
        statuses[period] = status
        return replace(self, statuses=statuses)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "account_id": self.account_id,
            "created_at": self.created_at.isoformat(),
            "active": self.active,
            "statuses": {p.value: s.to_dict() for p, s in self.statuses.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrackedEntity":
        created_at = _parse_dt(data["created_at"])
        assert created_at is not None
        return cls(
            entity_id=data["entity_id"],
            account_id=data["account_id"],
            created_at=created_at,
            active=data.get("active", True),
            statuses={
                PeriodKind(p): EntityPeriodStatus.from_dict(s)
                for p, s in data.get("statuses", {}).items()
            },
        )


@dataclass
class ActivityLogEntry:
    """Audit record for one logical step; upserted by task key."""

    key: TaskKey
    action: str
    status: ActivityStatus
    message: str = ""
    external_report_id: Optional[str] = None
    retry_count: int = 0
    execution_time: float = 0.0
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.key.run_id,
            "period": self.key.period.value,
            "date_range": self.key.date_range.to_dict() if self.key.date_range else None,
            "action": self.action,
            "status": int(self.status),
            "message": self.message,
            "external_report_id": self.external_report_id,
            "retry_count": self.retry_count,
            "execution_time": self.execution_time,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActivityLogEntry":
        date_range = data.get("date_range")
        return cls(
            key=TaskKey(
                run_id=data["run_id"],
                period=PeriodKind(data["period"]),
                date_range=DateRange.from_dict(date_range) if date_range else None,
            ),
            action=data["action"],
            status=ActivityStatus(data["status"]),
            message=data.get("message", ""),
            external_report_id=data.get("external_report_id"),
            retry_count=data.get("retry_count", 0),
            execution_time=data.get("execution_time", 0.0),
            updated_at=_parse_dt(data.get("updated_at")),
        )


@dataclass
class DownloadRecord:
    """Download queue row for a report that reached DONE upstream."""

    report_id: str
    key: TaskKey
    status: DownloadStatus = DownloadStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    file_path: Optional[str] = None
    file_size: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "report_id": self.report_id,
            "run_id": self.key.run_id,
            "period": self.key.period.value,
            "date_range": self.key.date_range.to_dict() if self.key.date_range else None,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "file_path": self.file_path,
            "file_size": self.file_size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DownloadRecord":
        date_range = data.get("date_range")
        return cls(
            report_id=data["report_id"],
            key=TaskKey(
                run_id=data["run_id"],
                period=PeriodKind(data["period"]),
                date_range=DateRange.from_dict(date_range) if date_range else None,
            ),
            status=DownloadStatus(data.get("status", DownloadStatus.PENDING.value)),
            attempts=data.get("attempts", 0),
            max_attempts=data.get("max_attempts", 3),
            file_path=data.get("file_path"),
            file_size=data.get("file_size"),
        )


@dataclass
class Account:
    """A tenant seller account and the entities it tracks."""

    account_id: str
    seller_id: str
    marketplace_id: str
    access_token: Optional[str] = None
    entities: List[TrackedEntity] = field(default_factory=list)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))
