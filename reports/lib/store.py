"""Persistence collaborators: an in-memory store and a JSON-file store.

``MemoryStore`` keeps everything in dictionaries and is what the tests and
dry runs use. ``JsonFileStore`` adds a snapshot file per account under the
state directory so retry counts, task state and entity statuses survive a
process restart.

All writes are single-key upserts: last write wins.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from reports.lib.constants import DEFAULT_STATE_DIR
from reports.lib.errors import PersistenceError
from reports.lib.models import (
    ActivityLogEntry,
    DateRange,
    DownloadRecord,
    EntityPeriodStatus,
    PeriodKind,
    ProcessPhase,
    PullStatus,
    ReportState,
    ReportTask,
    TaskKey,
    TrackedEntity,
)
from reports.lib.scheduler import Scenario, filter_entities

logger = logging.getLogger(__name__)

__all__ = ["JsonFileStore", "MemoryStore", "TerminalStatus"]


@dataclass
class TerminalStatus:
    state: ReportState
    report_id: Optional[str] = None
    ended_at: Optional[datetime] = None


def _key_to_dict(key: TaskKey) -> Dict[str, Any]:
    return {
        "run_id": key.run_id,
        "period": key.period.value,
        "date_range": key.date_range.to_dict() if key.date_range else None,
    }


def _key_from_dict(data: Dict[str, Any]) -> TaskKey:
    date_range = data.get("date_range")
    return TaskKey(
        run_id=data["run_id"],
        period=PeriodKind(data["period"]),
        date_range=DateRange.from_dict(date_range) if date_range else None,
    )


class MemoryStore:
    """Dictionary-backed implementation of the persistence contract."""

    def __init__(self) -> None:
        self.retry_counts: Dict[TaskKey, int] = {}
        self.phase_retry_counts: Dict[Tuple[TaskKey, ProcessPhase], int] = {}
        self.tasks: Dict[TaskKey, ReportTask] = {}
        self.activity: Dict[TaskKey, ActivityLogEntry] = {}
        self.phases: Dict[TaskKey, ProcessPhase] = {}
        self.terminal: Dict[TaskKey, TerminalStatus] = {}
        self.downloads: Dict[str, DownloadRecord] = {}
        self.entities: Dict[str, Dict[str, TrackedEntity]] = {}

    def _changed(self) -> None:
        """Hook called after every mutation."""

    # ------------------------------------------------------------------
    # Entity registration
    # ------------------------------------------------------------------

    def add_entity(
        self,
        account_id: str,
        entity_id: str,
        *,
        created_at: Optional[datetime] = None,
        active: bool = True,
    ) -> TrackedEntity:
        """Start tracking ``entity_id``; an already tracked entity is returned unchanged."""
        account_entities = self.entities.setdefault(account_id, {})
        existing = account_entities.get(entity_id)
        if existing is not None:
            return existing
        entity = TrackedEntity(
            entity_id=entity_id,
            account_id=account_id,
            created_at=created_at or datetime.now(timezone.utc),
            active=active,
        )
        account_entities[entity_id] = entity
        self._changed()
        return entity

    def sync_entities(self, account_id: str, entities: Iterable[TrackedEntity]) -> Dict[str, int]:
        """Make the tracked entities of ``account_id`` match a configured list.

        New entities are added, the ``active`` flag of known ones follows the
        configuration and entities missing from it are deactivated. Statuses
        and creation times of known entities are kept.

        Returns:
            Counts of ``added``, ``updated`` and ``deactivated`` entities
        """
        account_entities = self.entities.setdefault(account_id, {})
        counts = {"added": 0, "updated": 0, "deactivated": 0}
        configured = set()

        for entity in entities:
            configured.add(entity.entity_id)
            existing = account_entities.get(entity.entity_id)
            if existing is None:
                account_entities[entity.entity_id] = copy.deepcopy(entity)
                counts["added"] += 1
            elif existing.active != entity.active:
                existing.active = entity.active
                counts["updated"] += 1

        for entity_id, existing in account_entities.items():
            if entity_id not in configured and existing.active:
                existing.active = False
                counts["deactivated"] += 1

        if counts["updated"] or counts["deactivated"]:
            logger.info(
                "Synced entities for %s: %d added, %d active flags changed, %d no longer configured",
                account_id,
                counts["added"],
                counts["updated"],
                counts["deactivated"],
            )
        self._changed()
        return counts

    # ------------------------------------------------------------------
    # Retry bookkeeping
    # ------------------------------------------------------------------

    async def get_retry_count(self, key: TaskKey, *, phase: Optional[ProcessPhase] = None) -> int:
        if phase is None:
            return self.retry_counts.get(key, 0)
        return self.phase_retry_counts.get((key, phase), 0)

    async def increment_retry_count(self, key: TaskKey, *, phase: Optional[ProcessPhase] = None) -> int:
        total = self.retry_counts.get(key, 0) + 1
        self.retry_counts[key] = total
        task = self.tasks.get(key)
        if task is not None:
            task.bump_retry_count(total)
        count = total
        if phase is not None:
            count = self.phase_retry_counts.get((key, phase), 0) + 1
            self.phase_retry_counts[(key, phase)] = count
        self._changed()
        return count

    async def log_activity(self, entry: ActivityLogEntry) -> None:
        self.activity[entry.key] = copy.deepcopy(entry)
        self._changed()

    async def get_activity(self, key: TaskKey) -> Optional[ActivityLogEntry]:
        entry = self.activity.get(key)
        return copy.deepcopy(entry) if entry else None

    async def update_terminal_status(
        self,
        key: TaskKey,
        state: ReportState,
        *,
        report_id: Optional[str] = None,
        ended_at: Optional[datetime] = None,
    ) -> None:
        previous = self.terminal.get(key)
        kept_report_id = report_id or (previous.report_id if previous else None)
        task = self.tasks.get(key)
        if task is not None:
            kept_report_id = kept_report_id or task.external_report_id
            task.state = state
            task.external_report_id = kept_report_id
            task.updated_at = ended_at or task.updated_at
        self.terminal[key] = TerminalStatus(state=state, report_id=kept_report_id, ended_at=ended_at)
        self._changed()

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def save_task(self, task: ReportTask) -> None:
        stored = copy.deepcopy(task)
        stored.bump_retry_count(self.retry_counts.get(task.key, 0))
        self.tasks[task.key] = stored
        self._changed()

    async def get_task(self, key: TaskKey) -> Optional[ReportTask]:
        task = self.tasks.get(key)
        return copy.deepcopy(task) if task else None

    async def list_tasks(self, account_id: str) -> List[ReportTask]:
        """Tasks of ``account_id``, oldest first."""
        tasks = [t for t in self.tasks.values() if t.account_id == account_id]
        tasks.sort(key=lambda t: (t.created_at or datetime.min.replace(tzinfo=timezone.utc), t.task_id))
        return [copy.deepcopy(t) for t in tasks]

    async def set_process_phase(self, key: TaskKey, phase: ProcessPhase) -> None:
        self.phases[key] = phase
        self._changed()

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    async def store_download(self, record: DownloadRecord) -> None:
        self.downloads[record.report_id] = copy.deepcopy(record)
        self._changed()

    async def get_download(self, report_id: str) -> Optional[DownloadRecord]:
        record = self.downloads.get(report_id)
        return copy.deepcopy(record) if record else None

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    async def update_entity_status(
        self,
        account_id: str,
        entity_ids: Sequence[str],
        period: PeriodKind,
        status: EntityPeriodStatus,
    ) -> None:
        account_entities = self.entities.get(account_id, {})
        missing = []
        for entity_id in entity_ids:
            entity = account_entities.get(entity_id)
            if entity is None:
                missing.append(entity_id)
                continue
            account_entities[entity_id] = entity.with_status(period, copy.deepcopy(status))
        if missing:
            logger.warning(
                "No tracked entities %s for account %s; %s status not recorded",
                missing,
                account_id,
                period.value,
            )
        self._changed()

    async def reset_entity_statuses(
        self,
        account_id: str,
        period: PeriodKind,
        *,
        before: Optional[datetime] = None,
    ) -> int:
        """Clear the ``period`` status of active entities back to UNSET.

        With ``before``, only statuses last touched earlier than it are
        cleared. Returns the number of entities reset.
        """
        reset = 0
        account_entities = self.entities.get(account_id, {})
        for entity_id, entity in account_entities.items():
            status = entity.status_for(period)
            if not entity.active or status.status == PullStatus.UNSET:
                continue
            last = status.last_activity
            if before is not None and last is not None and last >= before:
                continue
            account_entities[entity_id] = entity.with_status(period, EntityPeriodStatus())
            reset += 1
        if reset:
            self._changed()
        return reset

    async def list_entities(self, account_id: str) -> List[TrackedEntity]:
        entities = sorted(
            self.entities.get(account_id, {}).values(),
            key=lambda e: (e.created_at, e.entity_id),
        )
        return [copy.deepcopy(e) for e in entities]

    async def query_entities(
        self,
        account_id: str,
        scenario: Scenario,
        cutoff: datetime,
        limit: int,
    ) -> List[TrackedEntity]:
        selected = filter_entities(self.entities.get(account_id, {}).values(), scenario, cutoff, limit)
        return [copy.deepcopy(e) for e in selected]

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "retry_counts": [
                {**_key_to_dict(key), "count": count} for key, count in self.retry_counts.items()
            ],
            "phase_retry_counts": [
                {**_key_to_dict(key), "phase": int(phase), "count": count}
                for (key, phase), count in self.phase_retry_counts.items()
            ],
            "tasks": [task.to_dict() for task in self.tasks.values()],
            "activity": [entry.to_dict() for entry in self.activity.values()],
            "phases": [
                {**_key_to_dict(key), "phase": int(phase)} for key, phase in self.phases.items()
            ],
            "terminal": [
                {
                    **_key_to_dict(key),
                    "state": status.state.value,
                    "report_id": status.report_id,
                    "ended_at": status.ended_at.isoformat() if status.ended_at else None,
                }
                for key, status in self.terminal.items()
            ],
            "downloads": [record.to_dict() for record in self.downloads.values()],
            "entities": [
                entity.to_dict()
                for account_entities in self.entities.values()
                for entity in account_entities.values()
            ],
        }

    def load_dict(self, data: Dict[str, Any]) -> None:
        self.retry_counts = {_key_from_dict(item): item["count"] for item in data.get("retry_counts", [])}
        self.phase_retry_counts = {
            (_key_from_dict(item), ProcessPhase(item["phase"])): item["count"]
            for item in data.get("phase_retry_counts", [])
        }
        self.tasks = {}
        for item in data.get("tasks", []):
            task = ReportTask.from_dict(item)
            self.tasks[task.key] = task
        self.activity = {}
        for item in data.get("activity", []):
            entry = ActivityLogEntry.from_dict(item)
            self.activity[entry.key] = entry
        self.phases = {_key_from_dict(item): ProcessPhase(item["phase"]) for item in data.get("phases", [])}
        self.terminal = {
            _key_from_dict(item): TerminalStatus(
                state=ReportState(item["state"]),
                report_id=item.get("report_id"),
                ended_at=datetime.fromisoformat(item["ended_at"]) if item.get("ended_at") else None,
            )
            for item in data.get("terminal", [])
        }
        self.downloads = {}
        for item in data.get("downloads", []):
            record = DownloadRecord.from_dict(item)
            self.downloads[record.report_id] = record
        self.entities = {}
        for item in data.get("entities", []):
            entity = TrackedEntity.from_dict(item)
            self.entities.setdefault(entity.account_id, {})[entity.entity_id] = entity


def _get_state_dir() -> Path:
    return Path(os.environ.get("REPORTS_STATE_DIR", DEFAULT_STATE_DIR))


class JsonFileStore(MemoryStore):
    """``MemoryStore`` snapshotted to ``<state_dir>/<name>_state.json``.

    Example:
        store = JsonFileStore("seller-1")  # reloads an earlier snapshot if present
    """

    def __init__(self, name: str, state_dir: Optional[Path] = None) -> None:
        super().__init__()
        self.state_dir = Path(state_dir) if state_dir else _get_state_dir()
        self.path = self.state_dir / f"{name}_state.json"
        self._loading = True
        try:
            self._load()
        finally:
            self._loading = False

    def _load(self) -> None:
        if not self.path.exists():
            logger.debug("No state file at %s; starting empty", self.path)
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(
                f"Could not read state file {self.path}",
                operation="load",
                cause=exc,
                suggestion="Fix or remove the state file; retry counts restart from zero without it.",
            ) from exc
        self.load_dict(data)
        logger.info(
            "Loaded state from %s (%d tasks, %d entities)",
            self.path,
            len(self.tasks),
            sum(len(v) for v in self.entities.values()),
        )

    def _changed(self) -> None:
        if self._loading:
            return
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(".json.tmp")
            tmp_path.write_text(json.dumps(self.to_dict(), indent=2, default=str), encoding="utf-8")
            tmp_path.replace(self.path)
        except OSError as exc:
            raise PersistenceError(
                f"Could not write state file {self.path}",
                operation="save",
                cause=exc,
            ) from exc
