"""Logging for report runs.

Every record that passes through a handler installed by ``setup_logging``
picks up the task context bound with ``task_context``: the account, run id,
task key, period, workflow phase and upstream report id. A line logged deep
inside the retry executor therefore still says which report it belongs to,
without every call site passing those fields along.

Example:
    with task_context(account="acme-us", run_id="run-1"):
        with task_context(task_key="run-1|WEEK", phase="status_check", report_id="r-9"):
            logger.warning("Still processing")  # carries all six fields
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, Optional

__all__ = [
    "CONTEXT_FIELDS",
    "ContextFormatter",
    "JSONFormatter",
    "TaskContextFilter",
    "current_context",
    "log_metric",
    "setup_logging",
    "task_context",
]

CONTEXT_FIELDS = ("account", "run_id", "task_key", "period", "phase", "report_id")

# Console shows the short identifying subset; JSON carries all of CONTEXT_FIELDS
_CONSOLE_FIELDS = ("account", "period", "phase", "report_id")

_context: ContextVar[Optional[Dict[str, Any]]] = ContextVar("report_log_context", default=None)

_RECORD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
}


def current_context() -> Dict[str, Any]:
    """Fields bound by the enclosing ``task_context`` blocks."""
    return dict(_context.get() or {})


@contextmanager
def task_context(**fields: Any) -> Iterator[Dict[str, Any]]:
    """Bind context fields for records logged inside the block.

    Nested blocks add to (and may override) the outer fields; ``None``
    values are ignored. The binding follows asyncio tasks, so concurrent
    runs never see each other's fields.
    """
    merged = current_context()
    merged.update({k: v for k, v in fields.items() if v is not None})
    token = _context.set(merged)
    try:
        yield merged
    finally:
        _context.reset(token)


class TaskContextFilter(logging.Filter):
    """Copy the bound task context onto each record.

    Attributes passed explicitly through ``extra=`` win over the context.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in (_context.get() or {}).items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log aggregation.

    Context fields sit at the top level next to ``level`` and ``message``;
    anything else passed through ``extra=`` (metric values, for example)
    is grouped under ``extra``.

    Example output:
        {"timestamp": "2025-03-14T12:00:00.000Z", "level": "WARNING",
         "logger": "reports.lib.retry", "message": "Check Status attempt 1/3 ...",
         "account": "acme-us", "phase": "status_check", "report_id": "r-9"}
    """

    def __init__(self, exclude_fields: Optional[Iterable[str]] = None):
        super().__init__()
        self.exclude_fields = frozenset(exclude_fields or ())

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, timezone.utc)
        data: Dict[str, Any] = {
            "timestamp": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                data[key] = value

        data["source"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)

        extra = {
            k: v
            for k, v in record.__dict__.items()
            if k not in _RECORD_ATTRS and k not in CONTEXT_FIELDS and k not in self.exclude_fields
        }
        if extra:
            data["extra"] = extra
        return json.dumps(data, default=str)


class ContextFormatter(logging.Formatter):
    """Plain console format with the task context in brackets.

    ``2025-03-14 12:00:00 [INFO] reports.lib.workflow: Report ready [acme-us WEEK download r-9]``
    """

    def __init__(self) -> None:
        super().__init__(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        tags = [str(getattr(record, key)) for key in _CONSOLE_FIELDS if getattr(record, key, None) is not None]
        return f"{line} [{' '.join(tags)}]" if tags else line


def log_metric(
    logger: logging.Logger,
    name: str,
    value: Any,
    unit: Optional[str] = None,
    **tags: Any,
) -> None:
    """Emit ``METRIC name=value`` at INFO with the value in structured fields.

    Args:
        logger: Logger to emit on
        name: Metric name (e.g. "reports_succeeded")
        value: Metric value
        unit: Optional unit (e.g. "reports", "seconds")
        **tags: Additional structured fields
    """
    extra: Dict[str, Any] = {"metric_name": name, "metric_value": value, **tags}
    if unit:
        extra["metric_unit"] = unit
    logger.info("METRIC %s=%s", name, value, extra=extra)


def setup_logging(
    verbose: bool = False,
    json_format: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """Configure root logging for a report run.

    Args:
        verbose: Enable debug-level logging
        json_format: Emit JSON lines instead of the console format
        log_file: Also write records to this file
    """
    level = logging.DEBUG if verbose else logging.INFO
    formatter: logging.Formatter = JSONFormatter() if json_format else ContextFormatter()

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(TaskContextFilter())
        root.addHandler(handler)

    # httpx logs every request at INFO
    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
