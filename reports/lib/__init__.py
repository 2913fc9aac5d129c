"""Report orchestration library modules.

This package contains the orchestration core (retry executor, circuit
breaker, rate limiter, report workflow, eligibility scheduler) and the
collaborators shipped with it (API client, stores, storage, notifier).
"""

from reports.lib.backoff import BackoffPolicy, cap_wait
from reports.lib.chunking import EntityChunk, split_into_chunks
from reports.lib.client import ReportApiClient, extract_records
from reports.lib.config_loader import load_accounts, validate_accounts_config
from reports.lib.dates import historical_ranges, local_today, period_reset_date, previous_period_range
from reports.lib.errors import (
    CircuitBreakerOpen,
    ConfigurationError,
    MissingCredentialsError,
    PersistenceError,
    RateLimitExceeded,
    ReportError,
    ReportStillProcessing,
    UpstreamApiError,
)
from reports.lib.logging import log_metric, setup_logging, task_context
from reports.lib.models import (
    Account,
    ActivityLogEntry,
    ActivityStatus,
    DateRange,
    EntityPeriodStatus,
    PeriodKind,
    PullStatus,
    ReportState,
    ReportTask,
    TaskKey,
    TrackedEntity,
)
from reports.lib.notify import FailureNotifier, LoggingChannel, WebhookChannel, error_type, should_send_notification
from reports.lib.rate_limiter import RateLimiter
from reports.lib.resilience import CircuitBreaker, CircuitState
from reports.lib.retry import OperationResult, RetryExecutor, RetryResult, RetrySpec, is_retryable
from reports.lib.runner import (
    BatchRunner,
    ProcessResult,
    RunSummary,
    build_runner,
    process_entities,
    reset_period_statuses,
)
from reports.lib.scheduler import SCENARIOS, EligibilityScheduler, Scenario, ScheduledBatch
from reports.lib.settings import ReportSettings, load_env_file
from reports.lib.storage import JsonLinesImporter, LocalReportStorage, derive_metrics
from reports.lib.store import JsonFileStore, MemoryStore
from reports.lib.workflow import ReportWorkflow, TaskOutcome

__all__ = [
    # Resilience
    "BackoffPolicy",
    "cap_wait",
    "CircuitBreaker",
    "CircuitState",
    "RateLimiter",
    "RetryExecutor",
    "RetryResult",
    "RetrySpec",
    "OperationResult",
    "is_retryable",
    # Errors
    "ReportError",
    "UpstreamApiError",
    "ReportStillProcessing",
    "RateLimitExceeded",
    "CircuitBreakerOpen",
    "PersistenceError",
    "ConfigurationError",
    "MissingCredentialsError",
    # Models
    "Account",
    "ActivityLogEntry",
    "ActivityStatus",
    "DateRange",
    "EntityPeriodStatus",
    "PeriodKind",
    "PullStatus",
    "ReportState",
    "ReportTask",
    "TaskKey",
    "TrackedEntity",
    # Scheduling and workflow
    "SCENARIOS",
    "Scenario",
    "ScheduledBatch",
    "EligibilityScheduler",
    "ReportWorkflow",
    "TaskOutcome",
    "BatchRunner",
    "ProcessResult",
    "RunSummary",
    "build_runner",
    "process_entities",
    "reset_period_statuses",
    "EntityChunk",
    "split_into_chunks",
    "historical_ranges",
    "local_today",
    "previous_period_range",
    "period_reset_date",
    # Collaborators
    "ReportApiClient",
    "extract_records",
    "MemoryStore",
    "JsonFileStore",
    "LocalReportStorage",
    "JsonLinesImporter",
    "derive_metrics",
    "FailureNotifier",
    "LoggingChannel",
    "WebhookChannel",
    "error_type",
    "should_send_notification",
    # Configuration and logging
    "ReportSettings",
    "load_env_file",
    "load_accounts",
    "validate_accounts_config",
    "log_metric",
    "task_context",
    "setup_logging",
]
