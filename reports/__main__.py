"""CLI entry point for report runs.

Usage:
    python -m reports run --config accounts.yaml
    python -m reports run --config accounts.yaml --account acme-us --period week
    python -m reports backfill --config accounts.yaml --period month --limit 5
    python -m reports retry --config accounts.yaml --account acme-us
    python -m reports reset --config accounts.yaml --period week --force
    python -m reports status --config accounts.yaml --account acme-us

Settings come from REPORTS_* environment variables (or a .env file);
accounts and their tracked entities come from the YAML file.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional, Sequence

from pydantic import ValidationError

from reports import __version__
from reports.lib.client import ReportApiClient
from reports.lib.config_loader import load_accounts
from reports.lib.errors import ReportError
from reports.lib.logging import setup_logging as _setup_logging
from reports.lib.models import Account, PeriodKind
from reports.lib.notify import FailureNotifier, LoggingChannel, NotificationChannel, WebhookChannel
from reports.lib.runner import RunSummary, build_runner, reset_period_statuses
from reports.lib.settings import ReportSettings, load_env_file
from reports.lib.store import JsonFileStore

logger = logging.getLogger(__name__)


def setup_logging(
    verbose: bool = False,
    json_format: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """Configure logging for report runs."""
    _setup_logging(verbose=verbose, json_format=json_format, log_file=log_file)


def _select_accounts(accounts: List[Account], account_id: Optional[str]) -> List[Account]:
    if not account_id:
        return accounts
    selected = [a for a in accounts if a.account_id == account_id]
    if not selected:
        raise ReportError(
            f"Account {account_id} is not in the configuration",
            account=account_id,
            suggestion=f"Known accounts: {', '.join(a.account_id for a in accounts)}",
        )
    return selected


def _open_store(settings: ReportSettings, account: Account) -> JsonFileStore:
    store = JsonFileStore(account.account_id, settings.state_dir)
    store.sync_entities(account.account_id, account.entities)
    return store


def _channel(settings: ReportSettings) -> NotificationChannel:
    if settings.notify_webhook_url:
        return WebhookChannel(settings.notify_webhook_url)
    return LoggingChannel()


async def _run_accounts(
    command: str,
    settings: ReportSettings,
    accounts: Sequence[Account],
    periods: Optional[List[PeriodKind]],
    limit: Optional[int],
) -> List[RunSummary]:
    summaries: List[RunSummary] = []
    breaker = settings.build_circuit_breaker()
    rate_limiter = settings.build_rate_limiter()
    channel = _channel(settings)

    async with ReportApiClient(settings.api_base_url, timeout=settings.api_timeout_seconds) as api:
        for account in accounts:
            store = _open_store(settings, account)
            notifier = FailureNotifier(
                store,
                channel,
                account_id=account.account_id,
                context={"backfill": "Backfill", "retry": "Retry"}.get(command, ""),
            )
            runner = build_runner(
                settings,
                api,
                store,
                notifier=notifier,
                breaker=breaker,
                rate_limiter=rate_limiter,
            )
            if command == "backfill":
                summary = await runner.run_backfill(account, periods=periods, limit=limit)
            elif command == "retry":
                summary = await runner.run_retry(account, periods=periods)
            else:
                summary = await runner.run_account(account, periods=periods)
            summaries.append(summary)
    return summaries


def _summary_title(summary: RunSummary) -> str:
    if summary.backfill:
        return "Backfill"
    return "Retry" if summary.resumed else "Run"


def reset_statuses(
    settings: ReportSettings,
    account: Account,
    periods: Optional[List[PeriodKind]],
    *,
    force: bool = False,
) -> None:
    """Clear an account's period statuses and print how many were reset."""
    store = _open_store(settings, account)
    counts = asyncio.run(
        reset_period_statuses(
            store,
            account.account_id,
            timezone_name=settings.timezone,
            periods=periods,
            force=force,
        )
    )
    cells = ", ".join(f"{period.value}={count}" for period, count in counts.items())
    print(f"{account.account_id}: reset {cells}")


def print_summary(summary: RunSummary) -> None:
    """Print a run summary in a readable format."""
    print()
    print("=" * 60)
    print(f"{_summary_title(summary)}: {summary.run_id}")
    print("=" * 60)
    if summary.scenario is None and not (summary.backfill or summary.resumed):
        print("Nothing due - no eligible entities")
    else:
        if summary.scenario is not None:
            print(f"Scenario: {summary.scenario}")
        print(f"Entities: {summary.entity_count}")
        print(f"Periods:  {', '.join(summary.periods) or '-'}")
        print(f"Reports:  {summary.succeeded} imported, {summary.failed} failed, {summary.skipped} skipped")
        if summary.stopped:
            print("Stopped early after an account-wide failure")
        for error in summary.errors:
            print(f"  Error: {error.splitlines()[0]}")
    print(f"Elapsed: {summary.duration_seconds:.2f}s")
    print("=" * 60)


def print_status(settings: ReportSettings, account: Account, *, as_json: bool = False) -> None:
    """Print per-entity period statuses and the latest activity for an account."""
    store = _open_store(settings, account)
    entities = asyncio.run(store.list_entities(account.account_id))

    if as_json:
        print(
            json.dumps(
                {
                    "entities": [e.to_dict() for e in entities],
                    "activity": [a.to_dict() for a in store.activity.values()],
                },
                indent=2,
                default=str,
            )
        )
        return

    print()
    print(f"Account: {account.account_id} ({len(entities)} entities)")
    print("-" * 60)
    for entity in entities:
        cells = []
        for period in PeriodKind:
            status = entity.status_for(period)
            ended = status.end_time.strftime("%Y-%m-%d") if status.end_time else "-"
            cells.append(f"{period.value}={status.status.value}@{ended}")
        flag = "" if entity.active else " (inactive)"
        print(f"{entity.entity_id:<14}{flag} {'  '.join(cells)}")

    if store.activity:
        print()
        print("Latest activity:")
        entries = sorted(
            store.activity.values(),
            key=lambda a: a.updated_at.isoformat() if a.updated_at else "",
        )
        for entry in entries:
            print(
                f"  {entry.key} {entry.action}: {entry.status.name} "
                f"(retries={entry.retry_count}) {entry.message}"
            )


def _parse_periods(values: Optional[List[str]]) -> Optional[List[PeriodKind]]:
    if not values:
        return None
    return [PeriodKind.parse(v) for v in values]


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="report-foundry",
        description="Pull scheduled analytics reports for tracked entities",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # One scheduling pass for every account
    python -m reports run --config accounts.yaml

    # Only weekly reports for one account
    python -m reports run --config accounts.yaml --account acme-us --period week

    # Pull historical months for the 5 oldest entities
    python -m reports backfill --config accounts.yaml --period month --limit 5

    # Resume reports that were requested but never imported
    python -m reports retry --config accounts.yaml --account acme-us

    # Clear every weekly status so the next run pulls all entities again
    python -m reports reset --config accounts.yaml --period week --force

    # Show entity statuses and the activity log
    python -m reports status --config accounts.yaml --account acme-us
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        default="accounts.yaml",
        help="YAML file listing accounts and tracked entities (default: accounts.yaml)",
    )
    common.add_argument("--env-file", help="Load environment variables from this .env file")
    common.add_argument("--account", help="Only process this account id")
    common.add_argument(
        "--period",
        action="append",
        choices=["week", "month", "quarter", "WEEK", "MONTH", "QUARTER"],
        help="Restrict to a period (repeatable)",
    )
    common.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    common.add_argument("--json-logs", action="store_true", help="Emit logs as JSON lines")
    common.add_argument("--log-file", help="Also write logs to this file")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("run", parents=[common], help="Run one scheduling pass per account")
    backfill = subparsers.add_parser("backfill", parents=[common], help="Request historical date ranges")
    backfill.add_argument("--limit", type=int, help="Maximum entities per account")
    subparsers.add_parser("retry", parents=[common], help="Resume stored reports that were never imported")
    reset = subparsers.add_parser("reset", parents=[common], help="Clear period statuses from a previous window")
    reset.add_argument(
        "--force", action="store_true", help="Clear every status, not only those from a previous window"
    )
    status = subparsers.add_parser("status", parents=[common], help="Show entity statuses and activity")
    status.add_argument("--json", action="store_true", help="Print status as JSON")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return

    if args.env_file:
        load_env_file(args.env_file, override=True)

    try:
        settings = ReportSettings()
    except ValidationError as e:
        print(f"\nInvalid settings:\n{e}")
        sys.exit(2)

    setup_logging(
        verbose=args.verbose or settings.log_level == "DEBUG",
        json_format=args.json_logs or settings.log_format == "json",
        log_file=args.log_file or settings.log_file,
    )

    try:
        accounts = _select_accounts(load_accounts(args.config), args.account)
        periods = _parse_periods(args.period)

        if args.command == "status":
            for account in accounts:
                print_status(settings, account, as_json=args.json)
            return

        if args.command == "reset":
            for account in accounts:
                reset_statuses(settings, account, periods, force=args.force)
            return

        logger.info("Running %s for %d accounts", args.command, len(accounts))
        summaries = asyncio.run(
            _run_accounts(args.command, settings, accounts, periods, getattr(args, "limit", None))
        )
        for summary in summaries:
            print_summary(summary)

        if not all(s.ok for s in summaries):
            sys.exit(1)

    except KeyboardInterrupt:
        print("\nInterrupted by user")
        sys.exit(130)

    except ReportError as e:
        logger.error("Report run failed: %s", e.message)
        print(f"\nError: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
