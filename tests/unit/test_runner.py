"""Tests for account-level batch runs."""

import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest

from reports.lib.chunking import EntityChunk
from reports.lib.errors import PersistenceError
from reports.lib.models import Account, DateRange, EntityPeriodStatus, PeriodKind, PullStatus, ReportState
from reports.lib.runner import (
    BatchRunner,
    ProcessResult,
    RunSummary,
    build_runner,
    process_entities,
    reset_period_statuses,
)
from reports.lib.scheduler import EligibilityScheduler
from reports.lib.settings import ReportSettings
from reports.lib.storage import LocalReportStorage

W, M, Q = PeriodKind.WEEK, PeriodKind.MONTH, PeriodKind.QUARTER


@pytest.fixture
def make_runner(make_workflow, store, clock):
    def _make(**kwargs):
        scheduler = EligibilityScheduler(
            store,
            max_entities=kwargs.pop("max_entities", 20),
            max_days_ago=7,
            now=clock.now,
        )
        return BatchRunner(
            make_workflow(),
            scheduler,
            timezone_name="UTC",
            now=clock.now,
            **kwargs,
        )

    return _make


def _statuses(store, entity_id):
    entity = store.entities["acme-us"][entity_id]
    return {p: entity.status_for(p).status for p in (W, M, Q)}


# =============================================================================
# Regular runs
# =============================================================================


class TestRunAccount:
    """Tests for BatchRunner.run_account."""

    def test_new_entities_get_all_periods(self, make_runner, account, api, store, tracked):
        tracked("B000000001", "B000000002")
        runner = make_runner()

        summary = asyncio.run(runner.run_account(account))

        assert summary.ok
        assert summary.scenario == 1
        assert summary.entity_count == 2
        assert summary.periods == ["WEEK", "MONTH", "QUARTER"]
        assert summary.succeeded == 3
        assert summary.failed == 0
        assert [s.period for s in api.specs] == [W, M, Q]
        assert api.specs[0].data_start_time == "2025-03-02T00:00:00Z"
        assert api.specs[1].data_start_time == "2025-02-01T00:00:00Z"
        assert api.specs[2].data_start_time == "2024-10-01T00:00:00Z"
        assert _statuses(store, "B000000001") == {W: PullStatus.SUCCESS, M: PullStatus.SUCCESS, Q: PullStatus.SUCCESS}

    def test_second_pass_has_nothing_due(self, make_runner, account, tracked):
        tracked("B000000001")
        runner = make_runner()
        asyncio.run(runner.run_account(account))

        summary = asyncio.run(runner.run_account(account))

        assert summary.scenario is None
        assert summary.succeeded == 0
        assert summary.ok

    def test_period_filter(self, make_runner, account, api, store, tracked):
        tracked("B000000001")
        runner = make_runner()

        summary = asyncio.run(runner.run_account(account, periods=[M]))

        assert summary.periods == ["MONTH"]
        assert [s.period for s in api.specs] == [M]
        assert _statuses(store, "B000000001")[W] == PullStatus.UNSET

    def test_chunks_get_their_own_task(self, make_runner, account, api, store, tracked):
        """Entities beyond one filter string are split into separate reports."""
        tracked("B000000001", "B000000002", "B000000003")
        runner = make_runner(max_asin_chars=21)

        summary = asyncio.run(runner.run_account(account, periods=[W]))

        assert summary.succeeded == 2
        assert [s.entity_filter for s in api.specs] == ["B000000001 B000000002", "B000000003"]
        run_ids = sorted(key.run_id for key in store.tasks)
        assert run_ids == [f"{summary.run_id}-1", f"{summary.run_id}-2"]

    def test_missing_credentials_stop_the_batch(self, make_runner, api, store, tracked):
        tracked("B000000001")
        account = Account(account_id="acme-us", seller_id="A1SELLER", marketplace_id="ATVPDKIKX0DER")
        runner = make_runner()

        summary = asyncio.run(runner.run_account(account))

        assert summary.stopped
        assert not summary.ok
        assert summary.failed == 1
        assert api.calls == []
        assert "No access token" in summary.errors[0]

    def test_failed_report_does_not_stop_others(self, make_runner, account, api, tracked):
        tracked("B000000001")
        api.statuses.extend(["FATAL", "DONE", "DONE"])
        runner = make_runner()

        summary = asyncio.run(runner.run_account(account))

        assert not summary.stopped
        assert summary.failed == 1
        assert summary.succeeded == 2

    def test_run_id_format(self, make_runner, account, tracked):
        tracked("B000000001")

        summary = asyncio.run(make_runner().run_account(account))

        assert summary.run_id.startswith("acme-us-20250314120000-")


# =============================================================================
# Backfill
# =============================================================================


class TestRunBackfill:
    """Tests for BatchRunner.run_backfill."""

    def test_requests_every_historical_range(self, make_runner, account, api, store, tracked):
        tracked("B000000001", "B000000002")
        runner = make_runner(history={W: 2, M: 1, Q: 0})

        summary = asyncio.run(runner.run_backfill(account))

        assert summary.backfill
        assert summary.succeeded == 3
        assert [(s.period, s.data_start_time) for s in api.specs] == [
            (W, "2025-02-23T00:00:00Z"),
            (W, "2025-02-16T00:00:00Z"),
            (M, "2025-01-01T00:00:00Z"),
        ]
        assert all(key.date_range is not None for key in store.tasks)
        assert _statuses(store, "B000000001") == {W: PullStatus.UNSET, M: PullStatus.UNSET, Q: PullStatus.UNSET}

    def test_limit_takes_oldest_entities(self, make_runner, account, api, tracked):
        tracked("B000000001", "B000000002")
        runner = make_runner(history={W: 1, M: 0, Q: 0})

        asyncio.run(runner.run_backfill(account, limit=1))

        assert [s.entity_filter for s in api.specs] == ["B000000001"]

    def test_counts_override_history(self, make_runner, account, api, tracked):
        tracked("B000000001")
        runner = make_runner(history={W: 5, M: 5, Q: 5})

        asyncio.run(runner.run_backfill(account, periods=[Q], counts={Q: 2}))

        assert [s.period for s in api.specs] == [Q, Q]

    def test_nothing_to_backfill(self, make_runner, account, api):
        summary = asyncio.run(make_runner().run_backfill(account))

        assert summary.ok
        assert api.calls == []


# =============================================================================
# Resuming stored tasks
# =============================================================================


async def _in_flight(workflow, new_task, *entity_ids, run_id, **kwargs):
    task = await new_task(workflow, *entity_ids, run_id=run_id, **kwargs)
    task.external_report_id = f"report-{run_id}"
    task.state = ReportState.IN_PROGRESS
    await workflow.store.save_task(task)
    return task


class TestRunRetry:
    """Tests for BatchRunner.run_retry."""

    def test_resumes_error_and_in_flight_tasks(self, make_runner, new_task, account, api, store, tracked):
        tracked("B000000001", "B000000002")
        api.statuses.append("SOMETHING_NEW")
        runner = make_runner()

        async def _inner():
            failed = await new_task(runner.workflow, "B000000001", run_id="run-failed")
            await runner.workflow.run(account, failed)
            await _in_flight(runner.workflow, new_task, "B000000002", run_id="run-stored")
            return await runner.run_retry(account)

        summary = asyncio.run(_inner())

        assert summary.resumed
        assert summary.ok
        assert summary.succeeded == 2
        assert summary.entity_count == 2
        assert summary.periods == ["WEEK"]
        assert api.calls.count("create_report") == 1
        assert all(task.state == ReportState.IMPORTED for task in store.tasks.values())
        assert _statuses(store, "B000000002")[W] == PullStatus.SUCCESS

    def test_skips_stale_and_superseded_tasks(self, make_runner, new_task, account, api, store, clock, tracked):
        tracked("B000000001")
        runner = make_runner()

        async def _inner():
            stale = await _in_flight(runner.workflow, new_task, "B000000001", run_id="run-old")
            clock.advance(8 * 86400)
            superseded = await _in_flight(runner.workflow, new_task, "B000000001", run_id="run-superseded")
            backfill = await _in_flight(runner.workflow, new_task, "B000000001", run_id="run-backfill", backfill=True)
            clock.advance(60)
            pulled = EntityPeriodStatus(status=PullStatus.SUCCESS, start_time=clock.now(), end_time=clock.now())
            await store.update_entity_status("acme-us", ["B000000001"], W, pulled)
            summary = await runner.run_retry(account)
            return summary, stale, superseded, backfill

        summary, stale, superseded, backfill = asyncio.run(_inner())

        assert summary.succeeded == 1
        assert api.calls == ["get_report_status", "download_report"]
        assert store.tasks[backfill.key].state == ReportState.IMPORTED
        assert store.tasks[stale.key].state == ReportState.IN_PROGRESS
        assert store.tasks[superseded.key].state == ReportState.IN_PROGRESS

    def test_period_filter(self, make_runner, new_task, account, api, store, tracked):
        tracked("B000000001")
        runner = make_runner()

        async def _inner():
            week = await _in_flight(runner.workflow, new_task, "B000000001", run_id="run-week")
            month = await _in_flight(runner.workflow, new_task, "B000000001", run_id="run-month", period=M)
            summary = await runner.run_retry(account, periods=[M])
            return summary, week, month

        summary, week, month = asyncio.run(_inner())

        assert summary.succeeded == 1
        assert store.tasks[month.key].state == ReportState.IMPORTED
        assert store.tasks[week.key].state == ReportState.IN_PROGRESS

    def test_spent_tasks_count_as_skipped(self, make_runner, new_task, account, api, store, tracked):
        tracked("B000000001")
        api.statuses.extend([RuntimeError("connection reset")] * 3)
        runner = make_runner()

        async def _inner():
            task = await new_task(runner.workflow, "B000000001", run_id="run-spent")
            await runner.workflow.run(account, task)
            return await runner.run_retry(account)

        summary = asyncio.run(_inner())

        assert summary.skipped == 1
        assert summary.failed == 0
        assert summary.succeeded == 0

    def test_nothing_to_resume(self, make_runner, account, api):
        summary = asyncio.run(make_runner().run_retry(account))

        assert summary.ok
        assert summary.succeeded == 0
        assert api.calls == []


# =============================================================================
# Period resets
# =============================================================================


class TestPeriodReset:
    """Statuses from an earlier reporting window go back to UNSET."""

    def test_new_week_is_scheduled_again(self, make_runner, account, api, store, clock, tracked):
        tracked("B000000001")
        runner = make_runner()
        asyncio.run(runner.run_account(account))

        # Friday to the following Tuesday
        clock.advance(4 * 86400)
        summary = asyncio.run(runner.run_account(account))

        assert summary.scenario == 5
        assert summary.periods == ["WEEK"]
        assert summary.succeeded == 1
        assert api.specs[-1].data_start_time == "2025-03-09T00:00:00Z"

    def test_auto_reset_can_be_disabled(self, make_runner, account, clock, tracked):
        tracked("B000000001")
        runner = make_runner(auto_reset=False)
        asyncio.run(runner.run_account(account))

        clock.advance(4 * 86400)
        summary = asyncio.run(runner.run_account(account))

        assert summary.scenario is None

    def test_forced_reset_clears_every_period(self, make_runner, account, store, tracked):
        tracked("B000000001", "B000000002")
        runner = make_runner()
        asyncio.run(runner.run_account(account))

        counts = asyncio.run(runner.reset_periods(account, force=True))

        assert counts == {W: 2, M: 2, Q: 2}
        assert _statuses(store, "B000000001") == {W: PullStatus.UNSET, M: PullStatus.UNSET, Q: PullStatus.UNSET}

    def test_boundary_is_local_midnight(self, store, clock, tracked):
        """Tuesday midnight in Denver is 06:00 UTC while daylight saving applies."""
        tracked("B000000001", "B000000002")
        before = datetime(2025, 3, 11, 5, 0, tzinfo=timezone.utc)
        after = datetime(2025, 3, 11, 7, 0, tzinfo=timezone.utc)

        async def _inner():
            for entity_id, ended in (("B000000001", before), ("B000000002", after)):
                status = EntityPeriodStatus(
                    status=PullStatus.SUCCESS, start_time=ended - timedelta(minutes=5), end_time=ended
                )
                await store.update_entity_status("acme-us", [entity_id], W, status)
            return await reset_period_statuses(
                store, "acme-us", timezone_name="America/Denver", now=clock.now(), periods=[W]
            )

        counts = asyncio.run(_inner())

        assert counts == {W: 1}
        assert _statuses(store, "B000000001")[W] == PullStatus.UNSET
        assert _statuses(store, "B000000002")[W] == PullStatus.SUCCESS


# =============================================================================
# process_entities
# =============================================================================


class TestProcessEntities:
    WORK = [(W, DateRange(date(2025, 3, 2), date(2025, 3, 8)))]
    CHUNKS = [EntityChunk(["B1"]), EntityChunk(["B2"]), EntityChunk(["B3"])]

    def test_persistence_error_aborts_only_its_chunk(self, account):
        seen = []

        async def processor(account, chunk, period, date_range):
            seen.append(chunk.entity_ids[0])
            if chunk.entity_ids == ["B1"]:
                raise PersistenceError("state file unwritable")
            return ProcessResult(processed=True)

        progress = asyncio.run(process_entities(account, self.CHUNKS, self.WORK, processor))

        assert seen == ["B1", "B2", "B3"]
        assert progress.failed == 1
        assert progress.processed == 2
        assert not progress.stopped
        assert "state file unwritable" in progress.errors[0]

    def test_stop_flag_ends_batch(self, account):
        seen = []

        async def processor(account, chunk, period, date_range):
            seen.append(chunk.entity_ids[0])
            return ProcessResult(processed=False, error=RuntimeError("breaker open"), should_stop_batch=True)

        progress = asyncio.run(process_entities(account, self.CHUNKS, self.WORK, processor))

        assert seen == ["B1"]
        assert progress.stopped

    def test_other_errors_propagate(self, account):
        async def processor(account, chunk, period, date_range):
            raise KeyError("bug")

        with pytest.raises(KeyError):
            asyncio.run(process_entities(account, self.CHUNKS, self.WORK, processor))


class TestBuildRunner:
    def test_wires_settings(self, api, store, sleeper, clock, tmp_path):
        settings = ReportSettings(
            _env_file=None,
            max_retries=4,
            max_entities_per_batch=5,
            max_asin_string_chars=50,
            request_delay_seconds=0,
            initial_delay_seconds=0,
            timezone="UTC",
        )

        runner = build_runner(
            settings, api, store, storage=LocalReportStorage(tmp_path), sleep=sleeper, now=clock.now
        )

        assert runner.workflow.max_retries == 4
        assert runner.scheduler.max_entities == 5
        assert runner.max_asin_chars == 50
        assert runner.timezone_name == "UTC"
        assert runner.history == {W: 52, M: 12, Q: 4}
        assert runner.auto_reset is True

    def test_built_runner_runs(self, api, store, sleeper, clock, tmp_path, account, tracked):
        tracked("B000000001")
        settings = ReportSettings(_env_file=None, request_delay_seconds=0, initial_delay_seconds=0)
        runner = build_runner(
            settings, api, store, storage=LocalReportStorage(tmp_path), sleep=sleeper, now=clock.now
        )

        summary = asyncio.run(runner.run_account(account, periods=[W]))

        assert summary.succeeded == 1


class TestRunSummary:
    def test_ok_and_dict(self):
        summary = RunSummary(account_id="acme-us", run_id="r", failed=1)

        assert not summary.ok
        assert summary.to_dict()["failed"] == 1
        assert summary.to_dict()["resumed"] is False
