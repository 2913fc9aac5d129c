"""Tests for payload storage and the JSON-lines importer."""

import asyncio
import json
from datetime import date
from pathlib import Path

from reports.lib.collaborators import StoredPayload
from reports.lib.models import DateRange, PeriodKind, ReportTask
from reports.lib.storage import JsonLinesImporter, LocalReportStorage, derive_metrics, flatten_record


def _task(**overrides):
    values = dict(
        task_id="t-1",
        run_id="run-1",
        account_id="acme-us",
        period=PeriodKind.WEEK,
        date_range=DateRange(date(2025, 3, 2), date(2025, 3, 8)),
        entity_ids=["B000000001"],
        external_report_id="r-1",
    )
    values.update(overrides)
    return ReportTask(**values)


class TestDeriveMetrics:
    def test_metrics(self, make_record):
        metrics = derive_metrics(make_record(clicks=100))

        assert metrics == {
            "click_through_rate": 10.0,
            "spend": 50.0,
            "sales": 250.0,
            "acos": 20.0,
            "conversion_rate": 10.0,
        }

    def test_zero_denominators(self):
        metrics = derive_metrics({})

        assert metrics == {
            "click_through_rate": 0.0,
            "spend": 0.0,
            "sales": 0.0,
            "acos": 0.0,
            "conversion_rate": 0.0,
        }

    def test_non_numeric_values_count_as_zero(self):
        metrics = derive_metrics({"clickData": {"asinClickCount": "n/a"}})

        assert metrics["spend"] == 0.0


class TestFlattenRecord:
    def test_nested_keys(self):
        flat = flatten_record({"a": 1, "b": {"c": 2, "d": {"e": [1, 2]}}})

        assert flat == {"a": 1, "b.c": 2, "b.d.e": [1, 2]}

    def test_custom_separator(self):
        assert flatten_record({"a": {"b": 1}}, sep="_") == {"a_b": 1}


class TestLocalReportStorage:
    def test_save_layout(self, tmp_path, account, make_record):
        storage = LocalReportStorage(tmp_path)

        payload = asyncio.run(storage.save(account, _task(), [make_record()]))

        path = Path(payload.path)
        assert path == tmp_path / "acme-us" / "week" / "2025-03-02_2025-03-08" / "r-1.json"
        body = json.loads(path.read_text())
        assert body["entity_ids"] == ["B000000001"]
        assert len(body["records"]) == 1
        assert payload.size_bytes == path.stat().st_size

    def test_falls_back_to_task_id(self, tmp_path, account):
        storage = LocalReportStorage(tmp_path)

        payload = asyncio.run(storage.save(account, _task(external_report_id=None), []))

        assert Path(payload.path).name == "t-1.json"


class TestJsonLinesImporter:
    def test_rows_next_to_payload(self, tmp_path, account, make_record):
        payload = StoredPayload(path=str(tmp_path / "r-1.json"), size_bytes=0)
        importer = JsonLinesImporter()

        rows = asyncio.run(
            importer.import_records(account, _task(), [make_record("B1"), "junk", make_record("B2")], payload)
        )

        assert rows == 2
        lines = (tmp_path / "r-1.jsonl").read_text().splitlines()
        first = json.loads(lines[0])
        assert first["asin"] == "B1"
        assert first["start_date"] == "2025-03-02"
        assert first["period"] == "WEEK"
        assert first["clickData.asinMedianClickPrice.amount"] == 0.5
        assert first["click_through_rate"] == 10.0

    def test_rewrites_on_retry(self, tmp_path, account, make_record):
        payload = StoredPayload(path=str(tmp_path / "r-1.json"), size_bytes=0)
        importer = JsonLinesImporter()

        asyncio.run(importer.import_records(account, _task(), [make_record("B1"), make_record("B2")], payload))
        asyncio.run(importer.import_records(account, _task(), [make_record("B1")], payload))

        assert len((tmp_path / "r-1.jsonl").read_text().splitlines()) == 1

    def test_separate_root(self, tmp_path, account, make_record):
        importer = JsonLinesImporter(tmp_path / "rows")
        payload = StoredPayload(path=str(tmp_path / "elsewhere" / "r-1.json"), size_bytes=0)

        asyncio.run(importer.import_records(account, _task(), [make_record()], payload))

        assert (tmp_path / "rows" / "acme-us" / "week" / "2025-03-02_2025-03-08" / "r-1.jsonl").exists()
