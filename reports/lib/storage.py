"""Local storage for downloaded report payloads and imported rows.

Layout:
    <storage_dir>/<account>/<period>/<start>_<end>/<report_id>.json    raw payload
    <storage_dir>/<account>/<period>/<start>_<end>/<report_id>.jsonl   imported rows
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from reports.lib.collaborators import StoredPayload
from reports.lib.constants import DEFAULT_STORAGE_DIR
from reports.lib.models import Account, ReportTask

logger = logging.getLogger(__name__)

__all__ = [
    "JsonLinesImporter",
    "LocalReportStorage",
    "derive_metrics",
    "flatten_record",
]


def _report_dir(root: Path, account: Account, task: ReportTask) -> Path:
    span = f"{task.date_range.start.isoformat()}_{task.date_range.end.isoformat()}"
    return root / account.account_id / task.period.value.lower() / span


def _report_name(task: ReportTask) -> str:
    return task.external_report_id or task.task_id


class LocalReportStorage:
    """Writes each downloaded payload to a pretty-printed JSON file."""

    def __init__(self, root: Union[str, Path] = DEFAULT_STORAGE_DIR):
        self.root = Path(root)

    async def save(
        self,
        account: Account,
        task: ReportTask,
        records: List[Dict[str, Any]],
    ) -> StoredPayload:
        target_dir = _report_dir(self.root, account, task)
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / f"{_report_name(task)}.json"

        body = {
            "account_id": account.account_id,
            "report_id": task.external_report_id,
            "period": task.period.value,
            "date_range": task.date_range.to_dict(),
            "entity_ids": task.entity_ids,
            "records": records,
        }
        path.write_text(json.dumps(body, indent=2, default=str), encoding="utf-8")
        size = path.stat().st_size
        logger.info("Saved %d records (%d bytes) to %s", len(records), size, path)
        return StoredPayload(path=str(path), size_bytes=size)


def flatten_record(record: Dict[str, Any], prefix: str = "", sep: str = ".") -> Dict[str, Any]:
    """Flatten nested dicts into dotted keys; lists are kept as-is."""
    flat: Dict[str, Any] = {}
    for key, value in record.items():
        name = f"{prefix}{sep}{key}" if prefix else str(key)
        if isinstance(value, dict):
            flat.update(flatten_record(value, name, sep))
        else:
            flat[name] = value
    return flat


def _number(value: Any) -> float:
    if isinstance(value, dict):
        value = value.get("amount")
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _ratio(numerator: float, denominator: float, scale: float = 1.0) -> float:
    if not denominator:
        return 0.0
    return round(numerator / denominator * scale, 4)


def derive_metrics(record: Dict[str, Any]) -> Dict[str, float]:
    """Click-through rate, spend, sales, ACoS and conversion rate for one record.

    Example:
        >>> derive_metrics({
        ...     "impressionData": {"asinImpressionCount": 1000},
        ...     "clickData": {"asinClickCount": 100, "asinMedianClickPrice": {"amount": 0.5}},
        ...     "purchaseData": {"asinPurchaseCount": 10, "asinMedianPurchasePrice": {"amount": 25.0}},
        ... })["acos"]
        20.0
    """
    impressions = _number((record.get("impressionData") or {}).get("asinImpressionCount"))
    click_data = record.get("clickData") or {}
    purchase_data = record.get("purchaseData") or {}
    clicks = _number(click_data.get("asinClickCount"))
    click_price = _number(click_data.get("asinMedianClickPrice"))
    purchases = _number(purchase_data.get("asinPurchaseCount"))
    purchase_price = _number(purchase_data.get("asinMedianPurchasePrice"))

    spend = round(clicks * click_price, 4)
    sales = round(purchases * purchase_price, 4)
    return {
        "click_through_rate": _ratio(clicks, impressions, 100.0),
        "spend": spend,
        "sales": sales,
        "acos": _ratio(spend, sales, 100.0),
        "conversion_rate": _ratio(purchases, clicks, 100.0),
    }


class JsonLinesImporter:
    """Imports records as flattened JSON lines next to the raw payload."""

    def __init__(self, root: Optional[Union[str, Path]] = None):
        self.root = Path(root) if root else None

    async def import_records(
        self,
        account: Account,
        task: ReportTask,
        records: List[Dict[str, Any]],
        payload: StoredPayload,
    ) -> int:
        if self.root is not None:
            target_dir = _report_dir(self.root, account, task)
            target_dir.mkdir(parents=True, exist_ok=True)
            path = target_dir / f"{_report_name(task)}.jsonl"
        else:
            path = Path(payload.path).with_suffix(".jsonl")

        rows = 0
        with path.open("w", encoding="utf-8") as handle:
            for record in records:
                if not isinstance(record, dict):
                    logger.warning("Skipping non-object record in report %s", task.external_report_id)
                    continue
                row = {
                    "account_id": account.account_id,
                    "report_id": task.external_report_id,
                    "period": task.period.value,
                    "start_date": task.date_range.start.isoformat(),
                    "end_date": task.date_range.end.isoformat(),
                    **flatten_record(record),
                    **derive_metrics(record),
                }
                handle.write(json.dumps(row, default=str))
                handle.write("\n")
                rows += 1

        logger.info("Imported %d rows for report %s into %s", rows, task.external_report_id, path)
        return rows
