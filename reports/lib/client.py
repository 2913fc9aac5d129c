"""httpx client for the upstream report-generation API.

Three calls are used: create a report, read its processing status, and
download the finished document. Transport failures (DNS, connect, read
timeouts) are retried a couple of times here with tenacity; HTTP error
statuses are raised as ``UpstreamApiError`` and left to the workflow's
retry executor, which classifies them by status code.
"""

from __future__ import annotations

import gzip
import json
import logging
from typing import Any, Dict, List, Optional

import httpx
import requests_toolbelt
import tenacity
from requests_toolbelt.utils.user_agent import user_agent
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from reports import __version__
from reports.lib.collaborators import ReportSpec, ReportStatus
from reports.lib.constants import (
    DEFAULT_API_BASE_URL,
    DEFAULT_API_TIMEOUT_SECONDS,
    DEFAULT_TRANSPORT_RETRIES,
)
from reports.lib.errors import MissingCredentialsError, UpstreamApiError
from reports.lib.models import Account

logger = logging.getLogger(__name__)

__all__ = ["ReportApiClient", "extract_records"]

REPORTS_PATH = "/reports/2021-06-30"

_USER_AGENT = user_agent(
    "report-foundry",
    __version__,
    extras=[
        ("httpx", getattr(httpx, "__version__", "unknown")),
        ("tenacity", getattr(tenacity, "__version__", "unknown")),
        ("requests-toolbelt", getattr(requests_toolbelt, "__version__", "unknown")),
    ],
)


def extract_records(data: Any) -> List[Dict[str, Any]]:
    """Pull the record list out of a downloaded report document.

    Accepts a bare list, or an object holding the list under ``records``,
    ``dataByAsin``, ``data`` or ``data.records``.
    """
    if isinstance(data, list):
        return data
    if not isinstance(data, dict):
        logger.warning("Unexpected report document type: %s", type(data))
        return []

    for key in ("records", "dataByAsin", "data"):
        value = data.get(key)
        if isinstance(value, list):
            return value
    nested = data.get("data")
    if isinstance(nested, dict) and isinstance(nested.get("records"), list):
        return nested["records"]

    logger.warning("No records found in report document (keys: %s)", sorted(data))
    return []


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds > 0 else None


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    errors = body.get("errors") if isinstance(body, dict) else None
    if isinstance(errors, list) and errors:
        return "; ".join(
            f"{e.get('code', '')}: {e.get('message', '')}".strip(": ")
            for e in errors
            if isinstance(e, dict)
        )
    return json.dumps(body)[:200]


class ReportApiClient:
    """Async client for the report API.

    Example:
        async with ReportApiClient("https://sellingpartnerapi-na.amazon.com") as api:
            report_id = await api.create_report(account, spec)
    """

    def __init__(
        self,
        base_url: str = DEFAULT_API_BASE_URL,
        *,
        timeout: float = DEFAULT_API_TIMEOUT_SECONDS,
        transport_retries: int = DEFAULT_TRANSPORT_RETRIES,
        retry_wait: Optional[wait_base] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_connections: int = 10,
    ):
        self.base_url = base_url.rstrip("/")
        self.transport_retries = max(0, transport_retries)
        self.retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=5)
        limits = httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_connections,
        )
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            limits=limits,
            transport=transport,
            headers={"User-Agent": _USER_AGENT, "Accept": "application/json"},
        )

    async def __aenter__(self) -> "ReportApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self, account: Account) -> Dict[str, str]:
        if not account.access_token:
            raise MissingCredentialsError(
                f"No access token available for account {account.account_id}",
                account=account.account_id,
            )
        return {"x-amz-access-token": account.access_token}

    async def _send(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.transport_retries + 1),
            wait=self.retry_wait,
            retry=retry_if_exception_type(httpx.RequestError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                logger.debug("%s %s (%s)", method, url, operation)
                response = await self._client.request(method, url, headers=headers, json=json_body)

        if response.is_error:
            status = response.status_code
            retry_after = _retry_after(response) if status == 429 else None
            if retry_after:
                logger.warning("Rate limited by API on %s; Retry-After %.1fs", operation, retry_after)
            raise UpstreamApiError(
                f"{operation} failed with HTTP {status}: {_error_text(response)}",
                status_code=status,
                operation=operation,
                retry_after=retry_after,
            )
        return response

    async def create_report(self, account: Account, spec: ReportSpec) -> str:
        response = await self._send(
            "create_report",
            "POST",
            f"{REPORTS_PATH}/reports",
            headers=self._headers(account),
            json_body=spec.to_payload(),
        )
        report_id = response.json().get("reportId")
        if not report_id:
            raise UpstreamApiError(
                "create_report response did not include a reportId",
                operation="create_report",
            )
        return str(report_id)

    async def get_report_status(self, account: Account, report_id: str) -> ReportStatus:
        response = await self._send(
            "get_report_status",
            "GET",
            f"{REPORTS_PATH}/reports/{report_id}",
            headers=self._headers(account),
        )
        body = response.json()
        return ReportStatus(
            processing_status=str(body.get("processingStatus") or "UNKNOWN"),
            report_document_id=body.get("reportDocumentId"),
        )

    async def download_report(self, account: Account, document_id: str) -> List[Dict[str, Any]]:
        """Resolve the document, fetch its content and return the records."""
        response = await self._send(
            "get_report_document",
            "GET",
            f"{REPORTS_PATH}/documents/{document_id}",
            headers=self._headers(account),
        )
        document = response.json()
        url = document.get("url")
        if not url:
            raise UpstreamApiError(
                f"Report document {document_id} has no download url",
                operation="get_report_document",
            )

        content_response = await self._send("download_report", "GET", url)
        content = content_response.content
        if str(document.get("compressionAlgorithm", "")).upper() == "GZIP":
            content = gzip.decompress(content)
        if not content.strip():
            return []

        try:
            data = json.loads(content.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise UpstreamApiError(
                f"Report document {document_id} is not valid JSON",
                operation="download_report",
                cause=exc,
            ) from exc
        records = extract_records(data)
        logger.info("Downloaded document %s with %d records", document_id, len(records))
        return records
