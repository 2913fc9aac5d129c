"""Tests for the httpx report API client."""

import asyncio
import gzip
import json

import httpx
import pytest
from tenacity import wait_none

from reports.lib.client import REPORTS_PATH, ReportApiClient, extract_records
from reports.lib.collaborators import ReportSpec
from reports.lib.errors import MissingCredentialsError, UpstreamApiError
from reports.lib.models import Account, PeriodKind

BASE_URL = "https://api.example.com"
DOCUMENT_URL = "https://files.example.com/doc-1"


def _client(handler, **kwargs):
    return ReportApiClient(
        BASE_URL,
        transport=httpx.MockTransport(handler),
        retry_wait=wait_none(),
        **kwargs,
    )


def _run(handler, call, **kwargs):
    async def _inner():
        async with _client(handler, **kwargs) as api:
            return await call(api)

    return asyncio.run(_inner())


SPEC = ReportSpec(
    report_type="GET_BRAND_ANALYTICS_SEARCH_QUERY_PERFORMANCE_REPORT",
    data_start_time="2025-03-02T00:00:00Z",
    data_end_time="2025-03-08T23:59:59Z",
    marketplace_ids=["ATVPDKIKX0DER"],
    entity_filter="B000000001 B000000002",
    period=PeriodKind.WEEK,
)


class TestExtractRecords:
    def test_shapes(self):
        assert extract_records([{"a": 1}]) == [{"a": 1}]
        assert extract_records({"records": [{"a": 1}]}) == [{"a": 1}]
        assert extract_records({"dataByAsin": [{"a": 1}]}) == [{"a": 1}]
        assert extract_records({"data": [{"a": 1}]}) == [{"a": 1}]
        assert extract_records({"data": {"records": [{"a": 1}]}}) == [{"a": 1}]

    def test_unknown_shapes(self):
        assert extract_records({"reportSpecification": {}}) == []
        assert extract_records("text") == []


class TestCreateReport:
    """Tests for ReportApiClient.create_report."""

    def test_posts_spec(self, account):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(202, json={"reportId": "r-123"})

        report_id = _run(handler, lambda api: api.create_report(account, SPEC))

        assert report_id == "r-123"
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == f"{REPORTS_PATH}/reports"
        assert request.headers["x-amz-access-token"] == "Atza|token"
        assert request.headers["User-Agent"].startswith("report-foundry/")
        body = json.loads(request.content)
        assert body["reportType"] == SPEC.report_type
        assert body["marketplaceIds"] == ["ATVPDKIKX0DER"]
        assert body["reportOptions"] == {"asin": "B000000001 B000000002", "reportPeriod": "WEEK"}

    def test_missing_report_id(self, account):
        def handler(request):
            return httpx.Response(202, json={})

        with pytest.raises(UpstreamApiError, match="did not include a reportId"):
            _run(handler, lambda api: api.create_report(account, SPEC))

    def test_missing_token_never_sends(self):
        account = Account(account_id="acme-us", seller_id="S", marketplace_id="M")
        call_count = 0

        def handler(request):
            nonlocal call_count
            call_count += 1
            return httpx.Response(202, json={"reportId": "r-1"})

        with pytest.raises(MissingCredentialsError):
            _run(handler, lambda api: api.create_report(account, SPEC))

        assert call_count == 0


class TestErrors:
    """HTTP error statuses and transport failures."""

    def test_http_error_carries_status(self, account):
        def handler(request):
            return httpx.Response(
                403,
                json={"errors": [{"code": "Unauthorized", "message": "Access to requested resource is denied."}]},
            )

        with pytest.raises(UpstreamApiError) as exc_info:
            _run(handler, lambda api: api.create_report(account, SPEC))

        error = exc_info.value
        assert error.status_code == 403
        assert error.operation == "create_report"
        assert "Unauthorized: Access to requested resource is denied." in error.message
        assert error.retry_after is None

    def test_throttle_reads_retry_after(self, account):
        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "7"}, json={"errors": []})

        with pytest.raises(UpstreamApiError) as exc_info:
            _run(handler, lambda api: api.get_report_status(account, "r-1"))

        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == 7.0

    def test_transport_errors_are_retried(self, account):
        call_count = 0

        def handler(request):
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"processingStatus": "DONE", "reportDocumentId": "doc-1"})

        status = _run(handler, lambda api: api.get_report_status(account, "r-1"), transport_retries=2)

        assert call_count == 3
        assert status.processing_status == "DONE"
        assert status.report_document_id == "doc-1"

    def test_transport_errors_exhausted(self, account):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(httpx.ReadTimeout):
            _run(handler, lambda api: api.get_report_status(account, "r-1"), transport_retries=1)

    def test_http_errors_are_not_retried_by_client(self, account):
        call_count = 0

        def handler(request):
            nonlocal call_count
            call_count += 1
            return httpx.Response(503, text="Service Unavailable")

        with pytest.raises(UpstreamApiError):
            _run(handler, lambda api: api.get_report_status(account, "r-1"))

        assert call_count == 1


class TestStatusAndDownload:
    def test_status_defaults_to_unknown(self, account):
        def handler(request):
            return httpx.Response(200, json={})

        status = _run(handler, lambda api: api.get_report_status(account, "r-1"))

        assert status.processing_status == "UNKNOWN"
        assert status.report_document_id is None

    def test_download_gzip_document(self, account, make_record):
        content = gzip.compress(json.dumps({"dataByAsin": [make_record(), make_record("B2")]}).encode("utf-8"))

        def handler(request):
            if request.url.path == f"{REPORTS_PATH}/documents/doc-1":
                return httpx.Response(200, json={"url": DOCUMENT_URL, "compressionAlgorithm": "GZIP"})
            assert str(request.url) == DOCUMENT_URL
            assert "x-amz-access-token" not in request.headers
            return httpx.Response(200, content=content)

        records = _run(handler, lambda api: api.download_report(account, "doc-1"))

        assert [r["asin"] for r in records] == ["B000000001", "B2"]

    def test_download_empty_document(self, account):
        def handler(request):
            if request.url.host == "api.example.com":
                return httpx.Response(200, json={"url": DOCUMENT_URL})
            return httpx.Response(200, content=b"  ")

        assert _run(handler, lambda api: api.download_report(account, "doc-1")) == []

    def test_download_invalid_json(self, account):
        def handler(request):
            if request.url.host == "api.example.com":
                return httpx.Response(200, json={"url": DOCUMENT_URL})
            return httpx.Response(200, content=b"not json")

        with pytest.raises(UpstreamApiError, match="not valid JSON"):
            _run(handler, lambda api: api.download_report(account, "doc-1"))

    def test_document_without_url(self, account):
        def handler(request):
            return httpx.Response(200, json={"reportDocumentId": "doc-1"})

        with pytest.raises(UpstreamApiError, match="no download url"):
            _run(handler, lambda api: api.download_report(account, "doc-1"))
