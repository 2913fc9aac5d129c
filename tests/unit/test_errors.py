"""Tests for the exception hierarchy."""

from reports.lib.errors import (
    ConfigurationError,
    MissingCredentialsError,
    ReportError,
    ReportStillProcessing,
    UpstreamApiError,
)


class TestReportError:
    def test_context_details_and_suggestion(self):
        error = ReportError(
            "Report request failed",
            account="acme-us",
            period="WEEK",
            details={"report_id": "r-1"},
            suggestion="Check the token",
        )

        text = str(error)
        assert text.startswith("[acme-us.WEEK]")
        assert "report_id: r-1" in text
        assert "Suggestion: Check the token" in text
        assert error.to_dict()["error_type"] == "ReportError"

    def test_plain_message(self):
        assert str(ReportError("boom")) == "boom"


class TestSubclasses:
    def test_upstream_details(self):
        cause = ValueError("bad json")
        error = UpstreamApiError("failed", status_code=429, operation="create_report", retry_after=5, cause=cause)

        assert error.details == {
            "status_code": 429,
            "operation": "create_report",
            "retry_after": 5,
            "cause": "bad json",
            "cause_type": "ValueError",
        }

    def test_still_processing_message(self):
        error = ReportStillProcessing("IN_QUEUE", 30)

        assert error.message == "Report still in queue - retrying in 30s"
        assert error.delay_seconds == 30

    def test_configuration_field(self):
        error = ConfigurationError("bad", field="accounts[0]", value=3)

        assert error.details == {"field": "accounts[0]", "value": "3"}

    def test_missing_credentials_default_suggestion(self):
        error = MissingCredentialsError("no token")

        assert "access_token" in error.suggestion
