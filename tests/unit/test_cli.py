"""Tests for the report-foundry command line."""

import json
from textwrap import dedent

import pytest

import reports.__main__ as cli

CONFIG = """
accounts:
  - account_id: acme-us
    seller_id: A1SELLER
    marketplace_id: ATVPDKIKX0DER
    access_token: Atza|token
    entities:
      - B000000001
      - B000000002
"""


class _ClientContext:
    def __init__(self, api):
        self.api = api

    async def __aenter__(self):
        return self.api

    async def __aexit__(self, *exc_info):
        return None


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "accounts.yaml"
    path.write_text(dedent(CONFIG))
    return path


@pytest.fixture
def cli_env(tmp_path, monkeypatch, api):
    monkeypatch.setenv("REPORTS_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("REPORTS_STORAGE_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("REPORTS_REQUEST_DELAY_SECONDS", "0")
    monkeypatch.setenv("REPORTS_INITIAL_DELAY_SECONDS", "0")
    monkeypatch.setattr(cli, "setup_logging", lambda **kwargs: None)
    monkeypatch.setattr(cli, "ReportApiClient", lambda *args, **kwargs: _ClientContext(api))
    return tmp_path


class TestMain:
    """Tests for main()."""

    def test_no_command_prints_help(self, capsys):
        cli.main([])

        assert "usage: report-foundry" in capsys.readouterr().out

    def test_run_then_nothing_due(self, cli_env, config_path, api, capsys):
        cli.main(["run", "--config", str(config_path)])

        out = capsys.readouterr().out
        assert "Scenario: 1" in out
        assert "3 imported, 0 failed, 0 skipped" in out
        assert api.specs[0].entity_filter == "B000000001 B000000002"
        assert (cli_env / "state" / "acme-us_state.json").exists()

        cli.main(["run", "--config", str(config_path)])

        assert "Nothing due" in capsys.readouterr().out

    def test_failed_run_exits_nonzero(self, cli_env, config_path, api):
        api.statuses.append("FATAL")

        with pytest.raises(SystemExit) as exc_info:
            cli.main(["run", "--config", str(config_path), "--period", "week"])

        assert exc_info.value.code == 1

    def test_backfill(self, cli_env, config_path, api, monkeypatch, capsys):
        monkeypatch.setenv("REPORTS_WEEKS_TO_PULL", "2")
        monkeypatch.setenv("REPORTS_MONTHS_TO_PULL", "0")
        monkeypatch.setenv("REPORTS_QUARTERS_TO_PULL", "0")

        cli.main(["backfill", "--config", str(config_path), "--limit", "1"])

        assert len(api.specs) == 2
        assert all(s.entity_filter == "B000000001" for s in api.specs)
        assert "Backfill:" in capsys.readouterr().out

    def test_status_json(self, cli_env, config_path, capsys):
        cli.main(["status", "--config", str(config_path), "--json"])

        data = json.loads(capsys.readouterr().out)
        assert [e["entity_id"] for e in data["entities"]] == ["B000000001", "B000000002"]
        assert data["activity"] == []

    def test_unknown_account(self, cli_env, config_path, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["run", "--config", str(config_path), "--account", "nobody"])

        assert exc_info.value.code == 1
        assert "Known accounts: acme-us" in capsys.readouterr().out

    def test_missing_config(self, cli_env, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["run", "--config", str(tmp_path / "missing.yaml")])

        assert exc_info.value.code == 1

    def test_invalid_settings(self, cli_env, config_path, monkeypatch, capsys):
        monkeypatch.setenv("REPORTS_MAX_RETRIES", "0")

        with pytest.raises(SystemExit) as exc_info:
            cli.main(["run", "--config", str(config_path)])

        assert exc_info.value.code == 2
        assert "Invalid settings" in capsys.readouterr().out

    def test_retry_resumes_failed_report(self, cli_env, config_path, api, capsys):
        api.statuses.append("SOMETHING_NEW")

        with pytest.raises(SystemExit):
            cli.main(["run", "--config", str(config_path), "--period", "week"])
        capsys.readouterr()

        cli.main(["retry", "--config", str(config_path)])

        out = capsys.readouterr().out
        assert "Retry:" in out
        assert "1 imported, 0 failed, 0 skipped" in out
        assert api.calls.count("create_report") == 1

    def test_reset_then_run_pulls_the_period_again(self, cli_env, config_path, api, capsys):
        cli.main(["run", "--config", str(config_path)])
        capsys.readouterr()

        cli.main(["reset", "--config", str(config_path), "--period", "week", "--force"])

        assert "acme-us: reset WEEK=2" in capsys.readouterr().out

        cli.main(["run", "--config", str(config_path)])

        out = capsys.readouterr().out
        assert "Scenario: 5" in out
        assert "1 imported" in out

    def test_entities_removed_from_config_are_deactivated(self, cli_env, config_path, capsys):
        cli.main(["status", "--config", str(config_path), "--json"])
        capsys.readouterr()
        config_path.write_text(dedent(CONFIG).replace("      - B000000002\n", ""))

        cli.main(["status", "--config", str(config_path), "--json"])

        data = json.loads(capsys.readouterr().out)
        active = {e["entity_id"]: e["active"] for e in data["entities"]}
        assert active == {"B000000001": True, "B000000002": False}
