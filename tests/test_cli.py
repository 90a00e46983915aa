"""
Tests for the pac-settlement CLI.
"""

import json

import pytest

from conftest import WEEK
from pac_settlement import cli


@pytest.fixture
def run_cli(service, monkeypatch, capsys):
    """Run a CLI command against the test service and return its parsed JSON output."""
    monkeypatch.setattr(cli, "_service", lambda: service)

    def run(*argv):
        cli.main(list(argv))
        return capsys.readouterr().out

    return run


class TestCli:
    """Test operator commands."""

    def test_weekly_close(self, run_cli, seed, service):
        commitment = seed.commitment("u1")
        service.report_daily_usage("u1", commitment.id, "2025-01-10", 90)

        output = json.loads(run_cli("weekly-close", "--week", WEEK))

        assert output["week_end_date"] == WEEK
        assert output["succeeded"] == 1
        assert output["pool_closed"] is True

    def test_weekly_close_failure_exit_code(self, run_cli, seed, service, fake_provider):
        """A run with failed users exits with status 2."""
        commitment = seed.commitment("u1")
        service.report_daily_usage("u1", commitment.id, "2025-01-10", 90)
        fake_provider.script.append(RuntimeError("boom"))

        with pytest.raises(SystemExit) as exc_info:
            run_cli("weekly-close", "--week", WEEK)

        assert exc_info.value.code == 2

    def test_week_status(self, run_cli, seed):
        seed.commitment("u1")

        output = json.loads(run_cli("week-status", "u1", WEEK))

        assert output["user_id"] == "u1"
        assert output["settlement_status"] == "none"

    def test_week_status_unknown(self, run_cli, seed):
        seed.user("u1")

        with pytest.raises(SystemExit) as exc_info:
            run_cli("week-status", "u1", WEEK)

        assert exc_info.value.code == 1

    def test_reconcile_uncharged_week(self, run_cli, seed):
        seed.commitment("u1")

        assert "has not been charged" in run_cli("reconcile", "u1", WEEK)

    def test_reconcile_resolve_without_delta(self, run_cli, seed, service):
        commitment = seed.commitment("u1")
        service.report_daily_usage("u1", commitment.id, "2025-01-10", 90)
        service.run_weekly_close(week_end_date=WEEK)

        with pytest.raises(SystemExit) as exc_info:
            run_cli("reconcile", "u1", WEEK, "--resolve")

        assert exc_info.value.code == 1
