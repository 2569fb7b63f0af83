"""
Tests for the command line interface.
"""

import pytest
from typer.testing import CliRunner

import content_desk.cli as cli
from content_desk.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_database(session_factory, monkeypatch):
    monkeypatch.setattr(cli, "get_session_local", lambda: session_factory)


class TestCommands:
    def test_sweep_on_empty_database(self):
        result = runner.invoke(app, ["sweep"])

        assert result.exit_code == 0
        assert "processed" in result.output
        assert "failed" in result.output

    def test_overdue_when_nothing_is_late(self):
        result = runner.invoke(app, ["overdue"])

        assert result.exit_code == 0
        assert "No overdue publications" in result.output

    def test_failed_deliveries_empty(self):
        result = runner.invoke(app, ["failed-deliveries"])

        assert result.exit_code == 0
        assert "No failed deliveries" in result.output

    def test_domain_error_exits_non_zero(self):
        result = runner.invoke(app, ["failed-deliveries", "--requeue", "missing"])

        assert result.exit_code == 1
        assert "not_found" in result.output

    def test_invalid_digest_type(self):
        result = runner.invoke(app, ["digests", "hourly"])

        assert result.exit_code == 1
        assert "validation_error" in result.output
