"""
Tests for the command-line interface.
"""

from __future__ import annotations

import re
from pathlib import Path

import pytest
from typer.testing import CliRunner

from tradeflow.cli.main import app

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolated configuration for CLI invocations; returns the database path."""
    db = tmp_path / "cli.db"
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("COLUMNS", "200")
    monkeypatch.setenv("DATABASE_PATH", str(db))
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.setenv("AGENT_RETRY_DELAY_MS", "10")
    monkeypatch.setenv("NOTIFY_RETRY_DELAY_MS", "10")
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("DRY_RUN", raising=False)
    return db


def run_id_from(output: str) -> str:
    match = re.search(r"Run ID:\s+(\S+)", output)
    assert match, output
    return match.group(1)


class TestInfoCommands:
    """Tests for version and config."""

    def test_version(self) -> None:
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert "tradeflow version" in result.output

    def test_config_redacts_key(self, cli_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-abcdefghijklmnop")

        result = runner.invoke(app, ["config"])

        assert result.exit_code == 0
        assert "ANTHROPIC_API_KEY" in result.output
        assert "sk-ant-abcdefghijklmnop" not in result.output

    def test_invalid_config(self, cli_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AGENT_MAX_RETRIES", "99")

        result = runner.invoke(app, ["config"])

        assert result.exit_code == 1


class TestRunCommands:
    """Tests for analyze, status, messages and cancel."""

    def test_analyze_dry_run(self, cli_env: Path) -> None:
        result = runner.invoke(app, ["analyze", "aapl", "--dry-run", "--rounds", "1", "--wait", "30"])

        assert result.exit_code == 0, result.output
        assert "AAPL" in result.output
        assert "completed" in result.output
        assert "Decision: BUY" in result.output
        assert cli_env.exists()

    def test_status_and_messages(self, cli_env: Path) -> None:
        analyzed = runner.invoke(app, ["analyze", "msft", "--dry-run", "--wait", "30"])
        run_id = run_id_from(analyzed.output)

        status = runner.invoke(app, ["status", run_id])
        messages = runner.invoke(app, ["messages", run_id])

        assert status.exit_code == 0
        assert run_id in status.output
        assert "Risk Manager" in status.output
        assert messages.exit_code == 0
        assert "Analysis complete for MSFT: BUY" in messages.output

    def test_status_of_unknown_run(self, cli_env: Path) -> None:
        result = runner.invoke(app, ["status", "run_missing"])

        assert result.exit_code == 1

    def test_cancel_unknown_run(self, cli_env: Path) -> None:
        result = runner.invoke(app, ["cancel", "run_missing"])

        assert result.exit_code == 1

    def test_cancel_completed_run_refused(self, cli_env: Path) -> None:
        analyzed = runner.invoke(app, ["analyze", "nvda", "--dry-run", "--wait", "30"])
        run_id = run_id_from(analyzed.output)

        result = runner.invoke(app, ["cancel", run_id])

        assert result.exit_code == 1

    def test_sweep_without_stale_runs(self, cli_env: Path) -> None:
        result = runner.invoke(app, ["sweep"])

        assert result.exit_code == 0
        assert "No stale runs" in result.output
