"""Tests for repo_autopilot.main CLI module."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner
from structlog.testing import capture_logs

from repo_autopilot.engine.state_manager import StateManager
from repo_autopilot.enums import BranchStrategy, CIStrategy
from repo_autopilot.exceptions import ConfigurationError, TransientCollaboratorError
from repo_autopilot.main import cli
from repo_autopilot.models.domain import IssueState
from repo_autopilot.models.events import IssueOpened


@pytest.fixture(autouse=True)
def configure_logging():
    """Keep log lines out of command output and the global structlog configuration untouched."""
    with capture_logs(), patch("repo_autopilot.main.configure_logging") as configure:
        yield configure


@pytest.fixture
def cli_runner():
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "state"


@pytest.fixture
def config_file(tmp_path, state_dir):
    """Create a configuration file."""
    path = tmp_path / "autopilot.yaml"
    path.write_text(
        f"""
github:
  app_id: 1234
  installation_id: 5678
  private_key: not-a-real-key
webhook:
  secret: s3cret
repository:
  owner: acme
  name: webapp
workflow:
  state_directory: {state_dir}
"""
    )
    return path


@pytest.fixture
def mock_orchestrator():
    orchestrator = MagicMock()
    orchestrator.dispatch = AsyncMock(return_value={"success": True, "event_type": "issue_opened", "keys": []})
    orchestrator.poll = AsyncMock(return_value={"success": True, "checked": 2, "failures": 0})
    return orchestrator


class TestCliGroup:
    def test_missing_config(self, cli_runner, tmp_path):
        result = cli_runner.invoke(cli, ["--config", str(tmp_path / "missing.yaml"), "poll"])

        assert result.exit_code == 1
        assert "Configuration file not found" in result.output

    def test_invalid_config(self, cli_runner, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("repository: {}\n")

        result = cli_runner.invoke(cli, ["--config", str(path), "poll"])

        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_help(self, cli_runner):
        result = cli_runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        for command in ("serve", "poll", "show-state", "replay"):
            assert command in result.output


class TestShowState:
    def test_prints_record(self, cli_runner, config_file, state_dir):
        record = IssueState(
            issue_number=42,
            owner="acme",
            repo="webapp",
            title="Fix login",
            ci_strategy=CIStrategy.IMMEDIATE,
            branch_strategy=BranchStrategy.FLAT,
        )
        asyncio.run(StateManager(state_dir).create(record))

        result = cli_runner.invoke(cli, ["--config", str(config_file), "show-state", "issue-42"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["issue_number"] == 42
        assert data["ci_strategy"] == "immediate"
        assert data["version"] == 1

    def test_missing_record(self, cli_runner, config_file):
        result = cli_runner.invoke(cli, ["--config", str(config_file), "show-state", "issue-7"])

        assert result.exit_code == 1
        assert "No state stored for issue-7" in result.output


class TestServe:
    def test_runs_uvicorn(self, cli_runner, config_file, mock_orchestrator):
        with (
            patch("repo_autopilot.main.build_orchestrator", return_value=mock_orchestrator),
            patch("uvicorn.run") as run,
        ):
            result = cli_runner.invoke(cli, ["--config", str(config_file), "serve", "--port", "9001"])

        assert result.exit_code == 0
        run.assert_called_once()
        assert run.call_args.kwargs == {"host": "0.0.0.0", "port": 9001}  # nosec B104

    def test_bad_credentials_exit(self, cli_runner, config_file):
        with (
            patch("repo_autopilot.main.build_orchestrator", side_effect=ConfigurationError("Invalid private key")),
            patch("uvicorn.run") as run,
        ):
            result = cli_runner.invoke(cli, ["--config", str(config_file), "serve"])

        assert result.exit_code == 1
        assert "Invalid private key" in result.output
        run.assert_not_called()


class TestPoll:
    def test_poll_reports_counts(self, cli_runner, config_file, mock_orchestrator):
        with patch("repo_autopilot.main.build_orchestrator", return_value=mock_orchestrator):
            result = cli_runner.invoke(cli, ["--config", str(config_file), "poll"])

        assert result.exit_code == 0
        assert "Checked 2 entities, 0 failure(s)" in result.output

    def test_poll_failures_exit_nonzero(self, cli_runner, config_file, mock_orchestrator):
        mock_orchestrator.poll.return_value = {"success": False, "checked": 2, "failures": 1}

        with patch("repo_autopilot.main.build_orchestrator", return_value=mock_orchestrator):
            result = cli_runner.invoke(cli, ["--config", str(config_file), "poll"])

        assert result.exit_code == 1

    def test_poll_error(self, cli_runner, config_file, mock_orchestrator):
        mock_orchestrator.poll.side_effect = TransientCollaboratorError("GitHub unavailable")

        with patch("repo_autopilot.main.build_orchestrator", return_value=mock_orchestrator):
            result = cli_runner.invoke(cli, ["--config", str(config_file), "poll"])

        assert result.exit_code == 1
        assert "GitHub unavailable" in result.output


class TestReplay:
    def test_replays_payload(self, cli_runner, config_file, tmp_path, mock_orchestrator):
        payload = tmp_path / "opened.json"
        payload.write_text(
            json.dumps(
                {
                    "action": "opened",
                    "issue": {"number": 42, "title": "Fix login", "labels": []},
                    "repository": {"name": "webapp", "owner": {"login": "acme"}},
                }
            )
        )

        with patch("repo_autopilot.main.build_orchestrator", return_value=mock_orchestrator):
            result = cli_runner.invoke(
                cli,
                ["--config", str(config_file), "replay", str(payload), "--event", "issues", "--delivery", "r-1"],
            )

        assert result.exit_code == 0
        event = mock_orchestrator.dispatch.await_args.args[0]
        assert isinstance(event, IssueOpened)
        assert event.delivery_id == "r-1"
        assert json.loads(result.output)["success"] is True

    def test_unhandled_event(self, cli_runner, config_file, tmp_path, mock_orchestrator):
        payload = tmp_path / "star.json"
        payload.write_text(json.dumps({"action": "created"}))

        with patch("repo_autopilot.main.build_orchestrator", return_value=mock_orchestrator):
            result = cli_runner.invoke(cli, ["--config", str(config_file), "replay", str(payload), "--event", "star"])

        assert result.exit_code == 0
        assert "not handled" in result.output
        mock_orchestrator.dispatch.assert_not_awaited()

    def test_unparseable_payload(self, cli_runner, config_file, tmp_path, mock_orchestrator):
        payload = tmp_path / "broken.json"
        payload.write_text("{not json")

        with patch("repo_autopilot.main.build_orchestrator", return_value=mock_orchestrator):
            result = cli_runner.invoke(cli, ["--config", str(config_file), "replay", str(payload), "--event", "issues"])

        assert result.exit_code == 1
        assert "not valid JSON" in result.output


class TestLogging:
    def test_rejects_unknown_log_format(self, cli_runner, config_file):
        result = cli_runner.invoke(cli, ["--config", str(config_file), "--log-format", "xml", "poll"])

        assert result.exit_code == 2

    def test_log_options_are_applied(self, cli_runner, config_file, mock_orchestrator, configure_logging):
        with patch("repo_autopilot.main.build_orchestrator", return_value=mock_orchestrator):
            result = cli_runner.invoke(
                cli, ["--config", str(config_file), "--log-level", "DEBUG", "--log-format", "console", "poll"]
            )

        assert result.exit_code == 0
        configure_logging.assert_called_once_with("DEBUG", "console")
