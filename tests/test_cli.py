import json
import logging
import os
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from browserctl.cli import main
from browserctl.errors import StartupTimeoutError


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.setenv("BROWSERCTL_MARKER_FILE", str(tmp_path / "cli.pid"))
    monkeypatch.setenv("BROWSERCTL_SOCKET", str(tmp_path / "cli.sock"))
    return CliRunner()


class TestRun:
    def test_prints_object_results_as_json(self, runner):
        result_value = {"title": "Example Domain", "url": "https://example.com/"}
        with patch("browserctl.client.ClientDispatcher.execute", AsyncMock(return_value=result_value)) as execute:
            result = runner.invoke(main, ["run", "open", "https://example.com"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == result_value
        execute.assert_awaited_once_with("open", ["https://example.com"])

    def test_prints_strings_verbatim(self, runner):
        with patch("browserctl.client.ClientDispatcher.execute", AsyncMock(return_value="Example Domain")):
            result = runner.invoke(main, ["run", "title", "https://example.com"])
        assert result.exit_code == 0
        assert result.stdout.strip() == "Example Domain"

    def test_selector_tokens_pass_through(self, runner):
        with patch("browserctl.client.ClientDispatcher.execute", AsyncMock(return_value="typed")) as execute:
            runner.invoke(main, ["run", "type", "#q", "--not-an-option", "text"])
        execute.assert_awaited_once_with("type", ["#q", "--not-an-option", "text"])

    def test_unknown_command_exits_1(self, runner):
        result = runner.invoke(main, ["run", "fly", "https://example.com"])
        assert result.exit_code == 1

    def test_dispatcher_error_exits_1(self, runner):
        with patch(
            "browserctl.client.ClientDispatcher.execute",
            AsyncMock(side_effect=StartupTimeoutError(10000)),
        ):
            result = runner.invoke(main, ["run", "open", "https://example.com"])
        assert result.exit_code == 1
        assert "Example" not in result.stdout


class TestStatus:
    def test_stopped(self, runner):
        result = runner.invoke(main, ["status", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["status"] == "stopped"

    def test_running(self, runner, tmp_path):
        (tmp_path / "cli.pid").write_text(f"{os.getpid()}\n")
        result = runner.invoke(main, ["status", "--json"])
        info = json.loads(result.stdout)
        assert info["running"] is True
        assert info["pid"] == os.getpid()


class TestStop:
    def test_nothing_to_stop(self, runner):
        with patch("browserctl.cli.os.kill") as kill:
            result = runner.invoke(main, ["stop"])
        assert result.exit_code == 0
        kill.assert_not_called()


class TestSession:
    def test_exit_status_comes_from_script(self, runner):
        with patch("browserctl.script.SessionScript.run", AsyncMock(return_value=1)):
            result = runner.invoke(main, ["session", "https://example.com", "click|#missing"])
        assert result.exit_code == 1

    def test_requires_steps(self, runner):
        result = runner.invoke(main, ["session", "https://example.com"])
        assert result.exit_code != 0


class TestCommands:
    def test_lists_commands(self, runner):
        result = runner.invoke(main, ["commands"])
        assert result.exit_code == 0
