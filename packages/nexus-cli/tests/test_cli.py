"""Tests for the nexus command line."""

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from nexus import __version__
from nexus.core.controller import PortMapping, WorkspaceInfo
from nexus.errors import ProviderError, SessionNotFoundError, WorkspaceExistsError, WorkspaceNotFoundError
from nexus.main import _parse_params, app

runner = CliRunner()


@pytest.fixture
def controller():
    """A mocked WorkspaceController returned by nexus.main._controller."""
    mock = MagicMock()
    with patch("nexus.main._controller", return_value=mock):
        yield mock


class TestProjectCommands:
    def test_version(self):
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_init_scaffolds_project(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        result = runner.invoke(app, ["init", "--name", "demo"])

        assert result.exit_code == 0
        assert (tmp_path / ".nexus" / "config.yaml").exists()

    def test_workspace_command_outside_project(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        result = runner.invoke(app, ["workspace", "list"])

        assert result.exit_code == 1
        assert "Error:" in result.output


class TestWorkspaceCommands:
    """Workspace subcommands against a mocked controller."""

    def test_create(self, controller, tmp_path):
        controller.create.return_value = tmp_path / "feature"

        result = runner.invoke(app, ["workspace", "create", "feature"])

        assert result.exit_code == 0
        controller.create.assert_called_once_with("feature")

    def test_create_conflict_exits_1(self, controller):
        controller.create.side_effect = WorkspaceExistsError(
            "worktree already exists", operation="create", identity="feature"
        )

        result = runner.invoke(app, ["workspace", "create", "feature"])

        assert result.exit_code == 1
        assert "create feature: worktree already exists" in result.output

    def test_up_prints_services(self, controller):
        controller.up.return_value = WorkspaceInfo(
            name="feature", status="running", provider="docker", session_id="abc123"
        )
        controller.services.return_value = [PortMapping("feature", "web", "http", 3000, 49152)]

        result = runner.invoke(app, ["workspace", "up", "feature"])

        assert result.exit_code == 0
        assert "http://localhost:49152" in result.output

    def test_up_defaults_to_current_worktree(self, controller):
        controller.detect_workspace.return_value = "feature"
        controller.up.return_value = WorkspaceInfo(
            name="feature", status="running", provider="docker", session_id="abc123"
        )
        controller.services.return_value = []

        result = runner.invoke(app, ["workspace", "up"])

        assert result.exit_code == 0
        controller.up.assert_called_once_with("feature")

    def test_down_defaults_to_current_worktree(self, controller):
        controller.detect_workspace.return_value = "feature"
        controller.down.return_value = MagicMock(id="abc123")

        result = runner.invoke(app, ["workspace", "down"])

        assert result.exit_code == 0
        controller.down.assert_called_once_with("feature")

    def test_down_outside_worktree_without_name(self, controller):
        controller.detect_workspace.side_effect = WorkspaceNotFoundError(
            "not inside a workspace; pass a name", operation="detect workspace"
        )

        result = runner.invoke(app, ["workspace", "down"])

        assert result.exit_code == 1
        controller.down.assert_not_called()

    def test_rm_requires_confirmation(self, controller):
        result = runner.invoke(app, ["workspace", "rm", "feature"], input="n\n")

        assert result.exit_code != 0
        controller.remove.assert_not_called()

    def test_rm_with_yes(self, controller):
        result = runner.invoke(app, ["workspace", "rm", "feature", "--yes"])

        assert result.exit_code == 0
        controller.remove.assert_called_once_with("feature")

    def test_list_json(self, controller, tmp_path):
        controller.list.return_value = [
            WorkspaceInfo(name="a", status="created", path=tmp_path / "a"),
            WorkspaceInfo(name="b", status="running", provider="docker", session_id="abc", services={3000: 49152}),
        ]

        result = runner.invoke(app, ["workspace", "list", "--json"])

        assert result.exit_code == 0
        rows = json.loads(result.output)
        assert [r["status"] for r in rows] == ["created", "running"]
        assert rows[1]["services"] == {"3000": 49152}

    def test_exec_passes_env_and_prints_output(self, controller):
        controller.exec.return_value = MagicMock(stdout="ok\n")

        result = runner.invoke(app, ["workspace", "exec", "feature", "--env", "CI=1", "--", "make", "test"])

        assert result.exit_code == 0
        assert result.output == "ok\n"
        controller.exec.assert_called_once_with("feature", ["make", "test"], env={"CI": "1"}, timeout=None)

    def test_exec_propagates_exit_status(self, controller):
        controller.exec.side_effect = ProviderError("failed", returncode=2, output="boom")

        result = runner.invoke(app, ["workspace", "exec", "feature", "--", "false"])

        assert result.exit_code == 2

    def test_services_not_running(self, controller):
        controller.services.side_effect = SessionNotFoundError(
            "workspace is not running", operation="services", identity="feature"
        )

        result = runner.invoke(app, ["workspace", "services", "feature"])

        assert result.exit_code == 1


class TestCoordinationCommands:
    def test_node_list(self):
        nodes = [
            {
                "id": "n1",
                "name": "builder",
                "status": "online",
                "provider": "docker",
                "address": "",
                "port": 0,
                "last_seen": "2024-01-01T00:00:00Z",
            }
        ]
        with patch("nexus.main._coordination", return_value=nodes):
            result = runner.invoke(app, ["node", "list"])

        assert result.exit_code == 0
        assert "n1" in result.output

    def test_command_send_without_wait(self):
        command = {"id": "cmd_1", "node_id": "n1", "status": "pending", "delivery": "poll"}
        with patch("nexus.main._coordination", return_value=command) as call:
            result = runner.invoke(app, ["command", "send", "n1", "create", "-p", "session_id=s1"])

        assert result.exit_code == 0
        assert "cmd_1" in result.output
        call.assert_called_once()

    def test_status_shows_error(self):
        command = {"id": "cmd_1", "node_id": "n1", "status": "failed", "error": "no such session"}
        with patch("nexus.main._coordination", return_value=command):
            result = runner.invoke(app, ["command", "status", "cmd_1"])

        assert "no such session" in result.output


class TestParseParams:
    def test_json_values_are_decoded(self):
        assert _parse_params(["start=false", "count=3", "name=demo", 'env={"A": "1"}']) == {
            "start": False,
            "count": 3,
            "name": "demo",
            "env": {"A": "1"},
        }

    def test_value_may_contain_equals(self):
        assert _parse_params(["command=FOO=bar make"]) == {"command": "FOO=bar make"}

    def test_missing_equals(self):
        import typer

        with pytest.raises(typer.BadParameter):
            _parse_params(["oops"])
