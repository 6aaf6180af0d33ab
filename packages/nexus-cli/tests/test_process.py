"""Tests for run_process against real child processes."""

import shutil
import sys

import pytest

from nexus.core.process import ProcessResult, build_env, run_process
from nexus.errors import BackendError, ProcessTimeoutError, WorktreeError

pytestmark = pytest.mark.skipif(
    sys.platform == "win32" or shutil.which("sh") is None,
    reason="needs a POSIX shell",
)


class TestRunProcess:
    def test_captures_output(self):
        result = run_process(["sh", "-c", "echo out; echo err >&2"])

        assert result.ok
        assert result.stdout == "out\n"
        assert result.stderr == "err\n"
        assert result.output == "out\nerr"

    def test_nonzero_exit_without_check(self):
        result = run_process(["sh", "-c", "exit 3"], check=False)

        assert result.returncode == 3
        assert not result.ok

    def test_nonzero_exit_raises(self):
        with pytest.raises(BackendError) as exc_info:
            run_process(["sh", "-c", "echo broken >&2; exit 4"], operation="demo", identity="ws1")

        error = exc_info.value
        assert error.returncode == 4
        assert error.output == "broken"
        assert str(error).startswith("demo ws1: ")

    def test_error_class_is_configurable(self):
        with pytest.raises(WorktreeError):
            run_process(["sh", "-c", "exit 1"], error_cls=WorktreeError)

    def test_timeout_kills_child(self):
        with pytest.raises(ProcessTimeoutError):
            run_process(["sleep", "5"], timeout=0.2)

    def test_missing_executable(self):
        with pytest.raises(BackendError) as exc_info:
            run_process(["definitely-not-a-real-binary-nexus"])

        assert "executable not found" in str(exc_info.value)

    def test_env_and_cwd(self, tmp_path):
        result = run_process(
            ["sh", "-c", 'echo "$NEXUS_TEST_VALUE"; pwd'],
            cwd=tmp_path,
            env=build_env({"NEXUS_TEST_VALUE": "from-test"}),
        )

        value, cwd = result.stdout.splitlines()
        assert value == "from-test"
        assert cwd == str(tmp_path.resolve()) or cwd == str(tmp_path)

    def test_input_is_passed_to_stdin(self):
        assert run_process(["cat"], input="piped").stdout == "piped"


class TestBuildEnv:
    def test_overlays_current_environment(self, monkeypatch):
        monkeypatch.setenv("NEXUS_BASE", "kept")

        env = build_env({"NEXUS_EXTRA": "added"})

        assert env["NEXUS_BASE"] == "kept"
        assert env["NEXUS_EXTRA"] == "added"


class TestProcessResult:
    def test_output_skips_empty_streams(self):
        assert ProcessResult(args=["x"], returncode=0, stdout="", stderr="warn\n").output == "warn"
