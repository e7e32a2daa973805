"""Tests for flowtree.runtime.runner - shell command execution.

These spawn real /bin/sh processes with trivial commands.
"""

from __future__ import annotations

import sys

import pytest

from flowtree.runtime.errors import InvocationError
from flowtree.runtime.runner import ShellCommandRunner

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell commands")


class TestShellCommandRunner:
    def test_captures_stdout(self, tmp_path):
        result = ShellCommandRunner().invoke('echo "hello"', tmp_path, timeout=10)

        assert result.stdout == "hello\n"
        assert result.exit_code == 0
        assert result.success
        assert result.work_dir == str(tmp_path)
        assert result.duration_ms >= 0

    def test_nonzero_exit_is_data(self, tmp_path):
        result = ShellCommandRunner().invoke("echo oops >&2; exit 3", tmp_path, timeout=10)

        assert result.exit_code == 3
        assert not result.success
        assert result.stderr == "oops\n"

    def test_runs_in_work_dir(self, tmp_path):
        ShellCommandRunner().invoke("echo hi > marker.txt", tmp_path, timeout=10)
        assert (tmp_path / "marker.txt").read_text() == "hi\n"

    def test_extra_environment(self, tmp_path):
        runner = ShellCommandRunner(env={"FLOWTREE_TEST_KEY": "s3cret"})
        result = runner.invoke('echo "$FLOWTREE_TEST_KEY"', tmp_path, timeout=10)
        assert result.stdout.strip() == "s3cret"

    def test_timeout_raises(self, tmp_path):
        with pytest.raises(InvocationError) as excinfo:
            ShellCommandRunner().invoke("sleep 5", tmp_path, timeout=0.2)
        assert excinfo.value.timed_out

    def test_missing_work_dir_raises(self, tmp_path):
        with pytest.raises(InvocationError) as excinfo:
            ShellCommandRunner().invoke("echo hi", tmp_path / "nope", timeout=10)
        assert not excinfo.value.timed_out

    def test_invalid_utf8_output_is_replaced(self, tmp_path):
        result = ShellCommandRunner().invoke("printf 'ok \\377\\n'", tmp_path, timeout=10)

        assert result.success
        assert result.stdout == "ok \ufffd\n"
