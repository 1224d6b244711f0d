"""Tests for bounded-time command execution."""

import subprocess
import sys
import time
from unittest.mock import patch

import pytest

from shellagent.executor import CommandExecutor, describe_returncode
from shellproto.errors import ExecutionError

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX commands")


@pytest.fixture
def executor():
    return CommandExecutor(timeout=5.0)


class TestExecute:

    def test_success(self, executor):
        result = executor.execute(["echo", "hello"])
        assert result.ok
        assert result.output == "hello\n"
        assert result.command == "echo hello"
        assert result.returncode == 0
        assert result.error is None

    def test_non_zero_exit(self, executor):
        result = executor.execute(["false"])
        assert not result.ok
        assert result.error == "exit status 1"
        assert result.returncode == 1
        assert result.command == "false"

    def test_output_kept_on_failure(self, executor):
        result = executor.execute(["sh", "-c", "echo partial; exit 3"])
        assert result.error == "exit status 3"
        assert result.output == "partial\n"

    def test_stdout_and_stderr_interleaved_in_order(self, executor):
        result = executor.execute(["sh", "-c", "echo one; echo two 1>&2; echo three"])
        assert result.output == "one\ntwo\nthree\n"

    def test_missing_executable(self, executor):
        result = executor.execute(["definitely-not-a-real-program-xyz"])
        assert not result.ok
        assert result.error.startswith('exec: "definitely-not-a-real-program-xyz"')
        assert result.output == ""

    def test_embedded_nul_byte_is_execution_failure(self, executor):
        result = executor.execute(["echo", "a\x00b"])
        assert not result.ok
        assert result.error.startswith('exec: "echo"')

        with pytest.raises(ExecutionError):
            executor.run(["echo", "a\x00b"])

    def test_invalid_utf8_output_replaced(self, executor):
        result = executor.execute(["printf", "\\377ok"])
        assert result.ok
        assert result.output == "\ufffdok"


class TestTimeout:

    def test_timeout_kills_process(self):
        executor = CommandExecutor(timeout=0.5)
        spawned = []
        real_popen = subprocess.Popen

        def spawn(*args, **kwargs):
            proc = real_popen(*args, **kwargs)
            spawned.append(proc)
            return proc

        started = time.monotonic()
        with patch("shellagent.executor.subprocess.Popen", side_effect=spawn):
            result = executor.execute(["sleep", "30"])
        elapsed = time.monotonic() - started

        assert not result.ok
        assert result.timed_out
        assert "timed out" in result.error
        assert elapsed < 10
        assert len(spawned) == 1
        assert spawned[0].poll() is not None

    def test_timeout_keeps_partial_output(self):
        executor = CommandExecutor(timeout=0.5)
        result = executor.execute(["sh", "-c", "echo started; exec sleep 30"])
        assert result.timed_out
        assert result.output == "started\n"

    def test_run_raises(self):
        executor = CommandExecutor(timeout=0.5)
        with pytest.raises(ExecutionError) as exc_info:
            executor.run(["sleep", "30"])
        assert exc_info.value.timed_out


class TestDescribeReturncode:

    def test_exit_status(self):
        assert describe_returncode(2) == "exit status 2"

    def test_signal(self):
        assert describe_returncode(-9) == "signal: SIGKILL"
