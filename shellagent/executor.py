"""
Bounded-time command execution for the MQTT Shell agent.

Each run:
- No shell=True (argv goes straight to exec, no injection through quoting)
- Wall-clock timeout, after which the child is killed and reaped
- stdout and stderr share one pipe, so output keeps the order it was written
"""

import logging
import os
import signal
import subprocess
from dataclasses import dataclass
from typing import List, Optional

from shellproto.errors import ExecutionError

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0  # seconds

_POSIX = os.name == "posix"


@dataclass
class ExecutionResult:
    """Outcome of one command run."""

    command: str
    output: str
    returncode: Optional[int] = None
    error: Optional[str] = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


def describe_returncode(returncode: int) -> str:
    """Failure text for a non-zero exit, e.g. 'exit status 2'."""
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return f"signal: {name}"
    return f"exit status {returncode}"


class CommandExecutor:
    """Runs argv lists as child processes with a timeout."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout

    def run(self, argv: List[str]) -> str:
        """
        Run argv and return its combined output.

        Raises ExecutionError when the program cannot start, exits non-zero,
        or outlives the timeout.
        """
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=_POSIX,
            )
        except (OSError, ValueError) as e:
            # ValueError: argv the OS cannot take, e.g. an embedded null byte
            reason = getattr(e, "strerror", None) or e
            raise ExecutionError(f'exec: "{argv[0]}": {reason}') from e

        with proc:
            try:
                raw, _ = proc.communicate(timeout=self.timeout)
            except subprocess.TimeoutExpired:
                _kill(proc)
                raw, _ = proc.communicate()
                raise ExecutionError(
                    f"command timed out after {self.timeout:g} seconds",
                    output=_decode(raw),
                    returncode=proc.returncode,
                    timed_out=True,
                )

        output = _decode(raw)
        if proc.returncode != 0:
            raise ExecutionError(
                describe_returncode(proc.returncode),
                output=output,
                returncode=proc.returncode,
            )
        return output

    def execute(self, argv: List[str]) -> ExecutionResult:
        """Run argv and report the outcome as an ExecutionResult."""
        command = " ".join(argv)
        log.info(f"Executing: {command}")
        try:
            output = self.run(argv)
        except ExecutionError as e:
            log.warning(f"Command failed: {e}")
            return ExecutionResult(
                command=command,
                output=e.output,
                returncode=e.returncode,
                error=str(e),
                timed_out=e.timed_out,
            )
        log.info("Command executed successfully")
        return ExecutionResult(command=command, output=output, returncode=0)


def _decode(raw: Optional[bytes]) -> str:
    return (raw or b"").decode("utf-8", errors="replace")


def _kill(proc: subprocess.Popen) -> None:
    """Kill the child and, on POSIX, everything in its process group."""
    if _POSIX:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except ProcessLookupError:
            return
        except PermissionError:
            pass
    proc.kill()
