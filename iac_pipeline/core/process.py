"""
Out-of-process command execution.

Used by validator adapters and the git artifact source. Commands run in
their own session so a timeout or cancellation can take down the whole
process group.
"""
from __future__ import annotations

import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence, Tuple

from .cancellation import NEVER_CANCELLED, CancellationToken
from .errors import ToolInvocationError

# How often a running process is checked for cancellation.
POLL_INTERVAL_SECONDS = 0.2


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace").replace("\r\n", "\n")


@dataclass
class ToolRun:
    """Raw outcome of one tool invocation.

    ``stdout`` and ``stderr`` are decoded for parsing and display;
    ``stdout_bytes`` holds standard output exactly as the tool wrote it.
    """

    command: Tuple[str, ...]
    returncode: Optional[int]
    stdout: str
    stderr: str
    duration_seconds: float
    timed_out: bool = False
    cancelled: bool = False
    stdout_bytes: bytes = b""

    @property
    def combined_output(self) -> str:
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


def run_tool(
    command: Sequence[str],
    cwd: Path,
    timeout: float,
    cancel_token: CancellationToken = NEVER_CANCELLED,
    env: Optional[Mapping[str, str]] = None,
) -> ToolRun:
    """Run a command, honouring a timeout and a cancellation token.

    Raises:
        ToolInvocationError: if the process cannot be started
    """
    argv = tuple(command)
    started = time.monotonic()
    try:
        proc = subprocess.Popen(
            list(argv),
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env={**os.environ, **env} if env else None,
            start_new_session=(os.name == "posix"),
        )
    except FileNotFoundError:
        raise ToolInvocationError(f"Tool not found: {argv[0]}")
    except OSError as e:
        raise ToolInvocationError(f"Failed to start {argv[0]}: {e}")

    deadline = started + timeout
    while True:
        remaining = deadline - time.monotonic()
        if cancel_token.cancelled or remaining <= 0:
            stdout, stderr = _terminate(proc)
            return ToolRun(
                command=argv,
                returncode=None,
                stdout=_decode(stdout),
                stderr=_decode(stderr),
                duration_seconds=time.monotonic() - started,
                timed_out=not cancel_token.cancelled,
                cancelled=cancel_token.cancelled,
                stdout_bytes=stdout,
            )
        try:
            # Retrying communicate() after TimeoutExpired keeps buffered output.
            stdout, stderr = proc.communicate(timeout=min(POLL_INTERVAL_SECONDS, remaining))
        except subprocess.TimeoutExpired:
            continue
        stdout = stdout or b""
        return ToolRun(
            command=argv,
            returncode=proc.returncode,
            stdout=_decode(stdout),
            stderr=_decode(stderr or b""),
            duration_seconds=time.monotonic() - started,
            stdout_bytes=stdout,
        )


def _terminate(proc: subprocess.Popen) -> Tuple[bytes, bytes]:
    """Kill the process (and its group on POSIX) and collect output."""
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass
    try:
        stdout, stderr = proc.communicate(timeout=5)
    except subprocess.TimeoutExpired:
        return b"", b""
    return stdout or b"", stderr or b""
