"""Helpers for running external signal tools (bigWigSummary, track mergers).

Design goals
------------
- Commands are argument lists, never shell strings.
- Capture stderr/stdout for debugging and error messages.
- One process-wide limit on how many heavy tool invocations run at once.

The runner is a small object so callers (and tests) can substitute a fake.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import textwrap
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)


class ExternalCommandError(RuntimeError):
    """Raised when an external command fails."""

    def __init__(
        self,
        message: str,
        *,
        cmd: Sequence[str],
        returncode: int,
        stdout: Optional[str] = None,
        stderr: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.cmd = list(cmd)
        self.returncode = int(returncode)
        self.stdout = stdout
        self.stderr = stderr


def cmd_to_str(cmd: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(x)) for x in cmd)


def run_command(
    cmd: Sequence[str],
    *,
    cwd: Optional[str | Path] = None,
    env: Optional[Mapping[str, str]] = None,
    check: bool = True,
    capture: bool = True,
    text: bool = True,
) -> subprocess.CompletedProcess:
    """Run a command and return the CompletedProcess.

    If ``check`` is True, raise ``ExternalCommandError`` on non-zero exit.
    """
    if cwd is not None:
        cwd = str(Path(cwd))

    env_merged: Optional[Dict[str, str]]
    if env is None:
        env_merged = None
    else:
        env_merged = dict(os.environ)
        env_merged.update({str(k): str(v) for k, v in env.items()})

    logger.debug("Running command: %s", cmd_to_str(cmd))

    cp = subprocess.run(
        list(map(str, cmd)),
        cwd=cwd,
        env=env_merged,
        check=False,
        stdout=subprocess.PIPE if capture else None,
        stderr=subprocess.PIPE if capture else None,
        text=text,
    )

    if check and cp.returncode != 0:
        raise ExternalCommandError(
            message=failure_message(cmd, cp.returncode, cp.stderr if isinstance(cp.stderr, str) else None),
            cmd=cmd,
            returncode=cp.returncode,
            stdout=cp.stdout if isinstance(cp.stdout, str) else None,
            stderr=cp.stderr if isinstance(cp.stderr, str) else None,
        )

    return cp


def failure_message(cmd: Sequence[str], returncode: int, stderr: Optional[str]) -> str:
    return textwrap.dedent(
        f"""
        External command failed (exit code {returncode}).

        Command:
          {cmd_to_str(cmd)}

        STDERR (tail):
          {_tail(stderr)}
        """
    ).strip()


def _tail(s: Optional[str], n: int = 3000) -> str:
    if not s:
        return "(empty)"
    s = str(s)
    if len(s) <= n:
        return s
    return "..." + s[-n:]


class CommandRunner:
    """Executes tool command lines; swap for a fake in tests."""

    def run(self, cmd: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess:
        return run_command(cmd, check=check, capture=True, text=True)


class ToolSlots:
    """Counting semaphore bounding concurrent external tool work.

    One instance is shared by every request served by an application context.
    Slots must only be taken for real work, never for cache lookups.
    """

    def __init__(self, permits: int = 2) -> None:
        if int(permits) < 1:
            raise ValueError("permits must be >= 1")
        self.permits = int(permits)
        self._sem = threading.BoundedSemaphore(self.permits)
        self._lock = threading.Lock()
        self._in_flight = 0
        self.peak_in_flight = 0
        self.acquisitions = 0

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    @contextmanager
    def slot(self) -> Iterator[None]:
        self._sem.acquire()
        with self._lock:
            self._in_flight += 1
            self.acquisitions += 1
            self.peak_in_flight = max(self.peak_in_flight, self._in_flight)
        try:
            yield
        finally:
            with self._lock:
                self._in_flight -= 1
            self._sem.release()
