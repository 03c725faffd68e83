"""Escalating teardown of a preview helper process.

Stages run in order and stop as soon as the process is gone:

``GRACEFUL``   terminate, then wait up to the graceful timeout
``FORCE_KILL`` kill, then wait up to the kill timeout
``OS_KILL``    ``taskkill /F /T /PID`` on Windows, ``kill -9`` elsewhere
``REMOVED``    the owner drops its registry entry (always reached)
"""

from __future__ import annotations

import enum
import logging
import os
import subprocess
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

import psutil

__all__ = ["TeardownStage", "TeardownReport", "os_kill_command", "is_pid_alive", "terminate_process"]

LOGGER = logging.getLogger("TypstSupport.PreviewServer.teardown")


class TeardownStage(str, enum.Enum):
    GRACEFUL = "graceful"
    FORCE_KILL = "force_kill"
    OS_KILL = "os_kill"
    REMOVED = "removed"


@dataclass(slots=True)
class TeardownReport:
    pid: Optional[int]
    stages: List[TeardownStage] = field(default_factory=list)
    exit_code: Optional[int] = None

    @property
    def final_stage(self) -> Optional[TeardownStage]:
        return self.stages[-1] if self.stages else None


def os_kill_command(pid: int, *, windows: Optional[bool] = None) -> List[str]:
    """Return the platform command that force-kills ``pid``."""

    on_windows = os.name == "nt" if windows is None else windows
    if on_windows:
        return ["taskkill", "/F", "/T", "/PID", str(pid)]
    return ["kill", "-9", str(pid)]


def is_pid_alive(pid: Optional[int]) -> bool:
    if pid is None:
        return False
    try:
        proc = psutil.Process(pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


def _wait(process: subprocess.Popen, timeout: float) -> bool:
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        return False
    return True


def terminate_process(
    process: subprocess.Popen,
    *,
    graceful_timeout: float = 5.0,
    kill_timeout: float = 2.0,
    os_kill_timeout: float = 5.0,
    run: Callable[[Sequence[str]], object] | None = None,
    alive: Callable[[Optional[int]], bool] = is_pid_alive,
) -> TeardownReport:
    """Stop ``process``, escalating through the teardown stages as needed.

    Never raises for a process that refuses to die; the report records how
    far the escalation went.  The ``REMOVED`` stage is left to the caller.
    """

    report = TeardownReport(pid=process.pid)
    if process.poll() is not None:
        report.exit_code = process.returncode
        return report

    report.stages.append(TeardownStage.GRACEFUL)
    try:
        process.terminate()
    except ProcessLookupError:
        pass
    if _wait(process, graceful_timeout):
        report.exit_code = process.returncode
        return report

    report.stages.append(TeardownStage.FORCE_KILL)
    try:
        process.kill()
    except ProcessLookupError:
        pass
    # A reaped pid may already belong to another process.
    if _wait(process, kill_timeout):
        report.exit_code = process.returncode
        return report

    if alive(process.pid):
        report.stages.append(TeardownStage.OS_KILL)
        command = os_kill_command(process.pid)
        LOGGER.warning(
            "escalating to os-level kill",
            extra={"stage": "teardown", "pid": process.pid, "command": command},
        )
        try:
            if run is not None:
                run(command)
            else:
                subprocess.run(command, capture_output=True, timeout=os_kill_timeout, check=False)
        except (OSError, subprocess.SubprocessError) as exc:
            LOGGER.error(
                "os-level kill failed",
                extra={"stage": "teardown", "pid": process.pid, "error": repr(exc)},
            )
        _wait(process, os_kill_timeout)

    report.exit_code = process.poll()
    return report
