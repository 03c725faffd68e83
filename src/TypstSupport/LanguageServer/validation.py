"""Validation of user-supplied Tinymist binaries.

Two levels are offered.  :func:`validate_binary_file` only inspects the
filesystem and is cheap enough to run on every location lookup.
:func:`validate_binary_execution` additionally runs ``<binary> -V`` and
checks that the reported version satisfies :data:`REQUIRED_VERSION`.  Both
return result values; neither raises for an invalid binary.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

from .versions import REQUIRED_VERSION, ToolVersion

__all__ = [
    "PathValidation",
    "ExecutionValidation",
    "ProcessOutput",
    "ProcessExecutor",
    "run_process",
    "validate_binary_file",
    "validate_binary_execution",
]

LOGGER = logging.getLogger("TypstSupport.LanguageServer.validation")

VERSION_PROBE_TIMEOUT_SEC = 10.0
_EXCERPT_LENGTH = 50
_MACOS_BLOCK_HINTS = (
    "cannot be opened because the developer cannot be verified",
    "malware",
    "not trusted",
)


@dataclass(frozen=True, slots=True)
class PathValidation:
    """Outcome of a filesystem-level check; ``message`` is set on failure."""

    ok: bool
    message: Optional[str] = None

    @classmethod
    def success(cls) -> "PathValidation":
        return cls(True)

    @classmethod
    def failed(cls, message: str) -> "PathValidation":
        return cls(False, message)


@dataclass(frozen=True, slots=True)
class ExecutionValidation:
    """Outcome of running the binary; carries the parsed version on success."""

    ok: bool
    version: Optional[ToolVersion] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, version: ToolVersion) -> "ExecutionValidation":
        return cls(True, version=version)

    @classmethod
    def failed(cls, message: str) -> "ExecutionValidation":
        return cls(False, message=message)


@dataclass(frozen=True, slots=True)
class ProcessOutput:
    exit_code: int
    stdout: str
    stderr: str


ProcessExecutor = Callable[[Sequence[str], Path, float], ProcessOutput]


def run_process(argv: Sequence[str], cwd: Path, timeout: float) -> ProcessOutput:
    """Run ``argv`` to completion and capture its output."""

    completed = subprocess.run(
        list(argv),
        cwd=str(cwd),
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )
    return ProcessOutput(completed.returncode, completed.stdout or "", completed.stderr or "")


def validate_binary_file(binary_path: Union[str, Path, None]) -> PathValidation:
    """Check that ``binary_path`` names an existing, executable regular file."""

    raw = "" if binary_path is None else str(binary_path)
    if not raw.strip():
        return PathValidation.failed("Binary path is empty")

    path = Path(raw).expanduser()
    if not path.exists():
        return PathValidation.failed("Binary file does not exist")
    if path.is_dir():
        return PathValidation.failed("Binary path is a directory")
    if not os.access(path, os.X_OK):
        return PathValidation.failed("Binary file is not executable")
    return PathValidation.success()


def _describe_exit_failure(output: ProcessOutput) -> str:
    error_output = (output.stderr or output.stdout).strip()
    if output.exit_code == 126 or any(hint in error_output for hint in _MACOS_BLOCK_HINTS):
        return "macOS blocked execution - check Security & Privacy settings"
    if "Permission denied" in error_output:
        return "Permission denied - make binary executable"
    if "No such file" in error_output:
        return "Binary not found at specified path"
    return "Binary validation failed: " + error_output[:_EXCERPT_LENGTH]


def _describe_exception(exc: BaseException) -> str:
    text = str(exc)
    if isinstance(exc, PermissionError) or "Permission denied" in text:
        return "Permission denied - check file permissions"
    if isinstance(exc, FileNotFoundError) or "No such file" in text:
        return "Binary file not found"
    if "cannot execute" in text or "Exec format error" in text:
        return "Cannot execute binary - may be blocked by macOS security"
    return f"Failed to execute binary: {text[:_EXCERPT_LENGTH]}"


def validate_binary_execution(
    binary_path: Union[str, Path],
    *,
    executor: ProcessExecutor = run_process,
    required: ToolVersion = REQUIRED_VERSION,
    timeout: float = VERSION_PROBE_TIMEOUT_SEC,
) -> ExecutionValidation:
    """Run ``<binary> -V`` and compare the reported version with ``required``.

    Args:
        binary_path: Candidate binary.
        executor: Process runner, replaceable in tests.
        required: Minimum acceptable version.
        timeout: Seconds allowed for the probe.

    Returns:
        ExecutionValidation: success with the parsed version, or a failure
        carrying a short user-facing message.
    """

    path_result = validate_binary_file(binary_path)
    if not path_result.ok:
        return ExecutionValidation.failed(path_result.message or "Invalid binary path")

    path = Path(str(binary_path)).expanduser()
    try:
        output = executor([str(path), "-V"], path.parent, timeout)
    except (OSError, subprocess.SubprocessError) as exc:
        LOGGER.info(
            "version probe raised",
            extra={"stage": "validate", "binary": str(path), "error": repr(exc)},
        )
        return ExecutionValidation.failed(_describe_exception(exc))

    if output.exit_code != 0:
        return ExecutionValidation.failed(_describe_exit_failure(output))

    version = ToolVersion.parse(output.stdout.strip())
    if version is None:
        return ExecutionValidation.failed("No version information could be found.")
    if version < required:
        return ExecutionValidation.failed(
            f"Tinymist version {version.to_path_string()} is below required version "
            f"{required.to_path_string()}"
        )
    return ExecutionValidation.success(version)
