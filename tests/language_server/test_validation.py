"""Tests for filesystem and execution validation of Tinymist binaries."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

import pytest

from TypstSupport.LanguageServer.validation import (
    ProcessOutput,
    validate_binary_execution,
    validate_binary_file,
)
from TypstSupport.LanguageServer.versions import ToolVersion


def _executable(tmp_path: Path, name: str = "tinymist") -> Path:
    path = tmp_path / name
    path.write_text("", encoding="utf-8")
    path.chmod(0o755)
    return path


class _Executor:
    """Record invocations and answer with a fixed result or exception."""

    def __init__(self, result=None, exc: BaseException | None = None) -> None:
        self.result = result
        self.exc = exc
        self.calls = []

    def __call__(self, argv, cwd, timeout):
        self.calls.append((list(argv), cwd, timeout))
        if self.exc is not None:
            raise self.exc
        return self.result


# --- file validation ---------------------------------------------------------------


@pytest.mark.parametrize("value", [None, "", "   "])
def test_empty_path_is_rejected(value) -> None:
    result = validate_binary_file(value)

    assert not result.ok
    assert result.message == "Binary path is empty"


def test_missing_file_is_rejected(tmp_path: Path) -> None:
    assert validate_binary_file(tmp_path / "missing").message == "Binary file does not exist"


def test_directory_is_rejected(tmp_path: Path) -> None:
    assert validate_binary_file(tmp_path).message == "Binary path is a directory"


@pytest.mark.skipif(os.name != "posix", reason="execute bit is POSIX-specific")
def test_non_executable_file_is_rejected(tmp_path: Path) -> None:
    if hasattr(os, "geteuid") and os.geteuid() == 0:
        pytest.skip("root bypasses execute permission checks")
    path = tmp_path / "tinymist"
    path.write_text("", encoding="utf-8")
    path.chmod(0o644)

    assert validate_binary_file(path).message == "Binary file is not executable"


def test_executable_file_is_accepted(tmp_path: Path) -> None:
    result = validate_binary_file(_executable(tmp_path))

    assert result.ok
    assert result.message is None


# --- execution validation ------------------------------------------------------------


def test_execution_success_parses_version(tmp_path: Path) -> None:
    binary = _executable(tmp_path)
    executor = _Executor(ProcessOutput(0, "tinymist 0.13.14\n", ""))

    result = validate_binary_execution(binary, executor=executor)

    assert result.ok
    assert result.version == ToolVersion(0, 13, 14)
    argv, cwd, _timeout = executor.calls[0]
    assert argv == [str(binary), "-V"]
    assert cwd == binary.parent


def test_execution_rejects_old_version(tmp_path: Path) -> None:
    executor = _Executor(ProcessOutput(0, "tinymist 0.12.0", ""))

    result = validate_binary_execution(_executable(tmp_path), executor=executor)

    assert not result.ok
    assert result.message == "Tinymist version v0.12.0 is below required version v0.13.12"


def test_execution_without_version_output(tmp_path: Path) -> None:
    executor = _Executor(ProcessOutput(0, "hello", ""))

    result = validate_binary_execution(_executable(tmp_path), executor=executor)

    assert result.message == "No version information could be found."


def test_execution_short_circuits_on_invalid_path(tmp_path: Path) -> None:
    executor = _Executor(ProcessOutput(0, "tinymist 0.13.12", ""))

    result = validate_binary_execution(tmp_path / "missing", executor=executor)

    assert result.message == "Binary file does not exist"
    assert executor.calls == []


@pytest.mark.parametrize(
    "output, message",
    [
        (ProcessOutput(126, "", "whatever"), "macOS blocked execution - check Security & Privacy settings"),
        (
            ProcessOutput(1, "", "app cannot be opened because the developer cannot be verified"),
            "macOS blocked execution - check Security & Privacy settings",
        ),
        (ProcessOutput(1, "", "sh: Permission denied"), "Permission denied - make binary executable"),
        (ProcessOutput(1, "", "No such file or directory"), "Binary not found at specified path"),
        (ProcessOutput(2, "", "x" * 80), "Binary validation failed: " + "x" * 50),
    ],
)
def test_exit_failures_map_to_messages(tmp_path: Path, output: ProcessOutput, message: str) -> None:
    result = validate_binary_execution(_executable(tmp_path), executor=_Executor(output))

    assert not result.ok
    assert result.message == message


@pytest.mark.parametrize(
    "exc, message",
    [
        (PermissionError(13, "Permission denied"), "Permission denied - check file permissions"),
        (FileNotFoundError(2, "No such file or directory"), "Binary file not found"),
        (OSError(8, "Exec format error"), "Cannot execute binary - may be blocked by macOS security"),
        (subprocess.TimeoutExpired(["tinymist", "-V"], 10), None),
    ],
)
def test_launch_exceptions_map_to_messages(tmp_path: Path, exc: BaseException, message) -> None:
    result = validate_binary_execution(_executable(tmp_path), executor=_Executor(exc=exc))

    assert not result.ok
    if message is None:
        assert result.message.startswith("Failed to execute binary: ")
    else:
        assert result.message == message


def test_real_process_probe(fake_tinymist) -> None:
    result = validate_binary_execution(fake_tinymist("tinymist 0.13.12"))

    assert result.ok
    assert result.version == ToolVersion(0, 13, 12)
