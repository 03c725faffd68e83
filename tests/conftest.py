"""Shared fixtures for the TypstSupport test suite."""

from __future__ import annotations

import os
import stat
import sys
import textwrap
from pathlib import Path
from typing import Callable

import pytest
from typer.testing import CliRunner

from TypstSupport.LanguageServer.net import reset_http_client
from TypstSupport.LanguageServer.platforms import ArchFamily, OsFamily, PlatformDescriptor
from TypstSupport.LanguageServer.scheduler import reset_acquisition_state
from TypstSupport.LanguageServer.settings import ResolvedConfig, invalidate_default_config_cache

_ENV_PREFIX = "TYPST_SUPPORT_"


@pytest.fixture(autouse=True)
def _isolate_process_state(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Give every test a clean acquisition cell, HTTP client, and config cache."""

    for name in list(os.environ):
        if name.upper().startswith(_ENV_PREFIX):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TYPST_SUPPORT_DATA_DIR", str(tmp_path / "default-data"))
    monkeypatch.setenv("TYPST_SUPPORT_LOG_DIR", str(tmp_path / "logs"))
    reset_acquisition_state()
    reset_http_client()
    invalidate_default_config_cache()
    yield
    reset_acquisition_state()
    reset_http_client()
    invalidate_default_config_cache()


@pytest.fixture
def linux_x64() -> PlatformDescriptor:
    return PlatformDescriptor(OsFamily.LINUX, ArchFamily.X64)


@pytest.fixture
def config(tmp_path: Path) -> ResolvedConfig:
    """Default configuration rooted in a temporary data directory."""

    return ResolvedConfig(data_dir=tmp_path / "data")


@pytest.fixture
def write_script(tmp_path: Path) -> Callable[..., Path]:
    """Write an executable Python script with a shebang for the running interpreter."""

    if os.name != "posix":
        pytest.skip("shebang scripts require a POSIX host")

    def _write(name: str, body: str, *, directory: Path | None = None) -> Path:
        target_dir = directory or tmp_path / "bin"
        target_dir.mkdir(parents=True, exist_ok=True)
        script = target_dir / name
        script.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body), encoding="utf-8")
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return _write


@pytest.fixture
def fake_tinymist(write_script: Callable[..., Path]) -> Callable[[str], Path]:
    """Return a factory for stand-in binaries that answer ``-V`` with ``version_line``."""

    def _factory(version_line: str = "tinymist 0.13.12", *, name: str = "tinymist") -> Path:
        return write_script(
            name,
            f"""
            import sys
            if "-V" in sys.argv[1:]:
                print({version_line!r})
                sys.exit(0)
            sys.exit(2)
            """,
        )

    return _factory


@pytest.fixture
def cli_runner() -> CliRunner:
    return CliRunner()
