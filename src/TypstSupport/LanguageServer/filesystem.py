"""Filesystem operations used while installing the binary."""

from __future__ import annotations

import os
import stat
from pathlib import Path

__all__ = ["Filesystem", "supports_posix_permissions"]


def supports_posix_permissions() -> bool:
    return os.name == "posix"


class Filesystem:
    """Thin wrapper around the few filesystem calls the installer makes.

    Kept as an object so the scheduler can be driven against a fake in tests.
    """

    def exists(self, path: Path) -> bool:
        return Path(path).exists()

    def create_directories(self, path: Path) -> Path:
        target = Path(path)
        target.mkdir(parents=True, exist_ok=True)
        return target

    def set_executable(self, path: Path) -> Path:
        """Add the owner-execute bit on POSIX systems; a no-op elsewhere."""

        target = Path(path)
        if supports_posix_permissions():
            mode = target.stat().st_mode
            target.chmod(mode | stat.S_IXUSR)
        return target
