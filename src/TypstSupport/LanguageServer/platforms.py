"""Host platform detection mapped onto Tinymist release artifact names."""

from __future__ import annotations

import enum
import platform
from dataclasses import dataclass
from typing import Optional

__all__ = ["OsFamily", "ArchFamily", "PlatformDescriptor"]


class OsFamily(enum.Enum):
    MAC = "mac"
    WINDOWS = "windows"
    LINUX = "linux"

    # Hosts that match nothing else are treated as Linux.
    DEFAULT = LINUX

    @classmethod
    def from_string(cls, name: Optional[str]) -> "OsFamily":
        """Classify an OS name by case-insensitive substring, first match wins."""

        normalized = (name or "").strip().lower()
        if "mac" in normalized or "darwin" in normalized:
            return cls.MAC
        if "windows" in normalized or normalized.startswith("win32"):
            return cls.WINDOWS
        return cls.DEFAULT

    @property
    def archive_id(self) -> str:
        return {
            OsFamily.MAC: "apple-darwin",
            OsFamily.WINDOWS: "pc-windows-msvc",
            OsFamily.LINUX: "unknown-linux-gnu",
        }[self]

    @property
    def archive_extension(self) -> str:
        return ".zip" if self is OsFamily.WINDOWS else ".tar.gz"

    @property
    def executable_suffix(self) -> str:
        return ".exe" if self is OsFamily.WINDOWS else ""


class ArchFamily(enum.Enum):
    ARM64 = "arm64"
    X64 = "x64"

    # Anything that is not recognisably 64-bit ARM gets the x86_64 build.
    DEFAULT = X64

    @classmethod
    def from_string(cls, arch: Optional[str]) -> "ArchFamily":
        normalized = (arch or "").strip().lower()
        if "arch64" in normalized or "arm64" in normalized:
            return cls.ARM64
        return cls.DEFAULT

    @property
    def archive_id(self) -> str:
        return "aarch64" if self is ArchFamily.ARM64 else "x86_64"


@dataclass(frozen=True, slots=True)
class PlatformDescriptor:
    """OS and CPU family of the host, as far as release artifacts care."""

    os_family: OsFamily
    arch_family: ArchFamily

    @classmethod
    def from_strings(cls, os_name: Optional[str], arch: Optional[str]) -> "PlatformDescriptor":
        return cls(OsFamily.from_string(os_name), ArchFamily.from_string(arch))

    @classmethod
    def detect(cls) -> "PlatformDescriptor":
        """Describe the running interpreter's host."""

        return cls.from_strings(platform.system(), platform.machine())

    @property
    def archive_name(self) -> str:
        """File name of the release archive, e.g. ``tinymist-x86_64-unknown-linux-gnu.tar.gz``."""

        return (
            f"tinymist-{self.arch_family.archive_id}-{self.os_family.archive_id}"
            f"{self.os_family.archive_extension}"
        )

    @property
    def binary_name(self) -> str:
        return f"tinymist{self.os_family.executable_suffix}"
