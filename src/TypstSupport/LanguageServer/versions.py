"""Tinymist version parsing and comparison."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

__all__ = ["ToolVersion", "REQUIRED_VERSION", "parse_version_output"]

_VERSION_PATTERN = re.compile(r"\btinymist\s+(\d+)\.(\d+)\.(\d+)\b", re.IGNORECASE)


@dataclass(frozen=True, order=True, slots=True)
class ToolVersion:
    """Semantic ``major.minor.patch`` version of the Tinymist binary.

    Ordering is lexicographic over ``(major, minor, patch)``.
    """

    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, text: str) -> Optional["ToolVersion"]:
        """Extract ``tinymist <major>.<minor>.<patch>`` from free-form text.

        Returns ``None`` when the text carries no complete version triple.

        Examples:
            >>> ToolVersion.parse("tinymist 0.13.12")
            ToolVersion(major=0, minor=13, patch=12)
            >>> ToolVersion.parse("tinymist 1.2") is None
            True
        """

        match = _VERSION_PATTERN.search(text or "")
        if match is None:
            return None
        major, minor, patch = (int(group) for group in match.groups())
        return cls(major, minor, patch)

    def to_path_string(self) -> str:
        return f"v{self.major}.{self.minor}.{self.patch}"

    def to_console_string(self) -> str:
        return f"tinymist {self.to_path_string()}"

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


REQUIRED_VERSION = ToolVersion(0, 13, 12)


def parse_version_output(output: str) -> Optional[ToolVersion]:
    """Parse the output of ``tinymist -V``; alias kept for call-site readability."""

    return ToolVersion.parse(output)
