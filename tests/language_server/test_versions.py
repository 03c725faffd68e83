# === NAVMAP v1 ===
# {
#   "module": "tests.language_server.test_versions",
#   "purpose": "Tests for Tinymist version parsing and ordering.",
#   "sections": [
#     {"id": "tests", "name": "Test Cases", "anchor": "TST", "kind": "tests"}
#   ]
# }
# === /NAVMAP ===

"""Tests for Tinymist version parsing and ordering."""

from __future__ import annotations

import pytest

from TypstSupport.LanguageServer.versions import REQUIRED_VERSION, ToolVersion, parse_version_output


@pytest.mark.parametrize(
    "text, expected",
    [
        ("tinymist 0.13.12", ToolVersion(0, 13, 12)),
        ("tinymist 1.2.3", ToolVersion(1, 2, 3)),
        ("TINYMIST 10.20.30", ToolVersion(10, 20, 30)),
        ("Tinymist 1.2.3 (abcdef)", ToolVersion(1, 2, 3)),
        ("build info\ntinymist   0.14.0\n", ToolVersion(0, 14, 0)),
    ],
)
def test_parse_extracts_version_triple(text: str, expected: ToolVersion) -> None:
    assert ToolVersion.parse(text) == expected


@pytest.mark.parametrize("text", ["", "tinymist", "tinymist 1.2", "typst 0.13.12", "version 0.13.12"])
def test_parse_returns_none_without_complete_triple(text: str) -> None:
    assert ToolVersion.parse(text) is None


def test_ordering_is_lexicographic() -> None:
    assert ToolVersion(0, 13, 12) < ToolVersion(0, 14, 0)
    assert ToolVersion(1, 0, 0) > ToolVersion(0, 99, 99)
    assert ToolVersion(1, 9, 9) < ToolVersion(2, 0, 0)
    assert ToolVersion(0, 13, 11) < REQUIRED_VERSION
    assert sorted([ToolVersion(1, 0, 0), ToolVersion(0, 1, 0)])[0] == ToolVersion(0, 1, 0)


def test_string_renderings() -> None:
    version = ToolVersion(0, 13, 12)

    assert version.to_path_string() == "v0.13.12"
    assert version.to_console_string() == "tinymist v0.13.12"
    assert str(version) == "0.13.12"


def test_parse_version_output_matches_parse() -> None:
    assert parse_version_output("tinymist 0.13.12") == REQUIRED_VERSION
