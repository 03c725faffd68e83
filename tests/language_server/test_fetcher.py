# === NAVMAP v1 ===
# {
#   "module": "tests.language_server.test_fetcher",
#   "purpose": "Tests for archive download, streaming extraction, and failure classification.",
#   "sections": [
#     {"id": "helpers", "name": "Helpers", "anchor": "HLP", "kind": "helpers"},
#     {"id": "extract", "name": "Extraction", "anchor": "EXT", "kind": "tests"},
#     {"id": "failures", "name": "Failures", "anchor": "FAIL", "kind": "tests"},
#     {"id": "classify", "name": "Classification", "anchor": "CLS", "kind": "tests"}
#   ]
# }
# === /NAVMAP ===

"""Tests for archive download, streaming extraction, and failure classification."""

from __future__ import annotations

import socket
import ssl
import tarfile
import types
from pathlib import Path
from typing import Dict, List

import httpx
import pytest

import TypstSupport.LanguageServer.fetcher as fetcher_mod
from TypstSupport.LanguageServer.cancellation import CancellationToken
from TypstSupport.LanguageServer.errors import (
    ArchiveEntryMissing,
    DownloadCancelled,
    DownloadErrorKind,
    DownloadFailure,
    UnsupportedArchiveError,
)
from TypstSupport.LanguageServer.fetcher import (
    ArchiveFetcher,
    ArchiveKind,
    DownloadPhase,
    archive_kind_for,
    classify_download_error,
    format_file_size,
)
from TypstSupport.LanguageServer.settings import DownloadConfiguration
from TypstSupport.LanguageServer.testing import build_tar_gz, build_zip, use_mock_http_client

TAR_URL = "https://releases.example/v0.13.12/tinymist-x86_64-unknown-linux-gnu.tar.gz"
ZIP_URL = "https://releases.example/v0.13.12/tinymist-x86_64-pc-windows-msvc.zip"
BINARY = b"\x7fELF" + bytes(range(256)) * 40


# --- Helpers ---------------------------------------------------------------------------


def _serving(routes: Dict[str, bytes], requests: List[httpx.Request] | None = None) -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        body = routes.get(str(request.url))
        if body is None:
            return httpx.Response(404, content=b"not found")
        return httpx.Response(200, content=body)

    return httpx.Client(transport=httpx.MockTransport(handler))


def _raising(exc: Exception) -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        raise exc

    return httpx.Client(transport=httpx.MockTransport(handler))


def _leftovers(directory: Path) -> List[str]:
    return sorted(path.name for path in directory.iterdir()) if directory.exists() else []


# --- Extraction ------------------------------------------------------------------------


def test_tar_gz_extracts_only_matching_entry(tmp_path: Path) -> None:
    archive = build_tar_gz(
        {
            "tinymist-x86_64-unknown-linux-gnu/README.md": b"docs",
            "tinymist-x86_64-unknown-linux-gnu/tinymist": BINARY,
        },
        directories=["tinymist-x86_64-unknown-linux-gnu"],
    )
    destination = tmp_path / "tinymist"
    events = []

    result = ArchiveFetcher(client=_serving({TAR_URL: archive})).download(
        TAR_URL, destination, on_progress=events.append
    )

    assert result == destination
    assert destination.read_bytes() == BINARY
    assert _leftovers(tmp_path) == ["tinymist"]
    phases = [event.phase for event in events]
    assert phases[0] is DownloadPhase.DOWNLOADING
    assert DownloadPhase.EXTRACTING in phases
    assert phases[-1] is DownloadPhase.COMPLETED
    assert events[-1].bytes_done == len(BINARY)
    extracting = [event for event in events if event.phase is DownloadPhase.EXTRACTING]
    assert extracting[-1].bytes_done == len(BINARY)
    assert extracting[-1].fraction == 1.0


def test_tar_download_reports_network_bytes_per_chunk(tmp_path: Path) -> None:
    payload = bytes(range(256)) * 64
    archive = build_tar_gz({"tinymist": payload}, compress=False)
    config = DownloadConfiguration(chunk_size=1024)
    events = []

    ArchiveFetcher(config, client=_serving({TAR_URL.replace(".tar.gz", ".tar"): archive})).download(
        TAR_URL.replace(".tar.gz", ".tar"), tmp_path / "tinymist", on_progress=events.append
    )

    received = [event.bytes_done for event in events if event.phase is DownloadPhase.DOWNLOADING]
    assert received[0] == 0
    assert len(received) > len(payload) // 1024
    assert received == sorted(received)
    assert received[-1] >= len(payload)
    assert all(event.total_bytes == len(archive) for event in events if event.phase is DownloadPhase.DOWNLOADING)


def test_directory_with_binary_name_is_skipped(tmp_path: Path) -> None:
    archive = build_tar_gz({"tinymist/tinymist": BINARY}, directories=["tinymist"])
    destination = tmp_path / "tinymist"

    ArchiveFetcher(client=_serving({TAR_URL: archive})).download(TAR_URL, destination)

    assert destination.is_file()
    assert destination.read_bytes() == BINARY


def test_plain_tar_is_supported(tmp_path: Path) -> None:
    url = TAR_URL.replace(".tar.gz", ".tar")
    archive = build_tar_gz({"tinymist": BINARY}, compress=False)

    ArchiveFetcher(client=_serving({url: archive})).download(url, tmp_path / "tinymist")

    assert (tmp_path / "tinymist").read_bytes() == BINARY


def test_zip_extracts_windows_binary(tmp_path: Path) -> None:
    archive = build_zip(
        {
            "tinymist-x86_64-pc-windows-msvc/LICENSE": b"license",
            "tinymist-x86_64-pc-windows-msvc/tinymist.exe": BINARY,
        },
        directories=["tinymist-x86_64-pc-windows-msvc"],
    )
    destination = tmp_path / "tinymist.exe"

    ArchiveFetcher(client=_serving({ZIP_URL: archive})).download(ZIP_URL, destination)

    assert destination.read_bytes() == BINARY
    assert _leftovers(tmp_path) == ["tinymist.exe"]


def test_existing_binary_is_replaced_atomically(tmp_path: Path) -> None:
    destination = tmp_path / "tinymist"
    destination.write_bytes(b"stale")
    archive = build_tar_gz({"tinymist": BINARY})

    ArchiveFetcher(client=_serving({TAR_URL: archive})).download(TAR_URL, destination)

    assert destination.read_bytes() == BINARY


def test_shared_client_is_used_by_default(tmp_path: Path) -> None:
    archive = build_tar_gz({"tinymist": BINARY})
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=archive)

    with use_mock_http_client(httpx.MockTransport(handler)):
        ArchiveFetcher().download(TAR_URL, tmp_path / "tinymist")

    assert [str(request.url) for request in seen] == [TAR_URL]


def test_iter_download_is_lazy(tmp_path: Path) -> None:
    requests: List[httpx.Request] = []
    client = _serving({TAR_URL: build_tar_gz({"tinymist": BINARY})}, requests)

    iterator = ArchiveFetcher(client=client).iter_download(TAR_URL, tmp_path / "tinymist")

    assert requests == []
    assert next(iterator).phase is DownloadPhase.DOWNLOADING
    assert len(requests) == 1
    iterator.close()
    assert not (tmp_path / "tinymist").exists()


# --- Failures --------------------------------------------------------------------------


def test_unsupported_suffix_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(UnsupportedArchiveError, match="not in a recognized format"):
        ArchiveFetcher(client=_serving({})).download(
            "https://releases.example/tinymist.rar", tmp_path / "tinymist"
        )


def test_missing_entry_leaves_no_file(tmp_path: Path) -> None:
    archive = build_tar_gz({"tinymist-x86_64-unknown-linux-gnu/README.md": b"docs"})

    with pytest.raises(ArchiveEntryMissing):
        ArchiveFetcher(client=_serving({TAR_URL: archive})).download(TAR_URL, tmp_path / "tinymist")

    assert _leftovers(tmp_path) == []


def test_missing_zip_entry(tmp_path: Path) -> None:
    archive = build_zip({"other.exe": BINARY})

    with pytest.raises(ArchiveEntryMissing):
        ArchiveFetcher(client=_serving({ZIP_URL: archive})).download(ZIP_URL, tmp_path / "tinymist.exe")


def test_http_error_status_is_io_failure(tmp_path: Path) -> None:
    with pytest.raises(DownloadFailure) as excinfo:
        ArchiveFetcher(client=_serving({})).download(TAR_URL, tmp_path / "tinymist")

    assert excinfo.value.kind is DownloadErrorKind.IO
    assert excinfo.value.status_code == 404
    assert excinfo.value.user_message == "Download failed due to network error"
    assert excinfo.value.retryable is False
    assert _leftovers(tmp_path) == []


def test_corrupt_archive_is_io_failure(tmp_path: Path) -> None:
    with pytest.raises(DownloadFailure) as excinfo:
        ArchiveFetcher(client=_serving({TAR_URL: b"definitely not gzip"})).download(
            TAR_URL, tmp_path / "tinymist"
        )

    assert excinfo.value.kind is DownloadErrorKind.IO
    assert _leftovers(tmp_path) == []


@pytest.mark.parametrize(
    "exc, kind",
    [
        (httpx.ConnectError("connection refused"), DownloadErrorKind.CONNECTION_REFUSED),
        (
            httpx.ConnectError("[Errno -2] Name or service not known"),
            DownloadErrorKind.HOST_RESOLUTION,
        ),
        (httpx.ReadTimeout("read timed out"), DownloadErrorKind.TIMEOUT),
        (httpx.ConnectError("[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed"), DownloadErrorKind.TLS),
    ],
)
def test_transport_errors_are_classified(tmp_path: Path, exc: Exception, kind: DownloadErrorKind) -> None:
    with pytest.raises(DownloadFailure) as excinfo:
        ArchiveFetcher(client=_raising(exc)).download(TAR_URL, tmp_path / "tinymist")

    assert excinfo.value.kind is kind
    assert excinfo.value.user_message == kind.user_message
    assert excinfo.value.log_message.startswith(kind.log_prefix)
    assert excinfo.value.__cause__ is exc


def test_cancellation_mid_extraction_removes_temp_file(tmp_path: Path) -> None:
    token = CancellationToken()
    fetcher = ArchiveFetcher(
        DownloadConfiguration(chunk_size=512),
        client=_serving({TAR_URL: build_tar_gz({"tinymist": BINARY})}),
        cancel_token=token,
    )

    def on_progress(event) -> None:
        if event.phase is DownloadPhase.EXTRACTING:
            token.cancel()

    with pytest.raises(DownloadCancelled):
        fetcher.download(TAR_URL, tmp_path / "tinymist", on_progress=on_progress)

    assert _leftovers(tmp_path) == []


def test_cancelled_token_aborts_before_extraction(tmp_path: Path) -> None:
    token = CancellationToken()
    token.cancel()
    fetcher = ArchiveFetcher(client=_serving({ZIP_URL: build_zip({"tinymist.exe": BINARY})}), cancel_token=token)

    with pytest.raises(DownloadCancelled):
        fetcher.download(ZIP_URL, tmp_path / "tinymist.exe")

    assert _leftovers(tmp_path) == []


def test_wall_clock_deadline_is_enforced(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    ticks = iter(range(0, 10_000, 100))
    monkeypatch.setattr(fetcher_mod, "time", types.SimpleNamespace(monotonic=lambda: float(next(ticks))))
    fetcher = ArchiveFetcher(
        DownloadConfiguration(download_timeout_sec=150),
        client=_serving({TAR_URL: build_tar_gz({"tinymist": BINARY})}),
    )

    with pytest.raises(DownloadFailure) as excinfo:
        fetcher.download(TAR_URL, tmp_path / "tinymist")

    assert excinfo.value.kind is DownloadErrorKind.TIMEOUT
    assert _leftovers(tmp_path) == []


# --- Classification --------------------------------------------------------------------


def _chained(outer: Exception, inner: BaseException) -> Exception:
    try:
        try:
            raise inner
        except BaseException as cause:
            raise outer from cause
    except Exception as exc:
        return exc


@pytest.mark.parametrize(
    "exc, kind",
    [
        (socket.gaierror(-2, "Name or service not known"), DownloadErrorKind.HOST_RESOLUTION),
        (ConnectionRefusedError(111, "Connection refused"), DownloadErrorKind.CONNECTION_REFUSED),
        (ssl.SSLError("handshake failure"), DownloadErrorKind.TLS),
        (TimeoutError("timed out"), DownloadErrorKind.TIMEOUT),
        (tarfile.ReadError("bad header"), DownloadErrorKind.IO),
        (OSError("disk full"), DownloadErrorKind.IO),
        (ValueError("boom"), DownloadErrorKind.UNEXPECTED),
    ],
)
def test_classify_direct_exceptions(exc: BaseException, kind: DownloadErrorKind) -> None:
    assert classify_download_error(exc).kind is kind


def test_classify_follows_cause_chain() -> None:
    exc = _chained(httpx.ConnectError("failed"), socket.gaierror(-3, "Temporary failure"))

    assert classify_download_error(exc).kind is DownloadErrorKind.HOST_RESOLUTION


def test_classify_passes_download_failure_through() -> None:
    failure = DownloadFailure(DownloadErrorKind.TLS, "SSL error: x")

    assert classify_download_error(failure) is failure


# --- Small helpers ---------------------------------------------------------------------


@pytest.mark.parametrize(
    "url, kind",
    [
        (TAR_URL, ArchiveKind.TAR_GZ),
        (ZIP_URL, ArchiveKind.ZIP),
        ("https://x.example/a.tgz", ArchiveKind.TAR_GZ),
        ("https://x.example/a.TAR", ArchiveKind.TAR),
        ("https://x.example/a.zip?token=1", ArchiveKind.ZIP),
    ],
)
def test_archive_kind_for(url: str, kind: ArchiveKind) -> None:
    assert archive_kind_for(url) is kind


@pytest.mark.parametrize(
    "size, text",
    [(0, "0 B"), (1023, "1023 B"), (1024, "1.0 KB"), (1536, "1.5 KB"), (5 * 1024 * 1024, "5.0 MB")],
)
def test_format_file_size(size: int, text: str) -> None:
    assert format_file_size(size) == text
