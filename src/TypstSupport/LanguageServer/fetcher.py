# === NAVMAP v1 ===
# {
#   "module": "TypstSupport.LanguageServer.fetcher",
#   "purpose": "Stream the Tinymist release archive and extract the binary atomically",
#   "sections": [
#     {"id": "types", "name": "Archive kinds & progress events", "anchor": "TYP", "kind": "api"},
#     {"id": "classify", "name": "Failure classification", "anchor": "CLS", "kind": "helpers"},
#     {"id": "stream", "name": "Response stream adapter", "anchor": "STR", "kind": "helpers"},
#     {"id": "fetcher", "name": "ArchiveFetcher", "anchor": "FET", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Download the Tinymist release archive and extract the single binary entry.

The archive is consumed entry by entry straight off the HTTP response.  Only
the regular file whose basename matches the destination name is written, and
it is written to ``<name>.tmp`` first so that the final path either holds the
complete binary or does not exist.  Tarballs are read in pure streaming mode.
Zip archives keep their central directory at the end of the file, so they
are spooled to a temporary file before extraction.

Failures are mapped onto :class:`~TypstSupport.LanguageServer.errors.DownloadErrorKind`
and raised as :class:`DownloadFailure`.  There are no retries.
"""

from __future__ import annotations

import enum
import io
import logging
import os
import socket
import ssl
import tarfile
import tempfile
import time
import zipfile
import zlib
from collections import deque
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import IO, Callable, Deque, Iterator, Optional, Union

import httpx

from .cancellation import CancellationToken
from .errors import (
    ArchiveEntryMissing,
    DownloadErrorKind,
    DownloadFailure,
    TypstSupportError,
    UnsupportedArchiveError,
)
from .net import get_http_client
from .settings import DownloadConfiguration

__all__ = [
    "ArchiveKind",
    "DownloadPhase",
    "DownloadProgress",
    "ArchiveFetcher",
    "archive_kind_for",
    "classify_download_error",
    "format_file_size",
]

LOGGER = logging.getLogger("TypstSupport.LanguageServer.fetcher")

BYTES_PER_KB = 1024
BYTES_PER_MB = BYTES_PER_KB * BYTES_PER_KB
ZIP_SPOOL_MAX_BYTES = 16 * BYTES_PER_MB


# --- Archive kinds & progress events -------------------------------------------


class ArchiveKind(str, enum.Enum):
    ZIP = "zip"
    TAR_GZ = "tar.gz"
    TAR = "tar"


def archive_kind_for(url: str) -> ArchiveKind:
    """Infer the archive format from the URL path suffix."""

    path = httpx.URL(url).path.lower()
    if path.endswith(".zip"):
        return ArchiveKind.ZIP
    if path.endswith(".tar.gz") or path.endswith(".tgz"):
        return ArchiveKind.TAR_GZ
    if path.endswith(".tar"):
        return ArchiveKind.TAR
    raise UnsupportedArchiveError(f"Tinymist archive was not in a recognized format: {url}")


class DownloadPhase(str, enum.Enum):
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    COMPLETED = "completed"


@dataclass(frozen=True, slots=True)
class DownloadProgress:
    """Progress snapshot yielded by :meth:`ArchiveFetcher.iter_download`.

    ``bytes_done`` counts archive bytes received while downloading and entry
    bytes written while extracting; ``total_bytes`` is ``None`` when unknown.
    """

    phase: DownloadPhase
    bytes_done: int
    total_bytes: Optional[int] = None
    entry_name: Optional[str] = None

    @property
    def fraction(self) -> Optional[float]:
        if not self.total_bytes:
            return None
        return min(1.0, self.bytes_done / self.total_bytes)


def format_file_size(size: int) -> str:
    """Render ``size`` bytes as ``B``, ``KB``, or ``MB`` with one decimal."""

    if size < BYTES_PER_KB:
        return f"{size} B"
    if size < BYTES_PER_MB:
        return f"{size / BYTES_PER_KB:.1f} KB"
    return f"{size / BYTES_PER_MB:.1f} MB"


# --- Failure classification ------------------------------------------------------

_HOST_RESOLUTION_HINTS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
    "no address associated with hostname",
)
_TLS_HINTS = ("certificate_verify_failed", "ssl:", "tls")


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _specific_kind(exc: BaseException) -> Optional[DownloadErrorKind]:
    if isinstance(exc, (httpx.TimeoutException, TimeoutError, socket.timeout)):
        return DownloadErrorKind.TIMEOUT
    if isinstance(exc, socket.gaierror):
        return DownloadErrorKind.HOST_RESOLUTION
    if isinstance(exc, ssl.SSLError):
        return DownloadErrorKind.TLS
    if isinstance(exc, ConnectionRefusedError):
        return DownloadErrorKind.CONNECTION_REFUSED
    message = str(exc).lower()
    if isinstance(exc, (httpx.ConnectError, OSError)):
        if any(hint in message for hint in _HOST_RESOLUTION_HINTS):
            return DownloadErrorKind.HOST_RESOLUTION
        if any(hint in message for hint in _TLS_HINTS):
            return DownloadErrorKind.TLS
    return None


def classify_download_error(exc: BaseException) -> DownloadFailure:
    """Map ``exc`` (and its cause chain) onto the closed download failure taxonomy."""

    if isinstance(exc, DownloadFailure):
        return exc

    kind: Optional[DownloadErrorKind] = None
    for link in _exception_chain(exc):
        kind = _specific_kind(link)
        if kind is not None:
            break

    if kind is None:
        if isinstance(exc, httpx.ConnectError):
            kind = DownloadErrorKind.CONNECTION_REFUSED
        elif isinstance(
            exc,
            (
                httpx.HTTPError,
                OSError,
                EOFError,
                tarfile.TarError,
                zipfile.BadZipFile,
                zlib.error,
            ),
        ):
            kind = DownloadErrorKind.IO
        else:
            kind = DownloadErrorKind.UNEXPECTED

    status_code = exc.response.status_code if isinstance(exc, httpx.HTTPStatusError) else None
    detail = str(exc) or type(exc).__name__
    return DownloadFailure(kind, f"{kind.log_prefix}: {detail}", status_code=status_code)


# --- Response stream adapter -------------------------------------------------------


class _ResponseStream(io.RawIOBase):
    """Expose an iterator of byte chunks as a readable, non-seekable file."""

    def __init__(self, chunks: Iterator[bytes], on_chunk: Callable[[int], None]) -> None:
        super().__init__()
        self._chunks = chunks
        self._on_chunk = on_chunk
        self._pending = b""

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:  # type: ignore[override]
        while not self._pending:
            try:
                chunk = next(self._chunks)
            except StopIteration:
                return 0
            self._on_chunk(len(chunk))
            self._pending = chunk
        size = min(len(buffer), len(self._pending))
        buffer[:size] = self._pending[:size]
        self._pending = self._pending[size:]
        return size


# --- ArchiveFetcher ----------------------------------------------------------------


class ArchiveFetcher:
    """Fetch a release archive and install the one entry it is asked for.

    Args:
        config: Download settings (timeouts, copy buffer size).
        client: HTTPX client; the shared client from :mod:`.net` by default.
        cancel_token: Checked before every chunk; a cancelled token aborts the
            transfer with :class:`DownloadCancelled`.
    """

    def __init__(
        self,
        config: Optional[DownloadConfiguration] = None,
        *,
        client: Optional[httpx.Client] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        self._config = config or DownloadConfiguration()
        self._client = client
        self.cancel_token = cancel_token or CancellationToken()

    def download(
        self,
        url: str,
        destination: Union[str, Path],
        on_progress: Optional[Callable[[DownloadProgress], None]] = None,
    ) -> Path:
        """Download ``url`` and install its matching entry at ``destination``."""

        for event in self.iter_download(url, destination):
            if on_progress is not None:
                on_progress(event)
        return Path(destination)

    def iter_download(
        self, url: str, destination: Union[str, Path]
    ) -> Iterator[DownloadProgress]:
        """Lazily perform the download, yielding progress as it goes.

        Nothing happens until the first ``next()``.  Closing the generator
        early aborts the transfer and removes the temporary file.
        """

        target = Path(destination)
        kind = archive_kind_for(url)
        deadline = time.monotonic() + self._config.download_timeout_sec
        client = self._client or get_http_client(self._config)

        LOGGER.info(
            "downloading tinymist",
            extra={"stage": "download", "url": url, "destination": str(target)},
        )
        try:
            with client.stream("GET", url) as response:
                response.raise_for_status()
                total = _content_length(response)
                yield DownloadProgress(DownloadPhase.DOWNLOADING, 0, total)
                chunks = response.iter_bytes(chunk_size=self._config.chunk_size)
                if kind is ArchiveKind.ZIP:
                    yield from self._extract_zip(chunks, target, total, deadline)
                else:
                    yield from self._extract_tar(chunks, target, kind, total, deadline)
        except TypstSupportError:
            raise
        except Exception as exc:
            failure = classify_download_error(exc)
            LOGGER.error(
                f"{failure.log_message} (URI: {url})",
                extra={"stage": "download", "kind": failure.kind.value, "url": url},
                exc_info=True,
            )
            raise failure from exc

        yield DownloadProgress(DownloadPhase.COMPLETED, _safe_size(target), _safe_size(target))

    # -- helpers -------------------------------------------------------------

    def _checkpoint(self, deadline: float) -> None:
        self.cancel_token.raise_if_cancelled()
        if time.monotonic() > deadline:
            raise DownloadFailure(
                DownloadErrorKind.TIMEOUT,
                f"{DownloadErrorKind.TIMEOUT.log_prefix}: exceeded "
                f"{self._config.download_timeout_sec:.0f}s",
            )

    def _extract_tar(
        self,
        chunks: Iterator[bytes],
        target: Path,
        kind: ArchiveKind,
        total: Optional[int],
        deadline: float,
    ) -> Iterator[DownloadProgress]:
        # tarfile pulls chunks from inside its own reads, so network progress
        # is queued there and handed out between entry reads.
        received = 0
        pending: Deque[DownloadProgress] = deque()

        def on_chunk(size: int) -> None:
            nonlocal received
            self._checkpoint(deadline)
            received += size
            pending.append(DownloadProgress(DownloadPhase.DOWNLOADING, received, total))

        def drain() -> Iterator[DownloadProgress]:
            while pending:
                yield pending.popleft()

        stream = _ResponseStream(chunks, on_chunk)
        mode = "r|gz" if kind is ArchiveKind.TAR_GZ else "r|"
        with tarfile.open(fileobj=stream, mode=mode) as archive:
            for member in archive:
                yield from drain()
                if member.isdir() or not member.isfile():
                    continue
                if PurePosixPath(member.name).name != target.name:
                    LOGGER.debug("skipping archive entry", extra={"stage": "extract", "entry": member.name})
                    continue
                source = archive.extractfile(member)
                if source is None:
                    continue
                for event in self._install_entry(source, member.name, member.size, target, deadline):
                    yield from drain()
                    yield event
                yield from drain()
                return
        raise ArchiveEntryMissing(f"No entry named {target.name!r} in the downloaded archive")

    def _extract_zip(
        self,
        chunks: Iterator[bytes],
        target: Path,
        total: Optional[int],
        deadline: float,
    ) -> Iterator[DownloadProgress]:
        with tempfile.SpooledTemporaryFile(max_size=ZIP_SPOOL_MAX_BYTES) as spool:
            received = 0
            for chunk in chunks:
                self._checkpoint(deadline)
                spool.write(chunk)
                received += len(chunk)
                yield DownloadProgress(DownloadPhase.DOWNLOADING, received, total)
            spool.seek(0)
            with zipfile.ZipFile(spool) as archive:
                for info in archive.infolist():
                    if info.is_dir():
                        continue
                    if PurePosixPath(info.filename).name != target.name:
                        continue
                    with archive.open(info) as source:
                        yield from self._install_entry(
                            source, info.filename, info.file_size, target, deadline
                        )
                    return
        raise ArchiveEntryMissing(f"No entry named {target.name!r} in the downloaded archive")

    def _install_entry(
        self,
        source: IO[bytes],
        entry_name: str,
        entry_size: Optional[int],
        target: Path,
        deadline: float,
    ) -> Iterator[DownloadProgress]:
        temp_path = target.with_name(target.name + ".tmp")
        size_text = format_file_size(entry_size) if entry_size is not None and entry_size >= 0 else "unknown size"
        LOGGER.info(
            f"Extracting `{entry_name}` to `{target}` ({size_text})",
            extra={"stage": "extract", "entry": entry_name},
        )
        written = 0
        try:
            with temp_path.open("wb") as handle:
                while True:
                    self._checkpoint(deadline)
                    block = source.read(self._config.chunk_size)
                    if not block:
                        break
                    handle.write(block)
                    written += len(block)
                    yield DownloadProgress(DownloadPhase.EXTRACTING, written, entry_size, entry_name)
            os.replace(temp_path, target)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise
        LOGGER.info(
            f"Tinymist downloaded and extracted successfully. Total size: {format_file_size(written)}",
            extra={"stage": "extract", "entry": entry_name, "bytes": written},
        )


def _content_length(response: httpx.Response) -> Optional[int]:
    raw = response.headers.get("Content-Length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _safe_size(path: Path) -> Optional[int]:
    try:
        return path.stat().st_size
    except OSError:
        return None
