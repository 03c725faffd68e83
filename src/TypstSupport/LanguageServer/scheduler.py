# === NAVMAP v1 ===
# {
#   "module": "TypstSupport.LanguageServer.scheduler",
#   "purpose": "Single-flight acquisition of the Tinymist binary",
#   "sections": [
#     {"id": "state", "name": "Process-wide acquisition state", "anchor": "STA", "kind": "api"},
#     {"id": "status", "name": "Download status values", "anchor": "STS", "kind": "api"},
#     {"id": "scheduler", "name": "AcquisitionScheduler", "anchor": "SCH", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Obtain the Tinymist binary exactly once per process.

:meth:`AcquisitionScheduler.obtain_binary` never blocks: it reports that the
binary is already on disk, that another caller is already fetching it, or
that it has just scheduled the fetch on a background worker.  The process-wide
:class:`AcquisitionStateCell` guarantees that concurrent callers start at most
one download.  A cancelled download parks the cell in ``FAILED`` until the
host process restarts; a network failure returns it to ``IDLE`` so the next
document-open event tries again.
"""

from __future__ import annotations

import enum
import logging
import threading
from concurrent import futures
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from ..concurrency import create_executor
from .errors import DownloadCancelled, DownloadErrorKind, DownloadFailure
from .fetcher import ArchiveFetcher, DownloadPhase, DownloadProgress, format_file_size
from .filesystem import Filesystem
from .locations import BinaryLocation, BinaryLocationResolver
from .notifier import LoggingNotifier, Notifier

__all__ = [
    "AcquisitionState",
    "AcquisitionStateCell",
    "StatusKind",
    "DownloadStatus",
    "STATUS_DOWNLOADING",
    "STATUS_SCHEDULED",
    "STATUS_FAILED",
    "AcquisitionScheduler",
    "acquisition_state",
    "reset_acquisition_state",
    "DOWNLOAD_CANCELLED_MESSAGE",
]

LOGGER = logging.getLogger("TypstSupport.LanguageServer.scheduler")

DOWNLOAD_CANCELLED_MESSAGE = (
    "The Typst Language Server download was cancelled.\n\n To retry, restart the IDE."
)


# --- Process-wide acquisition state -------------------------------------------------


class AcquisitionState(str, enum.Enum):
    IDLE = "idle"
    DOWNLOADING = "downloading"
    READY = "ready"
    FAILED = "failed"


class AcquisitionStateCell:
    """Single-slot state holder with a compare-and-set transition.

    The lock only guards the test-and-set of the flag itself; no caller holds
    it across I/O.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = AcquisitionState.IDLE
        self._ready_path: Optional[Path] = None

    @property
    def state(self) -> AcquisitionState:
        return self._state

    @property
    def ready_path(self) -> Optional[Path]:
        return self._ready_path

    def compare_and_set(self, expected: AcquisitionState, new: AcquisitionState) -> bool:
        with self._lock:
            if self._state is not expected:
                return False
            self._state = new
            return True

    def begin_download(self) -> bool:
        """Claim the single download slot from ``IDLE`` or a stale ``READY``."""

        with self._lock:
            if self._state not in (AcquisitionState.IDLE, AcquisitionState.READY):
                return False
            self._state = AcquisitionState.DOWNLOADING
            self._ready_path = None
            return True

    def mark_ready(self, path: Path) -> None:
        with self._lock:
            self._state = AcquisitionState.READY
            self._ready_path = path

    def set(self, state: AcquisitionState) -> None:
        with self._lock:
            self._state = state
            if state is not AcquisitionState.READY:
                self._ready_path = None


_ACQUISITION_STATE = AcquisitionStateCell()


def acquisition_state() -> AcquisitionStateCell:
    """Return the process-wide acquisition state cell."""

    return _ACQUISITION_STATE


def reset_acquisition_state() -> None:
    """Return the process-wide cell to ``IDLE`` (test helper)."""

    _ACQUISITION_STATE.set(AcquisitionState.IDLE)


# --- Download status values ---------------------------------------------------------


class StatusKind(str, enum.Enum):
    DOWNLOADED = "downloaded"
    DOWNLOADING = "downloading"
    SCHEDULED = "scheduled"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class DownloadStatus:
    """Answer of :meth:`AcquisitionScheduler.obtain_binary`; ``path`` is set when downloaded."""

    kind: StatusKind
    path: Optional[Path] = None

    @classmethod
    def downloaded(cls, path: Path) -> "DownloadStatus":
        return cls(StatusKind.DOWNLOADED, path)

    @property
    def is_downloaded(self) -> bool:
        return self.kind is StatusKind.DOWNLOADED


STATUS_DOWNLOADING = DownloadStatus(StatusKind.DOWNLOADING)
STATUS_SCHEDULED = DownloadStatus(StatusKind.SCHEDULED)
STATUS_FAILED = DownloadStatus(StatusKind.FAILED)


class _ProgressLog:
    """Log download progress at quarter steps instead of per chunk."""

    def __init__(self, url: str) -> None:
        self._url = url
        self._next_step = {DownloadPhase.DOWNLOADING: 0.25, DownloadPhase.EXTRACTING: 0.25}

    def __call__(self, event: DownloadProgress) -> None:
        fraction = event.fraction
        threshold = self._next_step.get(event.phase)
        if fraction is None or threshold is None or fraction < threshold:
            return
        while self._next_step[event.phase] <= fraction:
            self._next_step[event.phase] += 0.25
        LOGGER.info(
            "download progress",
            extra={
                "stage": event.phase.value,
                "url": self._url,
                "percent": round(fraction * 100),
                "bytes": format_file_size(event.bytes_done),
            },
        )


# --- AcquisitionScheduler -----------------------------------------------------------


class AcquisitionScheduler:
    """Decide between already-present, in-progress, and needs-download.

    Args:
        resolver: Computes the binary location on every call.
        fetcher: Downloads and extracts the archive.
        filesystem: Existence checks, directory creation, permission fixing.
        notifier: Receives user-facing warnings and errors.
        on_ready: Service starter invoked with the binary path after a
            successful install.
        executor: Background executor; a single-worker pool is created when
            omitted and shut down by :meth:`shutdown`.
        state: Acquisition state cell; the process-wide cell by default.
    """

    def __init__(
        self,
        resolver: BinaryLocationResolver,
        *,
        fetcher: Optional[ArchiveFetcher] = None,
        filesystem: Optional[Filesystem] = None,
        notifier: Optional[Notifier] = None,
        on_ready: Optional[Callable[[Path], None]] = None,
        executor: Optional[futures.Executor] = None,
        state: Optional[AcquisitionStateCell] = None,
    ) -> None:
        self._resolver = resolver
        self._fetcher = fetcher or ArchiveFetcher()
        self._filesystem = filesystem or Filesystem()
        self._notifier = notifier or LoggingNotifier()
        self._on_ready = on_ready
        self._owns_executor = executor is None
        self._executor = executor or create_executor("acquire", 1)
        self._state = state or _ACQUISITION_STATE
        self._future: Optional[futures.Future] = None

    @property
    def state(self) -> AcquisitionState:
        return self._state.state

    def obtain_binary(self) -> DownloadStatus:
        """Return the binary's status, scheduling the download when needed."""

        if self._state.state is AcquisitionState.DOWNLOADING:
            return STATUS_DOWNLOADING

        location = self._resolver.resolve()
        if self._filesystem.exists(location.local_path):
            return DownloadStatus.downloaded(location.local_path)

        if self._state.state is AcquisitionState.FAILED:
            return STATUS_FAILED

        if not self._state.begin_download():
            return STATUS_DOWNLOADING

        # Another caller may have finished its install since the check above.
        if self._filesystem.exists(location.local_path):
            self._state.mark_ready(location.local_path)
            return DownloadStatus.downloaded(location.local_path)

        LOGGER.info(
            "scheduling tinymist download",
            extra={"stage": "acquire", "url": location.remote_url, "path": str(location.local_path)},
        )
        try:
            self._future = self._executor.submit(self._install, location)
        except RuntimeError:
            self._state.set(AcquisitionState.IDLE)
            raise
        return STATUS_SCHEDULED

    def cancel(self) -> None:
        """Request cancellation of the in-flight download, if any."""

        if self._state.state is AcquisitionState.DOWNLOADING:
            self._fetcher.cancel_token.cancel()

    def wait(self, timeout: Optional[float] = None) -> Optional[Path]:
        """Block until the scheduled install finishes and return the binary path.

        Returns ``None`` when nothing was scheduled.  Re-raises the install
        failure, or :class:`concurrent.futures.TimeoutError` on timeout.
        """

        future = self._future
        if future is None:
            return None
        return future.result(timeout=timeout)

    def shutdown(self, *, wait: bool = False) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait, cancel_futures=True)

    def _install(self, location: BinaryLocation) -> Path:
        path = location.local_path
        try:
            self._filesystem.create_directories(path.parent)
            self._fetcher.download(location.remote_url, path, on_progress=_ProgressLog(location.remote_url))
            self._filesystem.set_executable(path)
        except DownloadCancelled:
            LOGGER.warning("tinymist download cancelled", extra={"stage": "acquire"})
            self._notifier.warn(DOWNLOAD_CANCELLED_MESSAGE)
            self._state.set(AcquisitionState.FAILED)
            raise
        except DownloadFailure as exc:
            LOGGER.warning(
                "tinymist download failed",
                extra={"stage": "acquire", "kind": exc.kind.value, "detail": exc.log_message},
            )
            self._notifier.error(f"Tinymist download failed: {exc.user_message}")
            self._state.set(AcquisitionState.IDLE)
            raise
        except Exception as exc:
            LOGGER.error(
                "tinymist install failed",
                extra={"stage": "acquire", "error": repr(exc)},
                exc_info=True,
            )
            self._notifier.error(
                f"Tinymist download failed: {DownloadErrorKind.UNEXPECTED.user_message}"
            )
            self._state.set(AcquisitionState.IDLE)
            raise

        self._state.mark_ready(path)
        LOGGER.info("tinymist installed", extra={"stage": "acquire", "path": str(path)})
        if self._on_ready is not None:
            try:
                self._on_ready(path)
            except Exception as exc:
                LOGGER.exception(
                    "tinymist service start failed",
                    extra={"stage": "service", "path": str(path), "error": repr(exc)},
                )
                self._notifier.error(f"Failed to start the Typst Language Server: {exc}")
                raise
        return path
