"""Exception hierarchy shared across binary acquisition and preview supervision.

Acquisition spans configuration loading, HTTP retrieval, archive extraction,
and permission fixing; the preview pool spawns and reaps helper processes.
Grouping the failure modes lets the editor integration react to high-level
categories (a download that should be reported to the user vs. a cancelled
one that should only be mentioned) while still reaching the detail through
the specialised subclasses.
"""

from __future__ import annotations

import enum
from typing import Optional

__all__ = [
    "TypstSupportError",
    "ConfigError",
    "DownloadErrorKind",
    "DownloadFailure",
    "DownloadCancelled",
    "UnsupportedArchiveError",
    "ArchiveEntryMissing",
    "BinaryNotReadyError",
    "PreviewServerError",
    "PreviewServerStartError",
]


class TypstSupportError(RuntimeError):
    """Base exception for acquisition, validation, and preview failures."""


class ConfigError(TypstSupportError):
    """Raised when YAML configuration or environment overrides are invalid."""


class DownloadErrorKind(str, enum.Enum):
    """Closed set of network failure categories reported to the user."""

    HOST_RESOLUTION = "host_resolution"
    CONNECTION_REFUSED = "connection_refused"
    TIMEOUT = "timeout"
    TLS = "tls"
    IO = "io"
    UNEXPECTED = "unexpected"

    @property
    def user_message(self) -> str:
        return _USER_MESSAGES[self]

    @property
    def log_prefix(self) -> str:
        return _LOG_PREFIXES[self]


_USER_MESSAGES = {
    DownloadErrorKind.HOST_RESOLUTION: "No internet connection available",
    DownloadErrorKind.CONNECTION_REFUSED: "Unable to connect to download server",
    DownloadErrorKind.TIMEOUT: "Download timed out - please check your internet connection",
    DownloadErrorKind.TLS: "Secure connection failed",
    DownloadErrorKind.IO: "Download failed due to network error",
    DownloadErrorKind.UNEXPECTED: "Failed to download Tinymist Language Server",
}

_LOG_PREFIXES = {
    DownloadErrorKind.HOST_RESOLUTION: "Failed to resolve host",
    DownloadErrorKind.CONNECTION_REFUSED: "Connection failed",
    DownloadErrorKind.TIMEOUT: "Download timeout",
    DownloadErrorKind.TLS: "SSL error",
    DownloadErrorKind.IO: "IO error during download",
    DownloadErrorKind.UNEXPECTED: "Unexpected error",
}


class DownloadFailure(TypstSupportError):
    """Raised when fetching or extracting the tool archive fails.

    Attributes:
        kind: Category from the closed failure taxonomy.
        user_message: Short sentence suitable for a notification balloon.
        log_message: Detailed message including the underlying cause.
        status_code: HTTP status when the server answered with an error.
    """

    def __init__(
        self,
        kind: DownloadErrorKind,
        log_message: str,
        *,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(log_message)
        self.kind = kind
        self.user_message = kind.user_message
        self.log_message = log_message
        self.status_code = status_code
        self.retryable = False


class DownloadCancelled(TypstSupportError):
    """Raised when a download is cancelled through its cancellation token."""


class UnsupportedArchiveError(TypstSupportError):
    """Raised when the archive URL does not end in a known archive suffix."""


class ArchiveEntryMissing(TypstSupportError):
    """Raised when the archive holds no regular file with the expected name."""


class BinaryNotReadyError(TypstSupportError):
    """Raised when an operation needs the tool binary before it is installed."""


class PreviewServerError(TypstSupportError):
    """Base class for preview helper process failures."""


class PreviewServerStartError(PreviewServerError):
    """Raised when a preview helper dies or never reports that it is listening."""

    def __init__(
        self,
        message: str,
        *,
        document_key: Optional[str] = None,
        exit_code: Optional[int] = None,
        output_tail: str = "",
    ) -> None:
        super().__init__(message)
        self.document_key = document_key
        self.exit_code = exit_code
        self.output_tail = output_tail


# === NAVMAP v1 ===
# {
#   "module": "TypstSupport.LanguageServer.errors",
#   "purpose": "Define the exception hierarchy used across acquisition, validation, and preview supervision",
#   "sections": [
#     {"id": "base", "name": "Base Exceptions", "anchor": "BAS", "kind": "api"},
#     {"id": "download", "name": "Download Taxonomy & Failures", "anchor": "DWN", "kind": "api"},
#     {"id": "preview", "name": "Preview Process Errors", "anchor": "PRV", "kind": "api"}
#   ]
# }
# === /NAVMAP ===
