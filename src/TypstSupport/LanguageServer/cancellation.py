"""Cooperative cancellation for the background archive download.

The fetcher checks its :class:`CancellationToken` between chunks instead of
relying on thread interruption, so the temporary extraction file is always
removed before the cancellation surfaces to the scheduler.
"""

from __future__ import annotations

import threading

from .errors import DownloadCancelled


class CancellationToken:
    """Thread-safe cancellation token for cooperative task cancellation.

    Examples:
        >>> token = CancellationToken()
        >>> token.is_cancelled()
        False
        >>> token.cancel()
        >>> token.is_cancelled()
        True
    """

    def __init__(self) -> None:
        self._is_cancelled = threading.Event()
        self._lock = threading.Lock()

    def cancel(self) -> None:
        """Signal that cancellation has been requested."""
        with self._lock:
            self._is_cancelled.set()

    def is_cancelled(self) -> bool:
        return self._is_cancelled.is_set()

    def raise_if_cancelled(self, message: str = "Download cancelled") -> None:
        """Raise :class:`DownloadCancelled` when cancellation has been requested."""
        if self._is_cancelled.is_set():
            raise DownloadCancelled(message)

    def reset(self) -> None:
        """Reset the token to its initial state.

        This should only be used for testing or when reusing tokens
        in controlled scenarios.
        """
        with self._lock:
            self._is_cancelled.clear()


# === NAVMAP v1 ===
# {
#   "module": "TypstSupport.LanguageServer.cancellation",
#   "purpose": "Provide the cooperative cancellation token checked by the archive fetcher",
#   "sections": [
#     {"id": "token", "name": "CancellationToken", "anchor": "TOK", "kind": "api"}
#   ]
# }
# === /NAVMAP ===
