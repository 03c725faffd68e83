"""User notification sink consumed by the toolchain core."""

from __future__ import annotations

import logging
from typing import List, Protocol, Tuple

__all__ = ["Notifier", "LoggingNotifier", "RecordingNotifier"]


class Notifier(Protocol):
    """Anything that can surface a short message to the user."""

    def info(self, message: str) -> None: ...

    def warn(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...


class LoggingNotifier:
    """Default sink: route notifications to the ``TypstSupport.notifications`` logger."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("TypstSupport.notifications")

    def info(self, message: str) -> None:
        self._logger.info(message, extra={"stage": "notify"})

    def warn(self, message: str) -> None:
        self._logger.warning(message, extra={"stage": "notify"})

    def error(self, message: str) -> None:
        self._logger.error(message, extra={"stage": "notify"})


class RecordingNotifier:
    """Keep notifications in memory; used by the CLI summary and tests."""

    def __init__(self) -> None:
        self.messages: List[Tuple[str, str]] = []

    def info(self, message: str) -> None:
        self.messages.append(("info", message))

    def warn(self, message: str) -> None:
        self.messages.append(("warn", message))

    def error(self, message: str) -> None:
        self.messages.append(("error", message))

    def of_level(self, level: str) -> List[str]:
        return [message for kind, message in self.messages if kind == level]
