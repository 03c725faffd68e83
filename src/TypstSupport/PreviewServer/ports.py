"""Port allocation for preview helper processes."""

from __future__ import annotations

import enum
import logging
import socket
import threading
from dataclasses import dataclass

from .options import LOOPBACK_HOST

__all__ = ["PortProbeOutcome", "PortAllocation", "PortAllocator", "is_port_free"]

LOGGER = logging.getLogger("TypstSupport.PreviewServer.ports")

MAX_PORT = 65535


class PortProbeOutcome(str, enum.Enum):
    FREE = "free"
    # Every probe failed; the last candidate is handed out anyway and may
    # already be taken by the time the helper binds it.
    EXHAUSTED = "exhausted"


@dataclass(frozen=True, slots=True)
class PortAllocation:
    port: int
    outcome: PortProbeOutcome
    attempts: int

    @property
    def verified(self) -> bool:
        return self.outcome is PortProbeOutcome.FREE


def is_port_free(port: int, host: str = LOOPBACK_HOST) -> bool:
    """Bind and immediately close a listening socket on ``port``."""

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        try:
            probe.bind((host, port))
            probe.listen(1)
        except OSError:
            return False
    return True


class PortAllocator:
    """Hand out ports from a monotonically increasing counter.

    Each :meth:`allocate` call probes at most ``max_attempts`` consecutive
    candidates.  Ports are never reused within a process; the counter wraps
    back to ``starting_port`` only when it runs past 65535.
    """

    def __init__(self, starting_port: int = 23625, max_attempts: int = 10, host: str = LOOPBACK_HOST) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._starting_port = starting_port
        self._next_port = starting_port
        self._max_attempts = max_attempts
        self._host = host
        self._lock = threading.Lock()

    def _take(self) -> int:
        with self._lock:
            port = self._next_port
            self._next_port = port + 1 if port < MAX_PORT else self._starting_port
            return port

    def allocate(self) -> PortAllocation:
        candidate = self._starting_port
        for attempt in range(1, self._max_attempts + 1):
            candidate = self._take()
            if is_port_free(candidate, self._host):
                return PortAllocation(candidate, PortProbeOutcome.FREE, attempt)
        LOGGER.warning(
            "no free port found, using last candidate",
            extra={"stage": "ports", "port": candidate, "attempts": self._max_attempts},
        )
        return PortAllocation(candidate, PortProbeOutcome.EXHAUSTED, self._max_attempts)
