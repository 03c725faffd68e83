"""Wait for the Tinymist language service to reach the running state.

Readiness is advisory: a service that never reports ``RUNNING`` within the
timeout yields ``None`` and the downstream refresh still runs, so the editor
re-highlights with whatever the service manages to provide.
"""

from __future__ import annotations

import enum
import logging
import time
from concurrent import futures
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol

from .settings import ReadinessConfiguration

__all__ = [
    "ServiceState",
    "ManagedService",
    "ServiceRegistry",
    "ReadinessWaiter",
]

LOGGER = logging.getLogger("TypstSupport.LanguageServer.readiness")


class ServiceState(str, enum.Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    SHUTDOWN_NORMALLY = "shutdown_normally"
    SHUTDOWN_UNEXPECTEDLY = "shutdown_unexpectedly"


class ManagedService(Protocol):
    """Handle to a background service owned by the host."""

    @property
    def key(self) -> str: ...

    @property
    def state(self) -> ServiceState: ...


class ServiceRegistry(Protocol):
    """Host-side registry that starts services and lists them by key."""

    def start_service(
        self, key: str, binary_path: Any, init_options: Mapping[str, Any]
    ) -> None: ...

    def services_for(self, key: str) -> Iterable[ManagedService]: ...


class ReadinessWaiter:
    """Poll a :class:`ServiceRegistry` until a service reports ``RUNNING``."""

    def __init__(
        self,
        registry: ServiceRegistry,
        config: Optional[ReadinessConfiguration] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._registry = registry
        self._config = config or ReadinessConfiguration()
        self._clock = clock
        self._sleep = sleep

    def wait_until_running(
        self, service_key: str, timeout: Optional[float] = None
    ) -> Optional[ManagedService]:
        """Return the running service for ``service_key``, or ``None`` once ``timeout`` elapses.

        ``None`` is never returned before the deadline.
        """

        limit = self._config.timeout_sec if timeout is None else timeout
        deadline = self._clock() + limit
        while True:
            for service in self._registry.services_for(service_key):
                if service.key == service_key and service.state is ServiceState.RUNNING:
                    return service
            remaining = deadline - self._clock()
            if remaining <= 0:
                LOGGER.info(
                    "service not running before timeout",
                    extra={"stage": "readiness", "service": service_key, "timeout_sec": limit},
                )
                return None
            self._sleep(min(self._config.poll_interval_sec, remaining))

    def refresh_when_ready(
        self,
        service_key: str,
        refresh: Callable[[], None],
        timeout: Optional[float] = None,
    ) -> Optional[ManagedService]:
        """Wait for the service, then run ``refresh`` whether or not it became ready."""

        service = self.wait_until_running(service_key, timeout)
        LOGGER.info(
            "refreshing after service start",
            extra={"stage": "readiness", "service": service_key, "ready": service is not None},
        )
        refresh()
        return service

    def submit_refresh_when_ready(
        self,
        executor: futures.Executor,
        service_key: str,
        refresh: Callable[[], None],
        timeout: Optional[float] = None,
    ) -> "futures.Future[Optional[ManagedService]]":
        """Run :meth:`refresh_when_ready` on ``executor`` and return its future."""

        return executor.submit(self.refresh_when_ready, service_key, refresh, timeout)
