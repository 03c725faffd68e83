# === NAVMAP v1 ===
# {
#   "module": "TypstSupport.LanguageServer.manager",
#   "purpose": "Wire acquisition, service start, readiness, and preview helpers to document events",
#   "sections": [
#     {"id": "starter", "name": "LanguageServiceStarter", "anchor": "STR", "kind": "api"},
#     {"id": "manager", "name": "ToolchainManager", "anchor": "MGR", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Entry points the editor integration calls on document events.

Opening a ``.typ`` document asks the :class:`AcquisitionScheduler` for the
binary.  When it is already on disk the language service is started right
away; when it has to be downloaded, the service is started by the install
callback and a background readiness wait triggers the editor refresh.
Preview requests go to the :class:`ProcessPool`, which needs the binary to
be present.
"""

from __future__ import annotations

import logging
import threading
from concurrent import futures
from pathlib import Path
from typing import Callable, Optional, Union

from ..concurrency import create_executor
from ..PreviewServer.options import PreviewOptions
from ..PreviewServer.pool import ProcessPool
from ..PreviewServer.teardown import TeardownReport
from .errors import BinaryNotReadyError
from .fetcher import ArchiveFetcher
from .filesystem import Filesystem
from .locations import BinaryLocationResolver
from .notifier import LoggingNotifier, Notifier
from .platforms import PlatformDescriptor
from .readiness import ManagedService, ReadinessWaiter, ServiceRegistry
from .scheduler import AcquisitionScheduler, AcquisitionStateCell, DownloadStatus
from .settings import ResolvedConfig, ToolSettings, get_default_config

__all__ = ["SUPPORTED_EXTENSIONS", "is_supported_document", "LanguageServiceStarter", "ToolchainManager"]

LOGGER = logging.getLogger("TypstSupport.LanguageServer.manager")

SUPPORTED_EXTENSIONS = frozenset({".typ"})
SERVICE_KEY = "tinymist"


def is_supported_document(document: Union[str, Path]) -> bool:
    return Path(document).suffix.lower() in SUPPORTED_EXTENSIONS


class LanguageServiceStarter:
    """Start the language service and refresh the editor once it is running."""

    def __init__(
        self,
        registry: ServiceRegistry,
        settings_provider: Callable[[], ToolSettings],
        waiter: ReadinessWaiter,
        *,
        refresh: Optional[Callable[[], None]] = None,
        executor: Optional[futures.Executor] = None,
        service_key: str = SERVICE_KEY,
    ) -> None:
        self._registry = registry
        self._settings_provider = settings_provider
        self._waiter = waiter
        self._refresh = refresh or (lambda: None)
        self._executor = executor
        self.service_key = service_key

    def ensure_started(self, binary_path: Path) -> None:
        options = self._settings_provider().initialization_options()
        LOGGER.info(
            "starting language service",
            extra={"stage": "service", "binary": str(binary_path), "init_options": options},
        )
        self._registry.start_service(self.service_key, binary_path, options)

    def start_and_refresh(self, binary_path: Path) -> Optional[ManagedService]:
        """Start the service, wait for it, then refresh; blocks up to the readiness timeout."""

        self.ensure_started(binary_path)
        return self._waiter.refresh_when_ready(self.service_key, self._refresh)

    def __call__(self, binary_path: Path) -> "Optional[futures.Future[Optional[ManagedService]]]":
        """Install callback: start now, wait for readiness on the executor when one is set."""

        if self._executor is None:
            self.start_and_refresh(binary_path)
            return None
        self.ensure_started(binary_path)
        return self._waiter.submit_refresh_when_ready(
            self._executor, self.service_key, self._refresh
        )


class ToolchainManager:
    """Facade over acquisition, the language service, and the preview pool.

    Args:
        registry: Host service registry used to start and observe the service.
        config: Resolved configuration; the cached default when omitted.
        notifier: User-facing notification sink.
        refresh: Editor refresh invoked after the service starts.
        platform: Host platform; detected when omitted.
        fetcher: Archive fetcher; built from ``config.download`` by default.
        filesystem: Filesystem wrapper used by acquisition and preview checks.
        pool: Preview pool; created on first preview request when omitted.
        state: Acquisition state cell; the process-wide cell by default.
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        config: Optional[ResolvedConfig] = None,
        *,
        notifier: Optional[Notifier] = None,
        refresh: Optional[Callable[[], None]] = None,
        platform: Optional[PlatformDescriptor] = None,
        fetcher: Optional[ArchiveFetcher] = None,
        filesystem: Optional[Filesystem] = None,
        pool: Optional[ProcessPool] = None,
        preview_options: Optional[PreviewOptions] = None,
        state: Optional[AcquisitionStateCell] = None,
    ) -> None:
        self.config = config or get_default_config()
        self._notifier = notifier or LoggingNotifier()
        self._filesystem = filesystem or Filesystem()
        self._executor = create_executor("service", 2)
        self.resolver = BinaryLocationResolver.from_config(
            self.config, platform=platform, notifier=self._notifier
        )
        self.starter = LanguageServiceStarter(
            registry,
            lambda: self.config.tool,
            ReadinessWaiter(registry, self.config.readiness),
            refresh=refresh,
            executor=self._executor,
        )
        self.scheduler = AcquisitionScheduler(
            self.resolver,
            fetcher=fetcher or ArchiveFetcher(self.config.download),
            filesystem=self._filesystem,
            notifier=self._notifier,
            on_ready=self.starter,
            state=state,
        )
        self._pool = pool
        self._preview_options = preview_options
        self._pool_lock = threading.Lock()

    @property
    def pool(self) -> ProcessPool:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ProcessPool(
                    self._binary_for_preview, self.config.preview, options=self._preview_options
                )
            return self._pool

    def on_document_opened(self, document: Union[str, Path]) -> Optional[DownloadStatus]:
        """Make sure the binary exists and the service runs; ``None`` for non-Typst files."""

        if not is_supported_document(document):
            return None
        status = self.scheduler.obtain_binary()
        LOGGER.debug(
            "document opened",
            extra={"stage": "service", "document": str(document), "status": status.kind.value},
        )
        if status.is_downloaded and status.path is not None:
            self.starter.ensure_started(status.path)
        return status

    def request_preview(self, document: Union[str, Path]) -> str:
        """Return the preview address for ``document``, spawning a helper when needed."""

        return self.pool.acquire(document)

    def submit_preview(self, document: Union[str, Path]) -> "futures.Future[str]":
        return self.pool.submit_acquire(document)

    def on_document_closed(self, document: Union[str, Path]) -> Optional[TeardownReport]:
        with self._pool_lock:
            pool = self._pool
        if pool is None:
            return None
        return pool.release(document)

    def shutdown(self) -> None:
        with self._pool_lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown_all()
        self.scheduler.shutdown()
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _binary_for_preview(self) -> Path:
        location = self.resolver.resolve()
        if not self._filesystem.exists(location.local_path):
            raise BinaryNotReadyError(
                f"Tinymist is not installed yet at {location.local_path}"
            )
        return location.local_path
