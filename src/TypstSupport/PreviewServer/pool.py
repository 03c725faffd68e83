# === NAVMAP v1 ===
# {
#   "module": "TypstSupport.PreviewServer.pool",
#   "purpose": "Keyed, bounded registry of live tinymist preview helper processes",
#   "sections": [
#     {"id": "output", "name": "Helper output buffering", "anchor": "OUT", "kind": "helpers"},
#     {"id": "serverinfo", "name": "ServerInfo", "anchor": "INF", "kind": "api"},
#     {"id": "pool", "name": "ProcessPool", "anchor": "POO", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Supervise one ``tinymist preview`` helper per open document.

The pool keeps at most ``max_servers`` helpers.  A request for a document
that already has a live helper returns its address; otherwise the oldest
helper is evicted when the pool is full, two ports are allocated, and a new
helper is spawned and watched until it prints its listening marker.  Helpers
that die on their own are dropped by a periodic sweep, and everything left
is torn down in parallel at interpreter exit.

The registry lock is only held to read or mutate the dictionary.  Spawning,
boot polling, and teardown all happen outside it, so acquires for different
documents proceed concurrently.  Two first-time acquires for the *same*
document are not serialised: both may spawn, and the loser's helper is torn
down once the winner is registered.
"""

from __future__ import annotations

import atexit
import itertools
import logging
import os
import subprocess
import threading
import time
from collections import deque
from concurrent import futures
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Callable, Deque, Dict, List, Optional, Union

from ..concurrency import create_executor
from ..LanguageServer.errors import PreviewServerStartError
from ..LanguageServer.settings import PreviewPoolConfiguration
from .options import LOOPBACK_HOST, PreviewOptions
from .ports import PortAllocator
from .teardown import TeardownReport, TeardownStage, terminate_process

__all__ = ["ServerInfo", "ProcessPool", "document_key"]

LOGGER = logging.getLogger("TypstSupport.PreviewServer.pool")

BinarySource = Union[str, Path, Callable[[], Union[str, Path]]]

_OUTPUT_TAIL_LINES = 50


def document_key(document: Union[str, Path]) -> str:
    """Normalise a document path into the registry key."""

    return os.path.abspath(os.fspath(document))


# --- Helper output buffering -----------------------------------------------------------


class _OutputBuffer:
    """Collect the helper's merged stdout/stderr on a reader thread."""

    def __init__(self, marker: str) -> None:
        self._marker = marker.lower()
        self._lines: Deque[str] = deque(maxlen=_OUTPUT_TAIL_LINES)
        self._lock = threading.Lock()
        self.marker_seen = threading.Event()
        self.closed = threading.Event()

    def feed(self, line: str) -> None:
        text = line.rstrip("\r\n")
        with self._lock:
            self._lines.append(text)
        if self._marker in text.lower():
            self.marker_seen.set()

    def tail(self) -> str:
        with self._lock:
            return "\n".join(self._lines)


def _pump_output(stream: IO[str], buffer: _OutputBuffer, key: str) -> None:
    try:
        for line in stream:
            buffer.feed(line)
            LOGGER.debug("helper output", extra={"stage": "preview", "document": key, "line": line.rstrip()})
    finally:
        stream.close()
        buffer.closed.set()


# --- ServerInfo -----------------------------------------------------------------------


@dataclass(slots=True)
class ServerInfo:
    """A live helper process and the ports it serves on."""

    document_key: str
    process: subprocess.Popen
    data_port: int
    control_port: int
    start_time: float
    sequence: int
    output: _OutputBuffer = field(repr=False)

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    @property
    def address(self) -> str:
        return f"{LOOPBACK_HOST}:{self.data_port}"

    @property
    def control_address(self) -> str:
        return f"{LOOPBACK_HOST}:{self.control_port}"

    def is_alive(self) -> bool:
        return self.process.poll() is None


# --- ProcessPool ----------------------------------------------------------------------


class ProcessPool:
    """Bounded registry of preview helpers keyed by document path.

    Args:
        binary: Path to the tinymist binary, or a callable returning it at
            spawn time.
        config: Capacity, port window, and lifecycle timeouts.
        options: Base preview flags; ports are filled in per helper.
        ports: Port allocator; one built from ``config`` by default.
        start_sweeper: Start the periodic dead-entry sweep thread.
        register_atexit: Tear everything down at interpreter exit.
        clock: Stamps helper start times for eviction order.  Boot and
            shutdown deadlines always use :func:`time.monotonic`.
    """

    def __init__(
        self,
        binary: BinarySource,
        config: Optional[PreviewPoolConfiguration] = None,
        *,
        options: Optional[PreviewOptions] = None,
        ports: Optional[PortAllocator] = None,
        start_sweeper: bool = True,
        register_atexit: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._binary = binary
        self._config = config or PreviewPoolConfiguration()
        self._options = options or PreviewOptions()
        self._ports = ports or PortAllocator(
            self._config.starting_port, self._config.port_probe_attempts
        )
        self._clock = clock
        self._servers: Dict[str, ServerInfo] = {}
        self._lock = threading.Lock()
        self._sequence = itertools.count()
        self._executor: Optional[futures.ThreadPoolExecutor] = None
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        self._atexit_registered = False
        if start_sweeper:
            self._sweeper = threading.Thread(
                target=self._sweep_loop, name="typst-preview-sweeper", daemon=True
            )
            self._sweeper.start()
        if register_atexit:
            atexit.register(self.shutdown_all)
            self._atexit_registered = True

    # -- registry views --------------------------------------------------------

    def __len__(self) -> int:
        with self._lock:
            return len(self._servers)

    def __contains__(self, document: object) -> bool:
        if not isinstance(document, (str, Path)):
            return False
        with self._lock:
            return document_key(document) in self._servers

    def get(self, document: Union[str, Path]) -> Optional[ServerInfo]:
        with self._lock:
            return self._servers.get(document_key(document))

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._servers)

    @property
    def capacity(self) -> int:
        return self._config.max_servers

    # -- acquire ---------------------------------------------------------------

    def acquire(self, document: Union[str, Path]) -> str:
        """Return the data-plane address of a live helper for ``document``.

        Spawns a helper when none is registered, blocking for at most the
        configured boot timeout.

        Raises:
            PreviewServerStartError: if the helper exits or stays silent
                past the boot timeout; it is killed before this is raised.
        """

        key = document_key(document)
        with self._lock:
            existing = self._servers.get(key)
            if existing is not None and existing.is_alive():
                return existing.address
            doomed: List[ServerInfo] = []
            if existing is not None:
                doomed.append(self._servers.pop(key))
            doomed.extend(self._pop_oldest_unlocked(reserve=1))

        for info in doomed:
            self._teardown(info, reason="evicted" if info.document_key != key else "dead")

        info = self._spawn(key)

        with self._lock:
            current = self._servers.get(key)
            if current is not None and current.is_alive():
                winner, loser = current, info
            else:
                winner, loser = info, current
                self._servers[key] = info
            overflow = self._pop_oldest_unlocked(reserve=0, keep=key)

        if loser is not None:
            self._teardown(loser, reason="duplicate" if loser is info else "dead")
        for victim in overflow:
            self._teardown(victim, reason="evicted")
        return winner.address

    def submit_acquire(self, document: Union[str, Path]) -> "futures.Future[str]":
        """Run :meth:`acquire` on the pool's background executor."""

        with self._lock:
            if self._executor is None:
                self._executor = create_executor("preview", self._config.background_workers)
            executor = self._executor
        return executor.submit(self.acquire, document)

    def _pop_oldest_unlocked(self, *, reserve: int, keep: Optional[str] = None) -> List[ServerInfo]:
        victims: List[ServerInfo] = []
        while len(self._servers) + reserve > self._config.max_servers:
            candidates = [info for k, info in self._servers.items() if k != keep]
            if not candidates:
                break
            oldest = min(candidates, key=lambda info: (info.start_time, info.sequence))
            victims.append(self._servers.pop(oldest.document_key))
        return victims

    def _resolve_binary(self) -> str:
        binary = self._binary() if callable(self._binary) else self._binary
        return os.fspath(binary)

    def _spawn(self, key: str) -> ServerInfo:
        data_port = self._ports.allocate().port
        control_port = self._ports.allocate().port
        options = self._options.with_ports(data_port, control_port)
        command = options.to_command_list(self._resolve_binary()) + [key]
        document = Path(key)

        LOGGER.info(
            "starting preview helper",
            extra={"stage": "preview", "document": key, "data_port": data_port, "control_port": control_port},
        )
        try:
            process = subprocess.Popen(
                command,
                cwd=str(document.parent),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            raise PreviewServerStartError(
                f"Failed to launch preview helper for {key}: {exc}", document_key=key
            ) from exc

        buffer = _OutputBuffer(self._config.listening_marker)
        reader = threading.Thread(
            target=_pump_output,
            args=(process.stdout, buffer, key),
            name=f"typst-preview-output-{process.pid}",
            daemon=True,
        )
        reader.start()

        info = ServerInfo(
            document_key=key,
            process=process,
            data_port=data_port,
            control_port=control_port,
            start_time=self._clock(),
            sequence=next(self._sequence),
            output=buffer,
        )
        self._await_listening(info)
        return info

    def _await_listening(self, info: ServerInfo) -> None:
        deadline = time.monotonic() + self._config.boot_timeout_sec
        while True:
            if info.output.marker_seen.is_set():
                LOGGER.info(
                    "preview helper listening",
                    extra={"stage": "preview", "document": info.document_key, "address": info.address},
                )
                return
            if not info.is_alive():
                # Let the reader drain what the helper printed before exiting.
                info.output.closed.wait(self._config.kill_timeout_sec)
                if info.output.marker_seen.is_set():
                    continue
                self._fail_boot(info, f"Preview helper exited with code {info.process.returncode}")
            if time.monotonic() >= deadline:
                self._fail_boot(
                    info,
                    f"Preview helper did not start listening within {self._config.boot_timeout_sec:g}s",
                )
            time.sleep(self._config.boot_poll_interval_sec)

    def _fail_boot(self, info: ServerInfo, message: str) -> None:
        if info.is_alive():
            info.process.kill()
        try:
            info.process.wait(timeout=self._config.kill_timeout_sec)
        except subprocess.TimeoutExpired:
            terminate_process(
                info.process,
                graceful_timeout=0.0,
                kill_timeout=self._config.kill_timeout_sec,
                os_kill_timeout=self._config.os_kill_timeout_sec,
            )
        LOGGER.error(
            message,
            extra={"stage": "preview", "document": info.document_key, "output": info.output.tail()},
        )
        raise PreviewServerStartError(
            message,
            document_key=info.document_key,
            exit_code=info.process.returncode,
            output_tail=info.output.tail(),
        )

    # -- release ---------------------------------------------------------------

    def release(self, document: Union[str, Path]) -> Optional[TeardownReport]:
        """Tear down the helper for ``document``; the entry is always removed.

        Returns ``None`` when no helper was registered.
        """

        key = document_key(document)
        with self._lock:
            info = self._servers.get(key)
        if info is None:
            return None

        report = TeardownReport(pid=info.pid)
        try:
            report = self._terminate(info)
        finally:
            with self._lock:
                if self._servers.get(key) is info:
                    del self._servers[key]
            report.stages.append(TeardownStage.REMOVED)
        LOGGER.info(
            "preview helper released",
            extra={"stage": "preview", "document": key, "stages": [s.value for s in report.stages]},
        )
        return report

    def _terminate(self, info: ServerInfo) -> TeardownReport:
        report = terminate_process(
            info.process,
            graceful_timeout=self._config.graceful_timeout_sec,
            kill_timeout=self._config.kill_timeout_sec,
            os_kill_timeout=self._config.os_kill_timeout_sec,
        )
        return report

    def _teardown(self, info: ServerInfo, *, reason: str) -> TeardownReport:
        """Terminate a helper whose registry entry has already been dropped."""

        report = self._terminate(info)
        report.stages.append(TeardownStage.REMOVED)
        LOGGER.info(
            "preview helper removed",
            extra={
                "stage": "preview",
                "document": info.document_key,
                "reason": reason,
                "stages": [s.value for s in report.stages],
            },
        )
        return report

    # -- sweep & shutdown ------------------------------------------------------

    def sweep(self) -> List[str]:
        """Drop entries whose helper has exited; return their keys."""

        with self._lock:
            dead = [key for key, info in self._servers.items() if not info.is_alive()]
            removed = [self._servers.pop(key) for key in dead]
        for info in removed:
            LOGGER.warning(
                "preview helper died",
                extra={
                    "stage": "preview",
                    "document": info.document_key,
                    "exit_code": info.process.returncode,
                },
            )
        return dead

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self._config.sweep_interval_sec):
            try:
                self.sweep()
            except Exception:
                LOGGER.exception("preview sweep failed", extra={"stage": "preview"})

    def shutdown_all(self) -> None:
        """Tear down every helper in parallel, bounded by the shutdown deadline."""

        self._stop.set()
        if self._atexit_registered:
            atexit.unregister(self.shutdown_all)
            self._atexit_registered = False
        with self._lock:
            entries = list(self._servers.values())
            self._servers.clear()
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)

        threads = [
            threading.Thread(
                target=self._teardown,
                args=(info,),
                kwargs={"reason": "shutdown"},
                name=f"typst-preview-shutdown-{info.pid}",
                daemon=True,
            )
            for info in entries
        ]
        for thread in threads:
            thread.start()
        deadline = time.monotonic() + self._config.shutdown_deadline_sec
        for thread in threads:
            remaining = max(0.0, deadline - time.monotonic())
            thread.join(min(self._config.shutdown_join_timeout_sec, remaining))
        stragglers = [thread.name for thread in threads if thread.is_alive()]
        if stragglers:
            LOGGER.warning(
                "preview helpers still stopping at shutdown",
                extra={"stage": "preview", "threads": stragglers},
            )
