"""Tests for preview port allocation."""

from __future__ import annotations

import socket
import threading

import pytest

import TypstSupport.PreviewServer.ports as ports_mod
from TypstSupport.PreviewServer.ports import PortAllocator, PortProbeOutcome, is_port_free


def test_ports_increase_and_are_not_reused(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(ports_mod, "is_port_free", lambda port, host: True)
    allocator = PortAllocator(starting_port=30000)

    ports = [allocator.allocate().port for _ in range(5)]

    assert ports == [30000, 30001, 30002, 30003, 30004]


def test_busy_ports_are_skipped(monkeypatch: pytest.MonkeyPatch) -> None:
    busy = {30000, 30001}
    monkeypatch.setattr(ports_mod, "is_port_free", lambda port, host: port not in busy)

    allocation = PortAllocator(starting_port=30000).allocate()

    assert allocation.port == 30002
    assert allocation.outcome is PortProbeOutcome.FREE
    assert allocation.verified
    assert allocation.attempts == 3


def test_exhaustion_returns_last_candidate(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(ports_mod, "is_port_free", lambda port, host: False)

    allocation = PortAllocator(starting_port=30000, max_attempts=10).allocate()

    assert allocation.port == 30009
    assert allocation.outcome is PortProbeOutcome.EXHAUSTED
    assert not allocation.verified


def test_counter_wraps_past_max_port(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(ports_mod, "is_port_free", lambda port, host: True)
    allocator = PortAllocator(starting_port=65534)

    assert [allocator.allocate().port for _ in range(3)] == [65534, 65535, 65534]


def test_concurrent_allocations_are_distinct(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(ports_mod, "is_port_free", lambda port, host: True)
    allocator = PortAllocator(starting_port=40000)
    results = []
    lock = threading.Lock()

    def worker() -> None:
        for _ in range(50):
            port = allocator.allocate().port
            with lock:
                results.append(port)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == len(set(results)) == 200


def test_is_port_free_detects_listener() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        port = listener.getsockname()[1]

        assert not is_port_free(port)


def test_zero_attempts_rejected() -> None:
    with pytest.raises(ValueError):
        PortAllocator(max_attempts=0)
