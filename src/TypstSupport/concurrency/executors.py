"""Executor factory for the toolchain core's background work."""

from __future__ import annotations

from concurrent import futures

Executor = futures.Executor


def create_executor(purpose: str, workers: int) -> futures.ThreadPoolExecutor:
    """
    Return a thread pool for IO-bound background work.

    Args:
        purpose: Short label used as the worker thread name prefix, e.g.
            ``"acquire"`` or ``"preview"``.
        workers: Desired concurrency level; values below one are clamped.

    Returns:
        A :class:`~concurrent.futures.ThreadPoolExecutor`. Callers own it and
        must call ``shutdown`` when done.
    """
    normalized = (purpose or "worker").strip().lower() or "worker"
    return futures.ThreadPoolExecutor(
        max_workers=max(1, workers), thread_name_prefix=f"typst-{normalized}"
    )
