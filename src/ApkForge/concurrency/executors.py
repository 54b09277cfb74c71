"""Executor factory used by the install pipeline and bulk expansion."""

from __future__ import annotations

from concurrent import futures
from typing import Optional, Tuple

Executor = futures.Executor


def create_executor(workers: int, *, thread_name_prefix: str = "apkforge-expand") -> Tuple[Optional[Executor], bool]:
    """
    Return a thread pool for package expansion.

    Expansion workers share a cancellation token and the expansion
    coordinator, so they always run as threads of the calling process.

    Args:
        workers: Desired concurrency level.
        thread_name_prefix: Name prefix for worker threads.

    Returns:
        Tuple of (executor, needs_shutdown). ``(None, False)`` means the caller
        should run the work inline, one package at a time.
    """
    if workers <= 1:
        return None, False
    return futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix=thread_name_prefix), True
