"""Cooperative cancellation primitives shared by expansion workers and the applier.

The install pipeline runs parallel expansion workers next to a single ordered
applier.  :class:`CancellationToken` is the shared batch context: the first
failure cancels it with its exception as the cause, every network read and
every suspension point checks it, and callbacks registered on it wake
threads blocked on per-index ready signals.  The implementation avoids thread
interruption in favour of explicit checks so that partially written cache
files are cleaned up predictably.
"""

from __future__ import annotations

import threading
from typing import Callable, Dict, Optional

from .errors import CancelledError


class CancellationToken:
    """Thread-safe cancellation token for cooperative task cancellation.

    Examples:
        >>> token = CancellationToken()
        >>> batch = token.child()
        >>> batch.cancel(RuntimeError("sibling failed"))
        >>> batch.is_cancelled(), token.is_cancelled()
        (True, False)
    """

    def __init__(self) -> None:
        """Initialize a new cancellation token."""
        self._is_cancelled = threading.Event()
        self._lock = threading.Lock()
        self._cause: Optional[BaseException] = None
        self._callbacks: Dict[int, Callable[[], None]] = {}
        self._next_callback = 0
        self._detach: Optional[Callable[[], None]] = None

    @property
    def cause(self) -> Optional[BaseException]:
        """Return the exception recorded by the first :meth:`cancel` call."""
        with self._lock:
            return self._cause

    def cancel(self, cause: Optional[BaseException] = None) -> None:
        """Signal that cancellation has been requested.

        Only the first call records ``cause`` and runs the callbacks.
        """
        with self._lock:
            if self._is_cancelled.is_set():
                return
            self._cause = cause
            self._is_cancelled.set()
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()
        for callback in callbacks:
            callback()

    def is_cancelled(self) -> bool:
        """Check if cancellation has been requested."""
        return self._is_cancelled.is_set()

    def raise_if_cancelled(self, what: str = "operation") -> None:
        """Raise :class:`CancelledError` when the token has been cancelled."""
        if not self._is_cancelled.is_set():
            return
        cause = self.cause
        message = f"{what} cancelled"
        if cause is not None and str(cause):
            message = f"{message}: {cause}"
        raise CancelledError(message)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; return the cancelled state."""
        return self._is_cancelled.wait(timeout)

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` once on cancellation, immediately if already cancelled.

        Returns:
            A function that unregisters ``callback`` if it has not run yet.
        """
        with self._lock:
            if not self._is_cancelled.is_set():
                key = self._next_callback
                self._next_callback += 1
                self._callbacks[key] = callback
                return lambda: self._remove_callback(key)
        callback()
        return _noop

    def _remove_callback(self, key: int) -> None:
        with self._lock:
            self._callbacks.pop(key, None)

    def callback_count(self) -> int:
        """Number of callbacks still waiting for cancellation."""
        with self._lock:
            return len(self._callbacks)

    def child(self) -> "CancellationToken":
        """Return a derived token cancelled whenever this token is.

        Cancelling the child leaves the parent untouched, which is how a batch
        failure stays scoped to the batch.  Call :meth:`detach` when the child
        is finished so a long-lived parent does not accumulate callbacks.
        """
        child = CancellationToken()
        child._detach = self.add_callback(lambda: child.cancel(self.cause))
        return child

    def detach(self) -> None:
        """Stop following the parent token; a no-op for tokens made directly."""
        with self._lock:
            detach, self._detach = self._detach, None
        if detach is not None:
            detach()


def _noop() -> None:
    return None
