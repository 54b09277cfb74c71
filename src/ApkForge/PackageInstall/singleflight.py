"""Exactly-once execution of keyed work shared by concurrent callers.

:class:`SingleFlight` runs the work function for a key once for the lifetime
of the instance; callers arriving while it runs block until it finishes, and
callers arriving later get the stored outcome.  Slots are never evicted: an
instance is scoped to one orchestrator run over a bounded package set.  The
one exception is a run that ends in :class:`CancelledError`: cancellation
belongs to the calling batch, so that slot is dropped and the next caller
(including any waiter) runs the work again.

:class:`ExpansionCoordinator` specialises it for expanded packages keyed by
source URL.  It hands every caller its own shallow copy of the result and
keeps ownership of temporary areas, which it removes in :meth:`close`.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Callable, Dict, Generic, List, Optional, TypeVar

from .errors import CancelledError
from .expandapk import ExpandedPackage

logger = logging.getLogger(__name__)

T = TypeVar("T")

__all__ = ["SingleFlight", "ExpansionCoordinator"]


class _Slot(Generic[T]):
    __slots__ = ("done", "value", "error")

    def __init__(self) -> None:
        self.done = threading.Event()
        self.value: Optional[T] = None
        self.error: Optional[BaseException] = None


def _copy_error(error: BaseException) -> BaseException:
    try:
        duplicate = copy.copy(error)
    except Exception:  # pragma: no cover - exotic exception types
        return error
    duplicate.__cause__ = error.__cause__
    return duplicate


class SingleFlight(Generic[T]):
    """Per-key exactly-once execution with a shared stored result."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._slots: Dict[str, _Slot[T]] = {}
        self._runs = 0

    @property
    def runs(self) -> int:
        """Number of times a work function has actually been executed."""
        with self._lock:
            return self._runs

    def do(self, key: str, work: Callable[[], T]) -> T:
        """Return the outcome of ``work`` for ``key``, executing it once unless a run is cancelled."""

        while True:
            with self._lock:
                slot = self._slots.get(key)
                leader = slot is None
                if slot is None:
                    slot = _Slot()
                    self._slots[key] = slot
                    self._runs += 1

            if leader:
                try:
                    slot.value = work()
                except CancelledError as exc:
                    with self._lock:
                        if self._slots.get(key) is slot:
                            del self._slots[key]
                    slot.error = exc
                    raise
                except BaseException as exc:
                    slot.error = exc
                    raise
                finally:
                    slot.done.set()
                return slot.value  # type: ignore[return-value]

            slot.done.wait()
            if isinstance(slot.error, CancelledError):
                continue
            if slot.error is not None:
                raise _copy_error(slot.error)
            return slot.value  # type: ignore[return-value]

    def values(self) -> List[T]:
        """Return the successful results recorded so far."""
        with self._lock:
            slots = list(self._slots.values())
        return [slot.value for slot in slots if slot.done.is_set() and slot.error is None and slot.value is not None]

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)


class ExpansionCoordinator:
    """Deduplicates package expansion by source URL for one orchestrator run."""

    def __init__(self) -> None:
        self._flight: SingleFlight[ExpandedPackage] = SingleFlight()

    @property
    def runs(self) -> int:
        return self._flight.runs

    def get(self, key: str, work: Callable[[], ExpandedPackage]) -> ExpandedPackage:
        """Expand once per ``key`` and return a caller-owned copy of the handle.

        The copy never owns the temporary area, so one caller closing its
        handle cannot pull files out from under another.
        """

        expanded = self._flight.do(key, work)
        duplicate = copy.copy(expanded)
        duplicate.work_dir = None
        return duplicate

    def close(self) -> None:
        """Remove the temporary areas of uncached expansions."""
        for expanded in self._flight.values():
            expanded.close()

    def __enter__(self) -> "ExpansionCoordinator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __len__(self) -> int:
        return len(self._flight)
