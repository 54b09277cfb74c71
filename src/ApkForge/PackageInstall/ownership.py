"""Process-lifetime map from installed path to the package that wrote it last."""

from __future__ import annotations

from typing import Dict, Iterator, Optional

from .packages import Package

__all__ = ["OwnershipTracker"]


class OwnershipTracker:
    """Last-write-wins ownership of installed paths across one install batch.

    Only the ordered applier writes to the tracker, so it carries no lock.
    Entries are never removed; a later claim silently supersedes an earlier
    one.
    """

    def __init__(self) -> None:
        self._owners: Dict[str, Package] = {}

    def claim(self, path: str, package: Package) -> None:
        """Record ``package`` as the owner of ``path``, replacing any previous owner."""
        self._owners[path] = package

    def owner_of(self, path: str) -> Optional[Package]:
        return self._owners.get(path)

    def __contains__(self, path: object) -> bool:
        return path in self._owners

    def __len__(self) -> int:
        return len(self._owners)

    def __iter__(self) -> Iterator[str]:
        return iter(self._owners)
