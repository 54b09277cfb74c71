"""Per-package cache-lookup-or-fetch-then-expand service.

:class:`PackageExpander` is what the install pipeline's workers call.  With a
cache configured, a hit returns straight from the filesystem; a miss fetches
the archive, expands it into a temporary area inside the cache sub-directory,
and adopts the result.  Without a cache the caller receives the temporary-area
handle.  Either way, an :class:`ExpansionCoordinator` (when supplied) makes
sure concurrent requests for the same URL share a single fetch.
"""

from __future__ import annotations

import logging
from typing import Optional

from .cache import PackageCache
from .cancellation import CancellationToken
from .checksums import parse_checksum
from .errors import CacheWriteError, CancelledError, ExpandError, FetchError
from .expandapk import ExpandedPackage, expand_apk
from .packages import InstallablePackage
from .singleflight import ExpansionCoordinator
from .transport import PackageFetcher

logger = logging.getLogger(__name__)

__all__ = ["PackageExpander"]


class PackageExpander:
    """Expand packages through the cache, the fetcher, and the coordinator."""

    def __init__(
        self,
        fetcher: PackageFetcher,
        *,
        cache: Optional[PackageCache] = None,
        coordinator: Optional[ExpansionCoordinator] = None,
    ) -> None:
        self.fetcher = fetcher
        self.cache = cache
        self.coordinator = coordinator

    def expand(self, pkg: InstallablePackage, token: Optional[CancellationToken] = None) -> ExpandedPackage:
        """Return the expanded segments of ``pkg``.

        Raises:
            FetchError: The archive could not be read.
            ExpandError: The archive is malformed or does not match its checksum.
            CacheWriteError: Adopting the expansion into the cache failed.
        """

        if self.coordinator is None:
            return self._expand(pkg, token)
        return self.coordinator.get(pkg.url, lambda: self._expand(pkg, token))

    def _expand(self, pkg: InstallablePackage, token: Optional[CancellationToken]) -> ExpandedPackage:
        if token is not None:
            token.raise_if_cancelled(f"expanding {pkg.name}")

        work_root = None
        if self.cache is not None:
            cached = self.cache.lookup(pkg)
            if cached is not None:
                logger.debug("cache hit (%s)", pkg.name, extra={"stage": "cache", "package": pkg.name})
                return cached
            work_root = self.cache.directory_for(pkg)
            try:
                work_root.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise CacheWriteError(
                    f"unable to create cache directory {work_root}: {exc}", package=pkg.name
                ) from exc

        stream = self.fetcher.fetch(pkg.url, token, package=pkg.name)
        try:
            expanded = expand_apk(stream, work_root, token)
        except (ExpandError, CancelledError, FetchError) as exc:
            if exc.package is None:
                exc.package = pkg.name
            raise
        except OSError as exc:
            raise FetchError(f"reading package {pkg.name}: {exc}", package=pkg.name) from exc
        finally:
            stream.close()

        if expanded.control_hash != parse_checksum(pkg.checksum):
            expanded.close()
            raise ExpandError(
                f"expanding {pkg.name}: control checksum {expanded.control_hash.hex()} "
                f"does not match {pkg.checksum}",
                package=pkg.name,
            )

        if self.cache is None:
            return expanded

        try:
            return self.cache.adopt(pkg, expanded)
        except CacheWriteError:
            expanded.close()
            raise
