# === NAVMAP v1 ===
# {
#   "module": "ApkForge.PackageInstall.world",
#   "purpose": "Top-level orchestration: initialise, resolve, expand, install, and fix up a target root",
#   "sections": [
#     {"id": "resolvedpackage", "name": "ResolvedPackage", "anchor": "class-resolvedpackage", "kind": "class"},
#     {"id": "world", "name": "World", "anchor": "class-world", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""World orchestrator for one target root.

A :class:`World` wires the collaborators of a run together from
:class:`~ApkForge.PackageInstall.settings.EngineSettings`: one fetcher, an
optional on-disk cache, one expansion coordinator scoped to the run, the
installer and database of the root, and the install pipeline.  Close it (or
use it as a context manager) to release the HTTP client and any temporary
expansion areas.

Multi-architecture builds attach sibling worlds through :attr:`World.by_arch`;
their indexes are only read, to drop packages that some architecture lacks.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from .cache import PackageCache
from .cancellation import CancellationToken
from .database import InstalledDatabase
from .errors import ApkForgeError, ConflictError, ResolutionError
from .expandapk import ExpandedPackage
from .expansion import PackageExpander
from .index import NamedIndex, load_index
from .installer import PackageInstaller
from .layout import init_db, resolve_apk_db
from .ownership import OwnershipTracker
from .packages import InstallablePackage, Package, RepositoryPackage
from .pipeline import InstallPipeline
from .resolver import IndexResolver, Resolver
from .settings import EngineSettings
from .singleflight import ExpansionCoordinator
from .target import DirFS
from .transport import PackageFetcher

logger = logging.getLogger(__name__)

__all__ = ["World", "ResolvedPackage"]


class ResolvedPackage(NamedTuple):
    """A resolved index entry paired with its expanded archive."""

    package: RepositoryPackage
    expanded: ExpandedPackage


class World:
    """Resolve and install the world of one target root."""

    def __init__(
        self,
        fs: DirFS,
        settings: Optional[EngineSettings] = None,
        *,
        fetcher: Optional[PackageFetcher] = None,
        resolver: Optional[Resolver] = None,
        coordinator: Optional[ExpansionCoordinator] = None,
        tracker: Optional[OwnershipTracker] = None,
    ) -> None:
        self.fs = fs
        self.settings = settings or EngineSettings()
        self.arch = self.settings.install.arch
        self._owns_fetcher = fetcher is None
        self.fetcher = fetcher or PackageFetcher(
            http_settings=self.settings.http,
            retry_settings=self.settings.retry,
        )
        self.resolver: Resolver = resolver or IndexResolver()
        self.coordinator = coordinator if coordinator is not None else ExpansionCoordinator()
        cache_dir = self.settings.cache.resolved_dir()
        self.cache = PackageCache(cache_dir) if cache_dir is not None else None
        self.database = InstalledDatabase(fs)
        self.installer = PackageInstaller(
            fs,
            self.database,
            ignore_mknod_errors=self.settings.install.ignore_mknod_errors,
        )
        self.expander = PackageExpander(self.fetcher, cache=self.cache, coordinator=self.coordinator)
        self.pipeline = InstallPipeline(
            self.expander,
            self.installer,
            database=self.database,
            tracker=tracker,
            workers=self.settings.install.worker_count(),
        )
        self.by_arch: Dict[str, "World"] = {}

    @property
    def tracker(self) -> OwnershipTracker:
        return self.pipeline.tracker

    def close(self) -> None:
        self.coordinator.close()
        if self._owns_fetcher:
            self.fetcher.close()

    def __enter__(self) -> "World":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -- database ---------------------------------------------------------------

    def init_db(self, repositories: Optional[Sequence[str]] = None) -> None:
        """Initialise the root's apk database and record its repositories."""

        init_db(self.fs, self.arch, ignore_mknod_errors=self.settings.install.ignore_mknod_errors)
        repos = list(repositories) if repositories is not None else list(self.settings.install.repositories)
        if repos:
            self.database.set_repositories(repos)

    def set_world(self, packages: Sequence[str]) -> None:
        self.database.set_world(packages)

    def repositories(self) -> List[str]:
        return self.database.repositories() or list(self.settings.install.repositories)

    def repository_indexes(self, token: Optional[CancellationToken] = None) -> List[NamedIndex]:
        indexes: List[NamedIndex] = []
        for repository in self.repositories():
            index = load_index(repository, self.arch, self.fetcher, token)
            if not index.signed and not self.settings.install.ignore_signatures:
                logger.warning(
                    "index for %s is unsigned",
                    repository,
                    extra={"stage": "index", "arch": self.arch, "index": repository},
                )
            indexes.append(index)
        return indexes

    # -- resolution -------------------------------------------------------------

    def resolve_world(
        self, token: Optional[CancellationToken] = None
    ) -> Tuple[List[RepositoryPackage], List[str]]:
        """Resolve the world file into ``(ordered packages, conflicting names)``."""

        logger.debug("determining desired apk world", extra={"stage": "resolve", "arch": self.arch})
        try:
            indexes = self.repository_indexes(token)
        except ApkForgeError as exc:
            raise ResolutionError(f"error getting repository indexes: {exc}") from exc
        siblings: Dict[str, List[NamedIndex]] = {}
        for other_arch, other in sorted(self.by_arch.items()):
            if other is self:
                continue
            try:
                siblings[other_arch] = other.repository_indexes(token)
            except ApkForgeError as exc:
                raise ResolutionError(f"getting indexes for {other_arch!r} sibling: {exc}") from exc
        packages, conflicts = self.resolver.resolve(self.database.world(), indexes, siblings)
        logger.debug(
            "got %d packages to install: %s",
            len(packages),
            " ".join(str(pkg) for pkg in packages),
            extra={"stage": "resolve", "arch": self.arch},
        )
        return packages, conflicts

    def calculate_world(
        self,
        packages: Sequence[RepositoryPackage],
        token: Optional[CancellationToken] = None,
    ) -> List[ResolvedPackage]:
        """Expand ``packages`` concurrently without installing anything."""

        expanded = self.pipeline.expand_all(packages, token)
        return [ResolvedPackage(pkg, exp) for pkg, exp in zip(packages, expanded)]

    def resolve_and_calculate_world(self, token: Optional[CancellationToken] = None) -> List[ResolvedPackage]:
        packages, _conflicts = self.resolve_world(token)
        return self.calculate_world(packages, token)

    # -- installation -----------------------------------------------------------

    def install_packages(
        self,
        packages: Sequence[InstallablePackage],
        token: Optional[CancellationToken] = None,
        source_date_epoch: Optional[datetime] = None,
    ) -> List[Package]:
        """Install ``packages`` in order, then make ``/lib/apk`` resolve."""

        installed = self.pipeline.install(packages, token, source_date_epoch)
        resolve_apk_db(self.fs)
        return installed

    def fixate_world(
        self,
        token: Optional[CancellationToken] = None,
        source_date_epoch: Optional[datetime] = None,
    ) -> List[Package]:
        """Resolve the world file and install the result.

        Raises:
            ConflictError: If a conflicting package is already installed;
                nothing is installed in that case.
        """

        logger.debug("synchronizing with desired apk world", extra={"stage": "install", "arch": self.arch})
        packages, conflicts = self.resolve_world(token)
        for name in conflicts:
            if self.database.is_installed(name):
                raise ConflictError(f"cannot install due to conflict with {name}", package=name)
        return self.install_packages(packages, token, source_date_epoch)
