# === NAVMAP v1 ===
# {
#   "module": "ApkForge.PackageInstall.pipeline",
#   "purpose": "Bounded-parallel expansion feeding a strictly ordered applier",
#   "sections": [
#     {"id": "batchstate", "name": "_Batch", "anchor": "class-batch", "kind": "class"},
#     {"id": "installpipeline", "name": "InstallPipeline", "anchor": "class-installpipeline", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Install pipeline: parallel fetch+expand, ordered apply, ownership finalisation.

Expansion workers run on a bounded thread pool.  Worker ``i`` stores its
result in slot ``i`` and sets the ``ready`` event of that slot, whether it
succeeded or not.  The applier runs on the calling thread and walks the slots
in caller order, waiting on one event at a time, so out-of-order completions
are buffered rather than reordered.  The applier is the only writer of the
target root, the scripts archive, the trigger file, the ownership tracker and
the installed database, so none of those take a lock.

An expansion failure at slot ``i`` cancels the workers after ``i`` at once;
the applier still installs the packages before ``i`` and then stops with that
error.  An apply failure or outside cancellation cancels the batch token,
which sets every ``ready`` event and wakes the applier without polling.
Already-applied packages are kept and recorded in every case.
"""

from __future__ import annotations

import logging
import tarfile
import threading
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from ..concurrency import create_executor
from .cancellation import CancellationToken
from .database import InstalledDatabase
from .errors import ApkForgeError, CancelledError, InstallError, with_cause
from .expandapk import ExpandedPackage
from .expansion import PackageExpander
from .installer import PackageInstaller
from .ownership import OwnershipTracker
from .packages import InstallablePackage, Package
from .settings import default_workers
from .target import normalize_name

logger = logging.getLogger(__name__)

__all__ = ["InstallPipeline"]

_Applied = Tuple[Package, List[tarfile.TarInfo]]


class _Batch:
    """Slots, ready signals, and the first recorded failure of one batch.

    Every slot has its own child of the batch token.  An ordered expansion
    failure at index ``i`` cancels only the slots after ``i``; the applier
    still installs everything before ``i`` and surfaces the error when it
    reaches that slot.
    """

    def __init__(self, size: int, token: CancellationToken) -> None:
        self.token = token
        self.ready = [threading.Event() for _ in range(size)]
        self.expanded: List[Optional[ExpandedPackage]] = [None] * size
        self.errors: List[Optional[BaseException]] = [None] * size
        self.tokens = [token.child() for _ in range(size)]
        self._lock = threading.Lock()
        self.error: Optional[BaseException] = None
        token.add_callback(self._wake_all)

    def _wake_all(self) -> None:
        for event in self.ready:
            event.set()

    def fail(self, exc: BaseException) -> None:
        with self._lock:
            if self.error is None:
                self.error = exc
        self.token.cancel(exc)

    def fail_slot(self, index: int, exc: BaseException) -> None:
        """Record an ordered expansion failure and cancel the slots after it."""

        self.errors[index] = exc
        for later in self.tokens[index + 1 :]:
            later.cancel(exc)

    def close(self) -> None:
        for expanded in self.expanded:
            if expanded is not None:
                expanded.close()


class InstallPipeline:
    """Install an ordered package list into one target root.

    Args:
        expander: Expansion service shared by the workers.
        installer: Applies one expanded package to the target root.
        database: Installed database of the same root; defaults to the
            installer's database.
        tracker: Ownership map for the batch.  Pass one in to share it with
            later batches of the same run.
        workers: Expansion pool size; defaults to ``cpu_count + 1``.
    """

    def __init__(
        self,
        expander: PackageExpander,
        installer: PackageInstaller,
        *,
        database: Optional[InstalledDatabase] = None,
        tracker: Optional[OwnershipTracker] = None,
        workers: Optional[int] = None,
    ) -> None:
        self.expander = expander
        self.installer = installer
        self.database = database or installer.database
        self.tracker = tracker if tracker is not None else OwnershipTracker()
        self.workers = workers or default_workers()

    # -- expansion ------------------------------------------------------------

    def _expand_into(self, batch: _Batch, index: int, pkg: InstallablePackage, ordered: bool) -> None:
        token = batch.tokens[index]
        try:
            if token.is_cancelled():
                return
            batch.expanded[index] = self.expander.expand(pkg, token)
        except Exception as exc:
            if isinstance(exc, CancelledError) and token.is_cancelled():
                logger.debug("expanding %s cancelled", pkg.name, extra={"stage": "expand", "package": pkg.name})
                batch.errors[index] = exc
                return
            logger.error(
                "expanding %s failed: %s",
                pkg.name,
                exc,
                extra={"stage": "expand", "package": pkg.name, "url": pkg.url},
            )
            if ordered:
                batch.fail_slot(index, exc)
            else:
                batch.fail(exc)
        finally:
            batch.ready[index].set()

    def expand_all(
        self,
        packages: Sequence[InstallablePackage],
        token: Optional[CancellationToken] = None,
    ) -> List[ExpandedPackage]:
        """Expand every package concurrently without touching the target root.

        Raises:
            ApkForgeError: Wrapping the first worker failure, annotated with
                the batch cancellation cause.
        """

        batch = _Batch(len(packages), (token or CancellationToken()).child())
        executor, needs_shutdown = create_executor(self.workers)
        try:
            for index, pkg in enumerate(packages):
                if executor is None:
                    self._expand_into(batch, index, pkg, False)
                else:
                    executor.submit(self._expand_into, batch, index, pkg, False)
            for event in batch.ready:
                event.wait()
        finally:
            if needs_shutdown:
                executor.shutdown(wait=False, cancel_futures=True)
            batch.token.detach()

        error = batch.error
        if error is None and batch.token.is_cancelled():
            error = CancelledError(with_cause(batch.token, "expansion cancelled"))
        if error is not None:
            batch.close()
            raise ApkForgeError(
                with_cause(batch.token, f"calculating world: {error}"),
                package=getattr(error, "package", None),
            ) from error
        return [expanded for expanded in batch.expanded if expanded is not None]

    # -- install --------------------------------------------------------------

    def install(
        self,
        packages: Sequence[InstallablePackage],
        token: Optional[CancellationToken] = None,
        source_date_epoch: Optional[datetime] = None,
    ) -> List[Package]:
        """Install ``packages`` in the given order; return one record per package.

        Packages already present in the installed database are skipped and
        their existing record is returned in their slot.

        Raises:
            InstallError: The first expansion or apply failure.  Packages
                before the failing one stay installed and recorded.
        """

        batch = _Batch(len(packages), (token or CancellationToken()).child())
        installed = {package.name: package for package in self.database.installed_packages()}
        results: List[Optional[Package]] = [None] * len(packages)
        applied: List[_Applied] = []

        logger.info(
            "installing %d packages with %d workers",
            len(packages),
            self.workers,
            extra={"stage": "install"},
        )
        executor, needs_shutdown = create_executor(self.workers)
        try:
            for index, pkg in enumerate(packages):
                if executor is None:
                    self._expand_into(batch, index, pkg, True)
                else:
                    executor.submit(self._expand_into, batch, index, pkg, True)
            self._apply_in_order(batch, packages, installed, results, applied, source_date_epoch)
        finally:
            if needs_shutdown:
                executor.shutdown(wait=False, cancel_futures=True)
            batch.close()
            batch.token.detach()

        try:
            self._finalize(applied)
        except OSError as exc:
            batch.fail(InstallError(f"unable to update installed database: {exc}"))

        error = batch.error
        if error is None and batch.token.is_cancelled():
            error = CancelledError(with_cause(batch.token, "install cancelled"))
        if error is not None:
            raise InstallError(
                with_cause(batch.token, f"installing packages: {error}"),
                package=getattr(error, "package", None),
            ) from error
        return [record for record in results if record is not None]

    def _apply_in_order(
        self,
        batch: _Batch,
        packages: Sequence[InstallablePackage],
        installed: Dict[str, Package],
        results: List[Optional[Package]],
        applied: List[_Applied],
        source_date_epoch: Optional[datetime],
    ) -> None:
        for index, pkg in enumerate(packages):
            batch.ready[index].wait()
            if batch.token.is_cancelled():
                return
            if batch.errors[index] is not None:
                batch.fail(batch.errors[index])
                return
            expanded = batch.expanded[index]
            try:
                if expanded is None:
                    raise InstallError(f"expansion of {pkg.name} failed", package=pkg.name)
                existing = installed.get(pkg.name)
                if existing is not None:
                    logger.debug(
                        "%s already installed, skipping",
                        pkg.name,
                        extra={"stage": "install", "package": pkg.name},
                    )
                    results[index] = existing
                    continue
                package = expanded.package_info()
                files = self.installer.install(package, expanded, source_date_epoch)
            except Exception as exc:
                if isinstance(exc, ApkForgeError) and exc.package is None:
                    exc.package = pkg.name
                logger.error(
                    "installing %s failed: %s",
                    pkg.name,
                    exc,
                    extra={"stage": "install", "package": pkg.name},
                )
                batch.fail(exc)
                return
            for header in files:
                if not header.isdir():
                    self.tracker.claim(normalize_name(header.name), package)
            installed[package.name] = package
            results[index] = package
            applied.append((package, files))

    def _finalize(self, applied: List[_Applied]) -> None:
        """Drop paths another package took over, then persist each file list."""

        for package, files in applied:
            kept: List[tarfile.TarInfo] = []
            for header in files:
                if header.isdir():
                    kept.append(header)
                    continue
                name = normalize_name(header.name)
                owner = self.tracker.owner_of(name)
                if owner is not None and owner is not package:
                    continue
                kept.append(header)
                self.tracker.claim(name, package)
            dropped = len(files) - len(kept)
            if dropped:
                logger.debug(
                    "%d files of %s now owned by later packages",
                    dropped,
                    package.name,
                    extra={"stage": "install", "package": package.name},
                )
            self.database.add_installed_package(package, kept)
