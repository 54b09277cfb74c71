# === NAVMAP v1 ===
# {
#   "module": "ApkForge.PackageInstall.installer",
#   "purpose": "Apply one expanded package to the target root and update scripts/triggers",
#   "sections": [
#     {"id": "packageinstaller", "name": "PackageInstaller", "anchor": "class-packageinstaller", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Single-package installation into a :class:`~ApkForge.PackageInstall.target.DirFS`.

The installer never decides *whether* a package should be installed; the
pipeline's ordered applier does that.  It writes the data segment's entries,
then records the control scripts in ``scripts.tar`` and the trigger globs in
the triggers file, returning the tar headers it installed so the caller can
record ownership and the installed database entry.
"""

from __future__ import annotations

import copy
import logging
import os
import posixpath
import stat
import tarfile
import zlib
from datetime import datetime
from typing import List, Optional

from .database import InstalledDatabase
from .errors import InstallError
from .expandapk import ExpandedPackage
from .packages import Package
from .target import DirFS, HeaderWriter, normalize_name

logger = logging.getLogger(__name__)

__all__ = ["PackageInstaller"]

_DEVICE_TYPES = (tarfile.CHRTYPE, tarfile.BLKTYPE, tarfile.FIFOTYPE)


class PackageInstaller:
    """Write expanded packages into ``fs`` and keep its database current."""

    def __init__(
        self,
        fs: DirFS,
        database: Optional[InstalledDatabase] = None,
        *,
        ignore_mknod_errors: bool = False,
    ) -> None:
        self.fs = fs
        self.database = database or InstalledDatabase(fs)
        self.ignore_mknod_errors = ignore_mknod_errors

    def install(
        self,
        package: Package,
        expanded: ExpandedPackage,
        source_date_epoch: Optional[datetime] = None,
    ) -> List[tarfile.TarInfo]:
        """Install ``expanded`` and return the headers of every entry written.

        Raises:
            InstallError: If writing a file, the scripts archive, or the
                triggers file fails.
        """

        logger.info(
            "installing %s (%s)",
            package.name,
            package.version,
            extra={"stage": "install", "package": package.name, "version": package.version},
        )
        writer = self.fs.header_writer()
        try:
            if writer is not None:
                installed = self._install_lazily(writer, package, expanded)
            else:
                installed = self._install_streaming(package, expanded)
        except (OSError, tarfile.TarError, EOFError, zlib.error) as exc:
            raise InstallError(f"unable to install files for pkg {package.name}: {exc}", package=package.name) from exc

        try:
            self.database.update_scripts_tar(package, expanded.control_files(), source_date_epoch)
        except (OSError, tarfile.TarError) as exc:
            raise InstallError(f"unable to update scripts.tar for pkg {package.name}: {exc}", package=package.name) from exc
        try:
            self.database.update_triggers(package)
        except OSError as exc:
            raise InstallError(f"unable to update triggers for pkg {package.name}: {exc}", package=package.name) from exc
        return installed

    def _install_lazily(
        self, writer: HeaderWriter, package: Package, expanded: ExpandedPackage
    ) -> List[tarfile.TarInfo]:
        installed: List[tarfile.TarInfo] = []
        for header in expanded.index:
            if writer.write_header(header, expanded.index, package):
                installed.append(header)
        writer.retain(expanded)
        return installed

    def _install_streaming(self, package: Package, expanded: ExpandedPackage) -> List[tarfile.TarInfo]:
        installed: List[tarfile.TarInfo] = []
        with expanded.open_data() as stream, tarfile.open(fileobj=stream, mode="r|") as archive:
            for member in archive:
                name = normalize_name(member.name)
                if not name:
                    continue
                mode = stat.S_IMODE(member.mode)
                if member.isdir():
                    self.fs.makedirs(name, mode)
                elif member.isreg():
                    self._ensure_parent(name)
                    source = archive.extractfile(member)
                    if source is None:
                        raise InstallError(f"no body for {name} in {package.name}", package=package.name)
                    self.fs.write_stream(name, source, mode)
                elif member.issym():
                    self._ensure_parent(name)
                    self._clear(name)
                    self.fs.symlink(member.linkname, name)
                elif member.islnk():
                    self._ensure_parent(name)
                    self._clear(name)
                    self.fs.link(normalize_name(member.linkname), name)
                elif member.type in _DEVICE_TYPES:
                    if not self._make_device(member, name, mode):
                        continue
                else:
                    logger.debug(
                        "skipping unsupported tar entry %s (type %r)",
                        name,
                        member.type,
                        extra={"stage": "install", "package": package.name},
                    )
                    continue
                installed.append(copy.copy(member))
        return installed

    def _ensure_parent(self, name: str) -> None:
        parent = posixpath.dirname(name)
        if parent:
            self.fs.makedirs(parent)

    def _clear(self, name: str) -> None:
        if self.fs.exists(name) and not (self.fs.is_dir(name) and not self.fs.path(name).is_symlink()):
            self.fs.remove(name)

    def _make_device(self, member: tarfile.TarInfo, name: str, mode: int) -> bool:
        kind = {
            tarfile.CHRTYPE: stat.S_IFCHR,
            tarfile.BLKTYPE: stat.S_IFBLK,
            tarfile.FIFOTYPE: stat.S_IFIFO,
        }[member.type]
        self._ensure_parent(name)
        try:
            self._clear(name)
            self.fs.mknod(name, kind | mode, os.makedev(member.devmajor, member.devminor))
        except OSError as exc:
            if not self.ignore_mknod_errors:
                raise
            logger.debug("ignoring mknod failure for %s: %s", name, exc, extra={"stage": "install"})
            return False
        return True
