# === NAVMAP v1 ===
# {
#   "module": "ApkForge.PackageInstall.cache",
#   "purpose": "Content-addressable on-disk store for expanded package segments",
#   "sections": [
#     {"id": "cache-file-names", "name": "cache_file_names", "anchor": "function-cache-file-names", "kind": "function"},
#     {"id": "packagecache", "name": "PackageCache", "anchor": "class-packagecache", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Content-addressable cache of expanded packages.

Each cached package is a set of files named by hash inside a fan-out
sub-directory derived from the package checksum::

    <root>/<hh>/<control-hex>.ctl.tar.gz    control segment (SHA-1 of these bytes)
    <root>/<hh>/<control-hex>.sig.tar.gz    signature segment, when signed
    <root>/<hh>/<datahash>.dat.tar.gz       data segment (SHA-256 declared in control)
    <root>/<hh>/<datahash>.dat.tar          decompressed data segment

A lookup rebuilds an :class:`ExpandedPackage` from filesystem state alone, so
the cache works across independent runs.  Files only appear under their
canonical names through ``os.replace`` of fully written and closed temporary
files, so a concurrent reader never sees a partial file.
"""

from __future__ import annotations

import gzip
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import NamedTuple, Optional

from .checksums import parse_checksum, sha1_file
from .errors import ApkForgeError, CacheError, CacheWriteError
from .expandapk import ExpandedPackage, datahash
from .packages import InstallablePackage

logger = logging.getLogger(__name__)

__all__ = ["CacheFileNames", "cache_file_names", "PackageCache"]

CONTROL_SUFFIX = ".ctl.tar.gz"
SIGNATURE_SUFFIX = ".sig.tar.gz"
DATA_SUFFIX = ".dat.tar.gz"


class CacheFileNames(NamedTuple):
    control: str
    signature: str
    data: str
    data_tar: str


def cache_file_names(control_hash: bytes, data_hash: bytes) -> CacheFileNames:
    """Return the deterministic cache file names for a package's segments."""

    control_hex = control_hash.hex()
    data_hex = data_hash.hex()
    return CacheFileNames(
        control=control_hex + CONTROL_SUFFIX,
        signature=control_hex + SIGNATURE_SUFFIX,
        data=data_hex + DATA_SUFFIX,
        data_tar=data_hex + DATA_SUFFIX[: -len(".gz")],
    )


def _advertise(source: Path, destination: Path) -> None:
    """Atomically move a closed, fully written file into its canonical place."""

    os.replace(source, destination)


class PackageCache:
    """Lookup and adoption of expanded packages under a cache root."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def directory_for(self, pkg: InstallablePackage) -> Path:
        """Return the fan-out sub-directory for ``pkg``'s checksum."""

        return self.root / parse_checksum(pkg.checksum).hex()[:2]

    def lookup(self, pkg: InstallablePackage) -> Optional[ExpandedPackage]:
        """Return the cached expansion of ``pkg`` or ``None`` on a miss.

        Missing or unreadable members are misses, never hard errors.
        """

        try:
            return self._load(pkg)
        except (OSError, ApkForgeError) as exc:
            logger.debug(
                "cache miss (%s): %s",
                pkg.name,
                exc,
                extra={"stage": "cache", "package": pkg.name},
            )
            return None

    def _load(self, pkg: InstallablePackage) -> ExpandedPackage:
        checksum = parse_checksum(pkg.checksum)
        directory = self.directory_for(pkg)
        control_hex = checksum.hex()

        control_path = directory / (control_hex + CONTROL_SUFFIX)
        control_stat = control_path.stat()

        signature_path: Optional[Path] = directory / (control_hex + SIGNATURE_SUFFIX)
        signature_size = 0
        signature_hash = b""
        try:
            signature_size = signature_path.stat().st_size
        except FileNotFoundError:
            signature_path = None
        else:
            signature_hash = sha1_file(signature_path)

        data_hex = datahash(control_path)
        data_hash = bytes.fromhex(data_hex)
        names = cache_file_names(checksum, data_hash)
        data_path = directory / names.data
        data_stat = data_path.stat()
        tar_path = directory / names.data_tar
        if not tar_path.exists():
            self._restore_tar(data_path, tar_path)

        return ExpandedPackage(
            control_file=control_path,
            control_hash=checksum,
            control_size=control_stat.st_size,
            package_file=data_path,
            package_hash=data_hash,
            package_size=data_stat.st_size,
            tar_file=tar_path,
            signature_file=signature_path,
            signature_hash=signature_hash,
            signature_size=signature_size,
        )

    def _restore_tar(self, data_path: Path, tar_path: Path) -> None:
        """Re-create the decompressed data tar next to its compressed segment."""

        handle, temp_name = tempfile.mkstemp(prefix=".restore-", dir=str(tar_path.parent))
        try:
            with os.fdopen(handle, "wb") as target, gzip.open(data_path, "rb") as source:
                shutil.copyfileobj(source, target, 1 << 20)
            _advertise(Path(temp_name), tar_path)
        except (OSError, EOFError) as exc:
            Path(temp_name).unlink(missing_ok=True)
            raise CacheError(f"restoring {tar_path}: {exc}") from exc

    def adopt(self, pkg: InstallablePackage, expanded: ExpandedPackage) -> ExpandedPackage:
        """Move ``expanded``'s temporary files to their canonical cache paths.

        The handle is updated in place: paths point into the cache, the data
        index is rebuilt against the renamed tar, and the handle no longer owns
        a temporary area.

        Raises:
            CacheWriteError: If any rename fails.
        """

        directory = self.directory_for(pkg)
        names = cache_file_names(expanded.control_hash, expanded.package_hash)
        try:
            directory.mkdir(parents=True, exist_ok=True)

            control_dst = directory / names.control
            _advertise(expanded.control_file, control_dst)
            expanded.control_file = control_dst

            if expanded.signature_file is not None:
                signature_dst = directory / names.signature
                _advertise(expanded.signature_file, signature_dst)
                expanded.signature_file = signature_dst

            data_dst = directory / names.data
            _advertise(expanded.package_file, data_dst)
            expanded.package_file = data_dst

            tar_dst = directory / names.data_tar
            _advertise(expanded.tar_file, tar_dst)
            expanded.tar_file = tar_dst
        except OSError as exc:
            raise CacheWriteError(f"caching {pkg.name}: {exc}", package=pkg.name) from exc

        expanded.reindex()
        work_dir, expanded.work_dir = expanded.work_dir, None
        if work_dir is not None:
            shutil.rmtree(work_dir, ignore_errors=True)
        logger.debug(
            "cached package",
            extra={"stage": "cache", "package": pkg.name, "cache_dir": str(directory)},
        )
        return expanded
