# === NAVMAP v1 ===
# {
#   "module": "ApkForge.PackageInstall.target",
#   "purpose": "Target-root filesystem abstraction and the optional header-writer capability",
#   "sections": [
#     {"id": "headerwriter", "name": "HeaderWriter", "anchor": "class-headerwriter", "kind": "class"},
#     {"id": "dirfs", "name": "DirFS", "anchor": "class-dirfs", "kind": "class"},
#     {"id": "manifestfs", "name": "ManifestFS", "anchor": "class-manifestfs", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Filesystem abstraction for the installation root.

:class:`DirFS` maps root-relative names (``usr/bin/tool`` or ``/usr/bin/tool``)
onto a host directory.  It is the only thing the installer and the database
write through, which keeps every write inside the target root.

Some targets can install lazily from the tar index instead of streaming file
bodies.  They advertise this through :meth:`DirFS.header_writer`, which
returns a :class:`HeaderWriter` or ``None``; the installer picks its code path
from that answer.
"""

from __future__ import annotations

import copy
import os
import posixpath
import shutil
import stat
import tarfile
from pathlib import Path
from typing import IO, TYPE_CHECKING, Dict, List, Optional, Protocol, Tuple

if TYPE_CHECKING:  # pragma: no cover - import for static analysis only
    from .expandapk import ExpandedPackage, TarIndex
    from .packages import Package

__all__ = ["HeaderWriter", "DirFS", "ManifestFS", "normalize_name"]


def normalize_name(name: str) -> str:
    """Return ``name`` relative to the root with ``.``/``..`` collapsed."""

    cleaned = posixpath.normpath("/" + name.replace("\\", "/"))
    return cleaned.lstrip("/")


class HeaderWriter(Protocol):
    """Optional capability: install one tar entry given its header and index."""

    def write_header(self, header: tarfile.TarInfo, index: "TarIndex", package: "Package") -> bool:
        """Install ``header``; return ``False`` when the entry was skipped."""

    def retain(self, expanded: "ExpandedPackage") -> None:
        """Take ownership of ``expanded``, whose tar index backs entries already written."""


class DirFS:
    """Root-confined filesystem over a host directory."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def __repr__(self) -> str:
        return f"DirFS({str(self.root)!r})"

    def path(self, name: str) -> Path:
        """Return the host path for the root-relative ``name``."""
        relative = normalize_name(name)
        return self.root / relative if relative else self.root

    def header_writer(self) -> Optional[HeaderWriter]:
        """Return the lazy-install capability, or ``None`` to stream files."""
        return None

    def stat(self, name: str) -> os.stat_result:
        return self.path(name).stat()

    def lstat(self, name: str) -> os.stat_result:
        return self.path(name).lstat()

    def exists(self, name: str) -> bool:
        return os.path.lexists(self.path(name))

    def is_dir(self, name: str) -> bool:
        return self.path(name).is_dir()

    def mkdir(self, name: str, mode: int = 0o755) -> None:
        target = self.path(name)
        target.mkdir()
        os.chmod(target, mode)

    def makedirs(self, name: str, mode: int = 0o755) -> None:
        target = self.path(name)
        if target.is_dir():
            return
        target.mkdir(parents=True, exist_ok=True)
        os.chmod(target, mode)

    def chmod(self, name: str, mode: int) -> None:
        os.chmod(self.path(name), mode)

    def write_file(self, name: str, data: bytes, mode: int = 0o644) -> None:
        target = self.path(name)
        if os.path.islink(target) or target.is_file():
            target.unlink()
        target.write_bytes(data)
        os.chmod(target, mode)

    def read_file(self, name: str) -> bytes:
        return self.path(name).read_bytes()

    def open(self, name: str, mode: str = "rb") -> IO:
        return self.path(name).open(mode)

    def readlink(self, name: str) -> str:
        return os.readlink(self.path(name))

    def symlink(self, target: str, name: str) -> None:
        os.symlink(target, self.path(name))

    def link(self, existing: str, name: str) -> None:
        os.link(self.path(existing), self.path(name))

    def remove(self, name: str) -> None:
        target = self.path(name)
        if target.is_dir() and not target.is_symlink():
            target.rmdir()
        else:
            target.unlink()

    def listdir(self, name: str) -> List[str]:
        return sorted(os.listdir(self.path(name)))

    def mknod(self, name: str, mode: int, device: int) -> None:
        os.mknod(self.path(name), mode, device)

    def write_stream(self, name: str, source: IO[bytes], mode: int = 0o644) -> None:
        target = self.path(name)
        if os.path.islink(target) or target.is_file():
            target.unlink()
        with target.open("wb") as dst:
            shutil.copyfileobj(source, dst, 1 << 20)
        os.chmod(target, mode)


class ManifestFS(DirFS):
    """Target that records regular files and materialises them on demand.

    Directories and symlinks are created immediately.  Regular file bodies
    stay in the expanded package's tar index until :meth:`materialize` (or
    :meth:`read_file`) needs them, which keeps layer calculations cheap.

    The expanded packages behind those bodies are retained until
    :meth:`materialize` or :meth:`close`, so their temporary areas outlive
    the install batch that produced them.
    """

    def __init__(self, root: Path) -> None:
        super().__init__(root)
        self.entries: Dict[str, Tuple[tarfile.TarInfo, "TarIndex"]] = {}
        self._retained: List["ExpandedPackage"] = []

    def header_writer(self) -> Optional[HeaderWriter]:
        return self

    def write_header(self, header: tarfile.TarInfo, index: "TarIndex", package: "Package") -> bool:
        name = normalize_name(header.name)
        if not name:
            return False
        mode = stat.S_IMODE(header.mode)
        if header.isdir():
            self.makedirs(name, mode)
            return True
        self.makedirs(posixpath.dirname(name))
        if header.issym():
            if self.exists(name):
                self.remove(name)
            self.symlink(header.linkname, name)
            self.entries.pop(name, None)
            return True
        if header.isreg() or header.islnk():
            self.entries[name] = (header, index)
            return True
        return False

    def retain(self, expanded: "ExpandedPackage") -> None:
        if expanded.work_dir is None:
            return
        held = copy.copy(expanded)
        expanded.work_dir = None
        self._retained.append(held)

    def read_file(self, name: str) -> bytes:
        entry = self.entries.get(normalize_name(name))
        if entry is None:
            return super().read_file(name)
        header, index = entry
        source = header.linkname if header.islnk() else header.name
        return index.read(source)

    def materialize(self) -> int:
        """Write every recorded file body to disk; return the number written."""
        written = 0
        for name, (header, index) in sorted(self.entries.items()):
            source = header.linkname if header.islnk() else header.name
            self.write_file(name, index.read(source), stat.S_IMODE(header.mode))
            written += 1
        self.close()
        return written

    def close(self) -> None:
        """Forget unmaterialised entries and remove the retained temporary areas."""
        self.entries.clear()
        for expanded in self._retained:
            expanded.close()
        self._retained.clear()

    def __enter__(self) -> "ManifestFS":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
