# === NAVMAP v1 ===
# {
#   "module": "ApkForge.PackageInstall.database",
#   "purpose": "Read and append the installed-package database, scripts archive, triggers, and world files",
#   "sections": [
#     {"id": "paths", "name": "Database Paths", "anchor": "PTH", "kind": "constants"},
#     {"id": "installeddatabase", "name": "InstalledDatabase", "anchor": "class-installeddatabase", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Installed-package database for a target root.

The database lives inside the target filesystem and uses apk's text formats:

``usr/lib/apk/db/installed``
    One block per package of ``X:value`` lines (``P:`` name, ``V:`` version,
    ``C:`` control checksum, ...) followed by ``F:`` directory and ``R:`` file
    lines, blocks separated by a blank line.
``usr/lib/apk/db/scripts.tar``
    Uncompressed tar of every package's install scripts, named
    ``<name>-<version>.<checksum>.<script>``.
``usr/lib/apk/db/triggers``
    ``<checksum> <glob> [<glob>...]`` per package declaring triggers.
``etc/apk/world`` / ``etc/apk/repositories``
    Whitespace/line separated requests and repository URLs.
"""

from __future__ import annotations

import io
import logging
import posixpath
import stat
import tarfile
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional

from .checksums import format_checksum, parse_checksum
from .errors import ApkForgeError
from .packages import Package
from .target import DirFS, normalize_name

logger = logging.getLogger(__name__)

__all__ = [
    "InstalledDatabase",
    "INSTALLED_PATH",
    "SCRIPTS_PATH",
    "TRIGGERS_PATH",
    "WORLD_PATH",
    "REPOSITORIES_PATH",
    "ARCH_PATH",
]

INSTALLED_PATH = "usr/lib/apk/db/installed"
SCRIPTS_PATH = "usr/lib/apk/db/scripts.tar"
TRIGGERS_PATH = "usr/lib/apk/db/triggers"
WORLD_PATH = "etc/apk/world"
REPOSITORIES_PATH = "etc/apk/repositories"
ARCH_PATH = "etc/apk/arch"

_SCRIPT_NAMES = {
    ".pre-install",
    ".post-install",
    ".pre-upgrade",
    ".post-upgrade",
    ".pre-deinstall",
    ".post-deinstall",
    ".trigger",
}
_PAX_CHECKSUM = "APK-TOOLS.checksum.SHA1"


def _attribute_line(tag: str, header: tarfile.TarInfo, default_mode: int) -> Optional[str]:
    mode = stat.S_IMODE(header.mode)
    if header.uid == 0 and header.gid == 0 and mode == default_mode:
        return None
    return f"{tag}:{header.uid}:{header.gid}:{mode:o}"


def _file_checksum(header: tarfile.TarInfo) -> Optional[str]:
    value = header.pax_headers.get(_PAX_CHECKSUM) if header.pax_headers else None
    if not value:
        return None
    try:
        return format_checksum(bytes.fromhex(value))
    except ValueError:
        return None


class InstalledDatabase:
    """Reader/appender for the database files under a :class:`DirFS` root."""

    def __init__(self, fs: DirFS) -> None:
        self.fs = fs

    # -- world & repositories -------------------------------------------------

    def _read_lines(self, name: str) -> List[str]:
        try:
            text = self.fs.read_file(name).decode("utf-8")
        except FileNotFoundError:
            return []
        return [line.strip() for line in text.splitlines() if line.strip() and not line.startswith("#")]

    def world(self) -> List[str]:
        """Return the requested package names from ``etc/apk/world``."""
        words: List[str] = []
        for line in self._read_lines(WORLD_PATH):
            words.extend(line.split())
        return words

    def set_world(self, packages: Iterable[str]) -> None:
        names = sorted(set(packages))
        self.fs.write_file(WORLD_PATH, ("\n".join(names) + "\n").encode("utf-8"), 0o644)

    def repositories(self) -> List[str]:
        return self._read_lines(REPOSITORIES_PATH)

    def set_repositories(self, repositories: Iterable[str]) -> None:
        text = "\n".join(repositories) + "\n"
        self.fs.write_file(REPOSITORIES_PATH, text.encode("utf-8"), 0o644)

    def arch(self) -> Optional[str]:
        lines = self._read_lines(ARCH_PATH)
        return lines[0] if lines else None

    # -- installed ------------------------------------------------------------

    def installed_packages(self) -> List[Package]:
        """Parse the installed database into package records (file lists omitted)."""

        try:
            text = self.fs.read_file(INSTALLED_PATH).decode("utf-8")
        except FileNotFoundError:
            return []
        packages: List[Package] = []
        fields: Dict[str, List[str]] = {}
        for line in text.splitlines() + [""]:
            if not line.strip():
                if fields:
                    packages.append(self._package_from_fields(fields))
                    fields = {}
                continue
            key, sep, value = line.partition(":")
            if not sep or len(key) != 1:
                continue
            fields.setdefault(key, []).append(value)
        return packages

    @staticmethod
    def _package_from_fields(fields: Mapping[str, List[str]]) -> Package:
        def first(key: str) -> str:
            values = fields.get(key)
            return values[0] if values else ""

        def number(key: str) -> int:
            try:
                return int(first(key) or 0)
            except ValueError:
                return 0

        checksum = b""
        if first("C"):
            try:
                checksum = parse_checksum(first("C"))
            except ApkForgeError:
                checksum = b""
        return Package(
            name=first("P"),
            version=first("V"),
            arch=first("A"),
            size=number("S"),
            installed_size=number("I"),
            description=first("T"),
            url=first("U"),
            license=first("L"),
            origin=first("o"),
            maintainer=first("m"),
            build_date=number("t"),
            commit=first("c"),
            dependencies=first("D").split(),
            provides=first("p").split(),
            install_if=first("i").split(),
            replaces=first("r").split(),
            provider_priority=number("k"),
            checksum=checksum,
        )

    def get_installed(self, name: str) -> Optional[Package]:
        for package in self.installed_packages():
            if package.name == name:
                return package
        return None

    def is_installed(self, name: str) -> bool:
        return self.get_installed(name) is not None

    def add_installed_package(self, package: Package, files: Iterable[tarfile.TarInfo]) -> None:
        """Append ``package`` and its installed file headers to the database."""

        lines = [
            f"C:{package.checksum_string()}",
            f"P:{package.name}",
            f"V:{package.version}",
            f"A:{package.arch}",
            f"S:{package.size}",
            f"I:{package.installed_size}",
            f"T:{package.description}",
            f"U:{package.url}",
            f"L:{package.license}",
        ]
        if package.origin:
            lines.append(f"o:{package.origin}")
        if package.maintainer:
            lines.append(f"m:{package.maintainer}")
        if package.build_date:
            lines.append(f"t:{package.build_date}")
        if package.commit:
            lines.append(f"c:{package.commit}")
        if package.dependencies:
            lines.append("D:" + " ".join(package.dependencies))
        if package.provides:
            lines.append("p:" + " ".join(package.provides))
        if package.install_if:
            lines.append("i:" + " ".join(package.install_if))
        if package.replaces:
            lines.append("r:" + " ".join(package.replaces))
        if package.provider_priority:
            lines.append(f"k:{package.provider_priority}")

        current_dir: Optional[str] = None
        for header in files:
            name = normalize_name(header.name)
            if not name:
                continue
            if header.isdir():
                lines.append(f"F:{name}")
                current_dir = name
                attrs = _attribute_line("M", header, 0o755)
                if attrs:
                    lines.append(attrs)
                continue
            directory = posixpath.dirname(name)
            if directory != current_dir:
                lines.append(f"F:{directory}")
                current_dir = directory
            lines.append(f"R:{posixpath.basename(name)}")
            attrs = _attribute_line("a", header, 0o777 if header.issym() else 0o644)
            if attrs:
                lines.append(attrs)
            checksum = _file_checksum(header)
            if checksum:
                lines.append(f"Z:{checksum}")

        block = "\n".join(lines) + "\n\n"
        with self.fs.open(INSTALLED_PATH, "ab") as handle:
            handle.write(block.encode("utf-8"))
        logger.debug(
            "recorded installed package",
            extra={"stage": "database", "package": package.name, "version": package.version},
        )

    # -- scripts & triggers ---------------------------------------------------

    def update_scripts_tar(
        self,
        package: Package,
        control_files: Mapping[str, bytes],
        source_date_epoch: Optional[datetime] = None,
    ) -> int:
        """Append ``package``'s install scripts to ``scripts.tar``; return how many."""

        scripts = {name: data for name, data in control_files.items() if name in _SCRIPT_NAMES}
        if not scripts:
            return 0
        target = self.fs.path(SCRIPTS_PATH)
        mode = "a" if target.exists() and target.stat().st_size > 0 else "w"
        mtime = source_date_epoch.timestamp() if source_date_epoch is not None else package.build_date
        prefix = f"{package.name}-{package.version}.{package.checksum_string()}"
        with tarfile.open(target, mode=mode, format=tarfile.PAX_FORMAT) as archive:
            for name in sorted(scripts):
                data = scripts[name]
                info = tarfile.TarInfo(name=prefix + name)
                info.size = len(data)
                info.mode = 0o755
                info.mtime = int(mtime)
                archive.addfile(info, io.BytesIO(data))
        return len(scripts)

    def update_triggers(self, package: Package) -> bool:
        """Append ``package``'s trigger globs to the triggers file."""

        if not package.triggers:
            return False
        line = f"{package.checksum_string()} {' '.join(package.triggers)}\n"
        with self.fs.open(TRIGGERS_PATH, "ab") as handle:
            handle.write(line.encode("utf-8"))
        return True
