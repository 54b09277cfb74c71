"""Package records: index-derived installables and installed metadata.

Two shapes of package flow through the installer.  :class:`RepositoryPackage`
comes from a repository index and only needs to be *locatable* (a URL) and
*identifiable* (its tagged control checksum).  :class:`Package` is parsed from
the ``.PKGINFO`` file inside an expanded control segment; it is more complete
than the index record and is what gets appended to the installed database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable

from .checksums import format_checksum
from .errors import ExpandError

__all__ = [
    "InstallablePackage",
    "RepositoryPackage",
    "Package",
    "parse_pkginfo",
    "parse_pkginfo_values",
]


@runtime_checkable
class InstallablePackage(Protocol):
    """Anything the pipeline can fetch, expand, and install."""

    @property
    def name(self) -> str:
        """Human-readable package name."""

    @property
    def url(self) -> str:
        """Stable location of the ``.apk`` archive (path, ``file://`` or ``http(s)://``)."""

    @property
    def checksum(self) -> str:
        """Tagged control-segment checksum (``Q1<base64>``); the cache identity."""


@dataclass(frozen=True)
class RepositoryPackage:
    """A package entry read from a repository ``APKINDEX``."""

    name: str
    version: str
    checksum: str
    arch: str = ""
    repository: str = ""
    description: str = ""
    license: str = ""
    origin: str = ""
    maintainer: str = ""
    project_url: str = ""
    commit: str = ""
    build_date: int = 0
    size: int = 0
    installed_size: int = 0
    provider_priority: int = 0
    dependencies: Tuple[str, ...] = ()
    provides: Tuple[str, ...] = ()
    install_if: Tuple[str, ...] = ()
    location: Optional[str] = None

    @property
    def filename(self) -> str:
        return f"{self.name}-{self.version}.apk"

    @property
    def url(self) -> str:
        if self.location:
            return self.location
        base = self.repository.rstrip("/")
        return f"{base}/{self.arch}/{self.filename}"

    def __str__(self) -> str:
        return f"{self.name}-{self.version}"


@dataclass
class Package:
    """Installed-package metadata parsed from a control segment's ``.PKGINFO``."""

    name: str
    version: str
    arch: str = ""
    description: str = ""
    url: str = ""
    license: str = ""
    origin: str = ""
    maintainer: str = ""
    commit: str = ""
    build_date: int = 0
    installed_size: int = 0
    size: int = 0
    datahash: str = ""
    checksum: bytes = b""
    dependencies: List[str] = field(default_factory=list)
    provides: List[str] = field(default_factory=list)
    install_if: List[str] = field(default_factory=list)
    replaces: List[str] = field(default_factory=list)
    triggers: List[str] = field(default_factory=list)
    provider_priority: int = 0

    @property
    def build_time(self) -> datetime:
        return datetime.fromtimestamp(self.build_date, tz=timezone.utc)

    def checksum_string(self) -> str:
        """Return the tagged ``Q1<base64>`` form of :attr:`checksum`."""
        return format_checksum(self.checksum) if self.checksum else ""

    def __str__(self) -> str:
        return f"{self.name}-{self.version}"


def parse_pkginfo_values(text: str) -> Dict[str, List[str]]:
    """Parse ``key = value`` lines, keeping every value of repeated keys."""

    values: Dict[str, List[str]] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        values.setdefault(key.strip(), []).append(value.strip())
    return values


def _first(values: Dict[str, List[str]], key: str) -> str:
    found = values.get(key)
    return found[0] if found else ""


def _int(values: Dict[str, List[str]], key: str) -> int:
    raw = _first(values, key)
    if not raw:
        return 0
    try:
        return int(raw)
    except ValueError as exc:
        raise ExpandError(f".PKGINFO field {key!r} is not an integer: {raw!r}") from exc


def _words(values: Dict[str, List[str]], key: str) -> List[str]:
    words: List[str] = []
    for value in values.get(key, []):
        words.extend(value.split())
    return words


def parse_pkginfo(text: str) -> Package:
    """Build a :class:`Package` from the contents of a ``.PKGINFO`` file."""

    values = parse_pkginfo_values(text)
    name = _first(values, "pkgname")
    version = _first(values, "pkgver")
    if not name or not version:
        raise ExpandError(".PKGINFO is missing pkgname or pkgver")
    return Package(
        name=name,
        version=version,
        arch=_first(values, "arch"),
        description=_first(values, "pkgdesc"),
        url=_first(values, "url"),
        license=_first(values, "license"),
        origin=_first(values, "origin"),
        maintainer=_first(values, "maintainer"),
        commit=_first(values, "commit"),
        build_date=_int(values, "builddate"),
        installed_size=_int(values, "size"),
        datahash=_first(values, "datahash"),
        dependencies=values.get("depend", []),
        provides=values.get("provides", []),
        install_if=_words(values, "install_if"),
        replaces=values.get("replaces", []),
        triggers=_words(values, "triggers"),
        provider_priority=_int(values, "provider_priority"),
    )
