"""Repository index loading (``<repository>/<arch>/APKINDEX.tar.gz``).

An index archive is a gzip stream holding a tar with an ``APKINDEX`` text
file, optionally preceded by a signature gzip stream.  :mod:`gzip` reads
concatenated members as one stream, so the signature entry simply shows up
as an extra ``.SIGN.*`` tar member in front of the index.
"""

from __future__ import annotations

import io
import logging
import tarfile
import zlib
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .cancellation import CancellationToken
from .errors import ApkForgeError, FetchError
from .packages import RepositoryPackage
from .transport import PackageFetcher

logger = logging.getLogger(__name__)

__all__ = ["NamedIndex", "parse_apkindex", "load_index", "index_url"]

INDEX_FILENAME = "APKINDEX.tar.gz"


@dataclass
class NamedIndex:
    """Packages of one repository for one architecture."""

    name: str
    arch: str
    packages: List[RepositoryPackage] = field(default_factory=list)
    description: str = ""
    signed: bool = False

    def __len__(self) -> int:
        return len(self.packages)

    def by_name(self) -> Dict[str, List[RepositoryPackage]]:
        grouped: Dict[str, List[RepositoryPackage]] = {}
        for package in self.packages:
            grouped.setdefault(package.name, []).append(package)
        return grouped


def index_url(repository: str, arch: str) -> str:
    return f"{repository.rstrip('/')}/{arch}/{INDEX_FILENAME}"


def _to_int(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0


def _block_to_package(fields: Dict[str, str], repository: str, arch: str) -> Optional[RepositoryPackage]:
    name = fields.get("P")
    version = fields.get("V")
    checksum = fields.get("C")
    if not name or not version or not checksum:
        return None
    return RepositoryPackage(
        name=name,
        version=version,
        checksum=checksum,
        arch=fields.get("A") or arch,
        repository=repository,
        description=fields.get("T", ""),
        license=fields.get("L", ""),
        origin=fields.get("o", ""),
        maintainer=fields.get("m", ""),
        project_url=fields.get("U", ""),
        commit=fields.get("c", ""),
        build_date=_to_int(fields.get("t", "0")),
        size=_to_int(fields.get("S", "0")),
        installed_size=_to_int(fields.get("I", "0")),
        provider_priority=_to_int(fields.get("k", "0")),
        dependencies=tuple(fields.get("D", "").split()),
        provides=tuple(fields.get("p", "").split()),
        install_if=tuple(fields.get("i", "").split()),
    )


def parse_apkindex(text: str, repository: str = "", arch: str = "") -> List[RepositoryPackage]:
    """Parse the text of an ``APKINDEX`` file into repository packages.

    Blocks missing a name, version, or checksum are skipped.
    """

    packages: List[RepositoryPackage] = []
    fields: Dict[str, str] = {}
    lines: Iterable[str] = text.splitlines() + [""]
    for line in lines:
        if not line.strip():
            if fields:
                package = _block_to_package(fields, repository, arch)
                if package is None:
                    logger.debug("skipping incomplete index entry %s", fields.get("P", "?"), extra={"stage": "index"})
                else:
                    packages.append(package)
                fields = {}
            continue
        key, sep, value = line.partition(":")
        if sep and len(key) == 1:
            fields[key] = value
    return packages


def load_index(
    repository: str,
    arch: str,
    fetcher: PackageFetcher,
    token: Optional[CancellationToken] = None,
) -> NamedIndex:
    """Fetch and parse the index of ``repository`` for ``arch``.

    Raises:
        FetchError: If the index cannot be read.
        ApkForgeError: If the archive has no ``APKINDEX`` member.
    """

    url = index_url(repository, arch)
    payload = fetcher.fetch_bytes(url, token)
    index = NamedIndex(name=repository, arch=arch)
    text: Optional[str] = None
    try:
        with tarfile.open(fileobj=io.BytesIO(payload), mode="r:gz", ignore_zeros=True) as archive:
            for member in archive:
                if member.name.startswith(".SIGN."):
                    index.signed = True
                    continue
                if not member.isreg() or member.name not in ("APKINDEX", "DESCRIPTION"):
                    continue
                extracted = archive.extractfile(member)
                if extracted is None:
                    continue
                content = extracted.read().decode("utf-8", errors="replace")
                if member.name == "DESCRIPTION":
                    index.description = content.strip()
                else:
                    text = content
    except (tarfile.TarError, EOFError, OSError, zlib.error) as exc:
        raise FetchError(f"reading index {url}: {exc}") from exc
    if text is None:
        raise ApkForgeError(f"index {url} has no APKINDEX file")
    index.packages = parse_apkindex(text, repository, arch)
    logger.debug(
        "loaded index with %d packages",
        len(index.packages),
        extra={"stage": "index", "url": url, "arch": arch},
    )
    return index
