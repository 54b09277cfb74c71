"""Shared fixtures for the package_install test suite.

Archives are built on the fly with :mod:`tarfile`: a control tar.gz carrying a
``.PKGINFO`` whose ``datahash`` is the SHA-256 of the data tar.gz, optionally
preceded by a signature tar.gz.  The package checksum is ``Q1`` plus the
base64 SHA-1 of the control tar.gz, exactly as a repository index lists it.
"""

from __future__ import annotations

import base64
import hashlib
import io
import tarfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import httpx
import pytest

from ApkForge.PackageInstall.layout import init_db
from ApkForge.PackageInstall.packages import RepositoryPackage
from ApkForge.PackageInstall.settings import RetrySettings
from ApkForge.PackageInstall.target import DirFS
from ApkForge.PackageInstall.transport import PackageFetcher

ARCH = "x86_64"


@dataclass
class BuiltApk:
    name: str
    version: str
    payload: bytes
    checksum: str
    datahash: str
    control_gz: bytes
    data_gz: bytes

    @property
    def control_sha1(self) -> bytes:
        return hashlib.sha1(self.control_gz).digest()


def _tar_gz(entries: Iterable[Tuple[tarfile.TarInfo, Optional[bytes]]]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz", format=tarfile.PAX_FORMAT) as archive:
        for info, data in entries:
            archive.addfile(info, io.BytesIO(data) if data is not None else None)
    return buffer.getvalue()


def _file(name: str, data: bytes, mode: int = 0o644) -> Tuple[tarfile.TarInfo, bytes]:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    info.mtime = 1700000000
    return info, data


def _dir(name: str, mode: int = 0o755) -> Tuple[tarfile.TarInfo, None]:
    info = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE
    info.mode = mode
    info.mtime = 1700000000
    return info, None


def _link(name: str, target: str, kind: bytes) -> Tuple[tarfile.TarInfo, None]:
    info = tarfile.TarInfo(name)
    info.type = kind
    info.linkname = target
    info.mode = 0o777 if kind == tarfile.SYMTYPE else 0o644
    info.mtime = 1700000000
    return info, None


def build_apk(
    name: str,
    version: str = "1.0-r0",
    *,
    files: Optional[Dict[str, bytes]] = None,
    symlinks: Optional[Dict[str, str]] = None,
    hardlinks: Optional[Dict[str, str]] = None,
    scripts: Optional[Dict[str, bytes]] = None,
    triggers: Sequence[str] = (),
    depends: Sequence[str] = (),
    provides: Sequence[str] = (),
    arch: str = ARCH,
    signed: bool = False,
    datahash: Optional[str] = None,
) -> BuiltApk:
    """Build an APK v2 archive in memory."""

    files = files if files is not None else {f"usr/share/{name}/README": f"{name} {version}\n".encode()}
    symlinks = symlinks or {}
    hardlinks = hardlinks or {}

    directories = set()
    for path in list(files) + list(symlinks) + list(hardlinks):
        parent = path.rsplit("/", 1)[0] if "/" in path else ""
        while parent:
            directories.add(parent)
            parent = parent.rsplit("/", 1)[0] if "/" in parent else ""
    entries: List[Tuple[tarfile.TarInfo, Optional[bytes]]] = [_dir(d) for d in sorted(directories)]
    entries += [_file(path, data) for path, data in sorted(files.items())]
    entries += [_link(path, target, tarfile.SYMTYPE) for path, target in sorted(symlinks.items())]
    entries += [_link(path, target, tarfile.LNKTYPE) for path, target in sorted(hardlinks.items())]
    data_gz = _tar_gz(entries)
    declared = datahash or hashlib.sha256(data_gz).hexdigest()

    lines = [
        f"pkgname = {name}",
        f"pkgver = {version}",
        f"pkgdesc = test package {name}",
        f"arch = {arch}",
        f"size = {sum(len(d) for d in files.values())}",
        "builddate = 1700000000",
        "license = MIT",
        f"datahash = {declared}",
    ]
    lines += [f"depend = {dep}" for dep in depends]
    lines += [f"provides = {item}" for item in provides]
    if triggers:
        lines.append("triggers = " + " ".join(triggers))
    control_entries = [_file(".PKGINFO", ("\n".join(lines) + "\n").encode())]
    control_entries += [_file(script, body, 0o755) for script, body in sorted((scripts or {}).items())]
    control_gz = _tar_gz(control_entries)

    payload = control_gz + data_gz
    if signed:
        payload = _tar_gz([_file(".SIGN.RSA.builder.rsa.pub", b"not-a-real-signature")]) + payload

    checksum = "Q1" + base64.b64encode(hashlib.sha1(control_gz).digest()).decode()
    return BuiltApk(name, version, payload, checksum, declared, control_gz, data_gz)


@pytest.fixture
def apk_builder() -> Callable[..., BuiltApk]:
    return build_apk


def _index_block(pkg: RepositoryPackage) -> str:
    lines = [
        f"C:{pkg.checksum}",
        f"P:{pkg.name}",
        f"V:{pkg.version}",
        f"A:{pkg.arch}",
        f"S:{pkg.size}",
        f"I:{pkg.installed_size}",
        f"T:{pkg.description}",
    ]
    if pkg.dependencies:
        lines.append("D:" + " ".join(pkg.dependencies))
    if pkg.provides:
        lines.append("p:" + " ".join(pkg.provides))
    return "\n".join(lines) + "\n"


@dataclass
class LocalRepo:
    """A directory repository: ``<root>/<arch>/<name>-<version>.apk`` plus an index."""

    root: Path
    arch: str = ARCH
    packages: List[RepositoryPackage] = field(default_factory=list)

    @property
    def repository(self) -> str:
        return str(self.root)

    def add(self, name: str, version: str = "1.0-r0", **kwargs) -> RepositoryPackage:
        built = build_apk(name, version, arch=self.arch, **kwargs)
        directory = self.root / self.arch
        directory.mkdir(parents=True, exist_ok=True)
        (directory / f"{name}-{version}.apk").write_bytes(built.payload)
        package = RepositoryPackage(
            name=name,
            version=version,
            checksum=built.checksum,
            arch=self.arch,
            repository=self.repository,
            description=f"test package {name}",
            size=len(built.payload),
            dependencies=tuple(kwargs.get("depends", ())),
            provides=tuple(kwargs.get("provides", ())),
        )
        self.packages.append(package)
        return package

    def write_index(self, *, signed: bool = False) -> Path:
        text = "\n".join(_index_block(pkg) for pkg in self.packages)
        entries = [_file("DESCRIPTION", b"test repository"), _file("APKINDEX", text.encode())]
        payload = _tar_gz(entries)
        if signed:
            payload = _tar_gz([_file(".SIGN.RSA.builder.rsa.pub", b"sig")]) + payload
        target = self.root / self.arch / "APKINDEX.tar.gz"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(payload)
        return target


@pytest.fixture
def local_repo(tmp_path: Path) -> LocalRepo:
    return LocalRepo(tmp_path / "repo")


@pytest.fixture
def local_repo_for(tmp_path: Path) -> Callable[[str], LocalRepo]:
    """Return a factory for the same repository root under another architecture."""
    return lambda arch: LocalRepo(tmp_path / "repo", arch=arch)


@pytest.fixture
def target_fs(tmp_path: Path) -> DirFS:
    root = tmp_path / "root"
    root.mkdir()
    fs = DirFS(root)
    init_db(fs, ARCH, ignore_mknod_errors=True)
    return fs


class MockRepository:
    """In-memory HTTP repository for ``httpx.MockTransport``.

    ``failures`` queues status codes answered before the real body,
    ``break_after`` cuts the first full-body response after that many bytes,
    and ``gate`` (when set) blocks every request until released.
    """

    def __init__(self) -> None:
        self.documents: Dict[str, bytes] = {}
        self.requests: List[httpx.Request] = []
        self.failures: Dict[str, List[int]] = {}
        self.break_after: Dict[str, int] = {}
        self.gate: Optional[threading.Event] = None
        self.delay: float = 0.0
        self._lock = threading.Lock()

    def serve(self, url: str, payload: bytes) -> None:
        self.documents[url] = payload

    def hits(self, url: str) -> int:
        with self._lock:
            return sum(1 for request in self.requests if str(request.url) == url)

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        with self._lock:
            self.requests.append(request)
            queued = self.failures.get(url)
            failure = queued.pop(0) if queued else None
            cut = self.break_after.pop(url, None)
        if self.gate is not None:
            self.gate.wait(10)
        if self.delay:
            threading.Event().wait(self.delay)
        if failure is not None:
            return httpx.Response(failure)
        payload = self.documents.get(url)
        if payload is None:
            return httpx.Response(404)
        range_header = request.headers.get("Range")
        if range_header:
            start = int(range_header.split("=", 1)[1].rstrip("-"))
            return httpx.Response(206, content=payload[start:])
        if cut is not None:
            return httpx.Response(200, stream=_BrokenStream(payload[:cut]))
        return httpx.Response(200, content=payload)


class _BrokenStream(httpx.SyncByteStream):
    def __init__(self, head: bytes) -> None:
        self._head = head

    def __iter__(self):
        yield self._head
        raise httpx.ReadError("connection reset by peer")


@pytest.fixture
def mock_repository() -> MockRepository:
    return MockRepository()


@pytest.fixture
def http_fetcher(mock_repository: MockRepository):
    client = httpx.Client(transport=httpx.MockTransport(mock_repository.handler))
    fetcher = PackageFetcher(
        client,
        retry_settings=RetrySettings(max_attempts=3, backoff_base=0.0, backoff_max=0.0),
        retry_sleep=lambda _seconds: None,
    )
    yield fetcher
    client.close()


@pytest.fixture
def local_fetcher():
    fetcher = PackageFetcher(retry_settings=RetrySettings(max_attempts=1), retry_sleep=lambda _seconds: None)
    yield fetcher
    fetcher.close()


def http_package(repo: MockRepository, built: BuiltApk, base: str = "https://repo.test/main") -> RepositoryPackage:
    """Serve ``built`` from ``repo`` and return its index record."""

    package = RepositoryPackage(
        name=built.name,
        version=built.version,
        checksum=built.checksum,
        arch=ARCH,
        repository=base,
    )
    repo.serve(package.url, built.payload)
    return package


@pytest.fixture
def serve_http(mock_repository: MockRepository) -> Callable[..., RepositoryPackage]:
    return lambda built, base="https://repo.test/main": http_package(mock_repository, built, base)
