# === NAVMAP v1 ===
# {
#   "module": "ApkForge.PackageInstall.expandapk",
#   "purpose": "Split APK archives into signature, control, and data segments and index the payload",
#   "sections": [
#     {"id": "tarindex", "name": "TarIndex", "anchor": "class-tarindex", "kind": "class"},
#     {"id": "expandedpackage", "name": "ExpandedPackage", "anchor": "class-expandedpackage", "kind": "class"},
#     {"id": "control-value", "name": "control_value", "anchor": "function-control-value", "kind": "function"},
#     {"id": "expand-apk", "name": "expand_apk", "anchor": "function-expand-apk", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Archive expansion for APK v2 packages.

An ``.apk`` file is a concatenation of gzip members: an optional signature
tarball, the control tarball (``.PKGINFO`` plus install scripts), and the data
tarball.  :func:`expand_apk` streams the archive once, writing each compressed
member to its own file, hashing it, and decompressing the data member into a
plain tar so :class:`TarIndex` can serve random access to its files.

The data segment is addressed by ``datahash``, the SHA-256 the control segment
declares for it.  Expansion verifies the declaration against the bytes it
actually received.
"""

from __future__ import annotations

import hashlib
import io
import logging
import shutil
import tarfile
import tempfile
import threading
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Dict, Iterator, List, Optional

from .cancellation import CancellationToken
from .errors import ExpandError
from .packages import Package, parse_pkginfo, parse_pkginfo_values

logger = logging.getLogger(__name__)

__all__ = [
    "TarIndex",
    "ExpandedPackage",
    "control_value",
    "datahash",
    "expand_apk",
]

_CHUNK_SIZE = 1 << 16
_TAR_BLOCK = 512
_SIGNATURE_PREFIX = ".SIGN."
PKGINFO = ".PKGINFO"


def _normalize_member_name(name: str) -> str:
    normalized = name
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized.lstrip("/").rstrip("/")


class TarIndex:
    """Lazily-built random-access index over an uncompressed tar file.

    The member table is read on first use and cached.  Renaming the backing
    file invalidates nothing on disk but the index keeps the old path, so
    callers that move the tar must build a new index.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._members: Optional[List[tarfile.TarInfo]] = None
        self._by_name: Dict[str, tarfile.TarInfo] = {}

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> List[tarfile.TarInfo]:
        with self._lock:
            if self._members is None:
                try:
                    with tarfile.open(self._path, mode="r:") as archive:
                        members = archive.getmembers()
                except (OSError, tarfile.TarError) as exc:
                    raise ExpandError(f"indexing {self._path}: {exc}") from exc
                self._by_name = {_normalize_member_name(member.name): member for member in members}
                self._members = members
            return self._members

    def members(self) -> List[tarfile.TarInfo]:
        """Return the tar headers in archive order."""
        return list(self._load())

    def __iter__(self) -> Iterator[tarfile.TarInfo]:
        return iter(self._load())

    def __len__(self) -> int:
        return len(self._load())

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        self._load()
        return _normalize_member_name(name) in self._by_name

    def get(self, name: str) -> Optional[tarfile.TarInfo]:
        """Return the header for ``name`` (leading ``/`` and ``./`` ignored)."""
        self._load()
        return self._by_name.get(_normalize_member_name(name))

    def read(self, name: str) -> bytes:
        """Return the contents of the regular file ``name``."""
        member = self.get(name)
        if member is None:
            raise FileNotFoundError(name)
        if not member.isreg():
            raise ExpandError(f"{name} is not a regular file")
        with self._path.open("rb") as handle:
            handle.seek(member.offset_data)
            data = handle.read(member.size)
        if len(data) != member.size:
            raise ExpandError(f"short read for {name} in {self._path}")
        return data

    def open(self, name: str) -> BinaryIO:
        """Return a binary stream over the regular file ``name``."""
        return io.BytesIO(self.read(name))


@dataclass
class ExpandedPackage:
    """Handle to one archive split into its control, signature, and data segments.

    While :attr:`work_dir` is set the handle owns a temporary area and
    :meth:`close` removes it.  Adoption into the cache clears :attr:`work_dir`
    and points every path at its canonical cache location.
    """

    control_file: Path
    control_hash: bytes
    control_size: int
    package_file: Path
    package_hash: bytes
    package_size: int
    tar_file: Path
    signature_file: Optional[Path] = None
    signature_hash: bytes = b""
    signature_size: int = 0
    work_dir: Optional[Path] = None
    index: TarIndex = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.index = TarIndex(self.tar_file)

    @property
    def signed(self) -> bool:
        return self.signature_file is not None

    @property
    def size(self) -> int:
        """Total compressed size of all segments."""
        return self.control_size + self.signature_size + self.package_size

    def reindex(self) -> None:
        """Rebuild :attr:`index` against the current :attr:`tar_file`."""
        self.index = TarIndex(self.tar_file)

    def control_files(self) -> Dict[str, bytes]:
        """Return the regular files of the control segment keyed by name."""
        files: Dict[str, bytes] = {}
        try:
            with tarfile.open(self.control_file, mode="r:gz") as archive:
                for member in archive:
                    if not member.isreg():
                        continue
                    extracted = archive.extractfile(member)
                    if extracted is None:
                        continue
                    files[_normalize_member_name(member.name)] = extracted.read()
        except (OSError, tarfile.TarError, EOFError, zlib.error) as exc:
            raise ExpandError(f"reading control segment {self.control_file}: {exc}") from exc
        return files

    def package_info(self) -> Package:
        """Parse ``.PKGINFO`` into the authoritative installed-package record."""
        pkginfo = self.control_files().get(PKGINFO)
        if pkginfo is None:
            raise ExpandError(f"opening {PKGINFO} in {self.control_file}: not found")
        package = parse_pkginfo(pkginfo.decode("utf-8", errors="replace"))
        package.size = self.size
        package.checksum = self.control_hash
        return package

    def open_data(self) -> BinaryIO:
        """Open the decompressed data tar for streaming reads."""
        return self.tar_file.open("rb")

    def close(self) -> None:
        """Remove the temporary area unless the files were adopted into a cache."""
        if self.work_dir is not None:
            shutil.rmtree(self.work_dir, ignore_errors=True)
            self.work_dir = None


def control_value(control_path: Path, key: str) -> List[str]:
    """Return every value declared for ``key`` in the control segment's ``.PKGINFO``."""

    try:
        with tarfile.open(control_path, mode="r:gz") as archive:
            for member in archive:
                if _normalize_member_name(member.name) != PKGINFO:
                    continue
                extracted = archive.extractfile(member)
                if extracted is None:
                    break
                values = parse_pkginfo_values(extracted.read().decode("utf-8", errors="replace"))
                return values.get(key, [])
    except (OSError, tarfile.TarError, EOFError, zlib.error) as exc:
        raise ExpandError(f"reading {key} from control {control_path}: {exc}") from exc
    raise ExpandError(f"{PKGINFO} not found in {control_path}")


def datahash(control_path: Path) -> str:
    """Return the hex ``datahash`` declared by the control segment."""

    values = control_value(control_path, "datahash")
    if len(values) != 1:
        raise ExpandError(f"saw {len(values)} datahash values in {control_path}")
    return values[0].lower()


class _Segment:
    """One gzip member being copied to disk while it streams past."""

    def __init__(self, path: Path, plain_path: Optional[Path] = None) -> None:
        self.path = path
        self.plain_path = plain_path
        self.size = 0
        self.sha1 = hashlib.sha1()  # noqa: S324 - apk identifies control segments by SHA-1
        self.sha256 = hashlib.sha256()
        self.head = b""
        self._handle = path.open("wb")
        self._plain = plain_path.open("wb") if plain_path is not None else None

    def write(self, compressed: bytes, plain: bytes) -> None:
        self._handle.write(compressed)
        self.size += len(compressed)
        self.sha1.update(compressed)
        self.sha256.update(compressed)
        if len(self.head) < _TAR_BLOCK:
            self.head += plain[: _TAR_BLOCK - len(self.head)]
        if self._plain is not None:
            self._plain.write(plain)

    def close(self) -> None:
        self._handle.close()
        if self._plain is not None:
            self._plain.close()

    def is_signature(self) -> bool:
        name = self.head[:100].split(b"\0", 1)[0].decode("utf-8", errors="replace")
        return _normalize_member_name(name).startswith(_SIGNATURE_PREFIX)


def _split_members(stream: BinaryIO, work_dir: Path, token: Optional[CancellationToken]) -> List[_Segment]:
    segments: List[_Segment] = []
    current: Optional[_Segment] = None
    decompressor = None
    data_index: Optional[int] = None
    pending = b""
    try:
        while True:
            if not pending:
                if token is not None:
                    token.raise_if_cancelled("expanding package")
                pending = stream.read(_CHUNK_SIZE)
                if not pending:
                    break
            if current is None:
                position = len(segments)
                if position == 1:
                    data_index = 2 if segments[0].is_signature() else 1
                if data_index is not None and position > data_index:
                    raise ExpandError(f"unexpected gzip stream #{position + 1} after data segment")
                plain_path = work_dir / "data.tar" if position == data_index else None
                current = _Segment(work_dir / f"segment-{position}.tar.gz", plain_path)
                decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
            try:
                plain = decompressor.decompress(pending)
            except zlib.error as exc:
                raise ExpandError(f"gzip stream #{len(segments) + 1} is corrupt: {exc}") from exc
            if decompressor.eof:
                consumed = len(pending) - len(decompressor.unused_data)
                current.write(pending[:consumed], plain)
                pending = decompressor.unused_data
                current.close()
                segments.append(current)
                current = None
            else:
                current.write(pending, plain)
                pending = b""
    finally:
        if current is not None:
            current.close()
    if current is not None:
        raise ExpandError("archive ends inside a gzip stream")
    return segments


def expand_apk(
    stream: BinaryIO,
    work_root: Optional[Path] = None,
    token: Optional[CancellationToken] = None,
) -> ExpandedPackage:
    """Split ``stream`` into segment files inside a fresh temporary directory.

    Args:
        stream: Readable binary stream positioned at the start of the archive.
        work_root: Directory to create the temporary area in.  Passing the
            cache sub-directory keeps later adoption a same-filesystem rename.
        token: Batch cancellation token checked between reads.

    Returns:
        ExpandedPackage owning the temporary area.

    Raises:
        ExpandError: If the archive is not a valid APK v2 layout or its data
            segment does not match the declared ``datahash``.
    """

    work_dir = Path(tempfile.mkdtemp(prefix=".expand-", dir=str(work_root) if work_root else None))
    try:
        segments = _split_members(stream, work_dir, token)
        if len(segments) < 2:
            raise ExpandError(f"expected at least 2 gzip streams, found {len(segments)}")
        signature: Optional[_Segment] = None
        if segments[0].is_signature():
            if len(segments) != 3:
                raise ExpandError(f"signed archive has {len(segments)} gzip streams, expected 3")
            signature, control, data = segments
        else:
            if len(segments) != 2:
                raise ExpandError(f"unsigned archive has {len(segments)} gzip streams, expected 2")
            control, data = segments

        control_path = control.path.rename(work_dir / "control.tar.gz")
        data_path = data.path.rename(work_dir / "data.tar.gz")
        signature_path = None
        if signature is not None:
            signature_path = signature.path.rename(work_dir / "signature.tar.gz")

        declared = datahash(control_path)
        actual = data.sha256.hexdigest()
        if declared != actual:
            raise ExpandError(f"datahash mismatch: control declares {declared}, data is {actual}")

        expanded = ExpandedPackage(
            control_file=control_path,
            control_hash=control.sha1.digest(),
            control_size=control.size,
            package_file=data_path,
            package_hash=data.sha256.digest(),
            package_size=data.size,
            tar_file=work_dir / "data.tar",
            signature_file=signature_path,
            signature_hash=signature.sha1.digest() if signature is not None else b"",
            signature_size=signature.size if signature is not None else 0,
            work_dir=work_dir,
        )
    except BaseException:
        shutil.rmtree(work_dir, ignore_errors=True)
        raise
    logger.debug(
        "expanded archive",
        extra={"stage": "expand", "signed": expanded.signed, "size": expanded.size},
    )
    return expanded
