"""Target-root initialisation and database location fix-ups.

``init_db`` is the equivalent of ``apk add --initdb``: it checks the base
directories of the root, creates apk's own directories and empty state files,
records the architecture, creates the minimal character devices, and leaves
an empty ``scripts.tar`` behind.
"""

from __future__ import annotations

import logging
import os
import posixpath
import stat
import tarfile
from typing import List, NamedTuple, Tuple

from .database import ARCH_PATH, SCRIPTS_PATH
from .errors import ApkForgeError
from .target import DirFS

logger = logging.getLogger(__name__)

__all__ = ["init_db", "list_init_files", "resolve_apk_db", "BASE_DIRECTORIES", "INIT_DIRECTORIES", "INIT_FILES"]


class _Dir(NamedTuple):
    path: str
    mode: int


class _File(NamedTuple):
    path: str
    mode: int
    contents: bytes


class _Device(NamedTuple):
    path: str
    mode: int
    major: int
    minor: int


BASE_DIRECTORIES: Tuple[_Dir, ...] = (
    _Dir("tmp", 0o777 | stat.S_ISVTX),
    _Dir("dev", 0o755),
    _Dir("etc", 0o755),
    _Dir("opt", 0o755),
    _Dir("proc", 0o555),
    _Dir("var", 0o755),
    _Dir("usr", 0o755),
)

INIT_DIRECTORIES: Tuple[_Dir, ...] = (
    _Dir("etc/apk", 0o755),
    _Dir("etc/apk/keys", 0o755),
    _Dir("usr/lib", 0o755),
    _Dir("usr/lib/apk", 0o755),
    _Dir("usr/lib/apk/db", 0o755),
    _Dir("usr/lib/apk/exec", 0o755),
    _Dir("var/cache", 0o755),
    _Dir("var/cache/apk", 0o755),
    _Dir("var/cache/misc", 0o755),
)

INIT_FILES: Tuple[_File, ...] = (
    _File("etc/apk/world", 0o644, b"\n"),
    _File("etc/apk/repositories", 0o644, b"\n"),
    _File("usr/lib/apk/db/lock", 0o600, b""),
    _File("usr/lib/apk/db/triggers", 0o644, b""),
    _File("usr/lib/apk/db/installed", 0o644, b""),
)

INIT_DEVICES: Tuple[_Device, ...] = (
    _Device("dev/zero", 0o666, 1, 5),
    _Device("dev/urandom", 0o666, 1, 9),
    _Device("dev/null", 0o666, 1, 3),
    _Device("dev/random", 0o666, 1, 8),
    _Device("dev/console", 0o620, 5, 1),
)


def list_init_files(arch: str) -> List[tarfile.TarInfo]:
    """Return headers for everything :func:`init_db` creates beyond the base directories."""

    headers: List[tarfile.TarInfo] = []

    def _header(name: str, mode: int, kind: bytes) -> tarfile.TarInfo:
        info = tarfile.TarInfo(name=name)
        info.mode = mode
        info.type = kind
        headers.append(info)
        return info

    for entry in INIT_DIRECTORIES:
        _header(entry.path, entry.mode, tarfile.DIRTYPE)
    for entry in INIT_FILES + (_File(ARCH_PATH, 0o644, f"{arch}\n".encode("utf-8")),):
        _header(entry.path, entry.mode, tarfile.REGTYPE).size = len(entry.contents)
    for device in INIT_DEVICES:
        info = _header(device.path, device.mode, tarfile.CHRTYPE)
        info.devmajor, info.devminor = device.major, device.minor
    _header(SCRIPTS_PATH, 0o644, tarfile.REGTYPE)
    return headers


def _check_base_directory(fs: DirFS, entry: _Dir) -> None:
    try:
        info = fs.stat(entry.path)
    except FileNotFoundError:
        try:
            fs.mkdir(entry.path, entry.mode)
        except OSError as exc:
            raise ApkForgeError(f"failed to create base directory {entry.path}: {exc}") from exc
        return
    except OSError as exc:
        raise ApkForgeError(f"error opening base directory {entry.path}: {exc}") from exc
    if not stat.S_ISDIR(info.st_mode):
        raise ApkForgeError(f"base directory {entry.path} is not a directory")
    if stat.S_IMODE(info.st_mode) != entry.mode:
        raise ApkForgeError(
            f"base directory {entry.path} has incorrect permissions: {stat.S_IMODE(info.st_mode):o}"
        )


def init_db(fs: DirFS, arch: str, *, ignore_mknod_errors: bool = False) -> None:
    """Initialise an empty apk database in ``fs``.

    Raises:
        ApkForgeError: If a base directory exists with the wrong type or mode,
            or any directory, file, or (unless ignored) device cannot be created.
    """

    logger.debug("initializing apk database", extra={"stage": "init", "arch": arch})
    for entry in BASE_DIRECTORIES:
        _check_base_directory(fs, entry)

    for entry in INIT_DIRECTORIES:
        try:
            fs.mkdir(entry.path, entry.mode)
        except FileExistsError:
            if not fs.is_dir(entry.path):
                raise ApkForgeError(f"failed to create directory {entry.path}: already exists as file")
        except OSError as exc:
            raise ApkForgeError(f"failed to create directory {entry.path}: {exc}") from exc

    for entry in INIT_FILES + (_File(ARCH_PATH, 0o644, f"{arch}\n".encode("utf-8")),):
        try:
            fs.write_file(entry.path, entry.contents, entry.mode)
        except OSError as exc:
            raise ApkForgeError(f"failed to create file {entry.path}: {exc}") from exc

    for device in INIT_DEVICES:
        try:
            fs.mknod(device.path, stat.S_IFCHR | device.mode, os.makedev(device.major, device.minor))
        except OSError as exc:
            if ignore_mknod_errors:
                logger.debug(
                    "ignoring mknod failure for %s: %s", device.path, exc, extra={"stage": "init"}
                )
                continue
            raise ApkForgeError(f"failed to create char device {device.path}: {exc}") from exc

    try:
        with tarfile.open(fs.path(SCRIPTS_PATH), mode="w", format=tarfile.PAX_FORMAT):
            pass
    except OSError as exc:
        raise ApkForgeError(f"could not create tarball file {SCRIPTS_PATH}: {exc}") from exc
    logger.debug("finished initializing apk database", extra={"stage": "init"})


def _points_at(fs: DirFS, name: str, expected: str) -> bool:
    try:
        target = fs.readlink(name)
    except OSError:
        return False
    return posixpath.normpath("/" + target) == expected


def resolve_apk_db(fs: DirFS) -> None:
    """Make ``/lib/apk`` resolve to ``/usr/lib/apk``.

    A pre-existing ``/lib/apk`` directory is replaced only when it holds
    nothing but empty directories.
    """

    if _points_at(fs, "lib", "/usr/lib"):
        logger.debug("/lib is a symlink to /usr/lib", extra={"stage": "init"})
        return
    if _points_at(fs, "lib/apk", "/usr/lib/apk"):
        logger.debug("/lib/apk is a symlink to /usr/lib/apk", extra={"stage": "init"})
        return

    if not fs.exists("lib"):
        fs.mkdir("lib", 0o755)

    if fs.is_dir("lib/apk") and not os.path.islink(fs.path("lib/apk")):
        for child in fs.listdir("lib/apk"):
            name = posixpath.join("lib/apk", child)
            if not fs.is_dir(name):
                raise ApkForgeError(f"/lib/apk contains file {child}, refusing to replace")
            if fs.listdir(name):
                raise ApkForgeError(f"/lib/apk/{child} is not empty, refusing to replace")
            fs.remove(name)
        fs.remove("lib/apk")

    try:
        fs.symlink("../usr/lib/apk", "lib/apk")
    except OSError as exc:
        raise ApkForgeError(f"creating lib/apk symlink: {exc}") from exc
    logger.debug("created symlink for lib/apk", extra={"stage": "init"})
