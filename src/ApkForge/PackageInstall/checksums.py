"""Checksum parsing, formatting, and streaming digest helpers.

Repository indexes and installed databases describe a package's control
segment with a tagged checksum: two characters naming the algorithm (``Q1``
for SHA-1) followed by the base64-encoded digest.  The decoded digest is the
package identity used by the content-addressable cache.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
from pathlib import Path
from typing import Union

from .errors import ApkForgeError

CHECKSUM_TAG = "Q1"
_SHA1_DIGEST_SIZE = 20


def parse_checksum(value: str) -> bytes:
    """Decode a tagged ``Q1<base64>`` checksum into raw digest bytes."""

    if not isinstance(value, str) or not value.startswith(CHECKSUM_TAG):
        raise ApkForgeError(f"unexpected checksum: {value!r}")
    try:
        digest = base64.b64decode(value[len(CHECKSUM_TAG):], validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ApkForgeError(f"checksum {value!r} is not valid base64") from exc
    if len(digest) != _SHA1_DIGEST_SIZE:
        raise ApkForgeError(f"checksum {value!r} decodes to {len(digest)} bytes, expected 20")
    return digest


def format_checksum(digest: bytes) -> str:
    """Encode raw SHA-1 digest bytes as a tagged ``Q1<base64>`` checksum."""

    return CHECKSUM_TAG + base64.b64encode(digest).decode("ascii")


def checksum_hex(value: str) -> str:
    """Return the hex encoding of a tagged checksum, as used in cache file names."""

    return parse_checksum(value).hex()


def _file_digest(path: Union[str, Path], algorithm: str) -> bytes:
    hasher = hashlib.new(algorithm)
    with Path(path).open("rb") as stream:
        for chunk in iter(lambda: stream.read(1 << 20), b""):
            hasher.update(chunk)
    return hasher.digest()


def sha1_file(path: Union[str, Path]) -> bytes:
    """Compute the SHA-1 digest for the provided file."""

    return _file_digest(path, "sha1")


def sha256_file(path: Union[str, Path]) -> bytes:
    """Compute the SHA-256 digest for the provided file."""

    return _file_digest(path, "sha256")
