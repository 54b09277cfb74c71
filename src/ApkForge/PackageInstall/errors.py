# === NAVMAP v1 ===
# {
#   "module": "ApkForge.PackageInstall.errors",
#   "purpose": "Define the exception hierarchy used across fetch, expansion, caching, and installation",
#   "sections": [
#     {"id": "base", "name": "Base Exceptions", "anchor": "BAS", "kind": "api"},
#     {"id": "fetch", "name": "Fetch & Expansion Errors", "anchor": "FET", "kind": "api"},
#     {"id": "cache", "name": "Cache Errors", "anchor": "CAC", "kind": "api"},
#     {"id": "install", "name": "Resolution & Install Errors", "anchor": "INS", "kind": "api"}
#   ]
# }
# === /NAVMAP ===
"""Exception hierarchy shared across package fetch, expansion, and installation.

The installer spans repository index retrieval, archive downloads, archive
expansion, the content-addressable cache, and the ordered apply phase.  This
module groups those failure modes so callers can react to high-level
categories (for example, a transient fetch failure vs. a malformed archive)
while the concrete subclass and the failing package stay available for
diagnostics.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover - import for static analysis only
    from .cancellation import CancellationToken

__all__ = [
    "ApkForgeError",
    "ConfigError",
    "FetchError",
    "ExpandError",
    "CacheError",
    "CacheWriteError",
    "ConflictError",
    "ResolutionError",
    "InstallError",
    "CancelledError",
    "with_cause",
]


class ApkForgeError(RuntimeError):
    """Base exception for package acquisition and installation failures."""

    def __init__(self, message: str, *, package: Optional[str] = None) -> None:
        super().__init__(message)
        self.package = package


class ConfigError(ApkForgeError):
    """Raised when configuration files or CLI inputs are invalid."""


class FetchError(ApkForgeError):
    """Raised when a package or index cannot be read locally or over the network."""

    def __init__(
        self,
        message: str,
        *,
        package: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message, package=package)
        self.status_code = status_code
        self.retryable = retryable


class ExpandError(ApkForgeError):
    """Raised when an archive is malformed or cannot be split into its segments."""


class CacheError(ApkForgeError):
    """Raised on cache I/O failures. Read failures are treated as cache misses."""


class CacheWriteError(CacheError):
    """Raised when adopting an expanded package into the cache fails."""


class ConflictError(ApkForgeError):
    """Raised when a resolved package conflicts with an already-installed package."""


class ResolutionError(ApkForgeError):
    """Raised when the requested world cannot be resolved against the indexes."""


class InstallError(ApkForgeError):
    """Raised when the ordered apply phase or the batch as a whole fails."""


class CancelledError(ApkForgeError):
    """Raised at a suspension point after the batch token has been cancelled."""


def with_cause(token: Optional["CancellationToken"], message: str) -> str:
    """Append the batch cancellation cause to ``message`` when one is recorded.

    A sibling failure cancels the shared token; the error surfaced by a worker
    that merely observed the cancellation is then opaque.  Annotating it with
    the recorded cause lets callers tell "this fetch failed" apart from "the
    batch was cancelled because another package failed".
    """

    if token is None:
        return message
    cause = token.cause
    if cause is None:
        return message
    cause_text = str(cause)
    if not cause_text or cause_text in message:
        return message
    return f"{message}: {cause_text}"
