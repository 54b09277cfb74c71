# === NAVMAP v1 ===
# {
#   "module": "ApkForge.PackageInstall",
#   "purpose": "Package initialization for ApkForge.PackageInstall",
#   "sections": []
# }
# === /NAVMAP ===

"""Public API for the apk package acquisition and installation engine.

The engine fetches package archives (local paths, ``file://`` or HTTP(S)),
splits them into control, signature, and data segments, caches the segments
by content hash, and installs them into a target root: expansion runs on a
bounded thread pool while a single applier writes packages in the resolved
order.
"""

from __future__ import annotations

__version__ = "0.4.0"

from .cache import PackageCache, cache_file_names
from .cancellation import CancellationToken
from .database import InstalledDatabase
from .errors import (
    ApkForgeError,
    CacheError,
    CacheWriteError,
    CancelledError,
    ConfigError,
    ConflictError,
    ExpandError,
    FetchError,
    InstallError,
    ResolutionError,
)
from .expandapk import ExpandedPackage, expand_apk
from .expansion import PackageExpander
from .installer import PackageInstaller
from .ownership import OwnershipTracker
from .packages import InstallablePackage, Package, RepositoryPackage
from .pipeline import InstallPipeline
from .settings import EngineSettings, load_settings
from .singleflight import ExpansionCoordinator, SingleFlight
from .target import DirFS, ManifestFS
from .transport import PackageFetcher
from .world import ResolvedPackage, World

__all__ = [
    "__version__",
    "ApkForgeError",
    "CacheError",
    "CacheWriteError",
    "CancelledError",
    "CancellationToken",
    "ConfigError",
    "ConflictError",
    "DirFS",
    "EngineSettings",
    "ExpandError",
    "ExpandedPackage",
    "ExpansionCoordinator",
    "FetchError",
    "InstallError",
    "InstallPipeline",
    "InstallablePackage",
    "InstalledDatabase",
    "ManifestFS",
    "OwnershipTracker",
    "Package",
    "PackageCache",
    "PackageExpander",
    "PackageFetcher",
    "PackageInstaller",
    "RepositoryPackage",
    "ResolutionError",
    "ResolvedPackage",
    "SingleFlight",
    "World",
    "cache_file_names",
    "expand_apk",
    "load_settings",
]
