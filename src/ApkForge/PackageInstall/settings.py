# === NAVMAP v1 ===
# {
#   "module": "ApkForge.PackageInstall.settings",
#   "purpose": "Configuration models, environment overrides, and YAML loading for the installer",
#   "sections": [
#     {"id": "httpsettings", "name": "HttpSettings", "anchor": "class-httpsettings", "kind": "class"},
#     {"id": "retrysettings", "name": "RetrySettings", "anchor": "class-retrysettings", "kind": "class"},
#     {"id": "cachesettings", "name": "CacheSettings", "anchor": "class-cachesettings", "kind": "class"},
#     {"id": "installsettings", "name": "InstallSettings", "anchor": "class-installsettings", "kind": "class"},
#     {"id": "loggingsettings", "name": "LoggingSettings", "anchor": "class-loggingsettings", "kind": "class"},
#     {"id": "enginesettings", "name": "EngineSettings", "anchor": "class-enginesettings", "kind": "class"},
#     {"id": "load-settings", "name": "load_settings", "anchor": "function-load-settings", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Configuration models for the package installer.

Settings are grouped into frozen pydantic sections (HTTP, retry, cache,
install, logging) beneath a :class:`EngineSettings` root that also reads
``APKFORGE_*`` environment variables (``APKFORGE_CACHE__DIR=/var/cache/apk``).
YAML files are loaded with :func:`load_settings`; values from the file win
over environment defaults.
"""

from __future__ import annotations

import logging
import os
import platform
from pathlib import Path
from typing import Any, List, Mapping, Optional, Union

import platformdirs
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

__all__ = [
    "HttpSettings",
    "RetrySettings",
    "CacheSettings",
    "InstallSettings",
    "LoggingSettings",
    "EngineSettings",
    "default_arch",
    "default_workers",
    "load_settings",
]

_MACHINE_TO_ARCH = {
    "amd64": "x86_64",
    "x86_64": "x86_64",
    "arm64": "aarch64",
    "aarch64": "aarch64",
    "armv7l": "armv7",
    "i686": "x86",
    "i386": "x86",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
    "riscv64": "riscv64",
}


def default_arch() -> str:
    """Return the apk architecture name for the running machine."""

    machine = platform.machine().lower()
    return _MACHINE_TO_ARCH.get(machine, machine or "x86_64")


def default_workers() -> int:
    """Return the expansion pool size: one above the hardware concurrency."""

    return (os.cpu_count() or 1) + 1


class HttpSettings(BaseModel):
    """HTTP client settings for package and index downloads."""

    model_config = ConfigDict(frozen=True, validate_assignment=False)

    timeout_connect: float = Field(default=10.0, gt=0.0, le=120.0, description="Connect timeout in seconds")
    timeout_read: float = Field(default=60.0, gt=0.0, le=600.0, description="Read timeout in seconds")
    timeout_write: float = Field(default=30.0, gt=0.0, le=600.0, description="Write timeout in seconds")
    timeout_pool: float = Field(default=10.0, gt=0.0, le=120.0, description="Acquire-from-pool timeout in seconds")
    pool_max_connections: int = Field(default=32, ge=1, le=1024, description="Max concurrent connections")
    pool_keepalive_max: int = Field(default=16, ge=0, le=1024, description="Keepalive pool size")
    verify_tls: bool = Field(default=True, description="Verify TLS certificates against certifi")
    trust_env: bool = Field(default=True, description="Honor HTTP(S)_PROXY and NO_PROXY environment variables")
    user_agent: str = Field(default="apkforge", description="User-Agent header value")


class RetrySettings(BaseModel):
    """Retry settings for transient fetch failures."""

    model_config = ConfigDict(frozen=True, validate_assignment=False)

    max_attempts: int = Field(default=5, ge=1, le=20, description="Attempts for the initial request")
    backoff_base: float = Field(default=0.5, ge=0.0, le=10.0, description="Backoff start (seconds)")
    backoff_max: float = Field(default=10.0, ge=0.0, le=120.0, description="Backoff cap (seconds)")
    range_resume_attempts: int = Field(
        default=5,
        ge=0,
        le=50,
        description="Range requests issued after body read errors before giving up",
    )


class CacheSettings(BaseModel):
    """Content-addressable package cache settings."""

    model_config = ConfigDict(frozen=True, validate_assignment=False)

    dir: Optional[Path] = Field(
        default=None,
        description="Cache directory; unset disables the on-disk package cache unless use_default is set",
    )
    use_default: bool = Field(
        default=False,
        description="Use the per-user cache directory when dir is unset",
    )

    @field_validator("dir", mode="before")
    @classmethod
    def normalize_cache_dir(cls, v: Any) -> Optional[Path]:
        """Normalize the cache directory to an absolute path."""
        if v is None or v == "":
            return None
        return Path(v).expanduser().resolve()

    @staticmethod
    def default_dir() -> Path:
        """Return the per-user cache directory used when callers opt in without a path."""
        return Path(platformdirs.user_cache_dir("apkforge")) / "packages"

    def resolved_dir(self) -> Optional[Path]:
        """Return the cache directory to use, or ``None`` when caching is off."""
        if self.dir is not None:
            return self.dir
        if self.use_default:
            return self.default_dir()
        return None


class InstallSettings(BaseModel):
    """Target-root installation settings."""

    model_config = ConfigDict(frozen=True, validate_assignment=False)

    arch: str = Field(default_factory=default_arch, description="Target architecture")
    workers: Optional[int] = Field(
        default=None,
        ge=1,
        le=256,
        description="Expansion worker count (defaults to CPU count + 1)",
    )
    ignore_signatures: bool = Field(default=False, description="Accept unsigned indexes and packages")
    ignore_mknod_errors: bool = Field(
        default=False,
        description="Continue when device nodes cannot be created (unprivileged builds)",
    )
    repositories: List[str] = Field(default_factory=list, description="Repository base URLs or paths")

    @field_validator("repositories", mode="before")
    @classmethod
    def coerce_repositories(cls, v: Any) -> List[str]:
        """Accept a single repository string or a sequence."""
        if v is None:
            return []
        if isinstance(v, str):
            return [item for item in v.split(",") if item.strip()]
        return [str(item) for item in v]

    def worker_count(self) -> int:
        """Return the configured worker count, falling back to :func:`default_workers`."""
        return self.workers or default_workers()


class LoggingSettings(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(frozen=True, validate_assignment=False)

    level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    emit_json_logs: bool = Field(default=False, description="Write JSON-lines logs to log_dir")
    log_dir: Optional[Path] = Field(default=None, description="Directory for JSON log files")

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        """Normalize and validate logging level."""
        upper = str(v).upper()
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if upper not in valid_levels:
            raise ValueError(f"level must be one of {sorted(valid_levels)}, got '{v}'")
        return upper

    def level_int(self) -> int:
        """Convert level string to logging module integer."""
        return logging.getLevelName(self.level)


class EngineSettings(BaseSettings):
    """Root settings object with ``APKFORGE_`` environment overrides."""

    model_config = SettingsConfigDict(
        env_prefix="APKFORGE_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="forbid",
        frozen=True,
    )

    http: HttpSettings = Field(default_factory=HttpSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    install: InstallSettings = Field(default_factory=InstallSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def _load_raw_yaml(config_path: Path) -> Mapping[str, object]:
    normalized_path = Path(config_path).expanduser()
    if not normalized_path.exists():
        raise ConfigError(f"Configuration file not found: {normalized_path}")
    try:
        with normalized_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Configuration file '{normalized_path}' contains invalid YAML") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError("Configuration file must contain a mapping at the root")
    return data


def load_settings(
    config_path: Optional[Union[str, Path]] = None,
    **overrides: Any,
) -> EngineSettings:
    """Load settings from ``config_path`` (YAML) and keyword section overrides.

    ``overrides`` are merged section-by-section on top of the file, so
    ``load_settings(path, cache={"dir": tmp})`` keeps the file's other cache
    keys.
    """

    raw: dict[str, Any] = {}
    if config_path is not None:
        raw.update(_load_raw_yaml(Path(config_path)))
    for section, values in overrides.items():
        if values is None:
            continue
        existing = raw.get(section)
        if isinstance(existing, Mapping) and isinstance(values, Mapping):
            merged = dict(existing)
            merged.update(values)
            raw[section] = merged
        else:
            raw[section] = values
    try:
        return EngineSettings(**raw)
    except PydanticValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
