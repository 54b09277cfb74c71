# === NAVMAP v1 ===
# {
#   "module": "ApkForge.PackageInstall.cli",
#   "purpose": "Typer CLI: initialise a root, fixate its world, or expand without installing",
#   "sections": [
#     {"id": "clicontext", "name": "CliContext", "anchor": "class-clicontext", "kind": "class"},
#     {"id": "main", "name": "main", "anchor": "function-main", "kind": "function"},
#     {"id": "init-cmd", "name": "init_cmd", "anchor": "function-init-cmd", "kind": "function"},
#     {"id": "fixate-cmd", "name": "fixate_cmd", "anchor": "function-fixate-cmd", "kind": "function"},
#     {"id": "calculate-cmd", "name": "calculate_cmd", "anchor": "function-calculate-cmd", "kind": "function"},
#     {"id": "version-cmd", "name": "version_cmd", "anchor": "function-version-cmd", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Command line entry point for the package installation engine.

Global options come before the subcommand::

    apkforge --root ./rootfs --repository https://dl-cdn.alpinelinux.org/alpine/v3.20/main init busybox
    apkforge --root ./rootfs --cache-dir ~/.cache/apkforge fixate
    apkforge -vv --root ./rootfs calculate
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .errors import ApkForgeError
from .logging_utils import setup_logging
from .settings import EngineSettings, load_settings
from .target import DirFS
from .world import World

_console = Console()


class CliContext:
    """Per-invocation state shared by the subcommands."""

    def __init__(self, settings: EngineSettings, root: Path, verbosity: int = 0) -> None:
        self.settings = settings
        self.root = root
        self.verbosity = verbosity
        self.console = _console

    def world(self) -> World:
        return World(DirFS(self.root), self.settings)

    def log_info(self, message: str) -> None:
        """Print ``message`` when verbosity >= 1."""
        if self.verbosity >= 1:
            self.console.print(f"[cyan]INFO: {message}[/cyan]")


app = typer.Typer(
    name="apkforge",
    help="Fetch, cache, and install apk packages into a target root",
    no_args_is_help=True,
)

_context: Optional[CliContext] = None


def get_context() -> CliContext:
    """Return the context built by :func:`main`.

    Raises:
        RuntimeError: If no command callback has run yet.
    """
    if _context is None:
        raise RuntimeError("CLI context not initialized")
    return _context


def _fail(exc: Exception) -> None:
    _console.print(f"[red]Error: {exc}[/red]")
    raise typer.Exit(1)


@app.callback()
def main(
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        envvar="APKFORGE_CONFIG",
        help="Path to a YAML settings file",
    ),
    root: Path = typer.Option(Path("."), "--root", "-r", help="Target root directory"),
    arch: Optional[str] = typer.Option(None, "--arch", help="Target architecture"),
    cache_dir: Optional[Path] = typer.Option(None, "--cache-dir", help="Package cache directory"),
    user_cache: bool = typer.Option(False, "--user-cache", help="Cache packages in the per-user cache directory"),
    repository: Optional[List[str]] = typer.Option(
        None,
        "--repository",
        "-X",
        help="Repository URL or path (repeatable)",
    ),
    verbosity: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase verbosity (-v for INFO, -vv for DEBUG)",
    ),
) -> None:
    """Package installation engine.

    Options given here override the settings file and ``APKFORGE_*``
    environment variables.
    """
    global _context

    install: Dict[str, Any] = {}
    if arch:
        install["arch"] = arch
    if repository:
        install["repositories"] = list(repository)
    cache: Dict[str, Any] = {}
    if cache_dir is not None:
        cache["dir"] = str(cache_dir)
    if user_cache:
        cache["use_default"] = True
    try:
        settings = load_settings(config, install=install or None, cache=cache or None)
    except ApkForgeError as exc:
        _fail(exc)

    level = settings.logging.level
    if verbosity >= 2:
        level = "DEBUG"
    elif verbosity == 1 and level != "DEBUG":
        level = "INFO"
    setup_logging(level=level, log_dir=settings.logging.log_dir, emit_json=settings.logging.emit_json_logs)

    _context = CliContext(settings, root.expanduser().resolve(), verbosity)
    _context.log_info(f"root: {_context.root} arch: {settings.install.arch}")


@app.command("init")
def init_cmd(
    packages: Optional[List[str]] = typer.Argument(None, help="Packages to record in the world file"),
) -> None:
    """Initialise the apk database in the root and write the world file."""
    ctx = get_context()
    try:
        ctx.root.mkdir(parents=True, exist_ok=True)
        with ctx.world() as world:
            world.init_db()
            if packages:
                world.set_world(packages)
    except (ApkForgeError, OSError) as exc:
        _fail(exc)
    ctx.console.print(f"[green]Initialised[/green] {ctx.root} ({ctx.settings.install.arch})")


@app.command("fixate")
def fixate_cmd(
    source_date_epoch: Optional[int] = typer.Option(
        None,
        "--source-date-epoch",
        envvar="SOURCE_DATE_EPOCH",
        help="Clamp script mtimes to this UNIX timestamp",
    ),
) -> None:
    """Resolve the world file and install the result into the root."""
    ctx = get_context()
    epoch = datetime.fromtimestamp(source_date_epoch, tz=timezone.utc) if source_date_epoch is not None else None
    try:
        with ctx.world() as world:
            installed = world.fixate_world(source_date_epoch=epoch)
    except ApkForgeError as exc:
        _fail(exc)

    table = Table(title=f"Installed into {ctx.root}")
    table.add_column("Package")
    table.add_column("Version")
    table.add_column("Installed size", justify="right")
    for package in installed:
        table.add_row(package.name, package.version, str(package.installed_size))
    ctx.console.print(table)


@app.command("calculate")
def calculate_cmd() -> None:
    """Resolve the world file and fetch/expand every package without installing."""
    ctx = get_context()
    try:
        with ctx.world() as world:
            resolved = world.resolve_and_calculate_world()
            table = Table(title="Resolved world")
            table.add_column("Package")
            table.add_column("Version")
            table.add_column("Signed")
            table.add_column("Size", justify="right")
            for package, expanded in resolved:
                table.add_row(package.name, package.version, "yes" if expanded.signed else "no", str(expanded.size))
                expanded.close()
    except ApkForgeError as exc:
        _fail(exc)
    ctx.console.print(table)


@app.command("version")
def version_cmd() -> None:
    """Show version information."""
    _console.print(f"[bold]apkforge[/bold] version {__version__}")


__all__ = ["app", "CliContext", "get_context", "main"]
