"""Tests for the ordered install pipeline: ordering, ownership, failure, cancellation."""

import threading
import time

import pytest

from ApkForge.PackageInstall.cache import PackageCache
from ApkForge.PackageInstall.cancellation import CancellationToken
from ApkForge.PackageInstall.database import InstalledDatabase
from ApkForge.PackageInstall.errors import FetchError, InstallError
from ApkForge.PackageInstall.expansion import PackageExpander
from ApkForge.PackageInstall.installer import PackageInstaller
from ApkForge.PackageInstall.layout import init_db
from ApkForge.PackageInstall.packages import RepositoryPackage
from ApkForge.PackageInstall.pipeline import InstallPipeline
from ApkForge.PackageInstall.singleflight import ExpansionCoordinator
from ApkForge.PackageInstall.target import ManifestFS


def _pipeline(fs, fetcher, *, cache=None, workers=4) -> InstallPipeline:
    expander = PackageExpander(fetcher, cache=cache, coordinator=ExpansionCoordinator())
    return InstallPipeline(expander, PackageInstaller(fs, ignore_mknod_errors=True), workers=workers)


def _installed_blocks(fs):
    text = fs.read_file("usr/lib/apk/db/installed").decode()
    blocks = {}
    for block in text.strip().split("\n\n"):
        lines = block.splitlines()
        name = next(line[2:] for line in lines if line.startswith("P:"))
        blocks[name] = lines
    return blocks


def _files_of(lines):
    paths, directory = [], None
    for line in lines:
        if line.startswith("F:"):
            directory = line[2:]
            paths.append(directory + "/")
        elif line.startswith("R:"):
            paths.append(f"{directory}/{line[2:]}")
    return paths


def test_packages_are_installed_in_order(target_fs, local_repo, local_fetcher) -> None:
    packages = [
        local_repo.add("base", files={"etc/os-release": b"ID=test\n"}),
        local_repo.add("tools", files={"usr/bin/tool": b"#!/bin/sh\n"}),
        local_repo.add("extras", files={"usr/share/extras/a": b"a"}),
    ]

    installed = _pipeline(target_fs, local_fetcher).install(packages)

    assert [p.name for p in installed] == ["base", "tools", "extras"]
    assert target_fs.read_file("etc/os-release") == b"ID=test\n"
    assert target_fs.read_file("usr/bin/tool") == b"#!/bin/sh\n"
    assert list(_installed_blocks(target_fs)) == ["base", "tools", "extras"]
    database = InstalledDatabase(target_fs)
    assert database.is_installed("tools")
    assert database.get_installed("extras").checksum_string() == packages[2].checksum


def test_later_package_takes_ownership_of_shared_file(target_fs, local_repo, local_fetcher) -> None:
    first = local_repo.add("first", files={"usr/share/common/data": b"first", "usr/bin/first": b"1"})
    second = local_repo.add("second", files={"usr/share/common/data": b"second"})
    pipeline = _pipeline(target_fs, local_fetcher)

    installed = pipeline.install([first, second])

    assert target_fs.read_file("usr/share/common/data") == b"second"
    assert pipeline.tracker.owner_of("usr/share/common/data") is installed[1]
    assert pipeline.tracker.owner_of("usr/bin/first") is installed[0]
    blocks = _installed_blocks(target_fs)
    first_files = _files_of(blocks["first"])
    second_files = _files_of(blocks["second"])
    assert "usr/share/common/data" not in first_files
    assert "usr/share/common/data" in second_files
    assert "usr/bin/first" in first_files
    assert "usr/share/common/" in first_files and "usr/share/common/" in second_files


def test_second_run_is_idempotent(tmp_path, target_fs, local_repo, local_fetcher) -> None:
    packages = [local_repo.add("alpha"), local_repo.add("beta")]
    cache = PackageCache(tmp_path / "cache")

    first_run = _pipeline(target_fs, local_fetcher, cache=cache).install(packages)
    readme = target_fs.path("usr/share/alpha/README")
    before = (readme.stat().st_mtime_ns, readme.stat().st_ino)
    database_before = target_fs.read_file("usr/lib/apk/db/installed")

    second_run = _pipeline(target_fs, local_fetcher, cache=cache).install(packages)

    def identity(pkg):
        return pkg.name, pkg.version, pkg.checksum_string()

    assert [identity(p) for p in second_run] == [identity(p) for p in first_run]
    assert (readme.stat().st_mtime_ns, readme.stat().st_ino) == before
    assert target_fs.read_file("usr/lib/apk/db/installed") == database_before


def test_failure_keeps_earlier_packages_and_skips_later_ones(target_fs, local_repo, local_fetcher) -> None:
    good = local_repo.add("good", files={"usr/bin/good": b"ok"})
    real = local_repo.add("bad", files={"usr/bin/bad": b"bad"})
    bad = RepositoryPackage(
        name=real.name,
        version=real.version,
        checksum=good.checksum,
        arch=real.arch,
        repository=real.repository,
    )
    later = local_repo.add("later", files={"usr/bin/later": b"later"})

    with pytest.raises(InstallError) as excinfo:
        _pipeline(target_fs, local_fetcher).install([good, bad, later])

    assert excinfo.value.package == "bad"
    assert "bad" in str(excinfo.value)
    assert target_fs.exists("usr/bin/good")
    assert not target_fs.exists("usr/bin/bad")
    assert not target_fs.exists("usr/bin/later")
    assert list(_installed_blocks(target_fs)) == ["good"]


def test_sequential_mode_without_thread_pool(target_fs, local_repo, local_fetcher) -> None:
    packages = [local_repo.add(f"pkg{i}") for i in range(3)]

    installed = _pipeline(target_fs, local_fetcher, workers=1).install(packages)

    assert [p.name for p in installed] == ["pkg0", "pkg1", "pkg2"]


def test_cancellation_returns_promptly(
    target_fs, apk_builder, serve_http, mock_repository, http_fetcher
) -> None:
    packages = [serve_http(apk_builder(f"slow{i}")) for i in range(3)]
    mock_repository.gate = threading.Event()
    token = CancellationToken()
    timer = threading.Timer(0.2, token.cancel, args=(RuntimeError("build aborted"),))

    timer.start()
    started = time.monotonic()
    try:
        with pytest.raises(InstallError, match="build aborted"):
            _pipeline(target_fs, http_fetcher).install(packages, token)
        elapsed = time.monotonic() - started
    finally:
        mock_repository.gate.set()
        timer.cancel()

    assert elapsed < 5
    assert InstalledDatabase(target_fs).installed_packages() == []


def test_expand_all_returns_handles_in_order(local_repo, local_fetcher, target_fs) -> None:
    packages = [local_repo.add("one"), local_repo.add("two")]
    pipeline = _pipeline(target_fs, local_fetcher)

    expanded = pipeline.expand_all(packages)

    assert [e.package_info().name for e in expanded] == ["one", "two"]
    assert not target_fs.exists("usr/share/one")
    pipeline.expander.coordinator.close()


class _HeldFetcher:
    """Delays ``held`` packages until a fetch of another package has failed."""

    def __init__(self, inner, held) -> None:
        self.inner = inner
        self.held = set(held)
        self.failed = threading.Event()

    def fetch(self, url, token=None, *, package=None):
        if package in self.held:
            self.failed.wait(5)
            time.sleep(0.1)
        try:
            return self.inner.fetch(url, token, package=package)
        except FetchError:
            self.failed.set()
            raise


def _missing(tmp_path, name="missing") -> RepositoryPackage:
    return RepositoryPackage(
        name=name,
        version="1.0-r0",
        checksum="Q1" + "A" * 27 + "=",
        arch="x86_64",
        repository=str(tmp_path / "nowhere"),
    )


def test_earlier_slow_package_is_applied_after_later_failure(
    tmp_path, target_fs, local_repo, local_fetcher
) -> None:
    slow = local_repo.add("slow", files={"usr/bin/slow": b"slow"})
    fetcher = _HeldFetcher(local_fetcher, ["slow"])

    with pytest.raises(InstallError) as excinfo:
        _pipeline(target_fs, fetcher).install([slow, _missing(tmp_path)])

    assert fetcher.failed.is_set()
    assert excinfo.value.package == "missing"
    assert target_fs.read_file("usr/bin/slow") == b"slow"
    assert [p.name for p in InstalledDatabase(target_fs).installed_packages()] == ["slow"]


def test_cancelled_expansions_are_retried_by_the_next_batch(
    tmp_path, target_fs, local_repo, local_fetcher
) -> None:
    good = local_repo.add("good", files={"usr/bin/good": b"ok"})
    later = local_repo.add("later", files={"usr/bin/later": b"later"})
    pipeline = _pipeline(target_fs, _HeldFetcher(local_fetcher, ["later"]))

    with pytest.raises(InstallError):
        pipeline.install([good, _missing(tmp_path), later])
    assert not target_fs.exists("usr/bin/later")

    installed = pipeline.install([good, later])

    assert [p.name for p in installed] == ["good", "later"]
    assert target_fs.read_file("usr/bin/later") == b"later"
    pipeline.expander.coordinator.close()


def test_lazy_target_keeps_expanded_bodies_after_install(tmp_path, local_repo, local_fetcher) -> None:
    root = tmp_path / "manifest"
    root.mkdir()
    fs = ManifestFS(root)
    init_db(fs, "x86_64", ignore_mknod_errors=True)
    package = local_repo.add("lazy", files={"usr/bin/lazy": b"lazy body"}, symlinks={"usr/bin/l": "lazy"})
    pipeline = InstallPipeline(
        PackageExpander(local_fetcher),
        PackageInstaller(fs, ignore_mknod_errors=True),
        workers=2,
    )

    with fs:
        pipeline.install([package])

        assert fs.readlink("usr/bin/l") == "lazy"
        assert not fs.path("usr/bin/lazy").exists()
        assert fs.read_file("usr/bin/lazy") == b"lazy body"
        assert fs.materialize() == 1

    assert fs.path("usr/bin/lazy").read_bytes() == b"lazy body"
    assert InstalledDatabase(fs).is_installed("lazy")


def test_batches_leave_no_callbacks_on_the_caller_token(target_fs, local_repo, local_fetcher) -> None:
    token = CancellationToken()
    packages = [local_repo.add("one"), local_repo.add("two")]
    pipeline = _pipeline(target_fs, local_fetcher)

    for _ in range(3):
        pipeline.expand_all(packages, token)
        pipeline.install(packages, token)

    assert token.callback_count() == 0
    pipeline.expander.coordinator.close()
