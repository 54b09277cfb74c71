"""Tests for version ordering, dependency atoms, and the index resolver."""

import pytest

from ApkForge.PackageInstall.errors import ResolutionError
from ApkForge.PackageInstall.index import NamedIndex
from ApkForge.PackageInstall.packages import RepositoryPackage
from ApkForge.PackageInstall.resolver import IndexResolver, compare_versions, parse_constraint


def _pkg(name, version="1.0-r0", *, depends=(), provides=(), priority=0, arch="x86_64") -> RepositoryPackage:
    return RepositoryPackage(
        name=name,
        version=version,
        checksum="Q1" + "A" * 27 + "=",
        arch=arch,
        repository="https://repo.test/main",
        dependencies=tuple(depends),
        provides=tuple(provides),
        provider_priority=priority,
    )


def _index(*packages, arch="x86_64") -> NamedIndex:
    return NamedIndex(name="https://repo.test/main", arch=arch, packages=list(packages))


@pytest.mark.parametrize(
    "left,right,expected",
    [
        ("1.0", "1.0", 0),
        ("1.0-r1", "1.0-r0", 1),
        ("1.2", "1.10", -1),
        ("1.0.1", "1.0", 1),
        ("1.0a", "1.0", 1),
        ("1.0_rc1", "1.0", -1),
        ("1.0_alpha2", "1.0_beta1", -1),
        ("1.0_p1", "1.0", 1),
        ("2.0_git20240101", "2.0", 1),
    ],
)
def test_compare_versions(left: str, right: str, expected: int) -> None:
    assert compare_versions(left, right) == expected
    assert compare_versions(right, left) == -expected


def test_parse_constraint_forms() -> None:
    assert parse_constraint("busybox").op == ""
    pinned = parse_constraint("musl>=1.2.4")
    assert (pinned.name, pinned.op, pinned.version) == ("musl", ">=", "1.2.4")
    assert pinned.matches("1.2.5-r0")
    assert not pinned.matches("1.2.3")
    fuzzy = parse_constraint("openssl~3.1")
    assert fuzzy.matches("3.1.4-r0") and not fuzzy.matches("3.2.0")
    conflict = parse_constraint("!busybox-extras")
    assert conflict.conflict and str(conflict) == "!busybox-extras"


def test_dependencies_come_first() -> None:
    index = _index(
        _pkg("app", depends=["libfoo", "musl"]),
        _pkg("libfoo", depends=["musl"]),
        _pkg("musl"),
    )

    packages, conflicts = IndexResolver().resolve(["app"], [index])

    assert [p.name for p in packages] == ["musl", "libfoo", "app"]
    assert conflicts == []


def test_highest_matching_version_wins() -> None:
    index = _index(_pkg("curl", "8.4.0-r0"), _pkg("curl", "8.5.0-r0"), _pkg("curl", "8.10.1-r0"))

    packages, _ = IndexResolver().resolve(["curl"], [index])
    assert [p.version for p in packages] == ["8.10.1-r0"]

    packages, _ = IndexResolver().resolve(["curl<8.10"], [index])
    assert [p.version for p in packages] == ["8.5.0-r0"]


def test_virtual_names_use_provider_priority() -> None:
    index = _index(
        _pkg("app", depends=["cmd:sh"]),
        _pkg("dash", provides=["cmd:sh"], priority=10),
        _pkg("busybox", provides=["cmd:sh"], priority=100),
    )

    packages, _ = IndexResolver().resolve(["app"], [index])

    assert [p.name for p in packages] == ["busybox", "app"]


def test_already_selected_provider_satisfies_later_atoms() -> None:
    index = _index(
        _pkg("busybox", provides=["cmd:sh=1.36"]),
        _pkg("dash", provides=["cmd:sh"], priority=200),
        _pkg("app", depends=["cmd:sh"]),
    )

    packages, _ = IndexResolver().resolve(["busybox", "app"], [index])

    assert [p.name for p in packages] == ["busybox", "app"]


def test_conflict_atoms_are_reported() -> None:
    index = _index(_pkg("app", depends=["!legacy"]), _pkg("legacy"))

    packages, conflicts = IndexResolver().resolve(["app"], [index])

    assert [p.name for p in packages] == ["app"]
    assert conflicts == ["legacy"]


def test_dependency_cycles_terminate() -> None:
    index = _index(_pkg("a", depends=["b"]), _pkg("b", depends=["a"]))

    packages, _ = IndexResolver().resolve(["a"], [index])

    assert sorted(p.name for p in packages) == ["a", "b"]


def test_unknown_package_is_a_resolution_error() -> None:
    with pytest.raises(ResolutionError, match="nothere"):
        IndexResolver().resolve(["nothere"], [_index(_pkg("busybox"))])


def test_sibling_architectures_disqualify_missing_versions() -> None:
    index = _index(_pkg("tool", "2.0-r0"), _pkg("tool", "1.0-r0"))
    sibling = _index(_pkg("tool", "1.0-r0", arch="aarch64"), arch="aarch64")

    packages, _ = IndexResolver().resolve(["tool"], [index], {"aarch64": [sibling]})

    assert [p.version for p in packages] == ["1.0-r0"]


def test_package_missing_on_a_sibling_is_an_error() -> None:
    index = _index(_pkg("x86only"))
    sibling = _index(_pkg("busybox", arch="aarch64"), arch="aarch64")

    with pytest.raises(ResolutionError, match="every requested architecture"):
        IndexResolver().resolve(["x86only"], [index], {"aarch64": [sibling]})
