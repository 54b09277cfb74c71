# === NAVMAP v1 ===
# {
#   "module": "ApkForge.PackageInstall.resolver",
#   "purpose": "Resolver protocol and a deterministic index-backed resolver",
#   "sections": [
#     {"id": "versions", "name": "Version Comparison", "anchor": "VER", "kind": "helpers"},
#     {"id": "constraints", "name": "Dependency Atoms", "anchor": "DEP", "kind": "helpers"},
#     {"id": "resolver", "name": "Resolver", "anchor": "class-resolver", "kind": "class"},
#     {"id": "indexresolver", "name": "IndexResolver", "anchor": "class-indexresolver", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Turn a world request into an ordered package list.

The install engine only relies on the :class:`Resolver` protocol.
:class:`IndexResolver` is the built-in implementation: it picks the highest
matching version of every request, follows ``D:`` dependencies depth first so
dependencies come before their dependents, reports ``!name`` atoms as
conflicts, and drops candidates that are missing from any sibling
architecture's indexes.  It does not backtrack.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Set, Tuple

from .errors import ResolutionError
from .index import NamedIndex
from .packages import RepositoryPackage

logger = logging.getLogger(__name__)

__all__ = [
    "Resolver",
    "IndexResolver",
    "Constraint",
    "parse_constraint",
    "compare_versions",
]

_VERSION_RE = re.compile(
    r"^(?P<numbers>\d+(?:\.\d+)*)(?P<letter>[a-z]?)"
    r"(?P<suffixes>(?:_(?:alpha|beta|pre|rc|cvs|svn|git|hg|p)\d*)*)"
    r"(?:~(?P<hash>[0-9a-f]+))?(?:-r(?P<release>\d+))?$"
)
_SUFFIX_RE = re.compile(r"_(alpha|beta|pre|rc|cvs|svn|git|hg|p)(\d*)")
_SUFFIX_ORDER = {"alpha": -4, "beta": -3, "pre": -2, "rc": -1, "cvs": 1, "svn": 2, "git": 3, "hg": 4, "p": 5}
_CONSTRAINT_RE = re.compile(r"^(?P<name>[^<>=~]+)(?:(?P<op>>=|<=|=|<|>|~)(?P<version>.+))?$")


def _version_key(version: str) -> Optional[Tuple]:
    match = _VERSION_RE.match(version)
    if match is None:
        return None
    numbers = tuple(int(part) for part in match.group("numbers").split("."))
    letter = match.group("letter") or ""
    suffixes = tuple(
        (_SUFFIX_ORDER[name], int(number or 0)) for name, number in _SUFFIX_RE.findall(match.group("suffixes"))
    )
    release = int(match.group("release") or 0)
    return numbers, letter, suffixes, release


def _cmp(left, right) -> int:
    return (left > right) - (left < right)


def compare_versions(left: str, right: str) -> int:
    """Compare two apk version strings; return -1, 0, or 1."""

    if left == right:
        return 0
    lkey = _version_key(left)
    rkey = _version_key(right)
    if lkey is None or rkey is None:
        return _cmp(left, right)
    lnums, lletter, lsuf, lrel = lkey
    rnums, rletter, rsuf, rrel = rkey
    for a, b in zip(lnums, rnums):
        if a != b:
            return _cmp(a, b)
    if len(lnums) != len(rnums):
        return _cmp(len(lnums), len(rnums))
    if lletter != rletter:
        return _cmp(lletter, rletter)
    for a, b in zip(lsuf, rsuf):
        if a != b:
            return _cmp(a, b)
    if len(lsuf) != len(rsuf):
        # a missing suffix sorts after pre-release suffixes and before post-release ones
        longer = lsuf if len(lsuf) > len(rsuf) else rsuf
        extra = longer[min(len(lsuf), len(rsuf))][0]
        sign = -1 if extra < 0 else 1
        return sign if len(lsuf) > len(rsuf) else -sign
    return _cmp(lrel, rrel)


@dataclass(frozen=True)
class Constraint:
    """One dependency atom: ``name``, ``name<op>version``, or ``!name``."""

    name: str
    op: str = ""
    version: str = ""
    conflict: bool = False

    def matches(self, version: str) -> bool:
        if not self.op:
            return True
        if self.op == "~":
            return version == self.version or version.startswith(self.version)
        result = compare_versions(version, self.version)
        return {
            "=": result == 0,
            ">=": result >= 0,
            "<=": result <= 0,
            ">": result > 0,
            "<": result < 0,
        }[self.op]

    def __str__(self) -> str:
        prefix = "!" if self.conflict else ""
        return f"{prefix}{self.name}{self.op}{self.version}"


def parse_constraint(atom: str) -> Constraint:
    """Parse a world or ``D:`` atom."""

    text = atom.strip()
    conflict = text.startswith("!")
    if conflict:
        text = text[1:]
    match = _CONSTRAINT_RE.match(text)
    if match is None:
        raise ResolutionError(f"invalid dependency {atom!r}")
    return Constraint(
        name=match.group("name"),
        op=match.group("op") or "",
        version=match.group("version") or "",
        conflict=conflict,
    )


class Resolver(Protocol):
    """Dependency resolver consumed by the world orchestrator."""

    def resolve(
        self,
        world: Sequence[str],
        indexes: Sequence[NamedIndex],
        siblings: Optional[Mapping[str, Sequence[NamedIndex]]] = None,
    ) -> Tuple[List[RepositoryPackage], List[str]]:
        """Return ``(ordered packages, conflicting names)`` for ``world``."""


def _provided_name(entry: str) -> Tuple[str, str]:
    name, _, version = entry.partition("=")
    return name, version


class IndexResolver:
    """Greedy highest-version resolver over repository indexes."""

    def resolve(
        self,
        world: Sequence[str],
        indexes: Sequence[NamedIndex],
        siblings: Optional[Mapping[str, Sequence[NamedIndex]]] = None,
    ) -> Tuple[List[RepositoryPackage], List[str]]:
        """Resolve ``world`` against ``indexes``.

        Raises:
            ResolutionError: If an atom is malformed or nothing satisfies it.
        """

        by_name: Dict[str, List[RepositoryPackage]] = {}
        providers: Dict[str, List[Tuple[RepositoryPackage, str]]] = {}
        for index in indexes:
            for package in index.packages:
                by_name.setdefault(package.name, []).append(package)
                for entry in package.provides:
                    name, version = _provided_name(entry)
                    providers.setdefault(name, []).append((package, version))

        available = self._sibling_availability(siblings or {})
        ordered: List[RepositoryPackage] = []
        selected: Dict[str, RepositoryPackage] = {}
        visiting: Set[str] = set()
        conflicts: List[str] = []

        def satisfied(constraint: Constraint) -> Optional[RepositoryPackage]:
            chosen = selected.get(constraint.name)
            if chosen is not None and constraint.matches(chosen.version):
                return chosen
            for package in selected.values():
                for entry in package.provides:
                    name, version = _provided_name(entry)
                    if name == constraint.name and constraint.matches(version or package.version):
                        return package
            return None

        def choose(constraint: Constraint) -> RepositoryPackage:
            candidates = [p for p in by_name.get(constraint.name, []) if constraint.matches(p.version)]
            if not candidates:
                candidates = [
                    p for p, version in providers.get(constraint.name, []) if constraint.matches(version or p.version)
                ]
            eligible = [p for p in candidates if self._available(p, available)]
            if not eligible:
                if candidates:
                    raise ResolutionError(
                        f"{constraint} is not available for every requested architecture"
                    )
                raise ResolutionError(f"could not find package that provides {constraint}")

            def order(left: RepositoryPackage, right: RepositoryPackage) -> int:
                exact = _cmp(left.name == constraint.name, right.name == constraint.name)
                if exact:
                    return exact
                priority = _cmp(left.provider_priority, right.provider_priority)
                if priority:
                    return priority
                return compare_versions(left.version, right.version)

            return max(eligible, key=cmp_to_key(order))

        def visit(atom: str) -> None:
            constraint = parse_constraint(atom)
            if constraint.conflict:
                if constraint.name not in conflicts:
                    conflicts.append(constraint.name)
                return
            if satisfied(constraint) is not None:
                return
            package = choose(constraint)
            if package.name in visiting:
                return
            selected[package.name] = package
            visiting.add(package.name)
            for dependency in package.dependencies:
                visit(dependency)
            visiting.discard(package.name)
            ordered.append(package)

        for atom in world:
            visit(atom)

        logger.debug(
            "resolved %d packages (%d conflicts)",
            len(ordered),
            len(conflicts),
            extra={"stage": "resolve"},
        )
        return ordered, conflicts

    @staticmethod
    def _sibling_availability(siblings: Mapping[str, Sequence[NamedIndex]]) -> List[Set[Tuple[str, str]]]:
        sets: List[Set[Tuple[str, str]]] = []
        for _arch, arch_indexes in sorted(siblings.items()):
            names: Set[Tuple[str, str]] = set()
            for index in arch_indexes:
                for package in index.packages:
                    names.add((package.name, package.version))
            sets.append(names)
        return sets

    @staticmethod
    def _available(package: RepositoryPackage, available: List[Set[Tuple[str, str]]]) -> bool:
        key = (package.name, package.version)
        return all(key in names for names in available)
