"""Package dependency graph construction and ordering.

Packages live in an arena (a tuple indexed by position) and edges are
``(dependency, dependent)`` index pairs; packages never hold references
to each other.
"""

from __future__ import annotations

import heapq
import re
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from qpkg.errors import (
    DependencyCycleError,
    DuplicatePackageError,
    GraphError,
    UnknownDependencyError,
)
from qpkg.source import SourceSpec

NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")
_ENV_UNSAFE = re.compile(r"[^A-Z0-9_]")


@dataclass(frozen=True, slots=True)
class Package:
    name: str
    source: SourceSpec
    dependencies: frozenset[str] = frozenset()
    build_steps: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    subdir: str = ""
    patches: tuple[Path, ...] = ()


@dataclass(frozen=True, slots=True)
class PackageGraph:
    packages: tuple[Package, ...]
    index: Mapping[str, int]
    edges: tuple[tuple[int, int], ...]
    order: tuple[str, ...]

    def __len__(self) -> int:
        return len(self.packages)

    def __iter__(self) -> Iterator[Package]:
        """Iterate packages in build order."""
        for name in self.order:
            yield self.package(name)

    def __contains__(self, name: object) -> bool:
        return name in self.index

    def package(self, name: str) -> Package:
        try:
            return self.packages[self.index[name]]
        except KeyError:
            raise GraphError(
                f"Package `{name}` is not part of the graph.",
                context={"package": name},
            ) from None

    def dependencies_of(self, name: str) -> tuple[str, ...]:
        return tuple(sorted(self.package(name).dependencies))

    def dependents_of(self, name: str) -> tuple[str, ...]:
        target = self.index[name]
        return tuple(
            sorted(self.packages[dependent].name for dep, dependent in self.edges if dep == target)
        )

    def transitive_dependents(self, name: str) -> frozenset[str]:
        seen: set[str] = set()
        stack = list(self.dependents_of(name))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.dependents_of(current))
        return frozenset(seen)

    def subgraph(self, targets: Iterable[str]) -> PackageGraph:
        """Restrict the graph to ``targets`` and everything they depend on."""
        wanted: set[str] = set()
        stack = list(targets)
        for name in stack:
            self.package(name)
        while stack:
            current = stack.pop()
            if current in wanted:
                continue
            wanted.add(current)
            stack.extend(self.package(current).dependencies)
        return build_graph([pkg for pkg in self.packages if pkg.name in wanted])


def dependency_env_name(name: str) -> str:
    """Environment variable holding the artifact location of dependency ``name``."""
    return "QPKG_DEP_" + _ENV_UNSAFE.sub("_", name.upper())


def build_graph(packages: Sequence[Package]) -> PackageGraph:
    """Validate declared packages and compute a deterministic build order.

    Raises :class:`DuplicatePackageError`, :class:`UnknownDependencyError`
    or :class:`DependencyCycleError`, and :class:`GraphError` when two
    dependencies of one package map to the same ``QPKG_DEP_*`` variable.
    """
    index: dict[str, int] = {}
    for position, package in enumerate(packages):
        if not NAME_PATTERN.fullmatch(package.name):
            raise GraphError(
                f"Invalid package name `{package.name}`.",
                hint="Names may contain letters, digits, `.`, `_`, `+` and `-`.",
                context={"package": package.name},
            )
        if package.name in index:
            raise DuplicatePackageError(package.name)
        index[package.name] = position

    for package in packages:
        env_names: dict[str, str] = {}
        for dependency in sorted(package.dependencies):
            if dependency not in index:
                raise UnknownDependencyError(dependency, dependent=package.name)
            env_name = dependency_env_name(dependency)
            if env_name in env_names:
                raise GraphError(
                    f"Dependencies `{env_names[env_name]}` and `{dependency}` share the variable `{env_name}`.",
                    hint="Rename one of the packages so their names differ in more than punctuation or case.",
                    context={"package": package.name, "variable": env_name},
                )
            env_names[env_name] = dependency

    _check_acyclic(packages, index)

    edges = tuple(
        sorted(
            (index[dependency], index[package.name])
            for package in packages
            for dependency in package.dependencies
        )
    )
    return PackageGraph(
        packages=tuple(packages),
        index=index,
        edges=edges,
        order=_topological_order(packages),
    )


def _check_acyclic(packages: Sequence[Package], index: Mapping[str, int]) -> None:
    done: set[str] = set()
    for root in sorted(index):
        if root in done:
            continue
        # Depth-first walk; `path` holds the in-progress chain from `root`.
        path: list[str] = [root]
        on_path: set[str] = {root}
        pending: list[Iterator[str]] = [iter(sorted(packages[index[root]].dependencies))]
        while pending:
            dependency = next(pending[-1], None)
            if dependency is None:
                pending.pop()
                finished = path.pop()
                on_path.discard(finished)
                done.add(finished)
                continue
            if dependency in on_path:
                start = path.index(dependency)
                raise DependencyCycleError([*path[start:], dependency])
            if dependency in done:
                continue
            path.append(dependency)
            on_path.add(dependency)
            pending.append(iter(sorted(packages[index[dependency]].dependencies)))


def _topological_order(packages: Sequence[Package]) -> tuple[str, ...]:
    remaining = {package.name: len(package.dependencies) for package in packages}
    dependents: dict[str, list[str]] = {package.name: [] for package in packages}
    for package in packages:
        for dependency in package.dependencies:
            dependents[dependency].append(package.name)

    ready = [name for name, count in remaining.items() if count == 0]
    heapq.heapify(ready)
    order: list[str] = []
    while ready:
        name = heapq.heappop(ready)
        order.append(name)
        for dependent in dependents[name]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, dependent)
    return tuple(order)


__all__ = ["Package", "PackageGraph", "build_graph", "dependency_env_name"]
