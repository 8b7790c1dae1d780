"""Pure helpers for dependency graph inversion and cycle detection."""

from __future__ import annotations

from collections import deque
from typing import (Callable, Dict, FrozenSet, Iterable, List, Mapping,
                    Optional)

from buildgate.models.identity import PackageIdentity

DependencyLookup = Callable[[PackageIdentity], Iterable[PackageIdentity]]


def find_cycle(
    owner: PackageIdentity,
    dependencies: Iterable[PackageIdentity],
    dependencies_of: DependencyLookup,
) -> Optional[List[PackageIdentity]]:
    """Return the shortest path ``owner -> ... -> owner`` if one would exist.

    ``dependencies`` is the candidate edge set for ``owner``; every other
    package's edges come from ``dependencies_of``. ``None`` means the write
    keeps the graph acyclic.
    """
    parents: Dict[PackageIdentity, PackageIdentity] = {}
    queue: deque[PackageIdentity] = deque()
    for dependency in sorted(set(dependencies)):
        if dependency == owner:
            return [owner, owner]
        if dependency not in parents:
            parents[dependency] = owner
            queue.append(dependency)

    while queue:
        current = queue.popleft()
        for nxt in sorted(set(dependencies_of(current))):
            if nxt == owner:
                return _unwind(owner, current, parents)
            if nxt in parents:
                continue
            parents[nxt] = current
            queue.append(nxt)
    return None


def _unwind(
    owner: PackageIdentity,
    last: PackageIdentity,
    parents: Mapping[PackageIdentity, PackageIdentity],
) -> List[PackageIdentity]:
    path = [last]
    node = last
    while parents[node] != owner:
        node = parents[node]
        path.append(node)
    path.reverse()
    return [owner, *path, owner]


def invert(
    edges: Mapping[PackageIdentity, FrozenSet[PackageIdentity]],
) -> Dict[PackageIdentity, FrozenSet[PackageIdentity]]:
    """Map every dependency to the set of packages consuming it."""
    consumers: Dict[PackageIdentity, set[PackageIdentity]] = {}
    for owner, dependencies in edges.items():
        for dependency in dependencies:
            consumers.setdefault(dependency, set()).add(owner)
    return {key: frozenset(value) for key, value in consumers.items()}
