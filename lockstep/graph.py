"""Dependency graph utilities.

Provides cycle detection and topological sorting for determining publish
order in a workspace. Packages must be published in dependency order so
that when package A depends on package B, B is published first.

Packages live in an index-addressed table and edges are (index, index)
pairs, so the graph never holds references between packages.
"""

from __future__ import annotations

import heapq
from collections.abc import Iterable

from .errors import CyclicDependency, WorkspaceError
from .models import DependencyEdge, DependencyKind, Package

_WHITE, _GRAY, _BLACK = 0, 1, 2


class WorkspaceGraph:
    """A validated, acyclic view of the workspace.

    Attributes:
        packages: Packages sorted by name; a package's position is its index.
        index: Map of package name → index.
        edges: (source index, target index, edge) for every internal edge.
        deps: Adjacency: for each index, sorted indices it depends on
              (only edges taking part in ordering).
    """

    def __init__(
        self,
        packages: list[Package],
        edges: list[tuple[int, int, DependencyEdge]],
        deps: list[list[int]],
    ) -> None:
        self.packages = packages
        self.index = {p.name: i for i, p in enumerate(packages)}
        self.edges = edges
        self.deps = deps

    def __len__(self) -> int:
        return len(self.packages)

    def __contains__(self, name: object) -> bool:
        return name in self.index

    def package(self, name: str) -> Package:
        return self.packages[self.index[name]]

    def dependents(self) -> list[list[int]]:
        """Reverse adjacency: for each index, indices that depend on it."""
        reverse: list[list[int]] = [[] for _ in self.packages]
        for src, targets in enumerate(self.deps):
            for dst in targets:
                reverse[dst].append(src)
        return [sorted(r) for r in reverse]

    def dependents_closure(self, names: Iterable[str]) -> set[str]:
        """Return ``names`` plus every package transitively depending on them."""
        reverse = self.dependents()
        seen = {self.index[n] for n in names}
        queue = sorted(seen)
        while queue:
            node = queue.pop(0)
            for dependent in reverse[node]:
                if dependent not in seen:
                    seen.add(dependent)
                    queue.append(dependent)
        return {self.packages[i].name for i in seen}

    def topo_order(self) -> list[str]:
        """Return package names in publish order (dependencies first)."""
        return [self.packages[i].name for i in _kahn(self.deps)]


def build_graph(packages: list[Package], *, include_dev: bool = True) -> WorkspaceGraph:
    """Build and validate the workspace dependency graph.

    Edges whose target is not a workspace package are ignored. Dev edges
    take part in ordering unless ``include_dev`` is False; they are kept in
    ``edges`` either way so their requirements can still be rewritten.

    Raises:
        WorkspaceError: If two packages share a name.
        CyclicDependency: If the graph has a cycle.
    """
    ordered = sorted(packages, key=lambda p: p.name)
    for a, b in zip(ordered, ordered[1:]):
        if a.name == b.name:
            raise WorkspaceError(f"Duplicate package name in workspace: {a.name}")

    index = {p.name: i for i, p in enumerate(ordered)}
    edges: list[tuple[int, int, DependencyEdge]] = []
    adjacency: list[set[int]] = [set() for _ in ordered]

    for i, pkg in enumerate(ordered):
        for edge in pkg.edges:
            # Only edges within the workspace participate
            j = index.get(edge.target)
            if j is None:
                continue
            edges.append((i, j, edge))
            if edge.kind is DependencyKind.DEV and not include_dev:
                continue
            adjacency[i].add(j)

    deps = [sorted(a) for a in adjacency]
    cycle = find_cycle(deps)
    if cycle is not None:
        raise CyclicDependency([ordered[i].name for i in cycle])

    return WorkspaceGraph(ordered, edges, deps)


def find_cycle(deps: list[list[int]]) -> list[int] | None:
    """Find a cycle with an iterative three-colour DFS.

    Roots and neighbours are visited in index order (packages are sorted by
    name), so the same graph always yields the same cycle.

    Returns:
        Indices forming the cycle, starting at the node the back edge
        points to, or None if the graph is acyclic.
    """
    color = [_WHITE] * len(deps)
    for root in range(len(deps)):
        if color[root] != _WHITE:
            continue
        path = [root]
        # Stack of (node, position of next neighbour to visit)
        stack = [(root, 0)]
        color[root] = _GRAY
        while stack:
            node, pos = stack[-1]
            if pos < len(deps[node]):
                stack[-1] = (node, pos + 1)
                nxt = deps[node][pos]
                if color[nxt] == _GRAY:
                    return path[path.index(nxt):]
                if color[nxt] == _WHITE:
                    color[nxt] = _GRAY
                    path.append(nxt)
                    stack.append((nxt, 0))
            else:
                color[node] = _BLACK
                path.pop()
                stack.pop()
    return None


def _kahn(deps: list[list[int]]) -> list[int]:
    """Kahn's algorithm, always taking the smallest ready index.

    Indices follow package names, so ties break alphabetically.
    """
    # Count unresolved dependencies for each package
    remaining = [len(d) for d in deps]
    # Track reverse dependencies (who depends on each package)
    reverse: list[list[int]] = [[] for _ in deps]
    for src, targets in enumerate(deps):
        for dst in targets:
            reverse[dst].append(src)

    ready = [i for i, n in enumerate(remaining) if n == 0]
    heapq.heapify(ready)
    order: list[int] = []
    while ready:
        node = heapq.heappop(ready)
        order.append(node)
        for dependent in reverse[node]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, dependent)

    # find_cycle runs first, so this only trips on a corrupted graph
    if len(order) != len(deps):
        raise RuntimeError("Dependency cycle detected while ordering packages")
    return order
