"""Dependency graph with cycle detection and topological ordering."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from core.errors import CircularDependencyError


@dataclass
class DependencyGraph:
    """Directed graph where an edge ``(node, dep)`` means node depends on dep.

    Dependencies naming ids that are not nodes are kept on the edge list but
    skipped during traversal; callers decide whether those are errors.
    """

    dependencies: dict[str, list[str]] = field(default_factory=dict)
    dependents: dict[str, list[str]] = field(default_factory=dict)
    _edges: set[tuple[str, str]] = field(default_factory=set, repr=False)

    @classmethod
    def from_mapping(cls, dependencies: Mapping[str, Iterable[str]]) -> DependencyGraph:
        graph = cls()
        for node, deps in dependencies.items():
            graph.add_node(node)
            for dep in deps:
                graph.add_edge(node, dep)
        return graph

    @property
    def nodes(self) -> list[str]:
        return list(self.dependencies)

    @property
    def edges(self) -> list[tuple[str, str]]:
        return [(node, dep) for node, deps in self.dependencies.items() for dep in deps]

    def add_node(self, node: str) -> None:
        self.dependencies.setdefault(node, [])

    def add_edge(self, node: str, dependency: str) -> None:
        self.add_node(node)
        if (node, dependency) in self._edges:
            return
        self._edges.add((node, dependency))
        self.dependencies[node].append(dependency)
        self.dependents.setdefault(dependency, []).append(node)

    def dependencies_of(self, node: str) -> list[str]:
        return list(self.dependencies.get(node, []))

    def dependents_of(self, node: str) -> list[str]:
        return list(self.dependents.get(node, []))

    def missing_dependencies(self) -> dict[str, list[str]]:
        """Map each node to its dependency ids that are not nodes themselves."""
        missing: dict[str, list[str]] = {}
        for node, deps in self.dependencies.items():
            unknown = [dep for dep in deps if dep not in self.dependencies]
            if unknown:
                missing[node] = unknown
        return missing

    def topological_order(self) -> list[str]:
        """Return nodes with every dependency before its dependents.

        Depth-first over an explicit stack with a "visiting" marker; reaching
        a node that is still being visited raises ``CircularDependencyError``
        with the cycle path.
        """
        order: list[str] = []
        visited: set[str] = set()
        for start in self.dependencies:
            if start in visited:
                continue
            path = [start]
            on_path = {start}
            stack = [iter(self.dependencies[start])]
            while stack:
                dep = next(stack[-1], None)
                if dep is None:
                    stack.pop()
                    node = path.pop()
                    on_path.discard(node)
                    visited.add(node)
                    order.append(node)
                    continue
                if dep in on_path:
                    raise CircularDependencyError([*path[path.index(dep):], dep])
                if dep in visited or dep not in self.dependencies:
                    continue
                path.append(dep)
                on_path.add(dep)
                stack.append(iter(self.dependencies[dep]))
        return order

    def find_cycle(self) -> list[str] | None:
        try:
            self.topological_order()
        except CircularDependencyError as exc:
            return exc.cycle
        return None
