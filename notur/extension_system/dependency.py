"""Extension load-order resolution.

The dependency graph maps an extension id to the ids it must load after.
Only enabled extensions are keys of the graph; a dependency that is not a
key is treated as external and does not block resolution. Use
:meth:`DependencyResolver.find_missing` before :meth:`DependencyResolver.resolve`
to decide what to do about those.
"""

from __future__ import annotations

import enum
from typing import Dict, Iterable, Iterator, List, Mapping

import structlog

from notur.extension_system.manifest import ExtensionManifest
from notur.utils.exceptions import CircularDependencyError, MissingDependencyError

logger = structlog.get_logger(__name__)

DependencyGraph = Mapping[str, Iterable[str]]


class _Mark(enum.Enum):
    IN_PROGRESS = "in_progress"
    DONE = "done"


def build_graph(manifests: Iterable[ExtensionManifest]) -> Dict[str, List[str]]:
    """Build a dependency graph from manifests, keeping their order."""
    graph: Dict[str, List[str]] = {}
    for manifest in manifests:
        graph[manifest.id] = manifest.dependency_ids
    return graph


class DependencyResolver:
    """Computes a safe load order over a declared dependency graph."""

    def resolve(self, graph: DependencyGraph) -> List[str]:
        """Resolve the graph, returning the nodes in dependency order.

        Every dependency that is itself a key appears before its dependent.
        Nodes without ordering constraints keep the graph's key order.

        Args:
            graph: Extension ids mapped to their dependency ids.

        Returns:
            All keys of ``graph`` in load order.

        Raises:
            CircularDependencyError: If a node is reached again while still
                being visited. No partial order is returned.
        """
        marks: Dict[str, _Mark] = {}
        resolved: List[str] = []

        for node in graph:
            if node not in marks:
                self._visit(node, graph, marks, resolved)

        return resolved

    def _visit(
            self,
            start: str,
            graph: DependencyGraph,
            marks: Dict[str, _Mark],
            resolved: List[str]
    ) -> None:
        # Depth-first with an explicit stack; long chains must not hit the
        # recursion limit. ``path`` and ``pending`` grow and shrink together.
        marks[start] = _Mark.IN_PROGRESS
        path: List[str] = [start]
        pending: List[Iterator[str]] = [iter(graph[start])]

        while pending:
            for dependency in pending[-1]:
                if dependency not in graph:
                    continue

                mark = marks.get(dependency)
                if mark is _Mark.IN_PROGRESS:
                    chain = path[path.index(dependency):] + [dependency]
                    raise CircularDependencyError(dependency, chain)
                if mark is None:
                    marks[dependency] = _Mark.IN_PROGRESS
                    path.append(dependency)
                    pending.append(iter(graph[dependency]))
                    break
            else:
                pending.pop()
                node = path.pop()
                marks[node] = _Mark.DONE
                resolved.append(node)

    def find_missing(self, graph: DependencyGraph) -> Dict[str, List[str]]:
        """Report declared dependencies that are not keys of the graph.

        Returns:
            Extension ids mapped to their unresolved dependency ids. Nodes with
            nothing missing are omitted.
        """
        missing: Dict[str, List[str]] = {}
        for extension_id, dependencies in graph.items():
            for dependency in dependencies:
                if dependency not in graph:
                    missing.setdefault(extension_id, []).append(dependency)
        return missing

    def require_complete(self, graph: DependencyGraph) -> None:
        """Raise if any declared dependency is absent from the graph.

        Raises:
            MissingDependencyError: Listing every missing dependency.
        """
        missing = self.find_missing(graph)
        if missing:
            raise MissingDependencyError(missing)

    def resolve_manifests(self, manifests: Iterable[ExtensionManifest]) -> List[str]:
        """Build the graph for ``manifests``, warn about gaps and resolve it."""
        graph = build_graph(manifests)

        for extension_id, dependencies in self.find_missing(graph).items():
            logger.warning(
                "dependencies_missing",
                extension_id=extension_id,
                missing=dependencies,
            )

        try:
            order = self.resolve(graph)
        except CircularDependencyError as e:
            logger.error("dependency_cycle", node=e.node, chain=e.chain)
            raise

        logger.debug("load_order_resolved", order=order)
        return order
