"""Aggregate roots for the runtime error analysis pipeline.

``DependencyGraph`` is the consistency boundary for a set of
:class:`DependencyNode` and :class:`DependencyEdge` values.  It enforces:

* no duplicate node ids,
* every edge references existing node ids,
* no mutation after :meth:`DependencyGraph.seal`.

A graph is built fresh per analysis run and sealed before analysis, so
analyses can never mutate the snapshot they were handed.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Iterator
from typing import Any

from .values import DependencyEdge, DependencyNode


class DependencyGraph:
    """Directed graph of components; ``a -> b`` means *a* depends on *b*."""

    def __init__(
        self,
        nodes: Iterable[DependencyNode] = (),
        edges: Iterable[DependencyEdge] = (),
    ) -> None:
        self._nodes: dict[str, DependencyNode] = {}
        self._edges: dict[tuple[str, str], DependencyEdge] = {}
        self._out: dict[str, list[str]] = {}
        self._in: dict[str, list[str]] = {}
        self._sealed = False
        for node in nodes:
            self.add_node(node)
        for edge in edges:
            self.add_edge(edge)

    # -- mutation ------------------------------------------------------------

    def add_node(self, node: DependencyNode) -> None:
        """Add *node*.  Raises ``ValueError`` on a duplicate id."""
        self._check_mutable()
        if node.node_id in self._nodes:
            raise ValueError(f"Duplicate node id '{node.node_id}'")
        self._nodes[node.node_id] = node
        self._out[node.node_id] = []
        self._in[node.node_id] = []

    def add_edge(self, edge: DependencyEdge) -> None:
        """Add *edge*.  Raises ``KeyError`` when an endpoint is missing.

        A second edge between the same pair keeps the heavier weight.
        """
        self._check_mutable()
        for endpoint in (edge.source_id, edge.target_id):
            if endpoint not in self._nodes:
                raise KeyError(f"Edge references unknown node '{endpoint}'")
        key = (edge.source_id, edge.target_id)
        existing = self._edges.get(key)
        if existing is not None:
            if edge.weight > existing.weight:
                self._edges[key] = edge
            return
        self._edges[key] = edge
        self._out[edge.source_id].append(edge.target_id)
        self._in[edge.target_id].append(edge.source_id)

    def seal(self) -> DependencyGraph:
        """Freeze the graph; later mutation raises ``RuntimeError``."""
        self._sealed = True
        return self

    @property
    def sealed(self) -> bool:
        return self._sealed

    def _check_mutable(self) -> None:
        if self._sealed:
            raise RuntimeError("DependencyGraph is sealed and cannot be modified")

    # -- queries -------------------------------------------------------------

    @property
    def nodes(self) -> tuple[DependencyNode, ...]:
        return tuple(self._nodes.values())

    @property
    def edges(self) -> tuple[DependencyEdge, ...]:
        return tuple(self._edges.values())

    @property
    def node_ids(self) -> tuple[str, ...]:
        return tuple(self._nodes)

    def get_node(self, node_id: str) -> DependencyNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise KeyError(f"Node '{node_id}' not in graph") from None

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def get_edge(self, source_id: str, target_id: str) -> DependencyEdge | None:
        return self._edges.get((source_id, target_id))

    def find_by_component(self, component_id: str) -> DependencyNode | None:
        for node in self._nodes.values():
            if node.component_id == component_id:
                return node
        return None

    def successors(self, node_id: str) -> tuple[str, ...]:
        return tuple(self._out.get(node_id, ()))

    def predecessors(self, node_id: str) -> tuple[str, ...]:
        return tuple(self._in.get(node_id, ()))

    def out_degree(self, node_id: str) -> int:
        return len(self._out.get(node_id, ()))

    def in_degree(self, node_id: str) -> int:
        return len(self._in.get(node_id, ()))

    @property
    def error_sources(self) -> tuple[DependencyNode, ...]:
        return tuple(n for n in self._nodes.values() if n.is_error_source)

    def reachable_from(
        self,
        node_ids: Iterable[str],
        reverse: bool = False,
        max_depth: int | None = None,
    ) -> dict[str, int]:
        """Breadth-first distances from *node_ids* (inclusive, distance 0).

        With ``reverse=True`` the traversal follows edges backwards, i.e. it
        finds the nodes that depend on the starting set.
        """
        adjacency = self._in if reverse else self._out
        distances: dict[str, int] = {}
        queue: deque[str] = deque()
        for nid in node_ids:
            if nid in self._nodes and nid not in distances:
                distances[nid] = 0
                queue.append(nid)
        while queue:
            current = queue.popleft()
            depth = distances[current]
            if max_depth is not None and depth >= max_depth:
                continue
            for nxt in adjacency.get(current, ()):
                if nxt not in distances:
                    distances[nxt] = depth + 1
                    queue.append(nxt)
        return distances

    def check_integrity(self) -> list[str]:
        """Return a list of invariant violations (empty when consistent)."""
        problems: list[str] = []
        for (src, tgt) in self._edges:
            if src not in self._nodes:
                problems.append(f"edge source '{src}' missing")
            if tgt not in self._nodes:
                problems.append(f"edge target '{tgt}' missing")
        return problems

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __iter__(self) -> Iterator[DependencyNode]:
        return iter(self._nodes.values())

    def __repr__(self) -> str:
        return f"DependencyGraph(nodes={len(self._nodes)}, edges={len(self._edges)})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [
                {
                    "node_id": n.node_id,
                    "component_id": n.component_id,
                    "name": n.name,
                    "is_error_source": n.is_error_source,
                    "health_score": n.health_score,
                    "service_name": n.service_name,
                    "is_critical": n.is_critical,
                    "metadata": dict(n.metadata),
                }
                for n in self._nodes.values()
            ],
            "edges": [
                {
                    "source_id": e.source_id,
                    "target_id": e.target_id,
                    "dependency_type": e.dependency_type.value,
                    "weight": e.weight,
                }
                for e in self._edges.values()
            ],
        }
