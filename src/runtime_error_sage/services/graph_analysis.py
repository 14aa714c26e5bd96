"""Impact, root-cause and structural analysis of dependency graphs.

:class:`GraphAnalyzer` answers two kinds of questions about the same sealed
:class:`DependencyGraph`:

* error-level -- how far does *this* error reach (:meth:`analyze_impact`),
  which recent errors look related (:meth:`find_related_errors`) and which
  nodes are the likeliest root cause (:meth:`find_potential_sources`);
* graph-level -- cycles, degree centrality, critical paths, high-risk nodes
  and summary statistics (:meth:`analyze_graph`).

Every method is pure: the input graph is never mutated.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Mapping

import numpy as np

from runtime_error_sage.domain.aggregates import DependencyGraph
from runtime_error_sage.domain.enums import ImpactScope, ImpactSeverity
from runtime_error_sage.domain.values import (
    DependencyNode,
    ErrorContext,
    GraphAnalysis,
    GraphMetrics,
    ImpactAnalysisResult,
    ImpactResult,
    PotentialErrorSource,
    RelatedError,
)
from runtime_error_sage.infrastructure.config import GraphConfig
from runtime_error_sage.measurement.health import ErrorObservation, MetricsCollector

logger = logging.getLogger(__name__)

_MAX_CYCLES = 100
_MAX_PATHS = 5
_MAX_PATH_EXPANSIONS = 10_000

_RELATIONSHIP_WEIGHT = {
    "same_component": 0.9,
    "dependency": 0.8,
    "dependent": 0.7,
    "sibling": 0.6,
}


def severity_for(score: float) -> ImpactSeverity:
    """Map a score in [0, 1] onto an :class:`ImpactSeverity`."""
    if score >= 0.75:
        return ImpactSeverity.CRITICAL
    if score >= 0.5:
        return ImpactSeverity.HIGH
    if score >= 0.25:
        return ImpactSeverity.MEDIUM
    return ImpactSeverity.LOW


class GraphAnalyzer:
    """Stateless analyses over a :class:`DependencyGraph`.

    Parameters
    ----------
    config:
        Correlation window, thresholds and depth limit.
    metrics:
        Live health source.  Each node's own ``health_score`` is used when
        the collector has nothing for it.
    """

    def __init__(
        self,
        config: GraphConfig | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._config = config or GraphConfig()
        self._config.validate()
        self._metrics = metrics

    # ------------------------------------------------------------------ #
    #  Error-level analysis                                                #
    # ------------------------------------------------------------------ #

    def source_nodes(self, context: ErrorContext, graph: DependencyGraph) -> tuple[str, ...]:
        """Error-source node ids, falling back to the context's component."""
        sources = tuple(n.node_id for n in graph.error_sources)
        if sources:
            return sources
        node = graph.find_by_component(context.source_component)
        return (node.node_id,) if node is not None else ()

    def analyze_impact(
        self,
        context: ErrorContext,
        graph: DependencyGraph,
        history: Iterable[ErrorObservation] | None = None,
    ) -> ImpactAnalysisResult:
        """Breadth-first impact of the error along dependency edges.

        One result per reachable node (sources included at distance 0),
        most severe first; ties are broken by wider scope, then distance.
        """
        sources = self.source_nodes(context, graph)
        if not sources:
            logger.warning(
                "GraphAnalyzer: no source node for %s in graph; empty impact",
                context.correlation_id,
            )
            return ImpactAnalysisResult(correlation_id=context.correlation_id, source_node_ids=())

        distance: dict[str, int] = {}
        weight: dict[str, float] = {}
        crossed: dict[str, bool] = {}
        queue: deque[str] = deque()
        for sid in sources:
            distance[sid] = 0
            weight[sid] = 1.0
            crossed[sid] = False
            queue.append(sid)
        while queue:
            current = queue.popleft()
            for nxt in graph.successors(current):
                if nxt in distance:
                    continue
                edge = graph.get_edge(current, nxt)
                distance[nxt] = distance[current] + 1
                weight[nxt] = edge.weight if edge is not None else self._config.default_weight
                crossed[nxt] = crossed[current] or self._crosses_boundary(
                    context, graph.get_node(current), graph.get_node(nxt)
                )
                queue.append(nxt)

        floor = context.severity.score
        impacts: list[ImpactResult] = []
        for node_id, dist in distance.items():
            node = graph.get_node(node_id)
            score = (1.0 - self.health_of(node)) * weight[node_id]
            if dist == 0:
                score = max(score, floor)
            impacts.append(ImpactResult(
                node_id=node_id,
                severity=severity_for(score),
                scope=self._scope(dist, crossed[node_id]),
                distance=dist,
                score=round(float(score), 6),
            ))
        impacts.sort(key=lambda r: (-r.severity.rank, -r.scope.rank, r.distance, r.node_id))

        related = self.find_related_errors(context, graph, history)
        return ImpactAnalysisResult(
            correlation_id=context.correlation_id,
            source_node_ids=sources,
            impacts=tuple(impacts),
            related_errors=related,
        )

    def find_related_errors(
        self,
        context: ErrorContext,
        graph: DependencyGraph,
        history: Iterable[ErrorObservation] | None = None,
    ) -> tuple[RelatedError, ...]:
        """Recent errors on nodes near the source.

        A prior error qualifies when it sits on the source itself, one of its
        dependencies, dependents or siblings, and shares a tag or the error
        type with the current error or falls inside the correlation window.
        Results are ordered by recency, then confidence.
        """
        sources = self.source_nodes(context, graph)
        if not sources:
            return ()
        if history is None:
            history = self._metrics.recent_errors() if self._metrics is not None else ()

        relationship = self._neighbourhood(graph, sources)
        by_component = {graph.get_node(nid).component_id: rel for nid, rel in relationship.items()}
        window = self._config.correlation_window
        current_tags = set(context.tags)

        related: list[RelatedError] = []
        for obs in history:
            if obs.correlation_id and obs.correlation_id == context.correlation_id:
                continue
            rel = by_component.get(obs.component_id)
            if rel is None:
                continue
            type_match = obs.error_type == context.error_type
            tag_match = bool(current_tags & set(obs.tags))
            dt = abs(obs.timestamp - context.timestamp)
            in_window = window > 0 and dt <= window
            if not (type_match or tag_match or in_window):
                continue
            proximity = max(0.0, 1.0 - dt / window) if window > 0 else 0.0
            score = 0.4 * type_match + 0.3 * tag_match + 0.3 * proximity
            related.append(RelatedError(
                node_id=graph.find_by_component(obs.component_id).node_id,  # type: ignore[union-attr]
                error_type=obs.error_type,
                relationship=rel,
                timestamp=obs.timestamp,
                confidence=round(min(1.0, _RELATIONSHIP_WEIGHT[rel] * score), 6),
                correlation_id=obs.correlation_id,
            ))
        related.sort(key=lambda r: (-r.timestamp, -r.confidence))
        return tuple(related)

    def find_potential_sources(
        self,
        context: ErrorContext,
        graph: DependencyGraph,
        probabilities: Mapping[str, float] | None = None,
    ) -> tuple[PotentialErrorSource, ...]:
        """Root-cause candidates among the source and what it depends on.

        Confidence blends each candidate's risk (error probability when
        given, otherwise ``1 - health``) with its proximity to the failure.
        ``threatened_nodes`` lists the nodes that depend on the candidate.
        """
        sources = self.source_nodes(context, graph)
        if not sources:
            return ()
        reach = graph.reachable_from(sources, max_depth=self._config.max_depth)
        source_services = {graph.get_node(s).service_name for s in sources}
        recent: dict[str, int] = {}
        if self._metrics is not None:
            for obs in self._metrics.recent_errors():
                recent[obs.component_id] = recent.get(obs.component_id, 0) + 1

        candidates: list[PotentialErrorSource] = []
        for node_id, dist in reach.items():
            node = graph.get_node(node_id)
            health = self.health_of(node)
            risk = (probabilities or {}).get(node_id, 1.0 - health)
            proximity = 1.0 / (1.0 + dist)
            confidence = float(np.clip(0.7 * risk + 0.3 * proximity, 0.0, 1.0))
            if confidence < self._config.min_source_confidence:
                continue
            crossed = bool(node.service_name) and node.service_name not in source_services
            threatened = sorted(
                nid for nid in graph.reachable_from([node_id], reverse=True) if nid != node_id
            )
            candidates.append(PotentialErrorSource(
                node_id=node_id,
                confidence=round(confidence, 6),
                severity=severity_for(confidence),
                scope=self._scope(dist, crossed),
                evidence={
                    "health": health,
                    "risk": risk,
                    "distance": dist,
                    "recent_errors": recent.get(node.component_id, 0),
                },
                threatened_nodes=tuple(threatened),
            ))
        candidates.sort(key=lambda c: (-c.confidence, c.evidence["distance"], c.node_id))
        return tuple(candidates)

    # ------------------------------------------------------------------ #
    #  Graph-level analysis                                                #
    # ------------------------------------------------------------------ #

    def find_cycles(self, graph: DependencyGraph) -> tuple[tuple[str, ...], ...]:
        """Elementary cycles, each rotated to start at its smallest node id."""
        order = sorted(graph.node_ids)
        index = {nid: i for i, nid in enumerate(order)}
        cycles: list[tuple[str, ...]] = []
        for start in order:
            # only visit nodes ranked after start so each cycle is found once
            stack: list[tuple[str, list[str]]] = [(start, [start])]
            while stack and len(cycles) < _MAX_CYCLES:
                current, path = stack.pop()
                for nxt in graph.successors(current):
                    if nxt == start:
                        cycles.append(tuple(path))
                    elif index[nxt] > index[start] and nxt not in path:
                        stack.append((nxt, path + [nxt]))
            if len(cycles) >= _MAX_CYCLES:
                logger.warning("GraphAnalyzer: cycle enumeration capped at %d", _MAX_CYCLES)
                break
        return tuple(sorted(set(cycles), key=lambda c: (len(c), c)))

    def centrality(self, graph: DependencyGraph) -> dict[str, float]:
        """Total degree per node, normalised by the maximum degree."""
        ids = list(graph.node_ids)
        if not ids:
            return {}
        degrees = np.array(
            [graph.in_degree(n) + graph.out_degree(n) for n in ids], dtype=float
        )
        peak = degrees.max()
        if peak <= 0:
            return {n: 0.0 for n in ids}
        normalised = degrees / peak
        return {n: float(v) for n, v in zip(ids, normalised)}

    def critical_paths(self, graph: DependencyGraph) -> tuple[tuple[str, ...], ...]:
        """Riskiest acyclic paths from error sources (or roots) to sinks.

        A path's risk is the sum over its nodes of ``1 - health`` weighted by
        the edge leading into the node.  At most five paths are returned.
        """
        starts = [n.node_id for n in graph.error_sources] or [
            nid for nid in graph.node_ids if graph.in_degree(nid) == 0
        ]
        scored: list[tuple[float, tuple[str, ...]]] = []
        expansions = 0
        for start in starts:
            first = 1.0 - self.health_of(graph.get_node(start))
            stack: list[tuple[tuple[str, ...], float]] = [((start,), first)]
            while stack and expansions < _MAX_PATH_EXPANSIONS:
                path, risk = stack.pop()
                expansions += 1
                nexts = [n for n in graph.successors(path[-1]) if n not in path]
                if not nexts:
                    if len(path) > 1:
                        scored.append((risk, path))
                    continue
                for nxt in nexts:
                    edge = graph.get_edge(path[-1], nxt)
                    w = edge.weight if edge is not None else 1.0
                    stack.append((path + (nxt,), risk + w * (1.0 - self.health_of(graph.get_node(nxt)))))
        scored.sort(key=lambda item: (-item[0], -len(item[1]), item[1]))
        return tuple(path for _, path in scored[:_MAX_PATHS])

    def high_risk_nodes(
        self,
        graph: DependencyGraph,
        threshold: float | None = None,
        probabilities: Mapping[str, float] | None = None,
    ) -> tuple[str, ...]:
        """Nodes whose risk (probability or ``1 - health``) exceeds *threshold*."""
        limit = self._config.high_risk_threshold if threshold is None else threshold
        risks = {
            n.node_id: (probabilities or {}).get(n.node_id, 1.0 - self.health_of(n))
            for n in graph
        }
        return tuple(sorted(
            (nid for nid, risk in risks.items() if risk > limit),
            key=lambda nid: (-risks[nid], nid),
        ))

    def graph_metrics(self, graph: DependencyGraph) -> GraphMetrics:
        n = len(graph)
        e = len(graph.edges)
        if n == 0:
            return GraphMetrics()
        return GraphMetrics(
            node_count=n,
            edge_count=e,
            average_degree=2.0 * e / n,
            density=e / (n * (n - 1)) if n > 1 else 0.0,
            clustering_coefficient=self._clustering(graph),
            cycle_count=len(self.find_cycles(graph)),
        )

    def analyze_graph(
        self,
        graph: DependencyGraph,
        probabilities: Mapping[str, float] | None = None,
    ) -> GraphAnalysis:
        """All graph-level analyses in one value."""
        cycles = self.find_cycles(graph)
        metrics = self.graph_metrics(graph)
        return GraphAnalysis(
            metrics=metrics,
            centrality=self.centrality(graph),
            cycles=cycles,
            critical_paths=self.critical_paths(graph),
            high_risk_nodes=self.high_risk_nodes(graph, probabilities=probabilities),
        )

    # ------------------------------------------------------------------ #
    #  Helpers                                                             #
    # ------------------------------------------------------------------ #

    def health_of(self, node: DependencyNode) -> float:
        if self._metrics is not None and self._metrics.knows(node.component_id):
            return self._metrics.get_health(node.component_id, default=node.health_score)
        return node.health_score

    @staticmethod
    def _scope(distance: int, crossed: bool) -> ImpactScope:
        if crossed:
            return ImpactScope.SYSTEM
        if distance == 0:
            return ImpactScope.LOCAL
        if distance == 1:
            return ImpactScope.COMPONENT
        return ImpactScope.SERVICE

    @staticmethod
    def _crosses_boundary(context: ErrorContext, a: DependencyNode, b: DependencyNode) -> bool:
        sa = context.service_boundaries.get(a.component_id, a.service_name)
        sb = context.service_boundaries.get(b.component_id, b.service_name)
        return bool(sa) and bool(sb) and sa != sb

    @staticmethod
    def _neighbourhood(graph: DependencyGraph, sources: tuple[str, ...]) -> dict[str, str]:
        """Relationship of each nearby node to the sources (closest kind wins)."""
        relationship: dict[str, str] = {}
        for sid in sources:
            relationship[sid] = "same_component"
        for sid in sources:
            for nid in graph.reachable_from([sid]):
                relationship.setdefault(nid, "dependency")
            for nid in graph.reachable_from([sid], reverse=True):
                relationship.setdefault(nid, "dependent")
            for parent in graph.predecessors(sid):
                for sibling in graph.successors(parent):
                    relationship.setdefault(sibling, "sibling")
        return relationship

    @staticmethod
    def _clustering(graph: DependencyGraph) -> float:
        """Average local clustering coefficient of the undirected projection."""
        ids = list(graph.node_ids)
        index = {nid: i for i, nid in enumerate(ids)}
        adj = np.zeros((len(ids), len(ids)), dtype=float)
        for edge in graph.edges:
            i, j = index[edge.source_id], index[edge.target_id]
            if i != j:
                adj[i, j] = adj[j, i] = 1.0
        degree = adj.sum(axis=1)
        triangles = np.diagonal(adj @ adj @ adj) / 2.0
        possible = degree * (degree - 1) / 2.0
        local = np.divide(triangles, possible, out=np.zeros_like(triangles), where=possible > 0)
        return float(local.mean()) if len(ids) else 0.0
