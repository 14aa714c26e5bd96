"""Dependency-graph construction around a failing component.

The :class:`GraphBuilder` turns an :class:`ErrorContext` into a sealed
:class:`DependencyGraph` rooted at the failing component.  Dependencies come
from the context's own component graph merged with an optional
:class:`TopologyProvider`.  The root's direct dependencies are expanded as
independent subtrees on a thread pool and joined; construction is
all-or-nothing.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from runtime_error_sage.domain.aggregates import DependencyGraph
from runtime_error_sage.domain.enums import DependencyType
from runtime_error_sage.domain.events import GraphBuilt
from runtime_error_sage.domain.exceptions import GraphConstructionError, OperationCancelledError
from runtime_error_sage.domain.values import DependencyEdge, DependencyNode, ErrorContext
from runtime_error_sage.infrastructure.cancellation import CancellationToken, ensure_token
from runtime_error_sage.infrastructure.config import GraphConfig
from runtime_error_sage.infrastructure.event_bus import EventBus
from runtime_error_sage.measurement.health import MetricsCollector

logger = logging.getLogger(__name__)


# ===================================================================== #
#  Topology                                                              #
# ===================================================================== #

@dataclass(frozen=True)
class ComponentDependency:
    """One outgoing dependency declared by a topology source."""

    component_id: str
    dependency_type: DependencyType = DependencyType.RUNTIME
    weight: float | None = None


class TopologyProvider(ABC):
    """Static knowledge of which component depends on which."""

    @abstractmethod
    def dependencies_of(self, component_id: str) -> Iterable[ComponentDependency]:
        """Components *component_id* depends on."""
        ...

    def knows(self, component_id: str) -> bool:
        return False

    def service_of(self, component_id: str) -> str | None:
        return None


class StaticTopology(TopologyProvider):
    """Topology held in memory.

    Parameters
    ----------
    dependencies:
        ``component -> iterable`` of dependency component ids,
        ``(component, DependencyType, weight)`` tuples or
        :class:`ComponentDependency` values.
    services:
        Optional ``component -> owning service`` map.
    """

    def __init__(
        self,
        dependencies: Mapping[str, Iterable[object]],
        services: Mapping[str, str] | None = None,
    ) -> None:
        self._deps: dict[str, tuple[ComponentDependency, ...]] = {
            component: tuple(_coerce_dependency(d) for d in deps)
            for component, deps in dependencies.items()
        }
        self._services = dict(services or {})

    def dependencies_of(self, component_id: str) -> Iterable[ComponentDependency]:
        return self._deps.get(component_id, ())

    def knows(self, component_id: str) -> bool:
        return component_id in self._deps or any(
            d.component_id == component_id for deps in self._deps.values() for d in deps
        )

    def service_of(self, component_id: str) -> str | None:
        return self._services.get(component_id)


def _coerce_dependency(raw: object) -> ComponentDependency:
    if isinstance(raw, ComponentDependency):
        return raw
    if isinstance(raw, str):
        return ComponentDependency(raw)
    if isinstance(raw, tuple) and raw:
        dep_type = raw[1] if len(raw) > 1 else DependencyType.RUNTIME
        if isinstance(dep_type, str):
            dep_type = DependencyType(dep_type)
        weight = float(raw[2]) if len(raw) > 2 and raw[2] is not None else None
        return ComponentDependency(str(raw[0]), dep_type, weight)
    raise ValueError(f"Unsupported dependency declaration: {raw!r}")


# ===================================================================== #
#  Builder                                                               #
# ===================================================================== #

class GraphBuilder:
    """Builds the dependency graph around an error.

    Parameters
    ----------
    config:
        Depth, size and concurrency limits.
    metrics:
        Source of node health scores.  Nodes default to 1.0 without it.
    topology:
        Static topology merged with the context's component graph.
    event_bus:
        Receives :class:`GraphBuilt`.
    """

    def __init__(
        self,
        config: GraphConfig | None = None,
        metrics: MetricsCollector | None = None,
        topology: TopologyProvider | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._config = config or GraphConfig()
        self._config.validate()
        self._metrics = metrics
        self._topology = topology
        self._bus = event_bus

    def resolve_root(self, context: ErrorContext) -> str:
        """Component the graph is rooted at.

        Raises :class:`GraphConstructionError` when neither the error source
        nor the service can be resolved.
        """
        for candidate in (context.error_source, context.service_name):
            if candidate and self._is_known(context, candidate):
                return candidate
        if context.service_name:
            # an isolated service is still a valid single-node graph
            return context.source_component
        raise GraphConstructionError(
            "Cannot resolve the failing component: no error source, no service name",
            component_id=context.error_source,
        )

    def build(
        self,
        context: ErrorContext,
        cancel_token: CancellationToken | None = None,
    ) -> DependencyGraph:
        """Build and seal the dependency graph for *context*."""
        token = ensure_token(cancel_token)
        token.raise_if_cancelled("graph construction")
        root = self.resolve_root(context)
        cfg = self._config

        depths: dict[str, int] = {root: 0}
        children = [d.component_id for d in self._dependencies(context, root)] if cfg.max_depth > 0 else []
        children = list(dict.fromkeys(c for c in children if c != root))

        try:
            if children:
                with ThreadPoolExecutor(
                    max_workers=min(cfg.max_workers, len(children)),
                    thread_name_prefix="graph",
                ) as pool:
                    futures = [
                        pool.submit(self._expand, context, child, token) for child in children
                    ]
                    for future in futures:
                        for component, depth in future.result().items():
                            if depth < depths.get(component, cfg.max_depth + 1):
                                depths[component] = depth
            if len(depths) > cfg.max_nodes:
                raise GraphConstructionError(
                    f"Graph around '{root}' exceeds {cfg.max_nodes} nodes",
                    component_id=root,
                    details={"node_count": len(depths)},
                )
            graph = self._assemble(context, root, depths)
        except (GraphConstructionError, OperationCancelledError):
            raise
        except Exception as exc:
            raise GraphConstructionError(
                f"Failed to build dependency graph around '{root}': {exc}",
                component_id=root,
            ) from exc

        graph.seal()
        logger.info(
            "GraphBuilder: built graph for %s rooted at %s (%d nodes, %d edges)",
            context.correlation_id,
            root,
            len(graph),
            len(graph.edges),
        )
        if self._bus is not None:
            self._bus.publish(GraphBuilt(
                source_id="graph_builder",
                correlation_id=context.correlation_id,
                root_component=root,
                node_count=len(graph),
                edge_count=len(graph.edges),
            ))
        return graph

    # -- internal helpers -----------------------------------------------------

    def _is_known(self, context: ErrorContext, component: str) -> bool:
        if component in context.component_graph:
            return True
        if any(component in deps for deps in context.component_graph.values()):
            return True
        return self._topology is not None and self._topology.knows(component)

    def _dependencies(self, context: ErrorContext, component: str) -> list[ComponentDependency]:
        merged: dict[str, ComponentDependency] = {}
        for dep in context.component_graph.get(component, ()):
            merged[dep] = ComponentDependency(dep)
        if self._topology is not None:
            for dep in self._topology.dependencies_of(component):
                existing = merged.get(dep.component_id)
                if existing is None or (dep.weight or 0.0) > (existing.weight or 0.0):
                    merged[dep.component_id] = dep
        return list(merged.values())

    def _expand(
        self,
        context: ErrorContext,
        start: str,
        token: CancellationToken,
    ) -> dict[str, int]:
        """Breadth-first expansion of one subtree of the root (depth starts at 1)."""
        cfg = self._config
        depths = {start: 1}
        queue: deque[str] = deque([start])
        while queue:
            token.raise_if_cancelled("graph construction")
            current = queue.popleft()
            depth = depths[current]
            if depth >= cfg.max_depth:
                continue
            for dep in self._dependencies(context, current):
                if dep.component_id not in depths:
                    depths[dep.component_id] = depth + 1
                    queue.append(dep.component_id)
                    if len(depths) > cfg.max_nodes:
                        raise GraphConstructionError(
                            f"Subtree of '{start}' exceeds {cfg.max_nodes} nodes",
                            component_id=start,
                        )
        return depths

    def _service_of(self, context: ErrorContext, component: str, root: str) -> str:
        if component in context.service_boundaries:
            return context.service_boundaries[component]
        if self._topology is not None:
            service = self._topology.service_of(component)
            if service:
                return service
        if component == root or component == context.service_name:
            return context.service_name
        return ""

    def _assemble(
        self,
        context: ErrorContext,
        root: str,
        depths: dict[str, int],
    ) -> DependencyGraph:
        critical = set(context.additional_context.get("critical_components", ()) or ())
        graph = DependencyGraph()
        for component in sorted(depths, key=lambda c: (depths[c], c)):
            health = 1.0
            if self._metrics is not None:
                health = self._metrics.get_health(component)
            graph.add_node(DependencyNode(
                node_id=component,
                component_id=component,
                name=component,
                is_error_source=component == root,
                health_score=health,
                service_name=self._service_of(context, component, root),
                is_critical=component in critical,
                metadata={"depth": depths[component]},
            ))
        for component in depths:
            for dep in self._dependencies(context, component):
                if dep.component_id in depths and dep.component_id != component:
                    graph.add_edge(DependencyEdge(
                        source_id=component,
                        target_id=dep.component_id,
                        dependency_type=dep.dependency_type,
                        weight=dep.weight if dep.weight is not None else self._config.default_weight,
                    ))
        return graph
