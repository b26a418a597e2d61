"""Dependency graph construction for flow runs.

The builder turns a node list and an edge list into a per-node dependency
index. Malformed edges never abort the build: each is dropped and reported
so that one dangling connection on a large canvas does not block the rest.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import AbstractSet, Dict, Iterable, List, Mapping, Sequence, Set, Tuple

from nodeflow.logging import get_logger
from nodeflow.service.errors import FlowStructureError
from nodeflow.storage.models import DroppedEdge, Edge, Node

logger = get_logger(__name__)

# Node types that only produce (no incoming edges) or only consume (no outgoing edges)
DEFAULT_ENTRY_TYPES: frozenset[str] = frozenset({"input", "system"})
DEFAULT_EXIT_TYPES: frozenset[str] = frozenset({"output"})

# Drop reasons that indicate authoring mistakes; normalized quietly
_SILENT_REASONS = {"into_entry_node", "out_of_exit_node"}


@dataclass
class DependencyGraph:
    nodes: Dict[str, Node]
    dependencies: Dict[str, Tuple[str, ...]]
    dependents: Dict[str, Tuple[str, ...]]
    edges: List[Edge] = field(default_factory=list)
    dropped_edges: List[DroppedEdge] = field(default_factory=list)

    def dependencies_of(self, node_id: str) -> Tuple[str, ...]:
        return self.dependencies.get(node_id, ())

    def dependents_of(self, node_id: str) -> Tuple[str, ...]:
        return self.dependents.get(node_id, ())


def index_nodes(nodes: Iterable[Node]) -> Dict[str, Node]:
    indexed: Dict[str, Node] = {}
    for node in nodes:
        if node.id in indexed:
            raise FlowStructureError(
                f"duplicate node id {node.id!r}",
                detail={"node_id": node.id},
            )
        indexed[node.id] = node
    return indexed


def _drop_reason(
    edge: Edge,
    nodes_by_id: Mapping[str, Node],
    entry_types: AbstractSet[str],
    exit_types: AbstractSet[str],
) -> str | None:
    if edge.source not in nodes_by_id:
        return "unknown_source"
    if edge.target not in nodes_by_id:
        return "unknown_target"
    if edge.source == edge.target:
        return "self_loop"
    if nodes_by_id[edge.target].type in entry_types:
        return "into_entry_node"
    if nodes_by_id[edge.source].type in exit_types:
        return "out_of_exit_node"
    return None


def build_dependency_graph(
    nodes: Sequence[Node],
    edges: Sequence[Edge],
    *,
    entry_types: AbstractSet[str] = DEFAULT_ENTRY_TYPES,
    exit_types: AbstractSet[str] = DEFAULT_EXIT_TYPES,
) -> DependencyGraph:
    """Index ``edges`` into per-node dependency tuples.

    Edges are dropped when they reference unknown nodes, loop onto their own
    source, point into an entry-type node or leave an exit-type node. The
    first two kinds are logged as warnings; entry/exit violations are
    authoring leftovers and are normalized at debug level. Dependency order
    follows edge order and repeated edges collapse to one dependency.

    The build is pure: calling it twice on the same input yields equal
    graphs and mutates nothing.
    """
    nodes_by_id = index_nodes(nodes)
    dependencies: Dict[str, List[str]] = {node_id: [] for node_id in nodes_by_id}
    dependents: Dict[str, List[str]] = {node_id: [] for node_id in nodes_by_id}
    kept: List[Edge] = []
    dropped: List[DroppedEdge] = []

    for edge in edges:
        reason = _drop_reason(edge, nodes_by_id, entry_types, exit_types)
        if reason:
            dropped.append(
                DroppedEdge(edge_id=edge.id, source=edge.source, target=edge.target, reason=reason)
            )
            log_fn = logger.debug if reason in _SILENT_REASONS else logger.warning
            log_fn(
                "flow_edge_dropped",
                edge_id=edge.id,
                source=edge.source,
                target=edge.target,
                reason=reason,
            )
            continue
        kept.append(edge)
        if edge.source not in dependencies[edge.target]:
            dependencies[edge.target].append(edge.source)
            dependents[edge.source].append(edge.target)

    return DependencyGraph(
        nodes=nodes_by_id,
        dependencies={node_id: tuple(deps) for node_id, deps in dependencies.items()},
        dependents={node_id: tuple(deps) for node_id, deps in dependents.items()},
        edges=kept,
        dropped_edges=dropped,
    )


def find_cycles(graph: DependencyGraph) -> List[List[str]]:
    """Return the strongly connected components that form cycles.

    Uses an iterative Tarjan walk over the dependents index so large canvases
    do not hit the recursion limit.
    """
    index_counter = 0
    indices: Dict[str, int] = {}
    lowlinks: Dict[str, int] = {}
    on_stack: Set[str] = set()
    stack: List[str] = []
    cycles: List[List[str]] = []

    for start in graph.nodes:
        if start in indices:
            continue
        work = [(start, iter(graph.dependents_of(start)))]
        indices[start] = lowlinks[start] = index_counter
        index_counter += 1
        stack.append(start)
        on_stack.add(start)
        while work:
            node_id, children = work[-1]
            advanced = False
            for child in children:
                if child not in indices:
                    indices[child] = lowlinks[child] = index_counter
                    index_counter += 1
                    stack.append(child)
                    on_stack.add(child)
                    work.append((child, iter(graph.dependents_of(child))))
                    advanced = True
                    break
                if child in on_stack:
                    lowlinks[node_id] = min(lowlinks[node_id], indices[child])
            if advanced:
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                lowlinks[parent] = min(lowlinks[parent], lowlinks[node_id])
            if lowlinks[node_id] == indices[node_id]:
                component: List[str] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node_id:
                        break
                if len(component) > 1:
                    cycles.append(sorted(component))
    return cycles


def validate_flow(graph: DependencyGraph) -> List[str]:
    """Human-readable warnings for the editor. None of them block a run."""
    warnings: List[str] = []

    connected: Set[str] = set()
    for edge in graph.edges:
        connected.add(edge.source)
        connected.add(edge.target)
    if len(graph.nodes) > 1:
        disconnected = [node.label for node_id, node in graph.nodes.items() if node_id not in connected]
        if disconnected:
            warnings.append(f"Disconnected nodes found: {', '.join(disconnected)}")

    for cycle in find_cycles(graph):
        warnings.append(f"Circular dependency detected between: {', '.join(cycle)}")

    for dropped in graph.dropped_edges:
        warnings.append(
            f"Edge {dropped.edge_id} ({dropped.source} -> {dropped.target}) ignored: {dropped.reason}"
        )
    return warnings
