from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import AbstractSet, Any, Dict, List, Mapping, Optional, Sequence, Union

from nodeflow.logging import bind_run_context, clear_run_context, get_logger, log_flow_trace
from nodeflow.service.errors import FlowStructureError
from nodeflow.service.flow_validation import validate_flow_payload
from nodeflow.service.graph import (
    DEFAULT_ENTRY_TYPES,
    DEFAULT_EXIT_TYPES,
    DependencyGraph,
    build_dependency_graph,
    find_cycles,
    validate_flow,
)
from nodeflow.service.registry import ProcessorRegistry
from nodeflow.service.retry import RetryPolicy
from nodeflow.service.scheduler import BatchScheduler
from nodeflow.storage.models import Edge, Node, RunOutcome, new_run_id
from nodeflow.storage.results import ExecutionContext, StatusListener

logger = get_logger(__name__)

NodeLike = Union[Node, Mapping[str, Any]]
EdgeLike = Union[Edge, Mapping[str, Any]]


def _coerce_nodes(nodes: Sequence[NodeLike]) -> List[Node]:
    coerced = []
    for index, raw in enumerate(nodes):
        if isinstance(raw, Node):
            coerced.append(raw)
            continue
        try:
            coerced.append(Node.from_dict(raw))
        except (ValueError, AttributeError) as exc:
            raise FlowStructureError(str(exc), detail={"index": index}) from exc
    return coerced


def _coerce_edges(edges: Sequence[EdgeLike]) -> List[Edge]:
    coerced = []
    for index, raw in enumerate(edges):
        if isinstance(raw, Edge):
            coerced.append(raw)
            continue
        try:
            coerced.append(Edge.from_dict(raw))
        except (ValueError, AttributeError) as exc:
            raise FlowStructureError(str(exc), detail={"index": index}) from exc
    return coerced


class FlowEngine:
    """Runs flow graphs against runtime inputs.

    The engine itself is stateless between runs; every ``run_flow`` call
    builds its own graph, result store and scheduler, so one engine can
    serve concurrent runs. Status fields are written onto the ``Node``
    objects passed in, so a node list belongs to one run at a time; dict
    payloads get fresh nodes per call.
    """

    def __init__(
        self,
        registry: ProcessorRegistry,
        *,
        policy: Optional[RetryPolicy] = None,
        max_parallel_nodes: Optional[int] = None,
        flow_timeout_ms: Optional[int] = None,
        entry_types: AbstractSet[str] = DEFAULT_ENTRY_TYPES,
        exit_types: AbstractSet[str] = DEFAULT_EXIT_TYPES,
    ) -> None:
        self.registry = registry
        self.policy = policy or RetryPolicy()
        self.max_parallel_nodes = max_parallel_nodes
        self.flow_timeout_ms = flow_timeout_ms
        self.entry_types = frozenset(entry_types)
        self.exit_types = frozenset(exit_types)

    def build_graph(self, nodes: Sequence[NodeLike], edges: Sequence[EdgeLike]) -> DependencyGraph:
        return build_dependency_graph(
            _coerce_nodes(nodes),
            _coerce_edges(edges),
            entry_types=self.entry_types,
            exit_types=self.exit_types,
        )

    def validate(self, nodes: Sequence[NodeLike], edges: Sequence[EdgeLike]) -> Dict[str, Any]:
        """Structural report for the editor without running anything."""
        graph = self.build_graph(nodes, edges)
        unknown_types = sorted(
            {node.type for node in graph.nodes.values() if node.type not in self.registry}
        )
        return {
            "dropped_edges": [edge.to_dict() for edge in graph.dropped_edges],
            "cycles": find_cycles(graph),
            "unknown_node_types": unknown_types,
            "warnings": validate_flow(graph),
        }

    async def run_flow(
        self,
        nodes: Sequence[NodeLike],
        edges: Sequence[EdgeLike],
        runtime_inputs: Optional[Mapping[str, Any]] = None,
        *,
        credentials: Optional[Mapping[str, Any]] = None,
        listener: Optional[StatusListener] = None,
        cancel_event: Optional[asyncio.Event] = None,
        run_id: Optional[str] = None,
    ) -> RunOutcome:
        """Execute the flow and return every node's outcome.

        Only a malformed flow raises (``FlowStructureError``); node failures,
        stalls and cancellation are reported on the returned ``RunOutcome``.
        """
        graph = self.build_graph(nodes, edges)
        run_id = run_id or new_run_id()
        inputs = dict(runtime_inputs or {})
        unknown_inputs = sorted(key for key in inputs if key not in graph.nodes)
        for key in unknown_inputs:
            inputs.pop(key)

        bind_run_context(run_id)
        try:
            if unknown_inputs:
                logger.warning("flow_runtime_input_unknown_node", node_ids=unknown_inputs)
            started_at = datetime.now(timezone.utc)
            logger.info(
                "flow_run_started",
                node_count=len(graph.nodes),
                edge_count=len(graph.edges),
                dropped_edges=len(graph.dropped_edges),
                runtime_inputs=sorted(inputs),
            )
            context = ExecutionContext(run_id, graph.nodes, listener=listener)
            context.reset_nodes()
            scheduler = BatchScheduler(
                graph,
                self.registry,
                context,
                self.policy,
                runtime_inputs=inputs,
                credentials=credentials,
                max_parallel_nodes=self.max_parallel_nodes,
                cancel_event=cancel_event,
                flow_timeout_ms=self.flow_timeout_ms,
            )
            report = await scheduler.run()
            results = context.results()
            outcome = RunOutcome(
                run_id=run_id,
                status=report.status,
                results={node_id: results[node_id] for node_id in graph.nodes},
                stalled_nodes=report.stalled_nodes,
                dropped_edges=list(graph.dropped_edges),
                batches=report.batches,
                trace=report.trace,
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
                cancel_reason=report.cancel_reason,
            )
            log_flow_trace(outcome.trace, logger)
            logger.info(
                "flow_run_completed",
                status=outcome.status.value,
                batches=len(outcome.batches),
                failed_nodes=outcome.failed_nodes,
                skipped_nodes=outcome.skipped_nodes,
            )
            return outcome
        finally:
            clear_run_context()

    async def run_payload(
        self,
        payload: Mapping[str, Any],
        *,
        listener: Optional[StatusListener] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RunOutcome:
        """Validate a JSON flow document and run it."""
        validate_flow_payload(payload)
        return await self.run_flow(
            payload["nodes"],
            payload.get("edges") or [],
            payload.get("runtime_inputs") or {},
            credentials=payload.get("credentials") or {},
            listener=listener,
            cancel_event=cancel_event,
        )
