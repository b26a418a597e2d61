"""Batch-oriented topological scheduler.

Each iteration computes the ready set (unresolved nodes whose dependencies
all have a finished entry in the result store), runs it concurrently and
waits for the whole batch before looking again. An empty ready set with
unresolved nodes left means the graph stalled: a cycle, or nodes that hang
off one.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from nodeflow.logging import bind_node_context, get_logger
from nodeflow.service.graph import DependencyGraph
from nodeflow.service.registry import ProcessorContext, ProcessorRegistry
from nodeflow.service.retry import RetryPolicy, execute_with_retry
from nodeflow.storage.models import RunStatus
from nodeflow.storage.results import ExecutionContext

logger = get_logger(__name__)

STALLED_REASON = "Skipped: dependencies never resolved (cycle or unreachable node)"
CANCELLED_REASON = "Skipped: run cancelled before this node was reached"


@dataclass
class ScheduleReport:
    status: RunStatus
    batches: List[List[str]] = field(default_factory=list)
    stalled_nodes: List[str] = field(default_factory=list)
    trace: List[Dict[str, Any]] = field(default_factory=list)
    cancel_reason: Optional[str] = None


class BatchScheduler:
    def __init__(
        self,
        graph: DependencyGraph,
        registry: ProcessorRegistry,
        context: ExecutionContext,
        policy: RetryPolicy,
        *,
        runtime_inputs: Optional[Mapping[str, Any]] = None,
        credentials: Optional[Mapping[str, Any]] = None,
        max_parallel_nodes: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
        flow_timeout_ms: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.graph = graph
        self.registry = registry
        self.context = context
        self.policy = policy
        self.runtime_inputs = dict(runtime_inputs or {})
        self.credentials = dict(credentials or {})
        self.cancel_event = cancel_event
        self.flow_timeout_ms = flow_timeout_ms or None
        self._clock = clock
        self._semaphore = asyncio.Semaphore(max_parallel_nodes) if max_parallel_nodes else None
        self._trace: List[Dict[str, Any]] = []

    @property
    def store(self):
        return self.context.store

    def ready_set(self) -> List[str]:
        """Unresolved nodes that may run now, in node order."""
        return [
            node_id
            for node_id in self.graph.nodes
            if node_id not in self.store
            and (
                node_id in self.runtime_inputs
                or self.store.all_finished(self.graph.dependencies_of(node_id))
            )
        ]

    def _pending(self) -> List[str]:
        return [node_id for node_id in self.graph.nodes if node_id not in self.store]

    def _cancel_reason(self, started: float) -> Optional[str]:
        if self.cancel_event is not None and self.cancel_event.is_set():
            return "cancel_requested"
        if self.flow_timeout_ms and (self._clock() - started) * 1000 >= self.flow_timeout_ms:
            return "flow_timeout"
        return None

    async def run(self) -> ScheduleReport:
        started = self._clock()
        report = ScheduleReport(status=RunStatus.COMPLETED, trace=self._trace)

        while True:
            pending = self._pending()
            if not pending:
                break

            reason = self._cancel_reason(started)
            if reason:
                for node_id in pending:
                    self.context.skip(node_id, CANCELLED_REASON, error_kind="cancelled")
                report.status = RunStatus.CANCELLED
                report.cancel_reason = reason
                logger.warning(
                    "flow_run_cancelled",
                    reason=reason,
                    unreached=pending,
                    batches=len(report.batches),
                )
                return report

            ready = self.ready_set()
            if not ready:
                for node_id in pending:
                    self.context.skip(node_id, STALLED_REASON, error_kind="stalled")
                report.status = RunStatus.STALLED
                report.stalled_nodes = pending
                logger.warning(
                    "flow_run_stalled",
                    stalled_nodes=pending,
                    batches=len(report.batches),
                )
                return report

            batch_index = len(report.batches)
            report.batches.append(ready)
            runnable = [node_id for node_id in ready if not self._skip_if_dependency_failed(node_id, batch_index)]
            logger.debug("flow_batch_dispatched", batch=batch_index, nodes=runnable)
            # Inputs are fixed at dispatch so batch members never see each other
            inputs = {node_id: self._inputs_for(node_id) for node_id in runnable}
            if runnable:
                await asyncio.gather(
                    *(self._run_node(node_id, batch_index, inputs[node_id]) for node_id in runnable)
                )

        if any(result.is_failure for result in self.store.snapshot().values()):
            report.status = RunStatus.COMPLETED_WITH_ERRORS
        return report

    def _skip_if_dependency_failed(self, node_id: str, batch_index: int) -> bool:
        if node_id in self.runtime_inputs:
            return False
        failed = self.store.failed(self.graph.dependencies_of(node_id))
        if not failed:
            return False
        node = self.graph.nodes[node_id]
        if self.registry.resolve(node.type).accepts_partial_inputs:
            return False
        self.context.skip(
            node_id,
            f"Skipped due to failed dependencies: {', '.join(failed)}",
            error_kind="skipped",
        )
        self._trace.append(
            {
                "node_id": node_id,
                "node_type": node.type,
                "batch": batch_index,
                "status": "skipped",
                "attempts": 0,
                "failed_dependencies": failed,
            }
        )
        return True

    def _inputs_for(self, node_id: str) -> Dict[str, Any]:
        inputs = {}
        for dep in self.graph.dependencies_of(node_id):
            result = self.store.get(dep)
            if result is not None and not result.is_failure:
                inputs[dep] = result
        return inputs

    async def _run_node(self, node_id: str, batch_index: int, inputs: Dict[str, Any]) -> None:
        if self._semaphore is None:
            await self._execute(node_id, batch_index, inputs)
            return
        async with self._semaphore:
            await self._execute(node_id, batch_index, inputs)

    async def _execute(self, node_id: str, batch_index: int, inputs: Dict[str, Any]) -> None:
        node = self.graph.nodes[node_id]
        processor = self.registry.resolve(node.type)
        previous = {dep: self.graph.nodes[dep].type for dep in self.graph.dependencies_of(node_id)}
        has_runtime_input = node_id in self.runtime_inputs
        bind_node_context(node_id, node.type)

        def make_context(attempt: int) -> ProcessorContext:
            return ProcessorContext(
                run_id=self.context.run_id,
                runtime_input=self.runtime_inputs.get(node_id),
                has_runtime_input=has_runtime_input,
                credentials=self.credentials,
                previous_node_metadata=previous,
                attempt=attempt,
            )

        started_at = datetime.now(timezone.utc)
        t0 = time.perf_counter()
        self.context.mark_processing(node_id)
        result, attempts = await execute_with_retry(
            processor, node, inputs, make_context, self.policy.for_node(node)
        )
        self.context.complete(node_id, result)
        finished_at = datetime.now(timezone.utc)

        entry: Dict[str, Any] = {
            "node_id": node_id,
            "node_type": node.type,
            "batch": batch_index,
            "status": "error" if result.is_failure else "completed",
            "attempts": attempts,
            "started_at": started_at.isoformat(),
            "finished_at": finished_at.isoformat(),
            "duration_ms": round((time.perf_counter() - t0) * 1000, 3),
        }
        if result.is_failure:
            entry["error"] = result.error
            entry["error_kind"] = result.error_kind
        self._trace.append(entry)
