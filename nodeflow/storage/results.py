"""Per-run result store and UI status bookkeeping.

``ResultStore`` is the single source of truth the scheduler reads to decide
readiness. Every key is written exactly once per run, by the execution path
that owns that node, so concurrent node tasks never contend for an entry.

``ExecutionContext`` wraps the store and mirrors each outcome onto the
``Node`` objects (``execution_status`` and friends) for presentation. Those
fields are never consulted for scheduling.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional, Set, Union

from nodeflow.logging import get_logger
from nodeflow.storage.errors import DuplicateResultError
from nodeflow.storage.models import (
    ExecutionStatus,
    FailureRecord,
    Node,
    Result,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class StatusEvent:
    node_id: str
    status: ExecutionStatus
    result: Optional[Result] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


StatusListener = Callable[[StatusEvent], Union[None, Awaitable[None]]]


class ResultStore:
    """Write-once mapping of node ID to its finished result for one run."""

    def __init__(self) -> None:
        self._results: Dict[str, Result] = {}

    def record(self, node_id: str, result: Result) -> None:
        if node_id in self._results:
            raise DuplicateResultError(
                f"result for node {node_id} already recorded",
                {"node_id": node_id, "existing_kind": self._results[node_id].kind},
            )
        self._results[node_id] = result

    def get(self, node_id: str) -> Optional[Result]:
        return self._results.get(node_id)

    def is_finished(self, node_id: str) -> bool:
        return node_id in self._results

    def all_finished(self, node_ids: Iterable[str]) -> bool:
        return all(node_id in self._results for node_id in node_ids)

    def failed(self, node_ids: Iterable[str]) -> list[str]:
        return [
            node_id
            for node_id in node_ids
            if node_id in self._results and self._results[node_id].is_failure
        ]

    def snapshot(self) -> Dict[str, Result]:
        return dict(self._results)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._results

    def __len__(self) -> int:
        return len(self._results)


class ExecutionContext:
    """Run-scoped state shared by the scheduler and node executions."""

    def __init__(
        self,
        run_id: str,
        nodes: Mapping[str, Node],
        *,
        listener: Optional[StatusListener] = None,
    ) -> None:
        self.run_id = run_id
        self.nodes = nodes
        self.store = ResultStore()
        self._listener = listener
        self._listener_tasks: Set[asyncio.Task] = set()

    def reset_nodes(self) -> None:
        for node in self.nodes.values():
            node.reset_for_run()
            self._notify(StatusEvent(node.id, ExecutionStatus.WAITING))

    def mark_processing(self, node_id: str) -> None:
        node = self.nodes[node_id]
        node.execution_status = ExecutionStatus.PROCESSING
        node.execution_error = None
        self._notify(StatusEvent(node_id, ExecutionStatus.PROCESSING))

    def complete(self, node_id: str, result: Result) -> None:
        """Record a finished outcome, success or failure, and publish it."""
        self.store.record(node_id, result)
        node = self.nodes[node_id]
        if result.is_failure:
            node.execution_status = ExecutionStatus.ERROR
            node.execution_error = result.error
            node.execution_result = None
            self._notify(
                StatusEvent(node_id, ExecutionStatus.ERROR, result=result, error=result.error)
            )
            return
        node.execution_status = ExecutionStatus.COMPLETED
        node.execution_result = result
        node.execution_error = None
        self._notify(StatusEvent(node_id, ExecutionStatus.COMPLETED, result=result))

    def skip(self, node_id: str, reason: str, *, error_kind: str) -> FailureRecord:
        node = self.nodes[node_id]
        record = FailureRecord(
            node_id=node_id,
            node_type=node.type,
            error=reason,
            attempts=0,
            skipped=True,
            error_kind=error_kind,
        )
        self.complete(node_id, record)
        return record

    def _notify(self, event: StatusEvent) -> None:
        if self._listener is None:
            return
        try:
            outcome = self._listener(event)
        except Exception as exc:
            logger.warning(
                "flow_status_listener_failed",
                node_id=event.node_id,
                status=event.status.value,
                error=str(exc),
            )
            return
        if inspect.isawaitable(outcome):
            # Presentation only: the run never waits on the listener
            task = asyncio.ensure_future(outcome)
            self._listener_tasks.add(task)
            task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Task) -> None:
        self._listener_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("flow_status_listener_failed", error=str(exc))

    def results(self) -> Dict[str, Any]:
        return self.store.snapshot()
