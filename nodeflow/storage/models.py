from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Union


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    """UI-visible status of a node. Moves forward only within a run."""

    IDLE = "idle"
    WAITING = "waiting"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed-with-errors"
    STALLED = "stalled"
    CANCELLED = "cancelled"


class _ResultBase:
    kind: ClassVar[str] = ""
    is_failure: ClassVar[bool] = False

    def to_dict(self) -> Dict[str, Any]:
        payload = {"kind": self.kind}
        for key, value in asdict(self).items():
            payload[key] = value.isoformat() if isinstance(value, datetime) else value
        return payload


@dataclass
class TextResult(_ResultBase):
    """AI-generated text."""

    text: str
    model: Optional[str] = None
    provider: Optional[str] = None
    instructions: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    kind: ClassVar[str] = "text"


@dataclass
class PassthroughResult(_ResultBase):
    """Raw value handed in by an entry node."""

    value: Any
    source: str = "runtime_input"

    kind: ClassVar[str] = "passthrough"


@dataclass
class StructuredResult(_ResultBase):
    data: Dict[str, Any] = field(default_factory=dict)

    kind: ClassVar[str] = "structured"


@dataclass
class OutputResult(_ResultBase):
    """Terminal result: text for people, data for machines."""

    display_content: str
    full_data: Dict[str, Any] = field(default_factory=dict)

    kind: ClassVar[str] = "output"


@dataclass
class EmptyResult(_ResultBase):
    """Produced for node types nobody registered a processor for."""

    node_type: Optional[str] = None

    kind: ClassVar[str] = "empty"


@dataclass
class FailureRecord(_ResultBase):
    """Recorded outcome of a node that failed or was never attempted.

    ``skipped`` marks nodes that were never attempted (failed dependency,
    stall, cancellation); ``attempts`` is 0 for those.
    """

    node_id: str
    node_type: str
    error: str
    attempts: int = 0
    skipped: bool = False
    error_kind: str = "transient"
    timestamp: datetime = field(default_factory=_utcnow)

    kind: ClassVar[str] = "failure"
    is_failure: ClassVar[bool] = True


Result = Union[
    TextResult,
    PassthroughResult,
    StructuredResult,
    OutputResult,
    EmptyResult,
    FailureRecord,
]


@dataclass
class Node:
    id: str
    type: str
    data: Dict[str, Any] = field(default_factory=dict)
    execution_status: ExecutionStatus = ExecutionStatus.IDLE
    execution_result: Optional[Result] = None
    execution_error: Optional[str] = None

    @property
    def label(self) -> str:
        return str(self.data.get("label") or self.id)

    def reset_for_run(self) -> None:
        self.execution_status = ExecutionStatus.WAITING
        self.execution_result = None
        self.execution_error = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Node":
        """Build a node from a canvas payload; position and style are ignored."""
        node_id = raw.get("id")
        node_type = raw.get("type")
        if not node_id or not isinstance(node_id, str):
            raise ValueError("node requires a string id")
        if not node_type or not isinstance(node_type, str):
            raise ValueError(f"node {node_id} requires a string type")
        data = raw.get("data") or {}
        if not isinstance(data, Mapping):
            raise ValueError(f"node {node_id} data must be an object")
        return cls(id=node_id, type=node_type, data=dict(data))


@dataclass
class Edge:
    source: str
    target: str
    id: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.id:
            self.id = f"{self.source}->{self.target}"

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Edge":
        source = raw.get("source", raw.get("from"))
        target = raw.get("target", raw.get("to"))
        if not isinstance(source, str) or not isinstance(target, str):
            raise ValueError(f"edge {raw.get('id')!r} requires string source and target")
        edge_id = raw.get("id")
        return cls(source=source, target=target, id=None if edge_id is None else str(edge_id))


@dataclass(frozen=True)
class DroppedEdge:
    edge_id: str
    source: str
    target: str
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


@dataclass
class RunOutcome:
    run_id: str
    status: RunStatus
    results: Dict[str, Result]
    stalled_nodes: List[str] = field(default_factory=list)
    dropped_edges: List[DroppedEdge] = field(default_factory=list)
    batches: List[List[str]] = field(default_factory=list)
    trace: List[Dict[str, Any]] = field(default_factory=list)
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None

    @property
    def failed_nodes(self) -> List[str]:
        return [
            node_id
            for node_id, result in self.results.items()
            if result.is_failure and not result.skipped
        ]

    @property
    def skipped_nodes(self) -> List[str]:
        return [
            node_id
            for node_id, result in self.results.items()
            if result.is_failure and result.skipped
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "results": {node_id: result.to_dict() for node_id, result in self.results.items()},
            "failed_nodes": self.failed_nodes,
            "skipped_nodes": self.skipped_nodes,
            "stalled_nodes": list(self.stalled_nodes),
            "dropped_edges": [edge.to_dict() for edge in self.dropped_edges],
            "batches": [list(batch) for batch in self.batches],
            "trace": list(self.trace),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "cancel_reason": self.cancel_reason,
        }


def new_run_id() -> str:
    return str(uuid.uuid4())
