from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Union

from nodeflow.logging import get_logger
from nodeflow.storage.models import EmptyResult, Node, Result

logger = get_logger(__name__)


@dataclass
class ProcessorContext:
    """Everything a processor may read besides its node and inputs."""

    run_id: str
    runtime_input: Any = None
    has_runtime_input: bool = False
    credentials: Mapping[str, Any] = field(default_factory=dict)
    # upstream node ID -> node type
    previous_node_metadata: Dict[str, str] = field(default_factory=dict)
    attempt: int = 1


class NodeProcessor:
    """Base class for node-type handlers.

    Subclasses set ``node_type`` and implement :meth:`process`. Raise
    ``NodeValidationError`` for bad config and ``TransientNodeError`` for
    upstream trouble; anything else is treated as transient by the retry
    layer.
    """

    node_type: str = ""
    # Run even when some dependencies failed, seeing only the successful inputs
    accepts_partial_inputs: bool = False

    async def process(
        self,
        node: Node,
        inputs: Dict[str, Result],
        context: ProcessorContext,
    ) -> Result:
        raise NotImplementedError


ProcessorFn = Callable[
    [Node, Dict[str, Result], ProcessorContext], Union[Result, Awaitable[Result]]
]


class FunctionProcessor(NodeProcessor):
    """Adapts a plain (sync or async) callable to the processor contract."""

    def __init__(self, node_type: str, fn: ProcessorFn, *, accepts_partial_inputs: bool = False):
        self.node_type = node_type
        self.accepts_partial_inputs = accepts_partial_inputs
        self._fn = fn

    async def process(self, node, inputs, context):
        outcome = self._fn(node, inputs, context)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return outcome


class UnknownNodeProcessor(NodeProcessor):
    """Fallback for unregistered types: empty result, never an error."""

    node_type = "__unknown__"

    async def process(self, node, inputs, context):
        logger.warning(
            "flow_node_type_unknown",
            node_id=node.id,
            node_type=node.type,
            run_id=context.run_id,
        )
        return EmptyResult(node_type=node.type)


class ProcessorRegistry:
    """Maps node type strings to processors.

    A registry is built per runtime (see ``build_default_registry``) and
    handed to the engine; extensions register additional types on it.
    """

    def __init__(
        self,
        processors: Optional[Iterable[NodeProcessor]] = None,
        *,
        fallback: Optional[NodeProcessor] = None,
    ) -> None:
        self._processors: Dict[str, NodeProcessor] = {}
        self._fallback = fallback or UnknownNodeProcessor()
        for processor in processors or ():
            self.register(processor)

    def register(self, processor: NodeProcessor, *, replace: bool = False) -> NodeProcessor:
        node_type = processor.node_type
        if not node_type:
            raise ValueError("processor must declare a node_type")
        if node_type in self._processors and not replace:
            raise ValueError(f"processor for node type {node_type!r} already registered")
        self._processors[node_type] = processor
        logger.debug("flow_processor_registered", node_type=node_type)
        return processor

    def register_function(
        self,
        node_type: str,
        fn: ProcessorFn,
        *,
        accepts_partial_inputs: bool = False,
        replace: bool = False,
    ) -> NodeProcessor:
        return self.register(
            FunctionProcessor(node_type, fn, accepts_partial_inputs=accepts_partial_inputs),
            replace=replace,
        )

    def resolve(self, node_type: str) -> NodeProcessor:
        return self._processors.get(node_type, self._fallback)

    def node_types(self) -> List[str]:
        return sorted(self._processors)

    def __contains__(self, node_type: object) -> bool:
        return node_type in self._processors

    def __len__(self) -> int:
        return len(self._processors)
