from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from nodeflow.config import (
    DEFAULT_BACKOFF_MS,
    DEFAULT_NODE_MAX_RETRIES,
    DEFAULT_NODE_TIMEOUT_MS,
    MAX_RETRIES_HARD_CAP,
)
from nodeflow.logging import get_logger
from nodeflow.service.errors import NodeExecutionError
from nodeflow.service.registry import NodeProcessor, ProcessorContext
from nodeflow.storage.models import FailureRecord, Node, Result

logger = get_logger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]
ContextFactory = Callable[[int], ProcessorContext]


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff for one node execution.

    ``max_retries`` counts retries after the first attempt, so a node is
    attempted at most ``max_retries + 1`` times. Delays grow as
    ``backoff_ms * multiplier ** n``: 1s, 2s, 4s with the defaults.
    """

    max_retries: int = DEFAULT_NODE_MAX_RETRIES
    backoff_ms: int = DEFAULT_BACKOFF_MS
    multiplier: float = 2.0
    max_retries_cap: int = MAX_RETRIES_HARD_CAP
    node_timeout_ms: Optional[int] = DEFAULT_NODE_TIMEOUT_MS
    sleep: SleepFn = asyncio.sleep

    def __post_init__(self) -> None:
        capped = max(0, min(int(self.max_retries), self.max_retries_cap))
        object.__setattr__(self, "max_retries", capped)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delays(self) -> List[float]:
        """Backoff before each retry, in seconds."""
        return [
            self.backoff_ms * (self.multiplier ** index) / 1000.0
            for index in range(self.max_retries)
        ]

    def for_node(self, node: Node) -> "RetryPolicy":
        """Apply ``max_retries``, ``backoff_ms`` and ``timeout_ms`` overrides from node data."""
        overrides: Dict[str, Any] = {}
        for key, attr in (
            ("max_retries", "max_retries"),
            ("backoff_ms", "backoff_ms"),
            ("timeout_ms", "node_timeout_ms"),
        ):
            raw = node.data.get(key)
            if raw is None:
                continue
            if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw < 0:
                logger.warning(
                    "flow_node_retry_override_ignored",
                    node_id=node.id,
                    field=key,
                    value=raw,
                )
                continue
            overrides[attr] = int(raw)
        if not overrides:
            return self
        return replace(self, **overrides)


def _attempt_timeout(policy: RetryPolicy) -> Optional[float]:
    if not policy.node_timeout_ms:
        return None
    return policy.node_timeout_ms / 1000.0


async def execute_with_retry(
    processor: NodeProcessor,
    node: Node,
    inputs: Dict[str, Result],
    context_factory: ContextFactory,
    policy: RetryPolicy,
) -> Tuple[Result, int]:
    """Run ``processor`` for ``node`` under ``policy``.

    Returns the result (a ``FailureRecord`` once attempts are exhausted or a
    non-retryable error is raised) and the number of attempts made. Node
    failures never propagate as exceptions.
    """
    delays = policy.delays()
    timeout = _attempt_timeout(policy)
    last_error = "node failed"
    error_kind = "transient"
    attempt = 0

    while attempt < policy.max_attempts:
        attempt += 1
        context = context_factory(attempt)
        try:
            call = processor.process(node, inputs, context)
            if timeout is None:
                result = await call
            else:
                result = await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError:
            last_error = f"node timed out after {policy.node_timeout_ms} ms"
            error_kind = "timeout"
            logger.warning(
                "flow_node_timeout",
                node_id=node.id,
                attempt=attempt,
                timeout_ms=policy.node_timeout_ms,
            )
        except NodeExecutionError as exc:
            last_error = exc.message
            error_kind = exc.error_kind
            if not exc.retryable:
                logger.warning(
                    "flow_node_validation_failed",
                    node_id=node.id,
                    node_type=node.type,
                    field=exc.field,
                    error=exc.message,
                )
                break
            logger.warning(
                "flow_node_retry",
                node_id=node.id,
                attempt=attempt,
                max_retries=policy.max_retries,
                error=exc.message,
            )
        except Exception as exc:
            last_error = str(exc) or type(exc).__name__
            error_kind = "transient"
            logger.warning(
                "flow_node_retry",
                node_id=node.id,
                attempt=attempt,
                max_retries=policy.max_retries,
                error_type=type(exc).__name__,
                error=last_error,
            )
        else:
            if result is None or not hasattr(result, "kind"):
                last_error = f"processor for {node.type} returned no result"
                error_kind = "validation"
                break
            if attempt > 1:
                logger.info("flow_node_recovered", node_id=node.id, attempts=attempt)
            return result, attempt

        if attempt < policy.max_attempts:
            delay = delays[attempt - 1]
            if delay > 0:
                logger.info(
                    "flow_node_backoff",
                    node_id=node.id,
                    attempt=attempt,
                    backoff_ms=int(delay * 1000),
                )
                await policy.sleep(delay)

    logger.error(
        "flow_node_failed",
        node_id=node.id,
        node_type=node.type,
        attempts=attempt,
        error_kind=error_kind,
        error=last_error,
    )
    return (
        FailureRecord(
            node_id=node.id,
            node_type=node.type,
            error=last_error,
            attempts=attempt,
            error_kind=error_kind,
        ),
        attempt,
    )
