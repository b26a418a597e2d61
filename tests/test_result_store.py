import asyncio

import pytest

from nodeflow.storage.errors import DuplicateResultError
from nodeflow.storage.models import (
    ExecutionStatus,
    FailureRecord,
    Node,
    PassthroughResult,
    TextResult,
)
from nodeflow.storage.results import ExecutionContext, ResultStore


def test_record_is_write_once():
    store = ResultStore()
    store.record("a", PassthroughResult(value=1))

    with pytest.raises(DuplicateResultError) as exc_info:
        store.record("a", PassthroughResult(value=2))

    assert exc_info.value.detail["node_id"] == "a"
    assert store.get("a").value == 1


def test_readiness_helpers():
    store = ResultStore()
    store.record("a", PassthroughResult(value=1))
    store.record("b", FailureRecord(node_id="b", node_type="api", error="boom", attempts=4))

    assert store.is_finished("a")
    assert not store.is_finished("c")
    assert store.all_finished(["a", "b"])
    assert not store.all_finished(["a", "c"])
    assert store.all_finished([])
    assert store.failed(["a", "b", "c"]) == ["b"]
    assert "b" in store
    assert len(store) == 2


def test_snapshot_is_a_copy():
    store = ResultStore()
    store.record("a", PassthroughResult(value=1))

    snapshot = store.snapshot()
    snapshot["b"] = PassthroughResult(value=2)

    assert "b" not in store


def test_status_transitions_are_mirrored_on_nodes():
    events = []
    nodes = {"a": Node(id="a", type="input"), "b": Node(id="b", type="api")}
    context = ExecutionContext("run-1", nodes, listener=events.append)

    context.reset_nodes()
    context.mark_processing("a")
    context.complete("a", PassthroughResult(value="hi"))
    record = context.skip("b", "Skipped due to failed dependencies: x", error_kind="skipped")

    assert nodes["a"].execution_status is ExecutionStatus.COMPLETED
    assert nodes["a"].execution_result == PassthroughResult(value="hi")
    assert nodes["b"].execution_status is ExecutionStatus.ERROR
    assert nodes["b"].execution_error == "Skipped due to failed dependencies: x"
    assert record.skipped and record.attempts == 0
    assert [(e.node_id, e.status) for e in events] == [
        ("a", ExecutionStatus.WAITING),
        ("b", ExecutionStatus.WAITING),
        ("a", ExecutionStatus.PROCESSING),
        ("a", ExecutionStatus.COMPLETED),
        ("b", ExecutionStatus.ERROR),
    ]


def test_reset_clears_previous_run_state():
    node = Node(id="a", type="input", execution_result=TextResult(text="old"), execution_error="old")
    ExecutionContext("run-2", {"a": node}).reset_nodes()

    assert node.execution_status is ExecutionStatus.WAITING
    assert node.execution_result is None
    assert node.execution_error is None


def test_listener_errors_are_swallowed():
    def broken(event):
        raise RuntimeError("ui went away")

    nodes = {"a": Node(id="a", type="input")}
    context = ExecutionContext("run-1", nodes, listener=broken)

    context.mark_processing("a")
    context.complete("a", PassthroughResult(value=1))

    assert context.store.is_finished("a")


async def test_async_listener_is_scheduled_not_awaited():
    seen = []
    gate = asyncio.Event()

    async def slow_listener(event):
        await gate.wait()
        seen.append(event.status)

    nodes = {"a": Node(id="a", type="input")}
    context = ExecutionContext("run-1", nodes, listener=slow_listener)
    context.mark_processing("a")
    context.complete("a", PassthroughResult(value=1))

    assert seen == []
    gate.set()
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert seen == [ExecutionStatus.PROCESSING, ExecutionStatus.COMPLETED]


def test_failure_record_serializes():
    record = FailureRecord(node_id="n", node_type="api", error="boom", attempts=2)

    payload = record.to_dict()

    assert payload["kind"] == "failure"
    assert payload["attempts"] == 2
    assert isinstance(payload["timestamp"], str)
