import pytest

from nodeflow.service.registry import (
    FunctionProcessor,
    NodeProcessor,
    ProcessorContext,
    ProcessorRegistry,
    UnknownNodeProcessor,
)
from nodeflow.storage.models import EmptyResult, Node, StructuredResult


class EchoProcessor(NodeProcessor):
    node_type = "echo"

    async def process(self, node, inputs, context):
        return StructuredResult(data={"inputs": sorted(inputs)})


def test_register_and_resolve():
    registry = ProcessorRegistry()
    echo = registry.register(EchoProcessor())

    assert registry.resolve("echo") is echo
    assert "echo" in registry
    assert registry.node_types() == ["echo"]


def test_duplicate_registration_requires_replace():
    registry = ProcessorRegistry([EchoProcessor()])

    with pytest.raises(ValueError):
        registry.register(EchoProcessor())

    replacement = EchoProcessor()
    registry.register(replacement, replace=True)
    assert registry.resolve("echo") is replacement


def test_processor_without_type_is_rejected():
    with pytest.raises(ValueError):
        ProcessorRegistry().register(NodeProcessor())


def test_registries_are_independent():
    first = ProcessorRegistry([EchoProcessor()])
    second = ProcessorRegistry()

    assert "echo" in first
    assert "echo" not in second


def test_register_function_carries_partial_input_flag():
    registry = ProcessorRegistry()
    processor = registry.register_function(
        "merge", lambda node, inputs, context: StructuredResult(), accepts_partial_inputs=True
    )

    assert isinstance(processor, FunctionProcessor)
    assert registry.resolve("merge").accepts_partial_inputs is True


async def test_unknown_type_resolves_to_empty_result():
    registry = ProcessorRegistry()
    processor = registry.resolve("youtube")

    result = await processor.process(
        Node(id="n", type="youtube"), {}, ProcessorContext(run_id="r")
    )

    assert isinstance(processor, UnknownNodeProcessor)
    assert result == EmptyResult(node_type="youtube")
    assert "youtube" not in registry


async def test_function_processor_accepts_sync_and_async_callables():
    async def async_fn(node, inputs, context):
        return StructuredResult(data={"mode": "async"})

    sync = FunctionProcessor("s", lambda node, inputs, context: StructuredResult(data={"mode": "sync"}))
    asyn = FunctionProcessor("a", async_fn)
    context = ProcessorContext(run_id="r")

    assert (await sync.process(Node(id="n", type="s"), {}, context)).data == {"mode": "sync"}
    assert (await asyn.process(Node(id="n", type="a"), {}, context)).data == {"mode": "async"}
