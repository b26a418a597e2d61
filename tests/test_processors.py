"""Built-in processors and the text generator, with outbound HTTP mocked."""

import json

import httpx
import pytest

from nodeflow.service.errors import NodeValidationError, TransientNodeError
from nodeflow.service.llm import TextGenerator
from nodeflow.service.processors import (
    AIModelProcessor,
    APIProcessor,
    ConditionProcessor,
    InputProcessor,
    OutputProcessor,
    SystemProcessor,
    build_default_registry,
)
from nodeflow.service.registry import ProcessorContext
from nodeflow.storage.models import (
    FailureRecord,
    Node,
    OutputResult,
    PassthroughResult,
    StructuredResult,
    TextResult,
)


def _ctx(**kwargs):
    return ProcessorContext(run_id="run-test", **kwargs)


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestEntryProcessors:
    async def test_input_prefers_runtime_input(self):
        node = Node(id="i1", type="input", data={"value": "configured"})

        result = await InputProcessor().process(
            node, {}, _ctx(runtime_input="hello", has_runtime_input=True)
        )

        assert result == PassthroughResult(value="hello", source="runtime_input")

    async def test_input_falls_back_to_configured_value(self):
        node = Node(id="i1", type="input", data={"value": "configured"})

        result = await InputProcessor().process(node, {}, _ctx())

        assert result == PassthroughResult(value="configured", source="node_data")

    async def test_input_without_value_is_a_validation_error(self):
        with pytest.raises(NodeValidationError) as exc_info:
            await InputProcessor().process(Node(id="i1", type="input"), {}, _ctx())
        assert exc_info.value.field == "value"

    async def test_system_uses_message(self):
        node = Node(id="s1", type="system", data={"message": "You are terse."})

        result = await SystemProcessor().process(node, {}, _ctx())

        assert result.value == "You are terse."


class TestAIModelProcessor:
    async def test_requires_instructions(self):
        processor = AIModelProcessor(TextGenerator())
        with pytest.raises(NodeValidationError, match="requires processing instructions"):
            await processor.process(
                Node(id="m1", type="aimodel"), {"i1": PassthroughResult(value="x")}, _ctx()
            )

    async def test_requires_an_input(self):
        processor = AIModelProcessor(TextGenerator())
        with pytest.raises(NodeValidationError) as exc_info:
            await processor.process(
                Node(id="m1", type="aimodel", data={"instructions": "Summarize"}), {}, _ctx()
            )
        assert exc_info.value.field == "inputs"

    async def test_placeholder_mode_without_api_key(self):
        processor = AIModelProcessor(TextGenerator(api_key=None))
        node = Node(id="m1", type="aimodel", data={"instructions": "Summarize", "model": "gpt-4o"})

        result = await processor.process(node, {"i1": PassthroughResult(value="hello")}, _ctx())

        assert isinstance(result, TextResult)
        assert result.text == "AI processed: hello"
        assert result.model == "gpt-4o"
        assert result.instructions == "Summarize"
        assert result.metadata["placeholder"] is True

    async def test_calls_chat_completions_with_credentials(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "model": "gpt-4o-mini",
                    "choices": [{"message": {"content": "Short summary"}}],
                    "usage": {"total_tokens": 12},
                },
            )

        generator = TextGenerator(api_key=None, base_url="https://llm.test/v1", client=_client(handler))
        node = Node(id="m1", type="aimodel", data={"instructions": "Summarize"})

        result = await AIModelProcessor(generator).process(
            node,
            {"i1": PassthroughResult(value="long text")},
            _ctx(credentials={"openai_api_key": "sk-test"}),
        )

        assert result.text == "Short summary"
        assert result.metadata == {"usage": {"total_tokens": 12}}
        assert seen["url"] == "https://llm.test/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["messages"] == [
            {"role": "system", "content": "Summarize"},
            {"role": "user", "content": "long text"},
        ]

    @pytest.mark.parametrize("status,error_type", [(429, TransientNodeError), (503, TransientNodeError), (401, NodeValidationError)])
    async def test_provider_status_codes_are_classified(self, status, error_type):
        generator = TextGenerator(
            api_key="sk-test",
            base_url="https://llm.test/v1",
            client=_client(lambda request: httpx.Response(status, json={"error": "nope"})),
        )

        with pytest.raises(error_type):
            await generator.generate("hi", instructions="Summarize")

    async def test_connection_errors_are_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        generator = TextGenerator(api_key="sk-test", client=_client(handler))

        with pytest.raises(TransientNodeError):
            await generator.generate("hi", instructions="Summarize")

    async def test_custom_provider_requires_endpoint(self):
        generator = TextGenerator(api_key="sk-test")

        with pytest.raises(NodeValidationError) as exc_info:
            await generator.generate("hi", instructions="x", provider="custom")

        assert exc_info.value.field == "endpoint"


class TestAPIProcessor:
    async def test_requires_url(self):
        processor = APIProcessor(_client(lambda request: httpx.Response(200)))

        with pytest.raises(NodeValidationError, match="requires a URL"):
            await processor.process(Node(id="a1", type="api"), {}, _ctx())

    async def test_get_returns_structured_result(self):
        def handler(request):
            assert request.method == "GET"
            return httpx.Response(200, json={"price": 42})

        processor = APIProcessor(_client(handler))
        node = Node(id="a1", type="api", data={"url": "https://data.test/price"})

        result = await processor.process(node, {}, _ctx())

        assert isinstance(result, StructuredResult)
        assert result.data["status"] == 200
        assert result.data["data"] == {"price": 42}
        assert result.data["method"] == "GET"

    async def test_post_sends_upstream_value(self):
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return httpx.Response(201, text="created")

        processor = APIProcessor(_client(handler))
        node = Node(id="a1", type="api", data={"url": "https://hooks.test/in", "method": "post"})

        result = await processor.process(node, {"m1": TextResult(text="summary")}, _ctx())

        assert captured["body"] == {"input": "summary"}
        assert result.data["data"] == "created"

    async def test_server_errors_are_transient(self):
        processor = APIProcessor(_client(lambda request: httpx.Response(502)))
        node = Node(id="a1", type="api", data={"url": "https://data.test/"})

        with pytest.raises(TransientNodeError):
            await processor.process(node, {}, _ctx())

    async def test_client_errors_are_not_retried(self):
        processor = APIProcessor(_client(lambda request: httpx.Response(404, text="missing")))
        node = Node(id="a1", type="api", data={"url": "https://data.test/"})

        with pytest.raises(NodeValidationError):
            await processor.process(node, {}, _ctx())

    async def test_rejects_non_http_urls(self):
        processor = APIProcessor(_client(lambda request: httpx.Response(200)))
        node = Node(id="a1", type="api", data={"url": "file:///etc/passwd"})

        with pytest.raises(NodeValidationError) as exc_info:
            await processor.process(node, {}, _ctx())
        assert exc_info.value.field == "url"


class TestConditionProcessor:
    async def test_evaluates_against_primary_input(self):
        node = Node(id="c1", type="condition", data={"condition": "len(input) > 3 and 'hi' in input"})

        result = await ConditionProcessor().process(node, {"i1": PassthroughResult(value="hi there")}, _ctx())

        assert result.data == {"condition": node.data["condition"], "result": True, "input": "hi there"}

    async def test_defaults_to_true(self):
        result = await ConditionProcessor().process(Node(id="c1", type="condition"), {}, _ctx())

        assert result.data["result"] is True

    async def test_unsafe_condition_is_a_validation_error(self):
        node = Node(id="c1", type="condition", data={"condition": "input.__class__"})

        with pytest.raises(NodeValidationError):
            await ConditionProcessor().process(node, {"i1": PassthroughResult(value="x")}, _ctx())


class TestOutputProcessor:
    async def test_display_content_by_result_kind(self):
        inputs = {
            "m1": TextResult(text="AI text"),
            "a1": StructuredResult(data={"k": 1}),
            "i1": PassthroughResult(value=7),
        }

        result = await OutputProcessor().process(Node(id="o1", type="output"), inputs, _ctx())

        assert isinstance(result, OutputResult)
        assert result.display_content == 'AI text\n\n{\n  "k": 1\n}\n\n7'
        assert result.full_data["m1"] == {"kind": "text", "value": "AI text"}

    async def test_failed_inputs_are_ignored(self):
        inputs = {
            "x": FailureRecord(node_id="x", node_type="api", error="boom"),
            "m1": TextResult(text="kept"),
        }

        result = await OutputProcessor().process(Node(id="o1", type="output"), inputs, _ctx())

        assert result.display_content == "kept"

    async def test_output_without_input_fails(self):
        with pytest.raises(NodeValidationError):
            await OutputProcessor().process(Node(id="o1", type="output"), {}, _ctx())


def test_default_registry_covers_builtin_types():
    registry = build_default_registry(TextGenerator(), _client(lambda request: httpx.Response(200)))

    assert registry.node_types() == ["aimodel", "api", "condition", "input", "output", "system"]
