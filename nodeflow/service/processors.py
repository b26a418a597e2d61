"""Built-in node processors.

Each processor validates its own node config first and fails fast with a
``NodeValidationError`` naming the offending field. Anything that talks to
the network maps upstream trouble onto ``TransientNodeError`` so the retry
layer can tell the two apart.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

import httpx

from nodeflow.logging import get_logger
from nodeflow.service.errors import NodeValidationError, TransientNodeError
from nodeflow.service.llm import TextGenerator
from nodeflow.service.registry import NodeProcessor, ProcessorRegistry
from nodeflow.service.sandbox import safe_eval_expr
from nodeflow.storage.models import (
    FailureRecord,
    Node,
    OutputResult,
    PassthroughResult,
    Result,
    StructuredResult,
    TextResult,
)

logger = get_logger(__name__)

_HTTP_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"}
_BODY_METHODS = {"POST", "PUT", "PATCH"}


def result_value(result: Result) -> Any:
    """Plain value carried by a result, as downstream nodes see it."""
    if isinstance(result, TextResult):
        return result.text
    if isinstance(result, PassthroughResult):
        return result.value
    if isinstance(result, StructuredResult):
        return result.data
    if isinstance(result, OutputResult):
        return result.display_content
    return None


def result_display(result: Result) -> str:
    if isinstance(result, TextResult):
        return result.text
    if isinstance(result, PassthroughResult):
        return _to_text(result.value)
    if isinstance(result, StructuredResult):
        return json.dumps(result.data, indent=2, default=str)
    if isinstance(result, OutputResult):
        return result.display_content
    return ""


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def successful_inputs(inputs: Dict[str, Result]) -> List[Tuple[str, Result]]:
    return [(node_id, result) for node_id, result in inputs.items() if not isinstance(result, FailureRecord)]


def primary_input(inputs: Dict[str, Result]) -> Optional[Result]:
    """First successful upstream result, in dependency order."""
    for _, result in successful_inputs(inputs):
        return result
    return None


def _require_str(node: Node, field: str, message: str) -> str:
    value = node.data.get(field)
    if not isinstance(value, str) or not value.strip():
        raise NodeValidationError(message, field=field)
    return value.strip()


class InputProcessor(NodeProcessor):
    node_type = "input"
    fallback_field = "value"

    async def process(self, node, inputs, context):
        if context.has_runtime_input:
            return PassthroughResult(value=context.runtime_input, source="runtime_input")
        value = node.data.get(self.fallback_field)
        if value is not None and value != "":
            return PassthroughResult(value=value, source="node_data")
        raise NodeValidationError(
            f"{node.type} node {node.label} has no runtime input and no configured {self.fallback_field}",
            field=self.fallback_field,
        )


class SystemProcessor(InputProcessor):
    node_type = "system"
    fallback_field = "message"


class AIModelProcessor(NodeProcessor):
    node_type = "aimodel"

    def __init__(self, generator: TextGenerator):
        self.generator = generator

    async def process(self, node, inputs, context):
        instructions = _require_str(node, "instructions", "AI Model node requires processing instructions")
        upstream = [
            result_value(result)
            for _, result in successful_inputs(inputs)
            if result_value(result) not in (None, "")
        ]
        if context.has_runtime_input and context.runtime_input not in (None, ""):
            upstream.insert(0, context.runtime_input)
        if not upstream:
            raise NodeValidationError("AI Model node requires at least one input", field="inputs")
        prompt = "\n\n".join(_to_text(value) for value in upstream)

        provider = node.data.get("provider")
        provider_key = str(provider).lower() if provider else "openai"
        api_key = context.credentials.get(f"{provider_key}_api_key") or context.credentials.get("api_key")
        temperature = node.data.get("temperature")
        if temperature is not None and not isinstance(temperature, (int, float)):
            raise NodeValidationError("temperature must be a number", field="temperature")

        return await self.generator.generate(
            prompt,
            instructions=instructions,
            model=node.data.get("model"),
            provider=provider,
            endpoint=node.data.get("endpoint"),
            api_key=api_key,
            temperature=temperature,
        )


class APIProcessor(NodeProcessor):
    node_type = "api"

    def __init__(self, client: httpx.AsyncClient, *, timeout_seconds: float = 30.0):
        self.client = client
        self.timeout_seconds = timeout_seconds

    async def process(self, node, inputs, context):
        url = _require_str(node, "url", "API node requires a URL")
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise NodeValidationError(f"API node URL must be http(s): {url}", field="url")
        method = str(node.data.get("method") or "GET").upper()
        if method not in _HTTP_METHODS:
            raise NodeValidationError(f"unsupported HTTP method {method}", field="method")
        headers = node.data.get("headers") or {}
        if not isinstance(headers, dict):
            raise NodeValidationError("headers must be an object", field="headers")

        request_kwargs: Dict[str, Any] = {"headers": {str(k): str(v) for k, v in headers.items()}}
        if method in _BODY_METHODS:
            body = node.data.get("body")
            if body is None:
                upstream = primary_input(inputs)
                body = {"input": result_value(upstream)} if upstream is not None else None
            if body is not None:
                request_kwargs["json"] = body
        params = node.data.get("params")
        if isinstance(params, dict):
            request_kwargs["params"] = params

        try:
            response = await self.client.request(
                method, url, timeout=self.timeout_seconds, **request_kwargs
            )
        except httpx.TimeoutException as exc:
            raise TransientNodeError(f"API request to {parsed.netloc} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientNodeError(f"API request to {parsed.netloc} failed: {exc}") from exc

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientNodeError(f"API returned {response.status_code}")
        if response.status_code >= 400:
            raise NodeValidationError(f"API returned {response.status_code}", detail=response.text[:500])

        try:
            payload: Any = response.json()
        except ValueError:
            payload = response.text
        logger.info(
            "flow_api_node_response",
            node_id=node.id,
            method=method,
            host=parsed.netloc,
            status_code=response.status_code,
        )
        return StructuredResult(
            data={
                "status": response.status_code,
                "data": payload,
                "endpoint": url,
                "method": method,
            }
        )


class ConditionProcessor(NodeProcessor):
    node_type = "condition"

    async def process(self, node, inputs, context):
        condition = node.data.get("condition", "true")
        if not isinstance(condition, str) or not condition.strip():
            raise NodeValidationError("condition must be a non-empty expression", field="condition")
        upstream = primary_input(inputs)
        value = result_value(upstream) if upstream is not None else None
        names = {
            "input": value,
            "inputs": {node_id: result_value(result) for node_id, result in successful_inputs(inputs)},
            "true": True,
            "false": False,
        }
        try:
            outcome = safe_eval_expr(condition, names)
        except ValueError as exc:
            raise NodeValidationError(f"Invalid condition: {condition} ({exc})", field="condition") from exc
        return StructuredResult(data={"condition": condition, "result": bool(outcome), "input": value})


class OutputProcessor(NodeProcessor):
    node_type = "output"

    async def process(self, node, inputs, context):
        received = successful_inputs(inputs)
        if not received:
            raise NodeValidationError("Output node received no input", field="inputs")
        parts = [result_display(result) for _, result in received]
        display = "\n\n".join(part for part in parts if part)
        full_data = {
            node_id: {"kind": result.kind, "value": result_value(result)}
            for node_id, result in received
        }
        template = node.data.get("template")
        if isinstance(template, str) and "{output}" in template:
            display = template.replace("{output}", display)
        return OutputResult(display_content=display, full_data=full_data)


def default_processors(
    generator: TextGenerator,
    client: httpx.AsyncClient,
    *,
    api_timeout_seconds: float = 30.0,
) -> Iterable[NodeProcessor]:
    return (
        InputProcessor(),
        SystemProcessor(),
        AIModelProcessor(generator),
        APIProcessor(client, timeout_seconds=api_timeout_seconds),
        ConditionProcessor(),
        OutputProcessor(),
    )


def build_default_registry(
    generator: TextGenerator,
    client: httpx.AsyncClient,
    *,
    api_timeout_seconds: float = 30.0,
) -> ProcessorRegistry:
    return ProcessorRegistry(
        default_processors(generator, client, api_timeout_seconds=api_timeout_seconds)
    )
