from __future__ import annotations

from typing import Any, Dict

from jsonschema import Draft202012Validator

from nodeflow.service.errors import FlowPayloadError

_FLOW_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "nodes": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "type": {"type": "string", "minLength": 1},
                    "data": {"type": "object"},
                    "position": {"type": "object"},
                },
                "required": ["id", "type"],
                "additionalProperties": True,
            },
        },
        "edges": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": ["string", "integer", "null"]},
                    "source": {"type": "string"},
                    "target": {"type": "string"},
                    "from": {"type": "string"},
                    "to": {"type": "string"},
                },
                "anyOf": [
                    {"required": ["source", "target"]},
                    {"required": ["from", "to"]},
                ],
                "additionalProperties": True,
            },
        },
        "runtime_inputs": {"type": "object"},
        "credentials": {"type": "object"},
    },
    "required": ["nodes"],
    "additionalProperties": True,
}

_validator = Draft202012Validator(_FLOW_SCHEMA)


def validate_flow_payload(payload: Any) -> None:
    """Raise ``FlowPayloadError`` listing every schema violation in ``payload``."""
    errors = sorted(
        _validator.iter_errors(payload),
        key=lambda e: [str(part) for part in e.absolute_path],
    )
    if errors:
        messages = []
        for error in errors:
            location = "/".join(str(part) for part in error.absolute_path)
            messages.append(f"{location}: {error.message}" if location else error.message)
        raise FlowPayloadError("flow validation failed", messages)
