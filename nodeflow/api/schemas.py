from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Nested JSON depth cap for node data and runtime inputs
MAX_JSON_DEPTH = 20
MAX_ARRAY_ITEMS = 1000
MAX_FLOW_NODES = 500
MAX_FLOW_EDGES = 2000


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


_VALID_ERROR_CODES = frozenset({
    "not_found",
    "validation_error",
    "invalid_flow",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class FlowGraph(BaseModel):
    """Canvas nodes and edges as exported by the flow editor."""

    model_config = ConfigDict(extra="ignore")

    nodes: List[Dict[str, Any]] = Field(..., max_length=MAX_FLOW_NODES)
    edges: List[Dict[str, Any]] = Field(default_factory=list, max_length=MAX_FLOW_EDGES)

    @field_validator("nodes", "edges")
    @classmethod
    def _check_depth(cls, value: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        _validate_json_depth(value)
        return value


class ValidateFlowRequest(FlowGraph):
    pass


class RunFlowRequest(FlowGraph):
    runtime_inputs: Dict[str, Any] = Field(default_factory=dict)
    credentials: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("runtime_inputs")
    @classmethod
    def _check_inputs_depth(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value


class ValidateFlowResponse(BaseModel):
    dropped_edges: List[Dict[str, str]]
    cycles: List[List[str]]
    unknown_node_types: List[str]
    warnings: List[str]


class NodeTypesResponse(BaseModel):
    node_types: List[str]
