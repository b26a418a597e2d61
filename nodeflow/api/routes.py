from __future__ import annotations

from fastapi import APIRouter

from nodeflow.api.schemas import (
    Envelope,
    NodeTypesResponse,
    RunFlowRequest,
    ValidateFlowRequest,
    ValidateFlowResponse,
)
from nodeflow.logging import get_logger
from nodeflow.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


@router.get("/node-types", response_model=Envelope, tags=["flows"])
async def list_node_types():
    """Node types with a registered processor. Anything else runs as a no-op."""
    runtime = get_runtime()
    return Envelope(status="ok", data=NodeTypesResponse(node_types=runtime.registry.node_types()))


@router.post("/flows/validate", response_model=Envelope, tags=["flows"])
async def validate_flow(body: ValidateFlowRequest):
    """Report dropped edges, cycles and other warnings without running the flow.

    Raises:
        400: If two nodes share an ID or a node lacks an id/type
    """
    runtime = get_runtime()
    report = runtime.engine.validate(body.nodes, body.edges)
    return Envelope(status="ok", data=ValidateFlowResponse(**report))


@router.post("/flows/run", response_model=Envelope, tags=["flows"])
async def run_flow(body: RunFlowRequest):
    """Run a flow to completion and return every node's outcome.

    Node failures do not fail the request; they are reported per node in
    ``results`` and summarized by the run ``status``.

    Raises:
        400: If the flow cannot be indexed (duplicate node IDs, malformed nodes)
    """
    runtime = get_runtime()
    outcome = await runtime.engine.run_flow(
        body.nodes,
        body.edges,
        body.runtime_inputs,
        credentials=body.credentials,
    )
    return Envelope(status="ok", data=outcome.to_dict())
