"""Error envelope format and exception-to-response mapping.

Error responses have the shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import ValidationError

from nodeflow.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from nodeflow.api.schemas import Envelope, ErrorBody
from nodeflow.service.errors import (
    FlowPayloadError,
    FlowStructureError,
    NotFoundError,
    ServerError,
)


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="invalid_flow", message="duplicate node id 'a'")
        assert error.code == "invalid_flow"
        assert error.details is None

    def test_error_body_accepts_list_details(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "nodes"}, {"field": "edges"}],
        )
        assert len(error.details) == 2

    def test_unknown_code_is_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")

        assert len(envelope.request_id) == 36

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")

    def test_envelope_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="not_found", message="missing", details={"path": "/x"}),
            request_id="test-req-123",
        )
        dumped = envelope.model_dump()

        assert dumped["error"] == {"code": "not_found", "message": "missing", "details": {"path": "/x"}}
        assert dumped["request_id"] == "test-req-123"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [(400, "validation_error"), (404, "not_found"), (500, "server_error")],
    )
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_other_client_errors_map_to_validation_error(self):
        assert _error_code_for_status(405) == "validation_error"
        assert _error_code_for_status(413) == "validation_error"

    def test_unknown_server_status_defaults_to_server_error(self):
        assert _error_code_for_status(503) == "server_error"
        assert _error_code_for_status(999) == "server_error"

    def test_mapped_codes_are_valid_envelope_codes(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="ok")


class TestErrorResponseFactory:
    def test_explicit_code_overrides_status_mapping(self):
        response = _error_response(400, "bad flow", {"node_id": "a"}, code="invalid_flow")

        body = json.loads(response.body)
        assert response.status_code == 400
        assert body["status"] == "error"
        assert body["error"] == {"code": "invalid_flow", "message": "bad flow", "details": {"node_id": "a"}}


def _app_raising(exc):
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app, raise_server_exceptions=False)


@pytest.mark.parametrize(
    "exc,status,code",
    [
        (FlowStructureError("duplicate node id 'a'", detail={"node_id": "a"}), 400, "invalid_flow"),
        (FlowPayloadError("flow validation failed", ["nodes: required"]), 400, "validation_error"),
        (NotFoundError("flow not found"), 404, "not_found"),
        (ServerError("engine unavailable"), 500, "server_error"),
        (HTTPException(status_code=404, detail="gone"), 404, "not_found"),
    ],
)
def test_exceptions_render_error_envelope(exc, status, code):
    resp = _app_raising(exc).get("/boom")

    assert resp.status_code == status
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == code


def test_service_error_messages_are_sanitized():
    exc = FlowStructureError("upstream said Bearer sk-abcdefghijklmnopqrstuvwx")

    body = _app_raising(exc).get("/boom").json()

    assert "sk-abcdefghijklmnopqrstuvwx" not in body["error"]["message"]


def test_unhandled_exceptions_become_server_errors():
    resp = _app_raising(RuntimeError("kaboom")).get("/boom")

    assert resp.status_code == 500
    assert resp.json()["error"] == {
        "code": "server_error",
        "message": "internal server error",
        "details": None,
    }
