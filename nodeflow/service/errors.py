from __future__ import annotations

from typing import Any, List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - invalid_flow (400)
    - not_found (404)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class FlowStructureError(ServiceError):
    """The flow cannot be indexed at all, e.g. two nodes share an ID."""
    status_code = 400
    error_code = "invalid_flow"


class FlowPayloadError(ValidationError):
    """A raw flow document failed JSON Schema validation."""

    def __init__(self, message: str, errors: List[str]):
        super().__init__(message, detail={"errors": list(errors)})
        self.errors = list(errors)


class NodeExecutionError(Exception):
    """Raised by node processors.

    ``retryable`` tells the retry layer whether another attempt can help;
    the kind of failure is carried by the exception type rather than by the
    wording of the message.
    """

    retryable: bool = True
    error_kind: str = "transient"

    def __init__(self, message: str, *, field: Optional[str] = None, detail: Any = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.detail = detail


class NodeValidationError(NodeExecutionError):
    """Missing or invalid node config or inputs. Never retried."""

    retryable = False
    error_kind = "validation"


class TransientNodeError(NodeExecutionError):
    """Network or upstream service failure. Retried with backoff."""

    retryable = True
    error_kind = "transient"


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "ServerError",
    "FlowStructureError",
    "FlowPayloadError",
    "NodeExecutionError",
    "NodeValidationError",
    "TransientNodeError",
]
