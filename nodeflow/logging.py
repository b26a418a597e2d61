"""Structured logging for flow runs.

Lines are rendered by structlog as JSON (default) or for the console. Inside
a run, ``run_id`` is bound for the whole run and ``node_id``/``node_type``
for each node execution task, so processor logs are attributable without
passing IDs around. Credentials carried by node configs are masked before
rendering.

Environment: ``LOG_LEVEL``, ``LOG_JSON``, ``LOG_DEV_MODE``.
"""

from __future__ import annotations

import logging
import os
import re
import sys
import uuid
from collections import Counter
from contextvars import ContextVar
from typing import Any, Dict, Optional, TextIO

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Substrings of keys whose values never reach a log line unmasked
_CREDENTIAL_KEYS = ("password", "secret", "token", "api_key", "apikey", "authorization", "credential")
_MAX_MASK_DEPTH = 6


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use the caller's ID (e.g. X-Request-ID) or mint a new one."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _is_credential_key(key: Any) -> bool:
    lowered = str(key).lower()
    return any(marker in lowered for marker in _CREDENTIAL_KEYS)


def _mask(value: Any) -> Any:
    if isinstance(value, str) and len(value) > 4:
        return value[:2] + "***" + value[-2:]
    if isinstance(value, str):
        return "***"
    return value


def _mask_nested(value: Any, depth: int = 0) -> Any:
    """Mask credential entries inside headers, credential maps and node data."""
    if depth > _MAX_MASK_DEPTH:
        return value
    if isinstance(value, dict):
        masked = {}
        for key, item in value.items():
            if isinstance(item, (dict, list)):
                masked[key] = _mask_nested(item, depth + 1)
            else:
                masked[key] = _mask(item) if _is_credential_key(key) else item
        return masked
    if isinstance(value, list):
        return [_mask_nested(item, depth + 1) for item in value]
    return value


def _mask_credentials(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if isinstance(value, (dict, list)):
            event_dict[key] = _mask_nested(value)
        elif _is_credential_key(key):
            event_dict[key] = _mask(value)
    return event_dict


def _add_correlation_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _summarize_trace(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add per-status node counts to ``flow_trace`` lines."""
    if event_dict.get("event") == "flow_trace" and isinstance(event_dict.get("trace"), list):
        counts = Counter(entry.get("status") for entry in event_dict["trace"] if isinstance(entry, dict))
        event_dict["node_counts"] = dict(sorted(counts.items()))
    return event_dict


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
    stream: Optional[TextIO] = None,
) -> None:
    """Install the structlog pipeline.

    Output goes to stderr unless ``stream`` is given, which keeps stdout free
    for the CLI's JSON result.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _summarize_trace,
        _mask_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_run_context(run_id: str) -> None:
    """Attach ``run_id`` to every log line emitted until ``clear_run_context``."""
    structlog.contextvars.bind_contextvars(run_id=run_id)


def clear_run_context() -> None:
    structlog.contextvars.unbind_contextvars("run_id", "node_id", "node_type")


def bind_node_context(node_id: str, node_type: str) -> None:
    """Bind the executing node. Call from inside the node's own task; asyncio
    gives each task a copy of the context, so siblings in a batch stay apart."""
    structlog.contextvars.bind_contextvars(node_id=node_id, node_type=node_type)


def log_flow_trace(trace: list, logger: Optional[Any] = None) -> None:
    """Log the per-node trace of a finished run: nodes executed, attempts, errors."""
    log = logger or get_logger("flow")
    log.info("flow_trace", trace=trace)


_SENSITIVE_ERROR_PATTERNS = [
    r'(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s]+',
    r'(?i)bearer\s+[a-z0-9._\-]+',
    r'\bsk-[A-Za-z0-9_\-]{8,}',
    r'(?i)/(?:home|var|etc|usr|opt|tmp)/[^\s]+',
    r'(?i)[a-z]:\\[^\s]+',
    r'(?i)traceback\s*\(most recent call last\)',
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip credentials and filesystem paths from a message leaving the process.

    Node processors echo upstream API errors, which can carry bearer tokens
    or provider keys. The result is capped at 500 characters.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)

    if len(result) > 500:
        result = result[:497] + "..."

    return result
