from __future__ import annotations

import asyncio
import threading
from typing import Optional

import httpx

from nodeflow.config import Settings, get_settings, reset_settings_cache
from nodeflow.logging import get_logger
from nodeflow.service.engine import FlowEngine
from nodeflow.service.llm import TextGenerator
from nodeflow.service.processors import build_default_registry
from nodeflow.service.retry import RetryPolicy

logger = get_logger(__name__)


class Runtime:
    """Holds the process-wide service instances for the app and CLI."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.http = httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.api_node_timeout_seconds, connect=10.0),
            transport=transport,
            follow_redirects=True,
        )
        # Tests never reach a real provider
        api_key = None if self.settings.test_mode else self.settings.llm_api_key
        self.text_generator = TextGenerator(
            api_key=api_key,
            base_url=self.settings.llm_base_url,
            default_model=self.settings.llm_default_model,
            timeout_seconds=self.settings.llm_timeout_seconds,
            client=self.http,
        )
        self.registry = build_default_registry(
            self.text_generator,
            self.http,
            api_timeout_seconds=self.settings.api_node_timeout_seconds,
        )
        self.retry_policy = RetryPolicy(
            max_retries=self.settings.node_max_retries,
            backoff_ms=0 if self.settings.test_mode else self.settings.node_retry_backoff_ms,
            node_timeout_ms=self.settings.node_timeout_ms or None,
        )
        self.engine = FlowEngine(
            self.registry,
            policy=self.retry_policy,
            max_parallel_nodes=self.settings.max_parallel_nodes or None,
            flow_timeout_ms=self.settings.flow_timeout_ms or None,
        )

        logger.info(
            "runtime_initialized",
            node_types=self.registry.node_types(),
            llm_configured=self.text_generator.is_configured,
            max_retries=self.retry_policy.max_retries,
            max_parallel_nodes=self.settings.max_parallel_nodes,
        )

    async def close(self) -> None:
        await self.text_generator.aclose()
        await self.http.aclose()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_quietly(instance: Runtime) -> None:
    try:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(instance.close())
            return
        loop.create_task(instance.close())
    except Exception as exc:
        # Connections may belong to a loop that is already gone
        logger.warning("runtime_close_failed", error=str(exc))


def reset_runtime_for_tests(
    *, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            _close_quietly(runtime)
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, transport=transport)
        return runtime
