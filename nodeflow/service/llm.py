from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from nodeflow.logging import get_logger
from nodeflow.service.errors import NodeValidationError, TransientNodeError
from nodeflow.storage.models import TextResult

logger = get_logger(__name__)

DEFAULT_PROVIDER = "openai"
_PLACEHOLDER_PREFIX = "AI processed: "


class TextGenerator:
    """Text generation against an OpenAI-compatible chat-completions API.

    Supports:
    - the configured provider at ``base_url`` (``/chat/completions``)
    - ``custom`` providers that bring their own completions endpoint
    - a placeholder mode when no API key is configured, which echoes the
      input so flows can be exercised without credentials
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1",
        default_model: str = "gpt-4o-mini",
        timeout_seconds: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0)
            )
        return self._client

    async def generate(
        self,
        prompt: str,
        *,
        instructions: str,
        model: Optional[str] = None,
        provider: Optional[str] = None,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> TextResult:
        provider = (provider or DEFAULT_PROVIDER).lower()
        model = model or self.default_model
        key = api_key or self.api_key

        if provider == "custom":
            if not endpoint:
                raise NodeValidationError(
                    "custom AI provider requires an endpoint", field="endpoint"
                )
            url = endpoint
        else:
            if not key:
                logger.warning("llm_generate_no_api_key", provider=provider, model=model)
                return self._placeholder(prompt, instructions=instructions, model=model, provider=provider)
            url = f"{self.base_url}/chat/completions"

        body: Dict[str, Any] = {
            "model": model,
            "messages": self._messages(prompt, instructions),
        }
        if temperature is not None:
            body["temperature"] = temperature
        headers = {"Authorization": f"Bearer {key}"} if key else {}

        try:
            response = await self._get_client().post(
                url, json=body, headers=headers, timeout=self.timeout_seconds
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.error(
                "llm_generate_api_error",
                provider=provider,
                model=model,
                status_code=status,
            )
            if status == 429 or status >= 500:
                raise TransientNodeError(f"AI provider returned {status}") from exc
            raise NodeValidationError(f"AI provider rejected the request ({status})") from exc
        except httpx.TimeoutException as exc:
            logger.error("llm_generate_timeout", provider=provider, model=model)
            raise TransientNodeError("AI provider timed out") from exc
        except httpx.TransportError as exc:
            logger.error("llm_generate_connect_error", provider=provider, error=str(exc))
            raise TransientNodeError("failed to reach AI provider") from exc
        except ValueError as exc:
            raise TransientNodeError("AI provider returned invalid JSON") from exc

        text = self._extract_text(data)
        logger.info(
            "llm_generate_success",
            provider=provider,
            model=model,
            text_length=len(text),
        )
        return TextResult(
            text=text,
            model=data.get("model") or model,
            provider=provider,
            instructions=instructions,
            metadata={"usage": data.get("usage") or {}},
        )

    @staticmethod
    def _messages(prompt: str, instructions: str) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": instructions},
            {"role": "user", "content": prompt},
        ]

    @staticmethod
    def _extract_text(data: Any) -> str:
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise TransientNodeError("AI provider response missing completion text") from exc
        return content if isinstance(content, str) else str(content or "")

    def _placeholder(self, prompt: str, *, instructions: str, model: str, provider: str) -> TextResult:
        return TextResult(
            text=f"{_PLACEHOLDER_PREFIX}{prompt}",
            model=model,
            provider=provider,
            instructions=instructions,
            metadata={"placeholder": True, "summary": f"Summary: {prompt[:100]}"},
        )

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
