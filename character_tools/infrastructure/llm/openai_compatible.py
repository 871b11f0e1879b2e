"""OpenAI-compatible adapter - LM Studio, vLLM, OpenRouter."""

import logging
from typing import Any

import httpx

from character_tools.domain.ports.config import OpenAICompatibleConfig
from character_tools.domain.ports.llm import LLMMessage, LLMResponse

logger = logging.getLogger(__name__)


class OpenAICompatibleAdapter:
    """Implements LLMPort via /v1/chat/completions with ``response_format`` structured output."""

    def __init__(self, config: OpenAICompatibleConfig, default_model: str | None = None) -> None:
        """Initialize with OpenAI-compatible config."""
        self._config = config
        self._default_model = default_model or "default"
        self._base_url = config.base_url.rstrip("/")
        self._headers = {"Content-Type": "application/json"}
        if config.api_key:
            self._headers["Authorization"] = f"Bearer {config.api_key}"
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create persistent async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._config.timeout,
                headers=self._headers,
            )
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client (call during app shutdown)."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _chat_body(
        self,
        model: str,
        messages: list,
        temperature: float,
        json_schema: dict[str, Any] | None = None,
    ) -> dict:
        """Build request body; optional max_tokens from config."""
        body: dict = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "stream": False,
        }
        if self._config.max_tokens is not None:
            body["max_tokens"] = self._config.max_tokens
        if json_schema:
            body["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": json_schema.get("name", "response"),
                    "strict": json_schema.get("strict", True),
                    "schema": json_schema.get("value", {}),
                },
            }
        return body

    async def generate(
        self,
        messages: list[LLMMessage],
        model: str | None = None,
        temperature: float = 0.7,
        json_schema: dict[str, Any] | None = None,
    ) -> LLMResponse:
        """Generate a single response."""
        model = model or self._default_model
        body = self._chat_body(
            model,
            [{"role": m.role, "content": m.content} for m in messages],
            temperature,
            json_schema,
        )
        client = self._get_client()
        resp = await client.post(
            f"{self._base_url}/chat/completions",
            json=body,
        )
        if resp.status_code >= 400:
            logger.error(
                "LLM API error %s: %s",
                resp.status_code,
                resp.text[:500],
                extra={"model": model},
            )
        resp.raise_for_status()
        data = resp.json()
        choice = (data.get("choices") or [{}])[0]
        content = (choice.get("message") or {}).get("content") or ""
        return LLMResponse(content=content, model=data.get("model") or model, done=True)

    async def is_available(self) -> bool:
        """Check if the server answers /models."""
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(f"{self._base_url}/models", headers=self._headers)
                return resp.status_code == 200
        except (httpx.ConnectTimeout, httpx.ConnectError, httpx.ReadTimeout, OSError) as e:
            logger.debug("OpenAI-compatible availability check failed (connection): %s", e)
            return False
        except httpx.HTTPError as e:
            logger.debug("OpenAI-compatible availability check failed (HTTP): %s", e)
            return False

    async def list_models(self) -> list[str]:
        """List available models from /v1/models."""
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(f"{self._base_url}/models", headers=self._headers)
                resp.raise_for_status()
                models = resp.json().get("data", [])
                return [m.get("id", "") for m in models if m.get("id")]
        except (httpx.ConnectTimeout, httpx.ConnectError, httpx.ReadTimeout, OSError) as e:
            logger.debug("OpenAI-compatible list_models failed (connection): %s", e)
            return []
        except httpx.HTTPError as e:
            logger.debug("OpenAI-compatible list_models failed (HTTP): %s", e)
            return []
