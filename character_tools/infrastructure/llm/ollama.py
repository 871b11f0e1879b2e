"""Ollama adapter - implements LLMPort over the ``ollama`` client."""

import logging
from typing import Any

import httpx
from ollama import AsyncClient

from character_tools.domain.ports.config import OllamaConfig
from character_tools.domain.ports.llm import LLMMessage, LLMResponse

logger = logging.getLogger(__name__)

# Fail fast when the host is down so startup checks do not hang
DEFAULT_CONNECT_TIMEOUT = 5.0


class OllamaAdapter:
    """Ollama implementation of LLMPort. Structured output goes through ``format=``."""

    def __init__(self, config: OllamaConfig, default_model: str | None = None) -> None:
        self._config = config
        self._default_model = default_model or "qwen2.5:7b"
        read_timeout = float(config.timeout) if config.timeout else 120.0
        timeout = httpx.Timeout(
            connect=DEFAULT_CONNECT_TIMEOUT,
            read=read_timeout,
            write=read_timeout,
            pool=30.0,
        )
        self._client = AsyncClient(host=config.host, timeout=timeout)

    def _ollama_options(self, temperature: float) -> dict:
        """Build options dict: temperature + optional num_ctx, num_predict from config."""
        opts: dict = {"temperature": temperature}
        if self._config.num_ctx is not None:
            opts["num_ctx"] = self._config.num_ctx
        if self._config.num_predict is not None:
            opts["num_predict"] = self._config.num_predict
        return opts

    async def generate(
        self,
        messages: list[LLMMessage],
        model: str | None = None,
        temperature: float = 0.7,
        json_schema: dict[str, Any] | None = None,
    ) -> LLMResponse:
        """Generate a single response."""
        model = model or self._default_model
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "options": self._ollama_options(temperature),
        }
        if json_schema and isinstance(json_schema.get("value"), dict):
            # Ollama takes the bare JSON Schema, not the named envelope
            kwargs["format"] = json_schema["value"]
        response = await self._client.chat(**kwargs)
        content = response.message.content if response.message else ""
        return LLMResponse(content=content or "", model=response.model or model, done=True)

    async def is_available(self) -> bool:
        """Check if Ollama server is available. Fail-fast, no stale cache."""
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(f"{self._config.host.rstrip('/')}/api/tags")
                return resp.status_code == 200
        except Exception as e:
            logger.debug("Ollama availability check failed: %s", e)
        return False

    async def list_models(self) -> list[str]:
        """List available models from Ollama."""
        try:
            resp = await self._client.list()
            if not resp.models:
                return []
            names = [getattr(m, "model", None) or getattr(m, "name", "") for m in resp.models]
            return [n for n in names if n]
        except (httpx.ConnectTimeout, httpx.ConnectError, ConnectionError) as e:
            logger.debug("Ollama list_models failed (unreachable): %s", e)
            return []
        except Exception as e:
            logger.warning("Ollama list_models failed: %s", e, exc_info=True)
            return []
