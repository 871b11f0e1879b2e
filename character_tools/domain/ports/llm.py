"""LLM Port - interface for completion providers."""

from typing import Any, Protocol

from pydantic import BaseModel


class LLMMessage(BaseModel):
    """Single message in a conversation."""

    role: str  # "system" | "user" | "assistant"
    content: str


class LLMResponse(BaseModel):
    """Response from LLM (non-streaming)."""

    content: str
    model: str
    done: bool = True


class LLMPort(Protocol):
    """Interface for LLM providers (Ollama, LM Studio, OpenAI-compatible servers)."""

    async def generate(
        self,
        messages: list[LLMMessage],
        model: str | None = None,
        temperature: float = 0.7,
        json_schema: dict[str, Any] | None = None,
    ) -> LLMResponse:
        """Generate a single response.

        ``json_schema`` is a structured-output envelope (``name``, ``strict``,
        ``value``); when given, the provider is asked to answer in that shape.
        """
        ...

    async def is_available(self) -> bool:
        """Check if the LLM provider is available."""
        ...

    async def list_models(self) -> list[str]:
        """List available models."""
        ...
