"""Config Port - interface for configuration access."""

from typing import Protocol

from pydantic import BaseModel, ConfigDict


class LLMConfig(BaseModel):
    """LLM provider selection."""

    provider: str = "ollama"  # "ollama" | "lm_studio" | "openai"


class OllamaConfig(BaseModel):
    """Ollama connection configuration."""

    host: str = "http://localhost:11434"
    timeout: int = 120
    # None = use model defaults.
    num_ctx: int | None = None
    num_predict: int | None = None


class OpenAICompatibleConfig(BaseModel):
    """LM Studio, vLLM, OpenRouter - OpenAI-compatible API."""

    base_url: str = "http://localhost:1234/v1"
    api_key: str = ""
    timeout: int = 120
    max_tokens: int | None = 4096


class GenerationConfig(BaseModel):
    """Completion parameters and the prompts wrapped around every request."""

    model: str = "qwen2.5:7b"
    temperature: float = 1.0
    # Empty = built-in defaults.
    system_prompt: str = ""
    refinement_prompt: str = ""
    user_name: str = "User"

    model_config = ConfigDict(extra="ignore")


class PipelineConfig(BaseModel):
    """Pipeline bounds."""

    max_iteration_history: int = 20
    preview_length: int = 200
    # Refinement validation warns once this many iterations have run.
    refinement_warn_after: int = 5


class SecurityConfig(BaseModel):
    """Security settings."""

    rate_limit_requests_per_minute: int = 100
    generation_rate_limit: str = "25/minute"
    cors_origins: list[str] = ["http://localhost:5173"]


class PersistenceConfig(BaseModel):
    """Persistence settings."""

    output_dir: str = "output"
    characters_dir: str = "characters"


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000


class AppConfig(BaseModel):
    """Full application configuration."""

    server: ServerConfig = ServerConfig()
    llm: LLMConfig = LLMConfig()
    ollama: OllamaConfig = OllamaConfig()
    openai_compatible: OpenAICompatibleConfig = OpenAICompatibleConfig()
    generation: GenerationConfig = GenerationConfig()
    pipeline: PipelineConfig = PipelineConfig()
    security: SecurityConfig = SecurityConfig()
    persistence: PersistenceConfig = PersistenceConfig()
    log_level: str = "INFO"
    # Log file: path relative to cwd or absolute. Empty = only stdout.
    log_file: str = ""
    log_rotation_max_mb: int = 5
    log_rotation_backups: int = 3


class ConfigPort(Protocol):
    """Interface for configuration providers."""

    def get_config(self) -> AppConfig:
        """Get the full application configuration."""
        ...
