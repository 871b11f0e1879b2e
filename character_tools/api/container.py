"""Dependency Injection Container - centralized service management."""

from functools import cached_property
from typing import TYPE_CHECKING

from character_tools.api.store import SessionStore
from character_tools.domain.ports.config import AppConfig
from character_tools.domain.ports.llm import LLMPort
from character_tools.domain.services.preset_catalog import PresetCatalog
from character_tools.infrastructure.config import load_config

if TYPE_CHECKING:
    from character_tools.application.pipeline.generation import StageGenerator
    from character_tools.application.pipeline.use_case import PipelineUseCase
    from character_tools.infrastructure.characters.library import CharacterLibrary
    from character_tools.infrastructure.persistence.iteration_history import IterationHistoryStore


class Container:
    """Dependency Injection Container with lazy initialization.

    All dependencies are created on first access and cached.

    Usage:
        container = Container()
        use_case = container.pipeline_use_case
    """

    def __init__(self, config: AppConfig | None = None):
        """Initialize container with optional config override."""
        self._config_override = config

    @cached_property
    def config(self) -> AppConfig:
        """Application configuration."""
        if self._config_override:
            return self._config_override
        return load_config()

    @cached_property
    def llm(self) -> LLMPort:
        """LLM adapter based on config provider."""
        model = self.config.generation.model
        if self.config.llm.provider in ("lm_studio", "openai"):
            from character_tools.infrastructure.llm.openai_compatible import OpenAICompatibleAdapter
            return OpenAICompatibleAdapter(self.config.openai_compatible, default_model=model)

        from character_tools.infrastructure.llm.ollama import OllamaAdapter
        return OllamaAdapter(self.config.ollama, default_model=model)

    @cached_property
    def presets(self) -> PresetCatalog:
        """Prompt and schema presets (built-ins plus custom)."""
        return PresetCatalog()

    @cached_property
    def library(self) -> "CharacterLibrary":
        """Character cards from the configured directory."""
        from character_tools.infrastructure.characters.library import CharacterLibrary
        return CharacterLibrary(self.config.persistence.characters_dir)

    @cached_property
    def history_store(self) -> "IterationHistoryStore":
        """Per-character iteration history files."""
        from character_tools.infrastructure.persistence.iteration_history import IterationHistoryStore
        return IterationHistoryStore(output_dir=self.config.persistence.output_dir)

    @cached_property
    def generator(self) -> "StageGenerator":
        """Completion calls for stages and refinement."""
        from character_tools.application.pipeline.generation import StageGenerator
        gen = self.config.generation
        return StageGenerator(
            llm=self.llm,
            presets=self.presets,
            model=gen.model,
            temperature=gen.temperature,
            system_prompt=gen.system_prompt,
            refinement_prompt=gen.refinement_prompt,
            user_name=gen.user_name,
        )

    @cached_property
    def pipeline_use_case(self) -> "PipelineUseCase":
        """Pipeline use case with all dependencies."""
        from character_tools.application.pipeline.use_case import PipelineUseCase
        pipeline = self.config.pipeline
        return PipelineUseCase(
            generator=self.generator,
            presets=self.presets,
            history=self.history_store,
            max_history=pipeline.max_iteration_history,
            preview_length=pipeline.preview_length,
            refinement_warn_after=pipeline.refinement_warn_after,
        )

    @cached_property
    def session_store(self) -> SessionStore:
        """In-memory pipeline sessions."""
        return SessionStore()

    def reset(self) -> None:
        """Reset all cached instances (useful for testing)."""
        for attr in list(self.__dict__.keys()):
            if not attr.startswith("_"):
                delattr(self, attr)


# Global container instance
_container: Container | None = None


def get_container() -> Container:
    """Get or create global container instance."""
    global _container
    if _container is None:
        _container = Container()
    return _container


def reset_container() -> None:
    """Reset global container (for testing)."""
    global _container
    if _container:
        _container.reset()
    _container = None
