"""FastAPI dependencies - thin accessors over the DI container."""

from functools import lru_cache

from slowapi import Limiter
from slowapi.util import get_remote_address

from character_tools.api.container import get_container
from character_tools.api.store import SessionStore
from character_tools.application.pipeline.use_case import PipelineUseCase
from character_tools.domain.ports.config import AppConfig
from character_tools.domain.services.preset_catalog import PresetCatalog
from character_tools.infrastructure.characters.library import CharacterLibrary

limiter = Limiter(key_func=get_remote_address)


@lru_cache
def get_config() -> AppConfig:
    """Load config once at startup."""
    return get_container().config


def get_session_store() -> SessionStore:
    return get_container().session_store


def get_pipeline_use_case() -> PipelineUseCase:
    return get_container().pipeline_use_case


def get_presets() -> PresetCatalog:
    return get_container().presets


def get_library() -> CharacterLibrary:
    return get_container().library


def generation_rate_limit() -> str:
    """Rate limit string for endpoints that call the LLM."""
    return get_config().security.generation_rate_limit


def default_rate_limit() -> str:
    """Rate limit string for cheap endpoints such as /health."""
    return f"{get_config().security.rate_limit_requests_per_minute}/minute"
