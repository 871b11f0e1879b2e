"""Validate the configured generation model against the provider at startup."""

import structlog

from character_tools.domain.ports.config import AppConfig
from character_tools.domain.ports.llm import LLMPort

log = structlog.get_logger()


async def validate_models_config(llm: LLMPort, config: AppConfig) -> bool:
    """Check that the generation model exists in the LLM provider. Log a warning if not.

    Never fails startup; returns False when the model is missing or unverifiable.
    """
    provider = config.llm.provider
    model = config.generation.model.strip()

    try:
        available = await llm.list_models()
    except Exception as e:
        log.warning(
            "models_validation_skipped",
            reason="llm_unreachable",
            provider=provider,
            error=str(e),
        )
        return False

    if not available:
        log.warning(
            "models_validation_skipped",
            reason="no_models_returned",
            provider=provider,
        )
        return False

    # Normalize: exact names + base names (e.g. "qwen2.5" matches "qwen2.5:7b")
    available_set: set[str] = set()
    for m in available:
        if not m:
            continue
        name = m.strip().lower()
        available_set.add(name)
        if ":" in name:
            available_set.add(name.split(":")[0])

    model_lower = model.lower()
    base = model_lower.split(":")[0]
    if model_lower in available_set or base in available_set:
        log.debug("models_validation_ok", provider=provider, model=model)
        return True

    hint = (
        "Pull with 'ollama pull <model>' or update [generation] in development.toml"
        if provider == "ollama"
        else "Load the model on the server or update [generation] in development.toml"
    )
    log.warning(
        "configured_model_not_available",
        provider=provider,
        model=model,
        available_count=len(available),
        hint=hint,
    )
    return False
