"""Application entry point."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from character_tools.api.container import get_container
from character_tools.api.dependencies import default_rate_limit, limiter
from character_tools.api.routes.characters import router as characters_router
from character_tools.api.routes.presets import router as presets_router
from character_tools.api.routes.schema import router as schema_router
from character_tools.api.routes.sessions import router as sessions_router
from character_tools.infrastructure.config.model_validator import validate_models_config
from character_tools.shared.logging import setup_logging

log = structlog.get_logger()


def _apply_logging_config(container):
    """Apply logging from container config (stdout + optional file)."""
    c = container.config
    setup_logging(
        level=c.log_level,
        file_path=c.log_file or "",
        rotation_max_mb=c.log_rotation_max_mb,
        rotation_backups=c.log_rotation_backups,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: setup logging, validate the generation model, load the card library."""
    container = get_container()
    _apply_logging_config(container)
    log.info("startup_begin", llm_provider=container.config.llm.provider)
    await validate_models_config(container.llm, container.config)
    log.info("character_library_ready", count=len(container.library))
    log.info("startup_complete")
    yield
    log.info("shutdown_begin")
    for session_id in container.session_store.list_ids():
        container.session_store.cancel(session_id)
    if hasattr(container.llm, "close"):
        try:
            await container.llm.close()
        except Exception:  # noqa: BLE001
            log.debug("llm_close_error", exc_info=True)
    log.info("shutdown_complete")


app = FastAPI(
    title="Character Tools",
    version="0.1.0",
    description="Score, rewrite and analyze character cards with a local LLM",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS
container = get_container()
app.add_middleware(
    CORSMiddleware,
    allow_origins=container.config.security.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(characters_router)
app.include_router(presets_router)
app.include_router(schema_router)
app.include_router(sessions_router)


@app.get("/health")
@limiter.limit(default_rate_limit)
async def health(request: Request) -> dict:
    """Health check with LLM availability."""
    container = get_container()
    llm_available = await container.llm.is_available()
    return {
        "status": "ok",
        "service": "character-tools",
        "llm_provider": container.config.llm.provider,
        "llm_available": llm_available,
    }
