"""Completion calls for pipeline stages and refinement passes.

The generator builds the prompt, runs pre-flight checks, sends ``[system, user]``
messages through the retrying LLM helper, and races the call against an
optional cancel event. It never touches pipeline state; callers commit or roll
back based on the returned :class:`GenerationResult`.
"""

import asyncio
import contextlib

import structlog

from character_tools.application.pipeline.dto import CANCELLED, GenerationResult
from character_tools.domain.entities.pipeline_state import PipelineState, Stage
from character_tools.domain.entities.presets import DEFAULT_SYSTEM_PROMPT
from character_tools.domain.entities.schema import StructuredOutputSchema
from character_tools.domain.ports.llm import LLMMessage, LLMPort
from character_tools.domain.services.preset_catalog import PresetCatalog, resolve_schema
from character_tools.domain.services.prompt_composer import (
    DEFAULT_USER_NAME,
    build_refinement_prompt,
    build_stage_prompt,
)
from character_tools.infrastructure.llm.llm_helpers import generate_with_retry

log = structlog.get_logger()

API_NOT_READY = "API is not connected. Check your connection settings."


class StageGenerator:
    """Runs one completion per call against the configured model."""

    def __init__(
        self,
        llm: LLMPort,
        presets: PresetCatalog,
        model: str | None = None,
        temperature: float = 1.0,
        system_prompt: str = "",
        refinement_prompt: str = "",
        user_name: str = DEFAULT_USER_NAME,
    ) -> None:
        self._llm = llm
        self._presets = presets
        self._model = model
        self._temperature = temperature
        self._system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self._refinement_prompt = refinement_prompt or None
        self._user_name = user_name

    @property
    def user_name(self) -> str:
        return self._user_name

    def stage_prompt(self, state: PipelineState, stage: Stage) -> str | None:
        return build_stage_prompt(state, stage, self._presets, self._user_name)

    def refinement_prompt(self, state: PipelineState) -> str | None:
        return build_refinement_prompt(state, self._refinement_prompt, self._user_name)

    async def is_api_ready(self) -> bool:
        try:
            return bool(await self._llm.is_available())
        except Exception as e:
            log.warning("api_check_failed", error=str(e))
            return False

    async def run_stage(
        self,
        state: PipelineState,
        stage: Stage,
        cancel: asyncio.Event | None = None,
    ) -> GenerationResult:
        """Generate the response for ``stage`` over the current state."""
        failed = await self._preflight(state, cancel)
        if failed is not None:
            return failed
        prompt = self.stage_prompt(state, stage)
        if not prompt:
            return GenerationResult(success=False, error="No prompt configured for this stage")
        config = state.configs.get(stage)
        schema = resolve_schema(config, self._presets) if config is not None else None
        log.info(
            "stage_generation_started",
            stage=stage.value,
            character=state.character.name if state.character else None,
            structured=schema is not None,
            prompt_chars=len(prompt),
        )
        return await self._generate(prompt, schema, cancel)

    async def run_refinement(
        self,
        state: PipelineState,
        cancel: asyncio.Event | None = None,
    ) -> GenerationResult:
        """Generate a refined rewrite from the current rewrite and analysis."""
        failed = await self._preflight(state, cancel)
        if failed is not None:
            return failed
        prompt = self.refinement_prompt(state)
        if not prompt:
            return GenerationResult(success=False, error="Refinement needs a rewrite and an analysis")
        # Refinement output replaces the rewrite, so it follows the rewrite schema
        config = state.configs.get(Stage.REWRITE)
        schema = resolve_schema(config, self._presets) if config is not None else None
        log.info("refinement_generation_started", iteration=state.iteration_count + 1, prompt_chars=len(prompt))
        return await self._generate(prompt, schema, cancel)

    async def _preflight(self, state: PipelineState, cancel: asyncio.Event | None) -> GenerationResult | None:
        if cancel is not None and cancel.is_set():
            return GenerationResult(success=False, error=CANCELLED, cancelled=True)
        if state.character is None:
            return GenerationResult(success=False, error="No character selected")
        if not await self.is_api_ready():
            log.error("api_not_ready")
            return GenerationResult(success=False, error=API_NOT_READY)
        return None

    async def _generate(
        self,
        prompt: str,
        schema: StructuredOutputSchema | None,
        cancel: asyncio.Event | None,
    ) -> GenerationResult:
        schema_dict = schema.model_dump(exclude_none=True) if schema is not None else None
        messages = [
            LLMMessage(role="system", content=self._system_prompt),
            LLMMessage(role="user", content=prompt),
        ]
        call = asyncio.ensure_future(
            generate_with_retry(self._llm, messages, self._model, self._temperature, schema_dict)
        )
        try:
            if cancel is not None:
                waiter = asyncio.ensure_future(cancel.wait())
                try:
                    await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    waiter.cancel()
                if not call.done():
                    call.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await call
                    log.info("generation_cancelled")
                    return GenerationResult(success=False, error=CANCELLED, cancelled=True)
            response = await call
        except asyncio.CancelledError:
            call.cancel()
            raise
        except Exception as e:
            log.error("generation_failed", error=str(e), error_type=type(e).__name__)
            return GenerationResult(success=False, error=str(e) or type(e).__name__, prompt_used=prompt)

        if cancel is not None and cancel.is_set():
            return GenerationResult(success=False, error=CANCELLED, cancelled=True)
        content = response.content or ""
        if not content.strip():
            log.error("generation_empty_response", model=response.model)
            return GenerationResult(success=False, error="Empty response from API", prompt_used=prompt)

        log.info("generation_complete", chars=len(content), structured=schema_dict is not None)
        return GenerationResult(
            success=True,
            response=content,
            is_structured=schema_dict is not None,
            prompt_used=prompt,
            schema_used=schema_dict,
        )
