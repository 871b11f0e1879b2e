"""Pipeline use case: run stages and refinement passes, commit or roll back."""

import asyncio

import structlog

from character_tools.application.pipeline.dto import (
    CANCELLED,
    GenerationResult,
    PipelineRunResult,
    StageRunResult,
)
from character_tools.application.pipeline.generation import StageGenerator
from character_tools.domain.entities.pipeline_state import PipelineState, Stage, StageResult, StageStatus
from character_tools.domain.ports.history import HistoryPort
from character_tools.domain.services import iteration_controller, stage_machine
from character_tools.domain.services.preset_catalog import PresetLookup

log = structlog.get_logger()


class PipelineUseCase:
    """Drives the score -> rewrite -> analyze pipeline and the refinement loop.

    Pipeline state is passed in and returned; the use case keeps none of its
    own. On failure or cancellation the returned state is the rolled-back one.
    """

    def __init__(
        self,
        generator: StageGenerator,
        presets: PresetLookup,
        history: HistoryPort | None = None,
        max_history: int = iteration_controller.MAX_ITERATION_HISTORY,
        preview_length: int = iteration_controller.PREVIEW_LENGTH,
        refinement_warn_after: int = 5,
    ) -> None:
        self._generator = generator
        self._presets = presets
        self._history = history
        self._max_history = max_history
        self._preview_length = preview_length
        self._refinement_warn_after = refinement_warn_after

    async def check_connection(self) -> bool:
        return await self._generator.is_api_ready()

    def preview_prompt(self, state: PipelineState, stage: Stage) -> str | None:
        return self._generator.stage_prompt(state, stage)

    def preview_refinement_prompt(self, state: PipelineState) -> str | None:
        return self._generator.refinement_prompt(state)

    async def run_stage(
        self,
        state: PipelineState,
        stage: Stage,
        cancel: asyncio.Event | None = None,
    ) -> StageRunResult:
        """Run one stage; a failed or cancelled run leaves the previous result in place."""
        check = stage_machine.can_run_stage(state, stage)
        if not check.can_run:
            return StageRunResult(state, stage, GenerationResult(success=False, error=check.reason), blocked=True)
        if stage_machine.is_stage_result_locked(state, stage):
            return StageRunResult(
                state, stage, GenerationResult(success=False, error="Stage result is locked"), blocked=True
            )
        warnings = [check.reason] if check.reason else []

        running = stage_machine.start_stage(state, stage)
        try:
            generation = await self._generator.run_stage(running, stage, cancel)
        except asyncio.CancelledError:
            log.info("stage_run_interrupted", stage=stage.value)
            raise

        if not generation.success:
            if generation.error != CANCELLED:
                log.warning("stage_run_failed", stage=stage.value, error=generation.error)
            return StageRunResult(
                stage_machine.fail_stage(running, stage, generation.error), stage, generation, warnings
            )

        result = StageResult(
            response=generation.response or "",
            is_structured=generation.is_structured,
            prompt_used=generation.prompt_used,
            schema_used=generation.schema_used,
        )
        return StageRunResult(stage_machine.complete_stage(running, stage, result), stage, generation, warnings)

    async def run_selected(
        self,
        state: PipelineState,
        cancel: asyncio.Event | None = None,
    ) -> PipelineRunResult:
        """Run every selected stage not yet complete or skipped, stopping at the first failure."""
        validation = stage_machine.validate_pipeline(state, self._presets, await self.check_connection())
        if not validation.valid:
            return PipelineRunResult(
                state, error="\n".join(validation.errors), warnings=validation.warnings, blocked=True
            )

        run = PipelineRunResult(state, warnings=list(validation.warnings))
        for stage in state.selected_stages:
            if run.state.status(stage) in (StageStatus.COMPLETE, StageStatus.SKIPPED):
                continue
            outcome = await self.run_stage(run.state, stage, cancel)
            run.state = outcome.state
            if not outcome.generation.success:
                run.failed_stage = stage
                run.error = outcome.generation.error
                run.cancelled = outcome.generation.cancelled
                break
            run.completed.append(stage)
        log.info(
            "pipeline_run_finished",
            completed=[s.value for s in run.completed],
            failed=run.failed_stage.value if run.failed_stage else None,
        )
        return run

    async def run_refinement(
        self,
        state: PipelineState,
        cancel: asyncio.Event | None = None,
    ) -> StageRunResult:
        """One refinement pass over the current rewrite and analysis.

        The current cycle is archived only once the new rewrite exists, so a
        failed or cancelled pass returns ``state`` unchanged.
        """
        validation = stage_machine.validate_refinement(
            state, await self.check_connection(), self._refinement_warn_after
        )
        if not validation.valid:
            generation = GenerationResult(success=False, error="\n".join(validation.errors))
            return StageRunResult(state, Stage.REWRITE, generation, validation.warnings, blocked=True)

        generation = await self._generator.run_refinement(state, cancel)
        if not generation.success:
            if generation.error != CANCELLED:
                log.warning("refinement_failed", error=generation.error)
            return StageRunResult(state, Stage.REWRITE, generation, validation.warnings)

        refined = StageResult(
            response=generation.response or "",
            is_structured=generation.is_structured,
            prompt_used=generation.prompt_used,
            schema_used=generation.schema_used,
        )
        archived = iteration_controller.start_refinement(state, self._max_history, self._preview_length)
        committed = iteration_controller.complete_refinement(archived, refined)
        if self._history is not None and committed.character is not None:
            self._history.save(committed.character, committed.iteration_history)
        return StageRunResult(committed, Stage.REWRITE, generation, validation.warnings)

    def load_history(self, state: PipelineState) -> PipelineState:
        """Attach persisted history for the selected card, if any."""
        if self._history is None or state.character is None:
            return state
        history = self._history.load(state.character)
        if not history:
            return state
        history = history[-self._max_history:]
        count = max(state.iteration_count, history[-1].iteration + 1)
        log.info("iteration_history_restored", name=state.character.name, entries=len(history))
        return state.model_copy(update={"iteration_history": history, "iteration_count": count})

    def save_history(self, state: PipelineState) -> bool:
        if self._history is None or state.character is None:
            return False
        return self._history.save(state.character, state.iteration_history)

    def clear_history(self, state: PipelineState) -> bool:
        if self._history is None or state.character is None:
            return False
        return self._history.clear(state.character)
