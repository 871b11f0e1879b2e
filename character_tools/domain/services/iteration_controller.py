"""Refinement loop: verdicts, iteration snapshots, revert and accept."""

import structlog

from character_tools.domain.entities.pipeline_state import (
    IterationSnapshot,
    PipelineState,
    RunCheck,
    Stage,
    StageResult,
    StageStatus,
    Verdict,
)

log = structlog.get_logger()

MAX_ITERATION_HISTORY = 20
PREVIEW_LENGTH = 200
RESTORED_MARKER = "[Restored from iteration history]"

_ACCEPT_PHRASES = ("READY TO USE", "NO MORE ITERATIONS")
_REGRESSION_PHRASES = ("WORSE THAN", "STEP BACKWARD", "LOST MORE")
_REFINE_PHRASES = ("ISSUE", "PROBLEM", "SHOULD FIX")


def extract_verdict(text: str) -> Verdict:
    """Best-effort verdict from free-form analysis text.

    An explicit ``VERDICT`` marker wins; otherwise a few phrases are checked in
    fixed order. Anything unrecognized means another pass is needed.
    """
    upper = (text or "").upper()
    if "VERDICT" in upper:
        if "ACCEPT" in upper and "NEEDS" not in upper:
            return Verdict.ACCEPT
        if "REGRESSION" in upper:
            return Verdict.REGRESSION
        if "NEEDS_REFINEMENT" in upper or "NEEDS REFINEMENT" in upper:
            return Verdict.NEEDS_REFINEMENT
    if any(p in upper for p in _ACCEPT_PHRASES):
        return Verdict.ACCEPT
    if any(p in upper for p in _REGRESSION_PHRASES):
        return Verdict.REGRESSION
    if any(p in upper for p in _REFINE_PHRASES):
        return Verdict.NEEDS_REFINEMENT
    return Verdict.NEEDS_REFINEMENT


def _preview(text: str, length: int) -> str:
    return text[:length]


def create_iteration_snapshot(
    state: PipelineState, preview_length: int = PREVIEW_LENGTH
) -> IterationSnapshot | None:
    """Snapshot the current rewrite/analysis pair; None unless both exist."""
    rewrite = state.result(Stage.REWRITE)
    analysis = state.result(Stage.ANALYZE)
    if rewrite is None or analysis is None:
        return None
    return IterationSnapshot(
        iteration=state.iteration_count,
        rewrite_response=rewrite.response,
        rewrite_preview=_preview(rewrite.response, preview_length),
        analysis_response=analysis.response,
        analysis_preview=_preview(analysis.response, preview_length),
        verdict=extract_verdict(analysis.response),
    )


def can_refine(state: PipelineState) -> RunCheck:
    if state.character is None:
        return RunCheck(can_run=False, reason="No character selected")
    if state.result(Stage.REWRITE) is None:
        return RunCheck(can_run=False, reason="No rewrite to refine")
    if state.result(Stage.ANALYZE) is None:
        return RunCheck(can_run=False, reason="Run analyze first to identify issues")
    return RunCheck(can_run=True)


def start_refinement(
    state: PipelineState,
    max_history: int = MAX_ITERATION_HISTORY,
    preview_length: int = PREVIEW_LENGTH,
) -> PipelineState:
    """Archive the current cycle and open the next one.

    The analysis slot is cleared so the next prompt cannot see the old analysis.
    History is a FIFO bounded by ``max_history``.
    """
    snapshot = create_iteration_snapshot(state, preview_length)
    if snapshot is None:
        log.warning("refinement_not_started", reason="missing rewrite or analysis")
        return state
    history = [*state.iteration_history, snapshot]
    if max_history > 0 and len(history) > max_history:
        history = history[-max_history:]
    log.info("refinement_started", iteration=state.iteration_count + 1, verdict=snapshot.verdict.value)
    return state.model_copy(
        update={
            "iteration_history": history,
            "iteration_count": state.iteration_count + 1,
            "results": {**state.results, Stage.ANALYZE: None},
            "stage_status": {**state.stage_status, Stage.ANALYZE: StageStatus.PENDING},
            "is_refining": True,
        }
    )


def complete_refinement(state: PipelineState, output: StageResult) -> PipelineState:
    """Install the refined rewrite; analyze goes back to pending."""
    rewrite = output.model_copy(update={"locked": False})
    return state.model_copy(
        update={
            "results": {**state.results, Stage.REWRITE: rewrite, Stage.ANALYZE: None},
            "stage_status": {
                **state.stage_status,
                Stage.REWRITE: StageStatus.COMPLETE,
                Stage.ANALYZE: StageStatus.PENDING,
            },
            "current_stage": None,
        }
    )


def revert_to_iteration(state: PipelineState, index: int) -> PipelineState:
    """Restore the rewrite archived at ``index``; later history is dropped."""
    if not 0 <= index < len(state.iteration_history):
        log.warning("revert_out_of_range", index=index, history=len(state.iteration_history))
        return state
    snapshot = state.iteration_history[index]
    restored = StageResult(
        response=snapshot.rewrite_response,
        is_structured=False,
        prompt_used=RESTORED_MARKER,
    )
    log.info("reverted_to_iteration", iteration=snapshot.iteration)
    return state.model_copy(
        update={
            "results": {**state.results, Stage.REWRITE: restored, Stage.ANALYZE: None},
            "stage_status": {
                **state.stage_status,
                Stage.REWRITE: StageStatus.COMPLETE,
                Stage.ANALYZE: StageStatus.PENDING,
            },
            "iteration_history": state.iteration_history[:index],
            "iteration_count": snapshot.iteration,
            "is_refining": True,
        }
    )


def accept_rewrite(state: PipelineState) -> PipelineState:
    """Lock the current rewrite and leave the refinement loop."""
    rewrite = state.result(Stage.REWRITE)
    if rewrite is None:
        return state
    log.info("rewrite_accepted", iteration=state.iteration_count)
    return state.model_copy(
        update={
            "results": {**state.results, Stage.REWRITE: rewrite.model_copy(update={"locked": True})},
            "is_refining": False,
        }
    )
