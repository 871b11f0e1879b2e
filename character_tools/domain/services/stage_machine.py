"""Pipeline stage machine: pure transitions over :class:`PipelineState`.

Every function takes a state and returns a new one (or a query answer); the
input is never modified. Preconditions are reported through
:class:`RunCheck` / :class:`PipelineValidation` values rather than exceptions.
"""

from typing import Any

import structlog
from pydantic import ValidationError

from character_tools.domain.entities.character import Character, FieldSelection
from character_tools.domain.entities.pipeline_state import (
    STAGES,
    PipelineState,
    PipelineValidation,
    RunCheck,
    Stage,
    StageConfig,
    StageResult,
    StageStatus,
    Verdict,
    utcnow,
)
from character_tools.domain.entities.presets import DEFAULT_STAGE_CONFIGS
from character_tools.domain.services.character_fields import (
    get_populated_fields,
    has_selected_fields,
    initialize_field_selection,
)
from character_tools.domain.services.iteration_controller import can_refine
from character_tools.domain.services.preset_catalog import PresetLookup, resolve_prompt

log = structlog.get_logger()

NO_CHARACTER = "No character selected"
NO_FIELDS = "No fields selected"
SCORE_INCOMPLETE = "Score stage not complete - rewrite will run without score feedback"
ANALYZE_NEEDS_REWRITE = "Analyze requires rewrite results to compare"


def _canonical(stages: set[Stage]) -> list[Stage]:
    return [s for s in STAGES if s in stages]


# Lifecycle


def create_initial_state(stage_configs: dict[Stage, StageConfig] | None = None) -> PipelineState:
    """Fresh state: score and rewrite selected, everything pending."""
    configs = dict(DEFAULT_STAGE_CONFIGS)
    if stage_configs:
        configs.update(stage_configs)
    return PipelineState(configs=configs)


def reset_pipeline(state: PipelineState, keep_character: bool = False) -> PipelineState:
    """Drop all progress; optionally keep the selected card and its field selection."""
    fresh = create_initial_state(state.configs)
    if keep_character and state.character is not None:
        return fresh.model_copy(
            update={
                "character": state.character,
                "character_index": state.character_index,
                "selected_fields": dict(state.selected_fields),
            }
        )
    return fresh


def set_source_content(state: PipelineState, character: Character, index: int) -> PipelineState:
    """Select a card. Re-selecting the same index is a no-op."""
    if state.character_index is not None and state.character_index == index:
        return state
    log.info("source_content_selected", name=character.name, index=index)
    return create_initial_state(state.configs).model_copy(
        update={
            "character": character,
            "character_index": index,
            "selected_stages": list(state.selected_stages),
            "selected_fields": initialize_field_selection(character),
        }
    )


def clear_source_content(state: PipelineState) -> PipelineState:
    return create_initial_state(state.configs).model_copy(
        update={"selected_stages": list(state.selected_stages)}
    )


def sync_source_index(state: PipelineState, characters: list[Character]) -> PipelineState:
    """Re-validate the cached index after the card list changed.

    Keeps the index when it still points at the same card, follows the card
    (matched by avatar) when it moved, and clears the selection when it is gone.
    """
    if state.character is None or state.character_index is None:
        return state
    index = state.character_index
    current = state.character
    if 0 <= index < len(characters) and characters[index].avatar == current.avatar:
        return state
    for i, candidate in enumerate(characters):
        if candidate.avatar == current.avatar:
            log.info("source_index_moved", name=current.name, old_index=index, new_index=i)
            return state.model_copy(update={"character_index": i})
    log.warning("source_content_removed", name=current.name, index=index)
    return clear_source_content(state)


# Field selection


def set_field_selection(state: PipelineState, selection: FieldSelection) -> PipelineState:
    return state.model_copy(update={"selected_fields": dict(selection)})


def toggle_field(state: PipelineState, key: str) -> PipelineState:
    """Flip a scalar field; for list fields switch between all and no entries."""
    current = state.selected_fields.get(key)
    if isinstance(current, list) or (current is None and _list_length(state, key) is not None):
        length = _list_length(state, key) or 0
        value: bool | list[int] = [] if current else list(range(length))
    else:
        value = not bool(current)
    return state.model_copy(update={"selected_fields": {**state.selected_fields, key: value}})


def toggle_field_entry(state: PipelineState, key: str, entry: int) -> PipelineState:
    """Flip one entry of a list-valued field."""
    current = state.selected_fields.get(key)
    indices = set(current) if isinstance(current, list) else set()
    indices ^= {entry}
    return state.model_copy(update={"selected_fields": {**state.selected_fields, key: sorted(indices)}})


def select_all_fields(state: PipelineState, selected: bool = True) -> PipelineState:
    if state.character is None:
        return state
    selection = initialize_field_selection(state.character)
    if not selected:
        selection = {k: [] if isinstance(v, list) else False for k, v in selection.items()}
    return state.model_copy(update={"selected_fields": selection})


def _list_length(state: PipelineState, key: str) -> int | None:
    if state.character is None:
        return None
    for field in get_populated_fields(state.character):
        if field.key == key and field.type == "array":
            return len(field.raw_value)
    return None


# Stage selection


def toggle_stage(state: PipelineState, stage: Stage) -> PipelineState:
    selected = set(state.selected_stages) ^ {stage}
    return state.model_copy(update={"selected_stages": _canonical(selected)})


def set_selected_stages(state: PipelineState, stages: list[Stage]) -> PipelineState:
    return state.model_copy(update={"selected_stages": _canonical(set(stages))})


def select_all_stages(state: PipelineState, selected: bool = True) -> PipelineState:
    return state.model_copy(update={"selected_stages": list(STAGES) if selected else []})


# Stage config


def update_stage_config(state: PipelineState, stage: Stage, **updates: Any) -> PipelineState:
    config = state.configs.get(stage, DEFAULT_STAGE_CONFIGS[stage])
    return state.model_copy(update={"configs": {**state.configs, stage: config.model_copy(update=updates)}})


def reset_stage_config(
    state: PipelineState,
    stage: Stage,
    defaults: dict[Stage, StageConfig] | None = None,
) -> PipelineState:
    config = (defaults or DEFAULT_STAGE_CONFIGS)[stage]
    return state.model_copy(update={"configs": {**state.configs, stage: config}})


# Queries


def can_run_stage(state: PipelineState, stage: Stage) -> RunCheck:
    """May ``stage`` run now? A reason on a positive answer is advisory."""
    if state.character is None:
        return RunCheck(can_run=False, reason=NO_CHARACTER)
    if not has_selected_fields(state.character, state.selected_fields):
        return RunCheck(can_run=False, reason=NO_FIELDS)
    if stage is Stage.REWRITE:
        if Stage.SCORE in state.selected_stages and state.status(Stage.SCORE) is not StageStatus.COMPLETE:
            return RunCheck(can_run=True, reason=SCORE_INCOMPLETE)
        return RunCheck(can_run=True)
    if stage is Stage.ANALYZE and state.result(Stage.REWRITE) is None:
        return RunCheck(can_run=False, reason=ANALYZE_NEEDS_REWRITE)
    return RunCheck(can_run=True)


def has_stage_result(state: PipelineState, stage: Stage) -> bool:
    return state.result(stage) is not None


def is_stage_result_locked(state: PipelineState, stage: Stage) -> bool:
    result = state.result(stage)
    return result is not None and result.locked


def get_next_stage(state: PipelineState, current: Stage) -> Stage | None:
    """Selected stage after ``current``; None at the end or when ``current`` is unselected."""
    if current not in state.selected_stages:
        return None
    position = state.selected_stages.index(current)
    if position + 1 < len(state.selected_stages):
        return state.selected_stages[position + 1]
    return None


def get_previous_stage(state: PipelineState, current: Stage) -> Stage | None:
    if current not in state.selected_stages:
        return None
    position = state.selected_stages.index(current)
    return state.selected_stages[position - 1] if position > 0 else None


def get_first_incomplete_stage(state: PipelineState) -> Stage | None:
    for stage in state.selected_stages:
        if state.status(stage) not in (StageStatus.COMPLETE, StageStatus.SKIPPED):
            return stage
    return None


def is_pipeline_complete(state: PipelineState) -> bool:
    return all(
        state.status(s) in (StageStatus.COMPLETE, StageStatus.SKIPPED) for s in state.selected_stages
    )


def can_export(state: PipelineState) -> bool:
    return state.character is not None and state.result(Stage.REWRITE) is not None


def get_pipeline_summary(state: PipelineState) -> dict[str, Any]:
    """Compact progress snapshot for display."""
    return {
        "character": state.character.name if state.character else None,
        "selected_stages": [s.value for s in state.selected_stages],
        "completed_stages": [s.value for s in STAGES if state.status(s) is StageStatus.COMPLETE],
        "current_stage": state.current_stage.value if state.current_stage else None,
        "iteration_count": state.iteration_count,
        "history_length": len(state.iteration_history),
        "locked_stages": [s.value for s in STAGES if is_stage_result_locked(state, s)],
        "is_refining": state.is_refining,
        "last_verdict": state.iteration_history[-1].verdict.value if state.iteration_history else None,
        "is_complete": is_pipeline_complete(state),
        "can_export": can_export(state),
    }


# Execution


def start_stage(state: PipelineState, stage: Stage) -> PipelineState:
    log.debug("stage_started", stage=stage.value)
    return state.model_copy(
        update={
            "current_stage": stage,
            "stage_status": {**state.stage_status, stage: StageStatus.RUNNING},
        }
    )


def complete_stage(state: PipelineState, stage: Stage, result: StageResult) -> PipelineState:
    """Install a fresh result. Completing analyze with a rewrite present opens refinement."""
    fresh = StageResult(
        response=result.response,
        is_structured=result.is_structured,
        prompt_used=result.prompt_used,
        schema_used=result.schema_used,
        timestamp=utcnow(),
        locked=False,
    )
    update: dict[str, Any] = {
        "results": {**state.results, stage: fresh},
        "stage_status": {**state.stage_status, stage: StageStatus.COMPLETE},
        "current_stage": None,
    }
    if stage is Stage.ANALYZE and state.result(Stage.REWRITE) is not None:
        update["is_refining"] = True
    log.info("stage_completed", stage=stage.value, response_chars=len(result.response))
    return state.model_copy(update=update)


def fail_stage(state: PipelineState, stage: Stage, error: str | None = None) -> PipelineState:
    """Roll a running stage back to pending; the previous result stays."""
    log.warning("stage_failed", stage=stage.value, error=error)
    return state.model_copy(
        update={
            "current_stage": None,
            "stage_status": {**state.stage_status, stage: StageStatus.PENDING},
        }
    )


def skip_stage(state: PipelineState, stage: Stage) -> PipelineState:
    return state.model_copy(update={"stage_status": {**state.stage_status, stage: StageStatus.SKIPPED}})


def clear_stage_result(state: PipelineState, stage: Stage) -> PipelineState:
    return state.model_copy(
        update={
            "results": {**state.results, stage: None},
            "stage_status": {**state.stage_status, stage: StageStatus.PENDING},
        }
    )


def _set_locked(state: PipelineState, stage: Stage, locked: bool) -> PipelineState:
    result = state.result(stage)
    if result is None:
        return state
    return state.model_copy(
        update={"results": {**state.results, stage: result.model_copy(update={"locked": locked})}}
    )


def lock_stage_result(state: PipelineState, stage: Stage) -> PipelineState:
    return _set_locked(state, stage, True)


def unlock_stage_result(state: PipelineState, stage: Stage) -> PipelineState:
    return _set_locked(state, stage, False)


# Validation


def validate_pipeline(
    state: PipelineState,
    presets: PresetLookup,
    api_connected: bool,
) -> PipelineValidation:
    """Check everything a full run of the selected stages needs."""
    errors: list[str] = []
    warnings: list[str] = []

    if state.character is None:
        errors.append(NO_CHARACTER)
    elif not has_selected_fields(state.character, state.selected_fields):
        errors.append(NO_FIELDS)
    if not state.selected_stages:
        errors.append("No stages selected")

    for stage in state.selected_stages:
        config = state.configs.get(stage)
        if config is None or not resolve_prompt(config, presets).strip():
            errors.append(f"{stage.value}: No prompt configured")

    selected = state.selected_stages
    if Stage.ANALYZE in selected and Stage.REWRITE not in selected and state.result(Stage.REWRITE) is None:
        errors.append("Analyze requires rewrite results")
    if Stage.REWRITE in selected and Stage.SCORE in selected and state.result(Stage.SCORE) is None:
        warnings.append("Rewrite will run without score feedback (score not complete)")
    if not api_connected:
        errors.append("API is not connected")

    return PipelineValidation(valid=not errors, errors=errors, warnings=warnings)


def validate_refinement(
    state: PipelineState,
    api_connected: bool,
    warn_after_iterations: int = 5,
) -> PipelineValidation:
    """Check a refinement pass can run; warn on accept verdicts and long loops."""
    errors: list[str] = []
    warnings: list[str] = []
    check = can_refine(state)
    if not check.can_run:
        errors.append(check.reason or "Cannot refine")
    if not api_connected:
        errors.append("API is not connected")

    last = state.iteration_history[-1] if state.iteration_history else None
    if last is not None and last.verdict is Verdict.ACCEPT:
        warnings.append("Last analysis suggested accepting the rewrite")
    if state.iteration_count >= warn_after_iterations:
        warnings.append(
            f"Already at iteration {state.iteration_count + 1} - consider accepting or starting fresh"
        )
    return PipelineValidation(valid=not errors, errors=errors, warnings=warnings)


# Serialization


def serialize_pipeline_state(state: PipelineState) -> dict[str, Any]:
    """JSON-safe dict of the state without the card itself or the in-flight stage."""
    return state.model_dump(mode="json", exclude={"character", "current_stage"})


def deserialize_pipeline_state(
    data: dict[str, Any],
    characters: list[Character],
) -> PipelineState | None:
    """Rebuild a state, re-attaching the card by index. None on malformed input."""
    try:
        state = PipelineState.model_validate({**data, "character": None, "current_stage": None})
    except (ValidationError, TypeError) as e:
        log.warning("malformed_persisted_state", error=str(e))
        return None
    index = state.character_index
    if index is not None and 0 <= index < len(characters):
        return state.model_copy(update={"character": characters[index]})
    return state.model_copy(update={"character_index": None})
