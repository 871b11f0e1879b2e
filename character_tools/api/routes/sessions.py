"""Sessions API - drive the score/rewrite/analyze pipeline for one character."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from character_tools.api.dependencies import (
    generation_rate_limit,
    get_library,
    get_pipeline_use_case,
    get_presets,
    get_session_store,
    limiter,
)
from character_tools.api.store import Session, SessionBusyError, SessionStore
from character_tools.application.pipeline.use_case import PipelineUseCase
from character_tools.domain.entities.character import FieldSelection
from character_tools.domain.entities.pipeline_state import PipelineState, Stage
from character_tools.domain.services import export, iteration_controller, stage_machine
from character_tools.domain.services.character_fields import get_populated_fields
from character_tools.domain.services.preset_catalog import PresetCatalog
from character_tools.domain.services.prompt_composer import get_unfilled_placeholders
from character_tools.domain.services.rewrite_parser import apply_parsed_rewrite, parse_rewrite_response
from character_tools.infrastructure.characters.library import CharacterLibrary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])

R = TypeVar("R")


class SessionCreate(BaseModel):
    """Request to start a session, optionally with a character preselected."""

    character_index: int | None = None
    stages: list[Stage] | None = None


class CharacterSelect(BaseModel):
    index: int
    load_history: bool = True


class StagesUpdate(BaseModel):
    stages: list[Stage]


class FieldsUpdate(BaseModel):
    selection: FieldSelection


class StageConfigUpdate(BaseModel):
    """Partial stage config; unset fields keep their value."""

    prompt_preset_id: str | None = None
    custom_prompt: str | None = None
    schema_preset_id: str | None = None
    custom_schema: str | None = None
    use_structured_output: bool | None = None
    clear_prompt_preset: bool = False
    clear_schema_preset: bool = False


class RevertRequest(BaseModel):
    index: int = Field(ge=0)


class ResetRequest(BaseModel):
    keep_character: bool = False


def _view(session: Session) -> dict[str, Any]:
    state = session.state
    return {
        "id": session.id,
        "running": session.running,
        "character": state.character.name if state.character else None,
        "summary": stage_machine.get_pipeline_summary(state),
        "state": stage_machine.serialize_pipeline_state(state),
    }


def _session(store: SessionStore, session_id: str) -> Session:
    session = store.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def _idle(store: SessionStore, session_id: str) -> Session:
    """Session that may be edited; 409 while a generation is running."""
    session = _session(store, session_id)
    if session.running:
        raise HTTPException(status_code=409, detail="A generation is running for this session")
    return session


def _commit(store: SessionStore, session: Session, state: PipelineState) -> dict[str, Any]:
    store.update(session.id, state)
    return _view(session)


async def _run(
    store: SessionStore,
    session_id: str,
    action: Callable[[PipelineState, Any], Awaitable[R]],
) -> R:
    """Run ``action`` with the session's cancel event; one run per session."""
    session = _session(store, session_id)
    try:
        cancel = store.begin_run(session_id)
    except SessionBusyError:
        raise HTTPException(status_code=409, detail="A generation is already running for this session")
    try:
        outcome = await action(session.state, cancel)
    finally:
        store.end_run(session_id)
    store.update(session_id, outcome.state)
    return outcome


@router.post("")
@limiter.limit("30/minute")
async def create_session(
    body: SessionCreate,
    request: Request,
    store: SessionStore = Depends(get_session_store),
    presets: PresetCatalog = Depends(get_presets),
    library: CharacterLibrary = Depends(get_library),
    use_case: PipelineUseCase = Depends(get_pipeline_use_case),
) -> dict:
    """Create a session with the current stage defaults."""
    state = stage_machine.create_initial_state(presets.stage_defaults())
    if body.stages is not None:
        state = stage_machine.set_selected_stages(state, body.stages)
    if body.character_index is not None:
        character = library.get(body.character_index)
        if character is None:
            raise HTTPException(status_code=404, detail="Character not found")
        state = use_case.load_history(stage_machine.set_source_content(state, character, body.character_index))
    return _view(store.create(state))


@router.get("/{session_id}")
async def get_session(
    session_id: str,
    store: SessionStore = Depends(get_session_store),
) -> dict:
    return _view(_session(store, session_id))


@router.delete("/{session_id}")
async def delete_session(
    session_id: str,
    store: SessionStore = Depends(get_session_store),
) -> dict:
    if not store.delete(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"ok": True}


@router.post("/{session_id}/reset")
async def reset_session(
    session_id: str,
    body: ResetRequest,
    store: SessionStore = Depends(get_session_store),
) -> dict:
    session = _idle(store, session_id)
    return _commit(store, session, stage_machine.reset_pipeline(session.state, body.keep_character))


@router.post("/{session_id}/character")
async def select_character(
    session_id: str,
    body: CharacterSelect,
    store: SessionStore = Depends(get_session_store),
    library: CharacterLibrary = Depends(get_library),
    use_case: PipelineUseCase = Depends(get_pipeline_use_case),
) -> dict:
    """Select a card by library index. Re-selecting the current card keeps all progress."""
    session = _idle(store, session_id)
    character = library.get(body.index)
    if character is None:
        raise HTTPException(status_code=404, detail="Character not found")
    state = stage_machine.set_source_content(session.state, character, body.index)
    if state is not session.state and body.load_history:
        state = use_case.load_history(state)
    return _commit(store, session, state)


@router.post("/{session_id}/sync")
async def sync_character(
    session_id: str,
    store: SessionStore = Depends(get_session_store),
    library: CharacterLibrary = Depends(get_library),
) -> dict:
    """Reload the card library and re-validate the session's character index."""
    session = _idle(store, session_id)
    return _commit(store, session, stage_machine.sync_source_index(session.state, library.reload()))


@router.get("/{session_id}/fields")
async def list_fields(
    session_id: str,
    store: SessionStore = Depends(get_session_store),
) -> dict:
    """Populated fields of the selected card and the current selection."""
    session = _session(store, session_id)
    character = session.state.character
    if character is None:
        raise HTTPException(status_code=409, detail="No character selected")
    return {
        "fields": [
            {"key": f.key, "label": f.label, "type": f.type, "char_count": f.char_count}
            for f in get_populated_fields(character)
        ],
        "selection": session.state.selected_fields,
    }


@router.put("/{session_id}/fields")
async def set_fields(
    session_id: str,
    body: FieldsUpdate,
    store: SessionStore = Depends(get_session_store),
) -> dict:
    session = _idle(store, session_id)
    return _commit(store, session, stage_machine.set_field_selection(session.state, body.selection))


@router.put("/{session_id}/stages")
async def set_stages(
    session_id: str,
    body: StagesUpdate,
    store: SessionStore = Depends(get_session_store),
) -> dict:
    session = _idle(store, session_id)
    return _commit(store, session, stage_machine.set_selected_stages(session.state, body.stages))


@router.put("/{session_id}/stages/{stage}/config")
async def update_stage_config(
    session_id: str,
    stage: Stage,
    body: StageConfigUpdate,
    store: SessionStore = Depends(get_session_store),
) -> dict:
    session = _idle(store, session_id)
    updates = body.model_dump(exclude_none=True, exclude={"clear_prompt_preset", "clear_schema_preset"})
    if body.clear_prompt_preset:
        updates["prompt_preset_id"] = None
    if body.clear_schema_preset:
        updates["schema_preset_id"] = None
    return _commit(store, session, stage_machine.update_stage_config(session.state, stage, **updates))


@router.delete("/{session_id}/stages/{stage}/config")
async def reset_stage_config(
    session_id: str,
    stage: Stage,
    store: SessionStore = Depends(get_session_store),
    presets: PresetCatalog = Depends(get_presets),
) -> dict:
    session = _idle(store, session_id)
    return _commit(store, session, stage_machine.reset_stage_config(session.state, stage, presets.stage_defaults()))


@router.get("/{session_id}/stages/{stage}/prompt")
async def preview_prompt(
    session_id: str,
    stage: Stage,
    store: SessionStore = Depends(get_session_store),
    presets: PresetCatalog = Depends(get_presets),
    use_case: PipelineUseCase = Depends(get_pipeline_use_case),
) -> dict:
    """The exact prompt the stage would send now, with run eligibility."""
    state = _session(store, session_id).state
    check = stage_machine.can_run_stage(state, stage)
    config = state.configs.get(stage)
    instructions = presets.resolve_prompt(config) if config is not None else ""
    return {
        "stage": stage.value,
        "prompt": use_case.preview_prompt(state, stage),
        "can_run": check.can_run,
        "reason": check.reason,
        "unfilled_placeholders": get_unfilled_placeholders(
            instructions,
            stage,
            has_score=stage_machine.has_stage_result(state, Stage.SCORE),
            has_rewrite=stage_machine.has_stage_result(state, Stage.REWRITE),
        ),
    }


@router.get("/{session_id}/validate")
async def validate_session(
    session_id: str,
    store: SessionStore = Depends(get_session_store),
    presets: PresetCatalog = Depends(get_presets),
    use_case: PipelineUseCase = Depends(get_pipeline_use_case),
) -> dict:
    state = _session(store, session_id).state
    connected = await use_case.check_connection()
    return {
        "pipeline": stage_machine.validate_pipeline(state, presets, connected).model_dump(),
        "refinement": stage_machine.validate_refinement(state, connected).model_dump(),
    }


@router.post("/{session_id}/stages/{stage}/run")
@limiter.limit(generation_rate_limit)
async def run_stage(
    session_id: str,
    stage: Stage,
    request: Request,
    store: SessionStore = Depends(get_session_store),
    use_case: PipelineUseCase = Depends(get_pipeline_use_case),
) -> dict:
    """Run one stage. Blocked preconditions are 409; generation failures come back with success false."""
    outcome = await _run(store, session_id, lambda state, cancel: use_case.run_stage(state, stage, cancel))
    if outcome.blocked:
        raise HTTPException(status_code=409, detail=outcome.generation.error)
    return {
        "success": outcome.generation.success,
        "error": outcome.generation.error,
        "cancelled": outcome.generation.cancelled,
        "warnings": outcome.warnings,
        "session": _view(_session(store, session_id)),
    }


@router.post("/{session_id}/run")
@limiter.limit(generation_rate_limit)
async def run_selected(
    session_id: str,
    request: Request,
    store: SessionStore = Depends(get_session_store),
    use_case: PipelineUseCase = Depends(get_pipeline_use_case),
) -> dict:
    """Run the selected stages in order, skipping finished ones."""
    outcome = await _run(store, session_id, use_case.run_selected)
    if outcome.blocked:
        raise HTTPException(status_code=409, detail=outcome.error)
    return {
        "success": outcome.failed_stage is None,
        "completed": [s.value for s in outcome.completed],
        "failed_stage": outcome.failed_stage.value if outcome.failed_stage else None,
        "error": outcome.error,
        "cancelled": outcome.cancelled,
        "warnings": outcome.warnings,
        "session": _view(_session(store, session_id)),
    }


@router.post("/{session_id}/refine")
@limiter.limit(generation_rate_limit)
async def refine(
    session_id: str,
    request: Request,
    store: SessionStore = Depends(get_session_store),
    use_case: PipelineUseCase = Depends(get_pipeline_use_case),
) -> dict:
    """One refinement pass: archive the current cycle and install a new rewrite."""
    outcome = await _run(store, session_id, use_case.run_refinement)
    if outcome.blocked:
        raise HTTPException(status_code=409, detail=outcome.generation.error)
    return {
        "success": outcome.generation.success,
        "error": outcome.generation.error,
        "cancelled": outcome.generation.cancelled,
        "warnings": outcome.warnings,
        "session": _view(_session(store, session_id)),
    }


@router.post("/{session_id}/cancel")
async def cancel_generation(
    session_id: str,
    store: SessionStore = Depends(get_session_store),
) -> dict:
    _session(store, session_id)
    return {"cancelled": store.cancel(session_id)}


@router.post("/{session_id}/accept")
async def accept(
    session_id: str,
    store: SessionStore = Depends(get_session_store),
) -> dict:
    session = _idle(store, session_id)
    if not stage_machine.has_stage_result(session.state, Stage.REWRITE):
        raise HTTPException(status_code=409, detail="No rewrite to accept")
    return _commit(store, session, iteration_controller.accept_rewrite(session.state))


@router.post("/{session_id}/revert")
async def revert(
    session_id: str,
    body: RevertRequest,
    store: SessionStore = Depends(get_session_store),
) -> dict:
    session = _idle(store, session_id)
    if body.index >= len(session.state.iteration_history):
        raise HTTPException(status_code=422, detail="Iteration index out of range")
    return _commit(store, session, iteration_controller.revert_to_iteration(session.state, body.index))


@router.post("/{session_id}/stages/{stage}/lock")
async def lock_result(
    session_id: str,
    stage: Stage,
    store: SessionStore = Depends(get_session_store),
) -> dict:
    session = _idle(store, session_id)
    if not stage_machine.has_stage_result(session.state, stage):
        raise HTTPException(status_code=409, detail="Stage has no result")
    return _commit(store, session, stage_machine.lock_stage_result(session.state, stage))


@router.post("/{session_id}/stages/{stage}/unlock")
async def unlock_result(
    session_id: str,
    stage: Stage,
    store: SessionStore = Depends(get_session_store),
) -> dict:
    session = _idle(store, session_id)
    return _commit(store, session, stage_machine.unlock_stage_result(session.state, stage))


@router.post("/{session_id}/stages/{stage}/skip")
async def skip(
    session_id: str,
    stage: Stage,
    store: SessionStore = Depends(get_session_store),
) -> dict:
    session = _idle(store, session_id)
    return _commit(store, session, stage_machine.skip_stage(session.state, stage))


@router.delete("/{session_id}/stages/{stage}/result")
async def clear_result(
    session_id: str,
    stage: Stage,
    store: SessionStore = Depends(get_session_store),
) -> dict:
    session = _idle(store, session_id)
    return _commit(store, session, stage_machine.clear_stage_result(session.state, stage))


@router.get("/{session_id}/export", response_class=PlainTextResponse)
async def export_session(
    session_id: str,
    store: SessionStore = Depends(get_session_store),
) -> str:
    """Markdown export of the session (needs a rewrite)."""
    session = _session(store, session_id)
    if not stage_machine.can_export(session.state):
        raise HTTPException(status_code=409, detail="Nothing to export yet")
    state = export.set_export_data(session.state)
    store.update(session.id, state)
    return state.export_data or ""


@router.get("/{session_id}/rewrite/fields")
async def parsed_rewrite(
    session_id: str,
    store: SessionStore = Depends(get_session_store),
) -> dict:
    """Current rewrite split back into card fields."""
    state = _session(store, session_id).state
    rewrite = state.result(Stage.REWRITE)
    if rewrite is None:
        raise HTTPException(status_code=409, detail="No rewrite to parse")
    parsed = parse_rewrite_response(rewrite.response)
    return {
        "parse_method": parsed.parse_method,
        "fields": [{"key": f.key, "label": f.label, "value": f.value} for f in parsed.fields],
    }


@router.post("/{session_id}/rewrite/apply")
async def apply_rewrite(
    session_id: str,
    store: SessionStore = Depends(get_session_store),
) -> dict:
    """Card with the parsed rewrite fields applied. Nothing is written back to the library."""
    state = _session(store, session_id).state
    rewrite = state.result(Stage.REWRITE)
    if state.character is None or rewrite is None:
        raise HTTPException(status_code=409, detail="No rewrite to apply")
    applied = apply_parsed_rewrite(state.character, parse_rewrite_response(rewrite.response).fields)
    if not applied.updated_fields:
        raise HTTPException(status_code=422, detail="No valid fields to update")
    return {"updated_fields": applied.updated_fields, "character": applied.character.model_dump()}


@router.post("/{session_id}/history/save")
async def save_history(
    session_id: str,
    store: SessionStore = Depends(get_session_store),
    use_case: PipelineUseCase = Depends(get_pipeline_use_case),
) -> dict:
    session = _session(store, session_id)
    if session.state.character is None:
        raise HTTPException(status_code=409, detail="No character selected")
    return {"saved": use_case.save_history(session.state)}


@router.post("/{session_id}/history/load")
async def load_history(
    session_id: str,
    store: SessionStore = Depends(get_session_store),
    use_case: PipelineUseCase = Depends(get_pipeline_use_case),
) -> dict:
    session = _idle(store, session_id)
    if session.state.character is None:
        raise HTTPException(status_code=409, detail="No character selected")
    return _commit(store, session, use_case.load_history(session.state))


@router.delete("/{session_id}/history")
async def clear_history(
    session_id: str,
    store: SessionStore = Depends(get_session_store),
    use_case: PipelineUseCase = Depends(get_pipeline_use_case),
) -> dict:
    session = _session(store, session_id)
    if session.state.character is None:
        raise HTTPException(status_code=409, detail="No character selected")
    return {"cleared": use_case.clear_history(session.state)}
